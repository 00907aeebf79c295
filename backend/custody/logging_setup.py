import sys
from loguru import logger
from custody.config import settings


def configure_logging(level: str | None = None) -> None:
    """Replace loguru's default sink with a single stderr sink."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or settings.LOG_LEVEL).upper(),
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} - {message}",
        backtrace=False,
        diagnose=False,
    )
