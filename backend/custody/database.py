from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from custody.config import settings


def _engine_options(url: str) -> dict:
    # Bounds every connect and statement on asyncpg
    if url.startswith("postgresql+asyncpg://"):
        return {
            "pool_timeout": settings.DB_COMMAND_TIMEOUT_SEC,
            "connect_args": {
                "timeout": settings.DB_COMMAND_TIMEOUT_SEC,
                "command_timeout": settings.DB_COMMAND_TIMEOUT_SEC,
            },
        }
    return {}


# Settings rewrites postgresql:// URLs to the asyncpg driver
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    pool_pre_ping=True,
    **_engine_options(settings.DATABASE_URL),
)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session
