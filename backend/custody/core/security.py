from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from custody.config import settings


def create_access_token(user_id: int, role: str = "user") -> str:
    """Issue a bearer token. Tokens are normally minted by the auth service; used by tooling and tests."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    return jwt.encode(
        {"sub": str(user_id), "role": role, "exp": expire},
        settings.SECRET_KEY,
        settings.ALGORITHM,
    )


def decode_token(token: str) -> Optional[dict]:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        int(payload["sub"])
        return payload
    except (JWTError, KeyError, TypeError, ValueError):
        return None
