from datetime import timedelta
from typing import Optional
import jwt

from starraffle.core.config import settings
from starraffle.core.timeutil import now_utc

ALGORITHM = "HS256"
DEFAULT_EXPIRE_MINUTES = 60 * 24


def create_access_token(telegram_id: int, username: Optional[str] = None,
                        first_name: Optional[str] = None,
                        expires_minutes: Optional[int] = None) -> str:
    # tokens are issued by the identity layer after initData validation;
    # this helper mirrors its claim layout
    now = now_utc()
    expire = now + timedelta(minutes=expires_minutes or DEFAULT_EXPIRE_MINUTES)
    payload = {
        "sub": str(telegram_id),
        "exp": int(expire.timestamp()),
        "iat": int(now.timestamp()),
        "iss": settings.APP_NAME,
    }
    if username:
        payload["username"] = username
    if first_name:
        payload["first_name"] = first_name
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGORITHM],
                      options={"require": ["exp", "iat", "sub"]})
