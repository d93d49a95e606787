from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from loam.main.config import get_settings
from loam.main.exceptions import ConfigurationError

JWT_ALGORITHM = "HS256"
UNSUBSCRIBE_PURPOSE = "unsubscribe"


def _secret(secret: Optional[str]) -> str:
    resolved = secret or get_settings().session_secret
    if not resolved:
        raise ConfigurationError("SESSION_SECRET is not set")
    return resolved


def create_unsubscribe_token(
    user_id: str, secret: Optional[str] = None, expiry_days: Optional[int] = None
) -> str:
    """Long-lived token embedded in email unsubscribe links."""
    days = expiry_days if expiry_days is not None else get_settings().unsubscribe_token_expiry_days
    now = datetime.now(timezone.utc)
    payload = {
        "uid": str(user_id),
        "purpose": UNSUBSCRIBE_PURPOSE,
        "iat": datetime.timestamp(now),
        "exp": datetime.timestamp(now + timedelta(days=days)),
    }
    return jwt.encode(payload, _secret(secret), algorithm=JWT_ALGORITHM)


def verify_unsubscribe_token(token: str, secret: Optional[str] = None) -> Optional[str]:
    """Return the user id the token was issued for, or None if it is invalid."""
    key = _secret(secret)
    try:
        payload = jwt.decode(token, key=key, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError:
        return None

    if payload.get("purpose") != UNSUBSCRIBE_PURPOSE or not payload.get("uid"):
        return None
    return payload["uid"]


def build_unsubscribe_url(user_id: str, api_url: Optional[str] = None) -> str:
    base = api_url or get_settings().api_url
    return f"{base}/api/email/unsubscribe?token={create_unsubscribe_token(user_id)}"
