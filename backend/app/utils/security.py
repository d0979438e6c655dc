from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from app.config import get_settings

OAUTH_STATE_TYPE = "meta_oauth_state"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def _create_token(data: dict, token_type: str, expires_delta: timedelta) -> str:
    settings = get_settings()
    payload = data.copy()
    payload["type"] = token_type
    payload["exp"] = datetime.now(timezone.utc) + expires_delta
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def create_access_token(data: dict) -> str:
    settings = get_settings()
    return _create_token(data, "access", timedelta(minutes=settings.access_token_expire_minutes))


def create_refresh_token(data: dict) -> str:
    settings = get_settings()
    return _create_token(data, "refresh", timedelta(days=settings.refresh_token_expire_days))


def decode_token(token: str) -> dict | None:
    """Return the token payload, or None if the signature or expiry is invalid."""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def create_oauth_state(data: dict) -> str:
    """Signed, short-lived ``state`` for the Meta OAuth round trip."""
    settings = get_settings()
    return _create_token(data, OAUTH_STATE_TYPE, timedelta(minutes=settings.meta_oauth_state_expire_minutes))
