import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import JWTError, jwt

from app.core.config import Settings

STATE_TOKEN_TYPE = "oauth_state"


def generate_session_token(nbytes: int = 9) -> str:
    return secrets.token_urlsafe(nbytes)


def create_state_token(settings: Settings) -> str:
    now = datetime.now(timezone.utc)
    payload: Dict[str, Any] = {
        "type": STATE_TOKEN_TYPE,
        "nonce": secrets.token_hex(16),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.OAUTH_STATE_EXPIRE_MINUTES)).timestamp()),
    }
    return jwt.encode(payload, settings.OAUTH_STATE_SECRET, algorithm=settings.OAUTH_STATE_ALGORITHM)


def decode_state_token(token: str, settings: Settings) -> Dict[str, Any]:
    try:
        payload = jwt.decode(
            token,
            settings.OAUTH_STATE_SECRET,
            algorithms=[settings.OAUTH_STATE_ALGORITHM],
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired state") from exc
    if payload.get("type") != STATE_TOKEN_TYPE:
        raise ValueError("Invalid state type")
    return payload
