import base64
import binascii
import hashlib
import hmac
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from fastapi import Header, HTTPException, Request, status

from marketsync.models import Identity
from marketsync.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)


def _read_positive_int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using %d", name, raw, default)
        return default
    return value if value > 0 else default


TOKEN_TTL_HOURS = _read_positive_int_env("AUTH_TOKEN_TTL_HOURS", 24)
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "false").lower() in {"1", "true", "yes"}
DEMO_PASSWORD = os.getenv("AUTH_DEMO_PASSWORD", "marketsync-demo")
_AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me").encode("utf-8")


def _encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _sign(payload: bytes) -> bytes:
    return hmac.new(_AUTH_SECRET, payload, hashlib.sha256).digest()


def create_access_token(user_id: str) -> Tuple[str, str]:
    expiry = datetime.now(timezone.utc) + timedelta(hours=TOKEN_TTL_HOURS)
    payload = f"{user_id}|{int(expiry.timestamp())}".encode("utf-8")
    return f"{_encode(payload)}.{_encode(_sign(payload))}", expiry.isoformat()


def verify_access_token(token: str) -> Optional[str]:
    try:
        payload_part, signature_part = token.split(".", 1)
        payload = _decode(payload_part)
        if not hmac.compare_digest(_decode(signature_part), _sign(payload)):
            return None
        user_id, expiry_ts = payload.decode("utf-8").rsplit("|", 1)
        expired = datetime.now(timezone.utc).timestamp() > int(expiry_ts)
    except (ValueError, binascii.Error, UnicodeDecodeError):
        return None
    return None if expired else user_id


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def resolve_request_user(authorization: Optional[str]) -> Optional[str]:
    token = parse_bearer_token(authorization)
    return verify_access_token(token) if token else None


class IdentityProvider:
    """Maps a bearer token to the caller's identity; read-only."""

    def __init__(self, directory: UserDirectory):
        self._directory = directory

    async def current_identity(self, authorization: Optional[str]) -> Optional[Identity]:
        user_id = resolve_request_user(authorization)
        if not user_id:
            return None
        return await self._directory.identity(user_id)


async def require_identity(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Identity:
    identity = await request.app.state.identity_provider.current_identity(authorization)
    if identity is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    return identity


def assert_actor_authorized(actor_user_id: str, authorization: Optional[str] = None) -> None:
    token_user = resolve_request_user(authorization)
    if not token_user:
        if AUTH_REQUIRED:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
        return
    if token_user != actor_user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token user does not match actor user")
