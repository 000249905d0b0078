import logging
from typing import Optional

from marketsync.models import Identity, ParticipantDetail
from marketsync.services.document_store import DocumentStore, DocumentStoreError

logger = logging.getLogger(__name__)

USERS_COLLECTION = "users"

ROLE_ALIASES = {
    "constructor": "contractor",
}


def _display_name(data: dict) -> Optional[str]:
    for key in ("displayName", "name"):
        value = str(data.get(key) or "").strip()
        if value:
            return value
    email = str(data.get("email") or "").strip()
    if email:
        return email.split("@", 1)[0]
    return None


class UserDirectory:
    """Read-only view over user profiles used for display enrichment."""

    def __init__(self, store: DocumentStore):
        self._store = store

    async def lookup(self, user_id: str) -> ParticipantDetail:
        try:
            snapshot = await self._store.get(f"{USERS_COLLECTION}/{user_id}")
        except DocumentStoreError as exc:
            logger.warning("User lookup failed for %s, using placeholder: %s", user_id, exc)
            return ParticipantDetail()
        if not snapshot.exists:
            return ParticipantDetail()
        data = snapshot.data or {}
        role = str(data.get("role") or "user").strip() or "user"
        return ParticipantDetail(
            name=_display_name(data) or "User",
            role=ROLE_ALIASES.get(role, role),
        )

    async def identity(self, user_id: str) -> Identity:
        try:
            snapshot = await self._store.get(f"{USERS_COLLECTION}/{user_id}")
            data = snapshot.data or {}
        except DocumentStoreError as exc:
            logger.warning("Identity lookup failed for %s: %s", user_id, exc)
            data = {}
        return Identity(
            id=user_id,
            display_name=_display_name(data) or user_id,
            email=str(data.get("email") or ""),
        )

    async def save_profile(
        self,
        user_id: str,
        display_name: Optional[str] = None,
        email: Optional[str] = None,
        role: Optional[str] = None,
    ) -> None:
        fields = {
            key: value.strip()
            for key, value in (("displayName", display_name), ("email", email), ("role", role))
            if value and value.strip()
        }
        if fields:
            await self._store.set(f"{USERS_COLLECTION}/{user_id}", fields, merge=True)
