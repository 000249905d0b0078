"""Transactional outbox for notifications.

A notification is staged as a ``notificationOutbox`` document in the same
batch or transaction as the state change that causes it, then delivered
after commit. Entries that fail delivery stay in the outbox and are retried
by ``flush``; the outbox id doubles as the notification id, so a retried
entry that was in fact delivered is recognised and not sent twice.
"""

import logging
from typing import Iterable, List, Optional, Union

from marketsync.models import NotificationType, OutboxEntry, utc_timestamp
from marketsync.services.document_store import (
    AlreadyExistsError,
    DocumentStore,
    DocumentStoreError,
    OrderBy,
    Query,
    Transaction,
    WriteBatch,
)
from marketsync.services.notification_dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

OUTBOX_COLLECTION = "notificationOutbox"


class NotificationOutbox:
    def __init__(self, store: DocumentStore, notifications: NotificationDispatcher):
        self._store = store
        self._notifications = notifications

    def _path(self, entry_id: str) -> str:
        return f"{OUTBOX_COLLECTION}/{entry_id}"

    def stage(
        self,
        writes: Union[WriteBatch, Transaction],
        recipient_id: Optional[str],
        title: str,
        message: str,
        type: NotificationType = "info",
        link: Optional[str] = None,
    ) -> Optional[OutboxEntry]:
        if not recipient_id:
            return None
        entry = OutboxEntry(
            id=self._store.new_id(),
            recipient_id=recipient_id,
            title=title,
            message=message,
            type=type,
            link=link,
            created_at=utc_timestamp(),
        )
        writes.create(self._path(entry.id), entry.to_document())
        return entry

    async def deliver(self, entry: Optional[OutboxEntry]) -> bool:
        """Send one staged notification; never raises."""
        if entry is None:
            return False
        try:
            await self._notifications.create(
                entry.recipient_id,
                entry.title,
                entry.message,
                type=entry.type,
                link=entry.link,
                notification_id=entry.id,
            )
        except AlreadyExistsError:
            logger.info("Outbox entry %s was already delivered", entry.id)
        except Exception as exc:
            logger.exception("Notification dispatch failed for %s", entry.recipient_id)
            await self._record_failure(entry, exc)
            return False
        try:
            await self._store.delete(self._path(entry.id))
        except DocumentStoreError:
            logger.exception("Could not clear delivered outbox entry %s", entry.id)
        return True

    async def deliver_all(self, entries: Iterable[Optional[OutboxEntry]]) -> List[bool]:
        return [await self.deliver(entry) for entry in entries if entry is not None]

    async def _record_failure(self, entry: OutboxEntry, exc: Exception) -> None:
        try:
            await self._store.update(
                self._path(entry.id),
                {"attempts": entry.attempts + 1, "lastError": str(exc)[:500]},
            )
        except DocumentStoreError:
            logger.exception("Could not record failure on outbox entry %s", entry.id)

    async def pending(self) -> List[OutboxEntry]:
        snapshot = await self._store.query(Query(OUTBOX_COLLECTION, order_by=OrderBy("createdAt", "asc")))
        return [OutboxEntry.from_snapshot(document) for document in snapshot]

    async def flush(self) -> int:
        """Retry every pending entry, oldest first; returns how many were delivered."""
        delivered = 0
        for entry in await self.pending():
            if await self.deliver(entry):
                delivered += 1
        if delivered:
            logger.info("Delivered %d pending notifications from the outbox", delivered)
        return delivered
