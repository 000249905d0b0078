import asyncio
import logging
from typing import List, Optional

from marketsync.models import NotificationRecord, NotificationType, utc_timestamp
from marketsync.services.document_store import DocumentStore, DocumentStoreError, OrderBy, Transaction, where
from marketsync.services.live_query import LiveQuerySubscriber, Subscription
from marketsync.services.push_gateway import PushGateway

logger = logging.getLogger(__name__)

NOTIFICATIONS_COLLECTION = "notifications"
DEVICE_TOKENS_COLLECTION = "deviceTokens"
LIST_LIMIT = 100


class NotificationError(ValueError):
    """Base class for user-visible notification errors."""


class NotificationValidationError(NotificationError):
    pass


class NotificationNotFoundError(NotificationError):
    pass


class NotificationDispatcher:
    def __init__(
        self,
        store: DocumentStore,
        subscriber: LiveQuerySubscriber,
        push_gateway: Optional[PushGateway] = None,
    ):
        self._store = store
        self._subscriber = subscriber
        self._push_gateway = push_gateway

    async def create(
        self,
        recipient_id: str,
        title: str,
        message: str,
        type: NotificationType = "info",
        link: Optional[str] = None,
        notification_id: Optional[str] = None,
    ) -> str:
        """Store a notification and push it to the recipient's devices.

        With an explicit ``notification_id`` the write is conditional, so a
        retried delivery raises AlreadyExistsError instead of duplicating.
        """
        if not recipient_id or not title.strip() or not message.strip():
            raise NotificationValidationError("recipient_id, title and message are required")
        record = NotificationRecord(
            id=notification_id or self._store.new_id(),
            recipient_id=recipient_id,
            title=title.strip(),
            message=message.strip(),
            type=type,
            link=link,
            read=False,
            created_at=utc_timestamp(),
        )
        await self._store.create(f"{NOTIFICATIONS_COLLECTION}/{record.id}", record.to_document())
        try:
            await self._push(record)
        except DocumentStoreError:
            logger.exception("Push delivery failed for notification %s", record.id)
        return record.id

    async def _push(self, record: NotificationRecord) -> None:
        if self._push_gateway is None:
            return
        tokens = await self._device_tokens(record.recipient_id)
        if not tokens:
            return
        invalid_tokens = await asyncio.to_thread(
            self._push_gateway.send_notification,
            tokens=tokens,
            title=record.title,
            body=record.message,
            data={
                "notification_id": record.id,
                "type": record.type,
                "link": record.link or "",
            },
        )
        if invalid_tokens:
            await self._prune_tokens(record.recipient_id, invalid_tokens)

    async def _device_tokens(self, user_id: str) -> List[str]:
        snapshot = await self._store.get(f"{DEVICE_TOKENS_COLLECTION}/{user_id}")
        return list(snapshot.get("tokens", []))

    async def _prune_tokens(self, user_id: str, invalid_tokens: List[str]) -> None:
        path = f"{DEVICE_TOKENS_COLLECTION}/{user_id}"

        async def prune(transaction: Transaction) -> None:
            snapshot = await transaction.get(path)
            remaining = [token for token in snapshot.get("tokens", []) if token not in invalid_tokens]
            transaction.set(path, {"tokens": remaining})

        await self._store.run_transaction(prune)
        logger.info("Pruned %d invalid device tokens for %s", len(invalid_tokens), user_id)

    async def register_device_token(self, user_id: str, device_token: str) -> None:
        token = device_token.strip()
        if not token:
            return
        path = f"{DEVICE_TOKENS_COLLECTION}/{user_id}"

        async def register(transaction: Transaction) -> None:
            snapshot = await transaction.get(path)
            tokens = list(snapshot.get("tokens", []))
            if token not in tokens:
                tokens.append(token)
            transaction.set(path, {"tokens": tokens})

        await self._store.run_transaction(register)

    async def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        filters = [where("recipientId", "==", user_id)]
        if unread_only:
            filters.append(where("read", "==", False))
        snapshot = await self._subscriber.fetch(
            NOTIFICATIONS_COLLECTION,
            filters,
            order_by=OrderBy("createdAt", "desc"),
        )
        return [NotificationRecord.from_snapshot(document) for document in snapshot.documents[:LIST_LIMIT]]

    async def unread_count(self, user_id: str) -> int:
        snapshot = await self._subscriber.fetch(
            NOTIFICATIONS_COLLECTION,
            [where("recipientId", "==", user_id), where("read", "==", False)],
        )
        return len(snapshot)

    def watch(self, user_id: str) -> Subscription:
        return self._subscriber.subscribe(
            NOTIFICATIONS_COLLECTION,
            [where("recipientId", "==", user_id)],
            order_by=OrderBy("createdAt", "desc"),
        )

    async def _owned(self, user_id: str, notification_id: str) -> NotificationRecord:
        snapshot = await self._store.get(f"{NOTIFICATIONS_COLLECTION}/{notification_id}")
        if not snapshot.exists or snapshot.get("recipientId") != user_id:
            raise NotificationNotFoundError("Notification not found")
        return NotificationRecord.from_snapshot(snapshot)

    async def mark_read(self, user_id: str, notification_id: str) -> NotificationRecord:
        record = await self._owned(user_id, notification_id)
        if record.read:
            return record
        read_at = utc_timestamp()
        await self._store.update(
            f"{NOTIFICATIONS_COLLECTION}/{notification_id}",
            {"read": True, "readAt": read_at},
        )
        return record.model_copy(update={"read": True, "read_at": read_at})

    async def mark_all_read(self, user_id: str) -> int:
        unread = await self._subscriber.fetch(
            NOTIFICATIONS_COLLECTION,
            [where("recipientId", "==", user_id), where("read", "==", False)],
        )
        if unread.empty:
            return 0
        read_at = utc_timestamp()
        batch = self._store.batch()
        for document in unread:
            batch.update(document.path, {"read": True, "readAt": read_at})
        await batch.commit()
        return len(unread)

    async def delete(self, user_id: str, notification_id: str) -> None:
        await self._owned(user_id, notification_id)
        await self._store.delete(f"{NOTIFICATIONS_COLLECTION}/{notification_id}")

    async def clear_all(self, user_id: str) -> int:
        snapshot = await self._subscriber.fetch(NOTIFICATIONS_COLLECTION, [where("recipientId", "==", user_id)])
        if snapshot.empty:
            return 0
        batch = self._store.batch()
        for document in snapshot:
            batch.delete(document.path)
        await batch.commit()
        return len(snapshot)
