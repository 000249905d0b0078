"""One conversation per pair of participants.

The conversation id is derived from the sorted pair, and creation is a
conditional write keyed by that id: concurrent first contacts from both sides
all land on the same document, and whoever loses the create simply reuses it.

Ids are ``first_second`` for ordinary user ids. When either id contains the
``_`` separator the id carries the length of the first member as a prefix
(``3:a_b_c`` for ``("a_b", "c")``), so distinct pairs never share an id.
"""

import asyncio
import logging
from typing import Iterable, List, Optional, Union

from marketsync.models import ChatMessage, Conversation, MessageAttachment, OutboxEntry, utc_timestamp
from marketsync.services.blob_store import LocalBlobStore, UploadedFile
from marketsync.services.document_store import (
    AlreadyExistsError,
    DocumentStore,
    OrderBy,
    PermissionDeniedError,
    Transaction,
    WriteBatch,
    where,
)
from marketsync.services.live_query import LiveQuerySubscriber, Subscription
from marketsync.services.notification_dispatcher import NotificationDispatcher
from marketsync.services.notification_outbox import NotificationOutbox
from marketsync.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)

CONVERSATIONS_COLLECTION = "conversations"
MESSAGES_SUBCOLLECTION = "messages"
LAST_MESSAGE_PREVIEW = 100
NOTIFICATION_PREVIEW = 50


class ConversationError(ValueError):
    """Base class for user-visible conversation errors."""


class ConversationValidationError(ConversationError):
    pass


class ConversationNotFoundError(ConversationError):
    pass


def canonical_conversation_id(id_a: str, id_b: str) -> str:
    first, second = sorted((id_a, id_b))
    if "_" in first or "_" in second:
        return f"{len(first)}:{first}_{second}"
    return f"{first}_{second}"


def _preview(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


class ConversationResolver:
    def __init__(
        self,
        store: DocumentStore,
        directory: UserDirectory,
        subscriber: LiveQuerySubscriber,
        notifications: Optional[NotificationDispatcher] = None,
        blob_store: Optional[LocalBlobStore] = None,
        outbox: Optional[NotificationOutbox] = None,
    ):
        self._store = store
        self._directory = directory
        self._subscriber = subscriber
        self._blob_store = blob_store
        if outbox is None and notifications is not None:
            outbox = NotificationOutbox(store, notifications)
        self._outbox = outbox

    def _path(self, conversation_id: str) -> str:
        return f"{CONVERSATIONS_COLLECTION}/{conversation_id}"

    async def resolve(self, id_a: str, id_b: str) -> str:
        id_a, id_b = (id_a or "").strip(), (id_b or "").strip()
        if not id_a or not id_b:
            raise ConversationValidationError("Both user IDs are required")
        if id_a == id_b:
            raise ConversationValidationError("Cannot create a conversation with yourself")
        if "/" in id_a or "/" in id_b:
            raise ConversationValidationError("User IDs cannot contain '/'")

        conversation_id = canonical_conversation_id(id_a, id_b)
        participants = sorted((id_a, id_b))
        existing = await self._store.get(self._path(conversation_id))
        if existing.exists:
            self._check_participants(conversation_id, existing.get("participants", []), participants)
            return conversation_id

        details = await asyncio.gather(*(self._directory.lookup(uid) for uid in participants))
        now = utc_timestamp()
        conversation = Conversation(
            id=conversation_id,
            participants=participants,
            participant_details=dict(zip(participants, details)),
            last_message="",
            unread_for={uid: False for uid in participants},
            created_at=now,
            updated_at=now,
        )
        try:
            await self._store.create(self._path(conversation_id), conversation.to_document())
        except AlreadyExistsError:
            # Lost the race to a concurrent resolve for the same pair.
            winner = await self._store.get(self._path(conversation_id))
            self._check_participants(conversation_id, winner.get("participants", []), participants)
            return conversation_id
        logger.info("Created conversation %s", conversation_id)
        return conversation_id

    def _check_participants(self, conversation_id: str, stored: List[str], expected: List[str]) -> None:
        if sorted(stored) != expected:
            raise ConversationError(f"Conversation id {conversation_id} belongs to a different pair")

    async def get(self, conversation_id: str) -> Conversation:
        snapshot = await self._store.get(self._path(conversation_id))
        if not snapshot.exists:
            raise ConversationNotFoundError("Conversation not found")
        return Conversation.from_snapshot(snapshot)

    async def _load(self, transaction: Transaction, conversation_id: str) -> Conversation:
        snapshot = await transaction.get(self._path(conversation_id))
        if not snapshot.exists:
            raise ConversationNotFoundError("Conversation not found")
        return Conversation.from_snapshot(snapshot)

    async def other_participant(self, conversation_id: str, user_id: str) -> Optional[str]:
        try:
            conversation = await self.get(conversation_id)
        except ConversationNotFoundError:
            return None
        if user_id not in conversation.participants:
            return None
        return next((uid for uid in conversation.participants if uid != user_id), None)

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        files: Iterable[UploadedFile] = (),
    ) -> ChatMessage:
        text = (text or "").strip()
        if not text:
            raise ConversationValidationError("Message text is required")
        conversation = await self.get(conversation_id)
        if sender_id not in conversation.participants:
            raise PermissionDeniedError("Only participants can post to this conversation")
        receiver_id = next(uid for uid in conversation.participants if uid != sender_id)

        attachments = await self._upload_attachments(conversation_id, sender_id, files)
        message = ChatMessage(
            id=self._store.new_id(),
            sender_id=sender_id,
            text=text,
            attachments=attachments,
            created_at=utc_timestamp(),
        )

        async def apply(transaction: Transaction) -> Optional[OutboxEntry]:
            current = await self._load(transaction, conversation_id)
            transaction.create(
                f"{self._path(conversation_id)}/{MESSAGES_SUBCOLLECTION}/{message.id}",
                message.to_document(),
            )
            # User ids may contain dots, so the map is written whole, never by field path.
            transaction.update(
                self._path(conversation_id),
                {
                    "lastMessage": text[:LAST_MESSAGE_PREVIEW],
                    "lastSenderId": sender_id,
                    "updatedAt": message.created_at,
                    "unreadFor": {**current.unread_for, receiver_id: True, sender_id: False},
                },
            )
            return self._stage_notification(transaction, current, sender_id, receiver_id, text)

        staged = await self._store.run_transaction(apply)
        if self._outbox is not None:
            await self._outbox.deliver(staged)
        return message

    async def _upload_attachments(
        self,
        conversation_id: str,
        sender_id: str,
        files: Iterable[UploadedFile],
    ) -> List[MessageAttachment]:
        files = list(files)
        if not files:
            return []
        if self._blob_store is None:
            raise ConversationValidationError("Attachments are not supported without a blob store")
        attachments: List[MessageAttachment] = []
        for file in files:
            try:
                url = await self._blob_store.upload(file, folder=f"{CONVERSATIONS_COLLECTION}/{conversation_id}/{sender_id}")
            except OSError:
                logger.exception("Attachment upload failed for %s in %s", file.filename, conversation_id)
                continue
            attachments.append(MessageAttachment(name=file.filename, url=url, type=file.content_type, size=file.size))
        return attachments

    def _stage_notification(
        self,
        writes: Union[WriteBatch, Transaction],
        conversation: Conversation,
        sender_id: str,
        receiver_id: str,
        text: str,
    ) -> Optional[OutboxEntry]:
        if self._outbox is None:
            return None
        sender = conversation.participant_details.get(sender_id)
        sender_name = sender.name if sender else "Someone"
        return self._outbox.stage(
            writes,
            receiver_id,
            "New Chat Message",
            f"{sender_name}: {_preview(text, NOTIFICATION_PREVIEW)}",
            "message",
            f"/chats?chatId={conversation.id}",
        )

    async def mark_read(self, conversation_id: str, user_id: str) -> None:
        async def apply(transaction: Transaction) -> None:
            conversation = await self._load(transaction, conversation_id)
            if user_id not in conversation.participants:
                raise PermissionDeniedError("Only participants can read this conversation")
            if conversation.unread_for.get(user_id):
                transaction.update(self._path(conversation_id), {"unreadFor": {**conversation.unread_for, user_id: False}})

        await self._store.run_transaction(apply)

    def watch_conversations(self, user_id: str) -> Subscription:
        return self._subscriber.subscribe(
            CONVERSATIONS_COLLECTION,
            [where("participants", "array-contains", user_id)],
            order_by=OrderBy("updatedAt", "desc"),
        )

    def watch_messages(self, conversation_id: str) -> Subscription:
        return self._subscriber.subscribe(
            f"{self._path(conversation_id)}/{MESSAGES_SUBCOLLECTION}",
            order_by=OrderBy("createdAt", "asc"),
        )
