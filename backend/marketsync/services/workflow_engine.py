"""Service-request lifecycle.

Requests move through a fixed graph selected by their category. Every
accepted transition, progress update or provider assignment appends one
immutable entry to ``serviceRequests/{id}/statusHistory`` in the same
transaction that changes the request. The notification for the other party
is staged in the notification outbox by that same transaction and delivered
once it commits; a failed delivery stays in the outbox for a later flush and
never undoes the change.
"""

import logging
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from marketsync.models import (
    OutboxEntry,
    RequestCategory,
    RequestStatus,
    ServiceRequestBase,
    StatusHistoryEntry,
    TransitionResult,
    parse_service_request,
    utc_timestamp,
)
from marketsync.services.blob_store import LocalBlobStore, UploadedFile
from marketsync.services.conversation_resolver import ConversationResolver, canonical_conversation_id
from marketsync.services.document_store import (
    DocumentStore,
    OrderBy,
    PermissionDeniedError,
    Transaction,
    where,
)
from marketsync.services.live_query import LiveQuerySubscriber, Subscription
from marketsync.services.notification_dispatcher import NotificationDispatcher
from marketsync.services.notification_outbox import NotificationOutbox

logger = logging.getLogger(__name__)

SERVICE_REQUESTS_COLLECTION = "serviceRequests"
STATUS_HISTORY_SUBCOLLECTION = "statusHistory"
PROVIDERS_COLLECTION = "providers"

ALL_STATUSES: FrozenSet[str] = frozenset({"Pending", "InProgress", "Completed", "Rejected", "Cancelled"})
TERMINAL_STATUSES: FrozenSet[str] = frozenset({"Completed", "Rejected", "Cancelled"})
PROVIDER_STATUSES: FrozenSet[str] = frozenset({"InProgress", "Completed", "Rejected"})
REQUESTER_STATUSES: FrozenSet[str] = frozenset({"Cancelled"})

TRANSITIONS_WITH_REJECTION: Dict[str, FrozenSet[str]] = {
    "Pending": frozenset({"InProgress", "Rejected", "Cancelled"}),
    "InProgress": frozenset({"Completed"}),
}

TRANSITIONS_WITHOUT_REJECTION: Dict[str, FrozenSet[str]] = {
    "Pending": frozenset({"InProgress", "Cancelled"}),
    "InProgress": frozenset({"Completed"}),
}

TRANSITION_GRAPHS: Dict[str, Dict[str, FrozenSet[str]]] = {
    "construction": TRANSITIONS_WITH_REJECTION,
    "renovation": TRANSITIONS_WITHOUT_REJECTION,
    "service": TRANSITIONS_WITH_REJECTION,
}

STATUS_MESSAGES: Dict[str, Tuple[str, str, str]] = {
    "InProgress": ("{kind} Project Started", "Your {label} project is now in progress.", "status-update"),
    "Completed": ("{kind} Project Completed", "Your {label} project has been marked as completed.", "success"),
    "Rejected": ("{kind} Request Rejected", "Your {label} request has been rejected.", "info"),
    "Cancelled": ("{kind} Request Cancelled", "The {label} request has been cancelled by the client.", "info"),
}


class WorkflowError(ValueError):
    """Base class for user-visible workflow errors."""


class WorkflowValidationError(WorkflowError):
    pass


class InvalidTransitionError(WorkflowError):
    pass


class RequestNotFoundError(WorkflowError):
    pass


def allowed_transitions(category: str, status: str) -> FrozenSet[str]:
    return TRANSITION_GRAPHS[category].get(status, frozenset())


def _entry_id(sequence: int) -> str:
    return f"{sequence:06d}"


class WorkflowEngine:
    def __init__(
        self,
        store: DocumentStore,
        notifications: NotificationDispatcher,
        subscriber: LiveQuerySubscriber,
        conversations: Optional[ConversationResolver] = None,
        blob_store: Optional[LocalBlobStore] = None,
        outbox: Optional[NotificationOutbox] = None,
    ):
        self._store = store
        self._subscriber = subscriber
        self._conversations = conversations
        self._blob_store = blob_store
        self._outbox = outbox or NotificationOutbox(store, notifications)

    def _path(self, request_id: str) -> str:
        return f"{SERVICE_REQUESTS_COLLECTION}/{request_id}"

    def _history_path(self, request_id: str, sequence: Optional[int] = None) -> str:
        path = f"{self._path(request_id)}/{STATUS_HISTORY_SUBCOLLECTION}"
        return path if sequence is None else f"{path}/{_entry_id(sequence)}"

    async def get(self, request_id: str) -> ServiceRequestBase:
        snapshot = await self._store.get(self._path(request_id))
        if not snapshot.exists:
            raise RequestNotFoundError("Service request not found")
        return parse_service_request({**snapshot.data, "id": snapshot.id})

    async def _load(self, transaction: Transaction, request_id: str) -> ServiceRequestBase:
        snapshot = await transaction.get(self._path(request_id))
        if not snapshot.exists:
            raise RequestNotFoundError("Service request not found")
        return parse_service_request({**snapshot.data, "id": snapshot.id})

    async def history(self, request_id: str) -> List[StatusHistoryEntry]:
        snapshot = await self._subscriber.fetch(
            self._history_path(request_id),
            order_by=OrderBy("createdAt", "asc"),
        )
        return [StatusHistoryEntry.from_snapshot(document) for document in snapshot]

    async def submit(
        self,
        requester_id: str,
        category: RequestCategory,
        budget: float,
        description: str = "",
        provider_id: Optional[str] = None,
        **details,
    ) -> ServiceRequestBase:
        if category not in TRANSITION_GRAPHS:
            raise WorkflowValidationError(f"Invalid category. Allowed: {', '.join(sorted(TRANSITION_GRAPHS))}")
        if not requester_id:
            raise WorkflowValidationError("requester_id is required")
        if provider_id == requester_id:
            raise WorkflowValidationError("Requester cannot be the provider")

        now = utc_timestamp()
        request = parse_service_request(
            {
                **{key: value for key, value in details.items() if value is not None},
                "id": self._store.new_id(),
                "category": category,
                "requester_id": requester_id,
                "provider_id": provider_id or None,
                "status": "Pending",
                "budget": budget,
                "description": description,
                "history_count": 1,
                "created_at": now,
                "updated_at": now,
            }
        )
        candidates = [] if request.provider_id else await self._approved_providers(request)

        entry = StatusHistoryEntry(
            id=_entry_id(1),
            sequence=1,
            kind="created",
            status="Pending",
            actor_id=requester_id,
            note="Request submitted",
            created_at=now,
        )
        batch = self._store.batch()
        batch.create(self._path(request.id), request.to_document())
        batch.create(self._history_path(request.id, 1), entry.to_document())
        staged = [
            self._outbox.stage(
                batch,
                requester_id,
                f"{request.kind_title} Request Submitted",
                f"Your {request.label} request has been submitted successfully. "
                "We'll notify you when a provider responds.",
                "service-request",
                "/dashboard",
            )
        ]
        if request.provider_id:
            staged.append(
                self._outbox.stage(
                    batch,
                    request.provider_id,
                    f"New {request.kind_title} Request",
                    f"You have received a new {request.label} request. Check your dashboard for details.",
                    "service-request",
                    f"/requests/{request.id}",
                )
            )
        for user_id in candidates:
            staged.append(
                self._outbox.stage(
                    batch,
                    user_id,
                    f"New {request.kind_title} Request Available",
                    f"A new {request.label} request is available. Check available projects.",
                    "service-request",
                    f"/requests/{request.id}",
                )
            )
        await batch.commit()
        logger.info("Service request %s submitted by %s (%s)", request.id, requester_id, category)
        if request.provider_id:
            conversation_id = await self._spawn_conversation(request.requester_id, request.provider_id)
            if conversation_id:
                await self._store.update(self._path(request.id), {"conversationId": conversation_id})
                request = request.model_copy(update={"conversation_id": conversation_id})
        await self._outbox.deliver_all(staged)
        return request

    async def _approved_providers(self, request: ServiceRequestBase) -> List[str]:
        providers = await self._subscriber.fetch(
            PROVIDERS_COLLECTION,
            [where("type", "==", request.category), where("isApproved", "==", True)],
        )
        user_ids = {document.get("userId") for document in providers if document.get("userId")}
        return sorted(user_ids - {request.requester_id})

    async def transition(
        self,
        request_id: str,
        actor_id: str,
        target_status: RequestStatus,
        note: Optional[str] = None,
    ) -> TransitionResult:
        if target_status not in ALL_STATUSES:
            raise InvalidTransitionError(f"Unknown status: {target_status}")
        note = (note or "").strip()

        async def apply(
            transaction: Transaction,
        ) -> Tuple[ServiceRequestBase, StatusHistoryEntry, Optional[OutboxEntry]]:
            request = await self._load(transaction, request_id)
            self._check_transition(request, actor_id, target_status, note)
            entry, updated = self._append(
                transaction,
                request,
                actor_id,
                kind="transition",
                status=target_status,
                note=note,
            )
            title, message, kind = STATUS_MESSAGES[target_status]
            if note:
                message = f"{message} Note: {note}"
            staged = self._outbox.stage(
                transaction,
                self._counterparty(updated, actor_id),
                title.format(kind=updated.kind_title),
                message.format(label=updated.label),
                kind,
                f"/requests/{request_id}",
            )
            return updated, entry, staged

        updated, entry, staged = await self._store.run_transaction(apply)
        logger.info("Service request %s moved %s -> %s by %s", request_id, entry.previous_status, target_status, actor_id)
        notified = await self._outbox.deliver(staged)
        return TransitionResult(request=updated, entry=entry, notified=notified)

    def _check_transition(self, request: ServiceRequestBase, actor_id: str, target_status: str, note: str) -> None:
        if target_status not in allowed_transitions(request.category, request.status):
            raise InvalidTransitionError(f"Invalid status transition: {request.status} -> {target_status}")
        if target_status in PROVIDER_STATUSES and (not request.provider_id or actor_id != request.provider_id):
            raise PermissionDeniedError("Only the assigned provider can apply this status")
        if target_status in REQUESTER_STATUSES and actor_id != request.requester_id:
            raise PermissionDeniedError("Only the requester can apply this status")
        if target_status == "Rejected" and not note:
            raise InvalidTransitionError("A note is required to reject a request")

    def _append(
        self,
        transaction: Transaction,
        request: ServiceRequestBase,
        actor_id: str,
        kind: str,
        status: str,
        note: str = "",
        images: Iterable[str] = (),
        extra_fields: Optional[Dict[str, object]] = None,
    ) -> Tuple[StatusHistoryEntry, ServiceRequestBase]:
        sequence = request.history_count + 1
        now = utc_timestamp()
        entry = StatusHistoryEntry(
            id=_entry_id(sequence),
            sequence=sequence,
            kind=kind,
            status=status,
            previous_status=request.status,
            actor_id=actor_id,
            note=note,
            images=list(images),
            created_at=now,
        )
        fields: Dict[str, object] = {"status": status, "historyCount": sequence, "updatedAt": now}
        fields.update(extra_fields or {})
        transaction.update(self._path(request.id), fields)
        transaction.create(self._history_path(request.id, sequence), entry.to_document())
        updated = request.model_copy(
            update={
                "status": status,
                "history_count": sequence,
                "updated_at": now,
                **{_snake(key): value for key, value in (extra_fields or {}).items()},
            }
        )
        return entry, updated

    async def post_update(
        self,
        request_id: str,
        actor_id: str,
        note: str = "",
        image_urls: Iterable[str] = (),
        files: Iterable[UploadedFile] = (),
    ) -> StatusHistoryEntry:
        note = (note or "").strip()
        files = list(files)
        self._check_update(await self.get(request_id), actor_id)
        if files and self._blob_store is None:
            raise WorkflowValidationError("Image uploads are not supported without a blob store")
        images = list(image_urls)
        for file in files:
            images.append(await self._blob_store.upload(file, folder=f"{self._path(request_id)}/updates"))
        if not note and not images:
            raise WorkflowValidationError("Please add a note or image")

        async def apply(transaction: Transaction) -> Tuple[StatusHistoryEntry, Optional[OutboxEntry]]:
            request = await self._load(transaction, request_id)
            self._check_update(request, actor_id)
            entry, updated = self._append(
                transaction,
                request,
                actor_id,
                kind="update",
                status=request.status,
                note=note,
                images=images,
            )
            staged = self._outbox.stage(
                transaction,
                updated.requester_id,
                "New Project Update",
                f"There is a new update on your {updated.label} project.",
                "status-update",
                f"/requests/{request_id}",
            )
            return entry, staged

        entry, staged = await self._store.run_transaction(apply)
        logger.info("Service request %s received progress update %d", request_id, entry.sequence)
        await self._outbox.deliver(staged)
        return entry

    def _check_update(self, request: ServiceRequestBase, actor_id: str) -> None:
        if request.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"Request is already {request.status}")
        if not request.provider_id or actor_id != request.provider_id:
            raise PermissionDeniedError("Only the assigned provider can post updates")

    async def claim(self, request_id: str, provider_id: str) -> ServiceRequestBase:
        if not provider_id:
            raise WorkflowValidationError("provider_id is required")

        async def apply(transaction: Transaction) -> Tuple[ServiceRequestBase, Optional[OutboxEntry], bool]:
            request = await self._load(transaction, request_id)
            if request.status != "Pending":
                raise InvalidTransitionError(f"Only pending requests can be claimed (current: {request.status})")
            if request.requester_id == provider_id:
                raise WorkflowValidationError("Requester cannot be the provider")
            if request.provider_id == provider_id:
                return request, None, False
            if request.provider_id:
                raise PermissionDeniedError("Request is already assigned to another provider")
            _, updated = self._append(
                transaction,
                request,
                provider_id,
                kind="assignment",
                status=request.status,
                note="Provider assigned",
                extra_fields={"providerId": provider_id},
            )
            link = "/dashboard"
            if self._conversations is not None:
                link = f"/chats?chatId={canonical_conversation_id(updated.requester_id, provider_id)}"
            staged = self._outbox.stage(
                transaction,
                updated.requester_id,
                f"{updated.kind_title} Request Accepted",
                f"Your {updated.label} request has been accepted! You can now chat with the provider.",
                "success",
                link,
            )
            return updated, staged, True

        request, staged, assigned = await self._store.run_transaction(apply)
        if not assigned:
            return request

        logger.info("Service request %s claimed by %s", request_id, provider_id)
        conversation_id = await self._spawn_conversation(request.requester_id, provider_id)
        if conversation_id:
            await self._store.update(self._path(request_id), {"conversationId": conversation_id})
            request = request.model_copy(update={"conversation_id": conversation_id})
        await self._outbox.deliver(staged)
        return request

    async def _spawn_conversation(self, requester_id: str, provider_id: str) -> Optional[str]:
        if self._conversations is None:
            return None
        try:
            return await self._conversations.resolve(requester_id, provider_id)
        except Exception:
            logger.exception("Conversation spawn failed for %s and %s", requester_id, provider_id)
            return None

    def _counterparty(self, request: ServiceRequestBase, actor_id: str) -> Optional[str]:
        if actor_id == request.requester_id:
            return request.provider_id
        return request.requester_id

    def watch_request(self, request_id: str) -> Subscription:
        return self._subscriber.subscribe_document(SERVICE_REQUESTS_COLLECTION, request_id)

    def watch_for_provider(self, provider_id: str) -> Subscription:
        return self._subscriber.subscribe(
            SERVICE_REQUESTS_COLLECTION,
            [where("providerId", "==", provider_id)],
            order_by=OrderBy("createdAt", "desc"),
        )

    def watch_for_requester(self, requester_id: str) -> Subscription:
        return self._subscriber.subscribe(
            SERVICE_REQUESTS_COLLECTION,
            [where("requesterId", "==", requester_id)],
            order_by=OrderBy("createdAt", "desc"),
        )

    def watch_history(self, request_id: str) -> Subscription:
        return self._subscriber.subscribe(
            self._history_path(request_id),
            order_by=OrderBy("createdAt", "asc"),
        )


def _snake(name: str) -> str:
    return "".join(f"_{char.lower()}" if char.isupper() else char for char in name)
