import json
from typing import AsyncIterator, NoReturn, Optional

from fastapi import HTTPException

from marketsync.services.conversation_resolver import ConversationError, ConversationNotFoundError
from marketsync.services.document_store import (
    AlreadyExistsError,
    DocumentStoreError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    PreconditionFailedError,
)
from marketsync.services.live_query import Subscription
from marketsync.services.notification_dispatcher import NotificationError, NotificationNotFoundError
from marketsync.services.workflow_engine import InvalidTransitionError, RequestNotFoundError, WorkflowError

NOT_FOUND_ERRORS = (NotFoundError, RequestNotFoundError, ConversationNotFoundError, NotificationNotFoundError)
CONFLICT_ERRORS = (InvalidTransitionError, AlreadyExistsError, PreconditionFailedError)


def raise_http_error(exc: Exception) -> NoReturn:
    if isinstance(exc, NOT_FOUND_ERRORS):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PermissionDeniedError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, CONFLICT_ERRORS):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, NetworkError):
        raise HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, (WorkflowError, ConversationError, NotificationError, DocumentStoreError)):
        raise HTTPException(status_code=400, detail=str(exc))
    raise exc


def _event(payload: object) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def stream_snapshots(subscription: Subscription, limit: Optional[int] = None) -> AsyncIterator[str]:
    """Server-sent events: one event per snapshot, ``[DONE]`` when the stream ends."""
    sent = 0
    async with subscription:
        try:
            async for snapshot in subscription:
                yield _event(
                    {
                        "type": "snapshot",
                        "documents": [{**(document.data or {}), "id": document.id} for document in snapshot],
                    }
                )
                sent += 1
                if limit and sent >= limit:
                    break
        except DocumentStoreError as exc:
            code = "permission-denied" if isinstance(exc, PermissionDeniedError) else "unavailable"
            yield _event({"type": "error", "code": code, "message": str(exc)})
    yield "data: [DONE]\n\n"
