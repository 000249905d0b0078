from typing import Optional

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import StreamingResponse

from marketsync.auth import assert_actor_authorized
from marketsync.models import (
    ChatMessage,
    Conversation,
    ConversationReadRequest,
    ConversationResolveRequest,
    ConversationResolveResponse,
    MessageCreateRequest,
)
from marketsync.routers.common import raise_http_error, stream_snapshots
from marketsync.services.conversation_resolver import ConversationError, ConversationNotFoundError, ConversationResolver
from marketsync.services.document_store import DocumentStoreError, PermissionDeniedError

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _resolver(http_request: Request) -> ConversationResolver:
    return http_request.app.state.conversation_resolver


@router.post("/resolve", response_model=ConversationResolveResponse)
async def resolve_conversation(
    payload: ConversationResolveRequest,
    http_request: Request,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    try:
        conversation_id = await _resolver(http_request).resolve(payload.user_id, payload.other_user_id)
    except (ConversationError, DocumentStoreError) as exc:
        raise_http_error(exc)
    return ConversationResolveResponse(conversation_id=conversation_id)


@router.get("/{conversation_id}", response_model=Conversation)
async def get_conversation(
    conversation_id: str,
    http_request: Request,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        conversation = await _resolver(http_request).get(conversation_id)
        if user_id not in conversation.participants:
            raise PermissionDeniedError("Only participants can read this conversation")
    except (ConversationError, DocumentStoreError) as exc:
        raise_http_error(exc)
    return conversation


@router.post("/{conversation_id}/messages", response_model=ChatMessage)
async def send_message(
    conversation_id: str,
    payload: MessageCreateRequest,
    http_request: Request,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.sender_id, authorization=authorization)
    try:
        return await _resolver(http_request).send_message(conversation_id, payload.sender_id, payload.text)
    except (ConversationError, DocumentStoreError) as exc:
        raise_http_error(exc)


@router.post("/{conversation_id}/read", response_model=dict)
async def mark_conversation_read(
    conversation_id: str,
    payload: ConversationReadRequest,
    http_request: Request,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    try:
        await _resolver(http_request).mark_read(conversation_id, payload.user_id)
    except (ConversationError, DocumentStoreError) as exc:
        raise_http_error(exc)
    return {"status": "ok"}


@router.get("/{conversation_id}/messages/stream")
async def stream_messages(
    conversation_id: str,
    http_request: Request,
    user_id: str = Query(...),
    limit: Optional[int] = Query(default=None, ge=1),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    resolver = _resolver(http_request)
    try:
        conversation = await resolver.get(conversation_id)
        if user_id not in conversation.participants:
            raise PermissionDeniedError("Only participants can read this conversation")
    except ConversationNotFoundError:
        # A missing conversation streams as one empty snapshot.
        pass
    except (ConversationError, DocumentStoreError) as exc:
        raise_http_error(exc)
    subscription = resolver.watch_messages(conversation_id)
    return StreamingResponse(stream_snapshots(subscription, limit=limit), media_type="text/event-stream")
