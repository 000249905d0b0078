from typing import Optional

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import StreamingResponse

from marketsync.auth import assert_actor_authorized
from marketsync.models import (
    ClaimRequest,
    ProgressUpdateRequest,
    ServiceRequest,
    ServiceRequestCreate,
    StatusHistoryEntry,
    StatusTransitionRequest,
    TransitionResult,
)
from marketsync.routers.common import raise_http_error, stream_snapshots
from marketsync.services.document_store import DocumentStoreError, PermissionDeniedError
from marketsync.services.workflow_engine import RequestNotFoundError, WorkflowEngine, WorkflowError

router = APIRouter(prefix="/requests", tags=["requests"])

_CORE_FIELDS = {"requester_id", "category", "budget", "description", "provider_id"}


def _engine(http_request: Request) -> WorkflowEngine:
    return http_request.app.state.workflow_engine


@router.post("", response_model=ServiceRequest)
async def submit_request(
    payload: ServiceRequestCreate,
    http_request: Request,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.requester_id, authorization=authorization)
    try:
        return await _engine(http_request).submit(
            requester_id=payload.requester_id,
            category=payload.category,
            budget=payload.budget,
            description=payload.description,
            provider_id=payload.provider_id,
            **payload.model_dump(exclude=_CORE_FIELDS),
        )
    except (WorkflowError, DocumentStoreError) as exc:
        raise_http_error(exc)


@router.get("/provider/{provider_id}/stream")
async def stream_provider_requests(
    provider_id: str,
    http_request: Request,
    limit: Optional[int] = Query(default=None, ge=1),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=provider_id, authorization=authorization)
    subscription = _engine(http_request).watch_for_provider(provider_id)
    return StreamingResponse(stream_snapshots(subscription, limit=limit), media_type="text/event-stream")


@router.get("/{request_id}", response_model=ServiceRequest)
async def get_request(request_id: str, http_request: Request):
    try:
        return await _engine(http_request).get(request_id)
    except (WorkflowError, DocumentStoreError) as exc:
        raise_http_error(exc)


@router.get("/{request_id}/history", response_model=list[StatusHistoryEntry])
async def get_request_history(request_id: str, http_request: Request):
    try:
        return await _engine(http_request).history(request_id)
    except DocumentStoreError as exc:
        raise_http_error(exc)


@router.get("/{request_id}/history/stream")
async def stream_request_history(
    request_id: str,
    http_request: Request,
    user_id: str = Query(...),
    limit: Optional[int] = Query(default=None, ge=1),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    engine = _engine(http_request)
    try:
        request = await engine.get(request_id)
        if user_id not in (request.requester_id, request.provider_id):
            raise PermissionDeniedError("Only the requester or assigned provider can follow this request")
    except RequestNotFoundError:
        pass
    except (WorkflowError, DocumentStoreError) as exc:
        raise_http_error(exc)
    subscription = engine.watch_history(request_id)
    return StreamingResponse(stream_snapshots(subscription, limit=limit), media_type="text/event-stream")


@router.post("/{request_id}/transition", response_model=TransitionResult)
async def transition_request(
    request_id: str,
    payload: StatusTransitionRequest,
    http_request: Request,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return await _engine(http_request).transition(
            request_id,
            actor_id=payload.actor_user_id,
            target_status=payload.status,
            note=payload.note,
        )
    except (WorkflowError, DocumentStoreError) as exc:
        raise_http_error(exc)


@router.post("/{request_id}/claim", response_model=ServiceRequest)
async def claim_request(
    request_id: str,
    payload: ClaimRequest,
    http_request: Request,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.provider_user_id, authorization=authorization)
    try:
        return await _engine(http_request).claim(request_id, provider_id=payload.provider_user_id)
    except (WorkflowError, DocumentStoreError) as exc:
        raise_http_error(exc)


@router.post("/{request_id}/updates", response_model=StatusHistoryEntry)
async def post_progress_update(
    request_id: str,
    payload: ProgressUpdateRequest,
    http_request: Request,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return await _engine(http_request).post_update(
            request_id,
            actor_id=payload.actor_user_id,
            note=payload.note,
            image_urls=payload.image_urls,
        )
    except (WorkflowError, DocumentStoreError) as exc:
        raise_http_error(exc)
