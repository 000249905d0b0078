from typing import Optional

from fastapi import APIRouter, Header, Query, Request

from marketsync.auth import assert_actor_authorized
from marketsync.models import DeviceTokenRegisterRequest, NotificationRecord
from marketsync.routers.common import raise_http_error
from marketsync.services.document_store import DocumentStoreError
from marketsync.services.notification_dispatcher import NotificationDispatcher, NotificationError

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _dispatcher(http_request: Request) -> NotificationDispatcher:
    return http_request.app.state.notification_dispatcher


@router.get("", response_model=list[NotificationRecord])
async def list_notifications(
    http_request: Request,
    user_id: str = Query(...),
    unread_only: bool = Query(default=False),
):
    try:
        return await _dispatcher(http_request).list_for_user(user_id=user_id, unread_only=unread_only)
    except DocumentStoreError as exc:
        raise_http_error(exc)


@router.get("/unread-count", response_model=dict)
async def unread_count(http_request: Request, user_id: str = Query(...)):
    return {"unread": await _dispatcher(http_request).unread_count(user_id)}


@router.post("/register-device", response_model=dict)
async def register_device(
    payload: DeviceTokenRegisterRequest,
    http_request: Request,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    await _dispatcher(http_request).register_device_token(user_id=payload.user_id, device_token=payload.device_token)
    return {"status": "ok"}


@router.post("/read-all", response_model=dict)
async def mark_all_read(
    http_request: Request,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    return {"updated": await _dispatcher(http_request).mark_all_read(user_id)}


@router.post("/{notification_id}/read", response_model=NotificationRecord)
async def mark_notification_read(
    notification_id: str,
    http_request: Request,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return await _dispatcher(http_request).mark_read(user_id=user_id, notification_id=notification_id)
    except (NotificationError, DocumentStoreError) as exc:
        raise_http_error(exc)


@router.delete("/{notification_id}", response_model=dict)
async def delete_notification(
    notification_id: str,
    http_request: Request,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        await _dispatcher(http_request).delete(user_id=user_id, notification_id=notification_id)
    except (NotificationError, DocumentStoreError) as exc:
        raise_http_error(exc)
    return {"status": "deleted"}
