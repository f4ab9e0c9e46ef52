from fastapi import APIRouter, Request, Query
from ..config import NOTIFICATIONS_PAGE_SIZE
from ..services import notifications as notifications_svc
from ..services.auth_service import require_account

router = APIRouter()


@router.get("/notifications")
def list_notifications(request: Request, limit: int = Query(NOTIFICATIONS_PAGE_SIZE, ge=1, le=200)):
    account = require_account(request)
    items = notifications_svc.list_notifications(account["id"], limit)
    return {"count": len(items), "notifications": items}


@router.get("/notifications/unread-count")
def unread_count(request: Request):
    account = require_account(request)
    return {"count": notifications_svc.unread_count(account["id"])}


@router.patch("/notifications/{notification_id}/read")
def mark_read(notification_id: int, request: Request):
    account = require_account(request)
    return {"ok": True, "notification": notifications_svc.mark_read(account["id"], notification_id)}


@router.delete("/notifications/{notification_id}")
def delete_notification(notification_id: int, request: Request):
    account = require_account(request)
    notifications_svc.delete_notification(account["id"], notification_id)
    return {"ok": True}
