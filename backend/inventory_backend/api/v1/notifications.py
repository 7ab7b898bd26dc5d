"""Notification routes"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from inventory_backend.api.deps import get_current_user, get_db, get_runtime, request_context, require_roles
from inventory_backend.models.user import Role, User
from inventory_backend.runtime import Runtime
from inventory_backend.schemas.events import AuditAction, GenericDetails
from inventory_backend.schemas.notification import (
    BroadcastRequest,
    NotificationCreate,
    NotificationPage,
    NotificationResponse,
)
from inventory_backend.schemas.response import APIResponse

router = APIRouter()


@router.get("", response_model=NotificationPage)
def list_notifications(
    seen: Optional[bool] = Query(None),
    read: Optional[bool] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    page: int = Query(1, ge=1),
    current_user: User = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """
    List the caller's notifications, newest first

    Args:
        seen: Only seen (true) or unseen (false) items
        read: Only read (true) or unread (false) items
        limit: Page size
        page: 1-based page number
    """
    return runtime.gateway.list_notifications(
        db, current_user.id, seen=seen, read=read, limit=limit, page=page
    )


@router.put("/mark-all-seen", response_model=APIResponse)
def mark_all_seen(
    current_user: User = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    updated = runtime.gateway.mark_all_seen(db, current_user.id)
    return APIResponse(message="All notifications marked as seen", data={"updated": updated})


@router.put("/{notification_id}/seen", response_model=NotificationResponse)
def mark_seen(
    notification_id: str,
    current_user: User = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    return runtime.gateway.mark_seen(db, current_user.id, notification_id)


@router.put("/{notification_id}/read", response_model=NotificationResponse)
def mark_read(
    notification_id: str,
    current_user: User = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    return runtime.gateway.mark_read(db, current_user.id, notification_id)


@router.post("/broadcast", response_model=APIResponse)
async def broadcast(
    body: BroadcastRequest,
    request: Request,
    current_user: User = Depends(require_roles(Role.ADMIN, Role.MANAGER)),
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """
    Fan a notification out to every active user, or to the given roles

    Delivery failures for individual recipients are reported, not raised.
    """
    notification = NotificationCreate(
        type=body.type,
        message=body.message,
        order_id=body.order_id,
        payload=body.payload,
    )
    result = await runtime.gateway.broadcast_notification(db, notification, body.roles)
    runtime.audit.log_audit_event(
        db,
        user_id=current_user.id,
        action=AuditAction.NOTIFICATION_BROADCAST,
        resource="Notification",
        details=GenericDetails(data={
            "type": body.type.value,
            "roles": [r.value for r in body.roles or []],
            "delivered": result.delivered,
            "failed": len(result.failed),
        }),
        context=request_context(request),
    )
    return APIResponse(message="Notification broadcast", data=result)
