"""Notification feed, push preference and push token endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.auth.dependencies import get_admin_user, get_current_user
from pawpals.database import get_session
from pawpals.db.models import User
from pawpals.notifications.notification_service import (
    delete_all_notifications,
    delete_notification,
    get_notification_settings,
    get_notifications,
    get_unread_count,
    mark_all_as_read,
    mark_as_read,
    mark_many_as_read,
    serialize_notification,
    update_notification_settings,
)
from pawpals.notifications.push_service import (
    InvalidPushToken,
    deactivate_push_token,
    get_push_statistics,
    get_push_status,
    register_push_token,
)
from pawpals.notifications.schemas import (
    CountResponse,
    MarkReadRequest,
    NotificationListResponse,
    NotificationResponse,
    NotificationSettingsResponse,
    NotificationSettingsUpdate,
    PushRegistrationResponse,
    PushStatisticsResponse,
    PushStatusResponse,
    PushTokenDeleteRequest,
    PushTokenRequest,
    UnreadCountResponse,
)

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    unread_only: bool = Query(False),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """List the user's notifications (paginated, newest first)."""
    notifications, total = await get_notifications(db, user.id, page, per_page, unread_only)
    return NotificationListResponse(
        notifications=[NotificationResponse(**serialize_notification(n)) for n in notifications],
        total=total,
        unread_count=await get_unread_count(db, user.id),
        page=page,
        per_page=per_page,
    )


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_notification_count(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    return UnreadCountResponse(unread_count=await get_unread_count(db, user.id))


@router.post("/read", response_model=CountResponse)
async def mark_notifications_read(
    body: MarkReadRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Mark several notifications as read."""
    count = await mark_many_as_read(db, user.id, body.notification_ids)
    await db.commit()
    return CountResponse(detail=f"Marked {count} notifications as read", count=count)


@router.post("/read-all", response_model=CountResponse)
async def mark_all_read(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    count = await mark_all_as_read(db, user.id)
    await db.commit()
    return CountResponse(detail=f"Marked {count} notifications as read", count=count)


@router.get("/settings", response_model=NotificationSettingsResponse)
async def get_settings_endpoint(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    return NotificationSettingsResponse(**await get_notification_settings(db, user.id))


@router.put("/settings", response_model=NotificationSettingsResponse)
async def update_settings_endpoint(
    body: NotificationSettingsUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    try:
        prefs = await update_notification_settings(db, user.id, body.push_enabled, body.channels)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    await db.commit()
    return NotificationSettingsResponse(**prefs)


@router.post("/push-tokens", response_model=PushRegistrationResponse, status_code=201)
async def register_push_token_endpoint(
    body: PushTokenRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Register (or re-register) this device for push notifications."""
    try:
        registration = await register_push_token(
            db,
            user.id,
            body.token,
            body.platform,
            device_name=body.device_name,
            os_version=body.os_version,
            app_version=body.app_version,
        )
    except InvalidPushToken as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    await db.commit()
    return PushRegistrationResponse(
        token=registration.token,
        platform=registration.platform,
        is_active=registration.is_active,
        is_simulator=registration.is_simulator,
    )


@router.delete("/push-tokens", status_code=200)
async def deactivate_push_token_endpoint(
    body: PushTokenDeleteRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Stop push delivery to this device (logout)."""
    found = await deactivate_push_token(db, user.id, body.token)
    if not found:
        raise HTTPException(status_code=404, detail="Push token not found")
    await db.commit()
    return {"detail": "Push token deactivated"}


@router.get("/push-status", response_model=PushStatusResponse)
async def push_status(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    return PushStatusResponse(**await get_push_status(db, user.id))


@router.get("/stats", response_model=PushStatisticsResponse)
async def push_statistics(
    _admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_session),
):
    """Push token counts across all users (admin only)."""
    return PushStatisticsResponse(**await get_push_statistics(db))


@router.post("/{notification_id}/read", status_code=200)
async def mark_notification_read(
    notification_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Mark a notification as read."""
    found = await mark_as_read(db, user.id, notification_id)
    if not found:
        raise HTTPException(status_code=404, detail="Notification not found")
    await db.commit()
    return {"detail": "Notification marked as read"}


@router.delete("/{notification_id}", status_code=200)
async def delete_notification_endpoint(
    notification_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    found = await delete_notification(db, user.id, notification_id)
    if not found:
        raise HTTPException(status_code=404, detail="Notification not found")
    await db.commit()
    return {"detail": "Notification deleted"}


@router.delete("", response_model=CountResponse)
async def delete_all_notifications_endpoint(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    count = await delete_all_notifications(db, user.id)
    await db.commit()
    return CountResponse(detail=f"Deleted {count} notifications", count=count)
