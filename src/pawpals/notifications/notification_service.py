"""Notification composition and the in-app feed.

``create_notification`` is the single chokepoint every notification goes
through:
1. Persist the feed row (flushed in the caller's transaction)
2. Hand it to the delivery router (real-time socket, then push)

Delivery is best-effort and never fails the caller; the feed row is the
authoritative record.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.db.models import Notification, NotificationSettings
from pawpals.gamification.time_utils import utcnow
from pawpals.notifications import navigation
from pawpals.notifications.types import (
    PUSH_CHANNEL_IDS,
    VALID_PRIORITIES,
    VALID_TYPES,
    NotificationType,
    push_channel_for,
)

if TYPE_CHECKING:
    from pawpals.notifications.delivery import DeliveryRouter

logger = logging.getLogger(__name__)

T = NotificationType


def serialize_notification(notification: Notification) -> dict[str, Any]:
    """Wire shape shared by the feed API, the socket message and push data."""
    data = notification.data or {}
    return {
        "id": notification.id,
        "type": notification.type,
        "title": notification.title,
        "body": notification.body,
        "data": data,
        "priority": notification.priority,
        "read": notification.read,
        "read_at": notification.read_at.isoformat() if notification.read_at else None,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
        "navigation": navigation.resolve(notification.type, data),
    }


async def create_notification(
    db: AsyncSession,
    user_id: int,
    type_: str,
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
    priority: str = "medium",
    delivery: DeliveryRouter | None = None,
) -> Notification:
    """Persist a notification and dispatch it to the live channels.

    Raises ValueError for an unknown type or priority. Delivery problems are
    logged by the delivery router and never raised here.
    """
    if type_ not in VALID_TYPES:
        msg = f"Invalid notification type: {type_}"
        raise ValueError(msg)
    if priority not in VALID_PRIORITIES:
        msg = f"Invalid notification priority: {priority}"
        raise ValueError(msg)

    payload = {k: v for k, v in (data or {}).items() if v is not None}
    payload["type"] = type_

    notification = Notification(
        user_id=user_id,
        type=type_,
        title=title,
        body=body,
        data=payload,
        priority=priority,
        read=False,
        created_at=utcnow(),
    )
    db.add(notification)
    await db.flush()  # Assign notification.id before delivery

    if delivery is not None:
        await delivery.dispatch(db, notification)

    return notification


# ---------------------------------------------------------------------------
# Typed helpers (shared payload shape per type)
# ---------------------------------------------------------------------------


async def notify_new_message(
    db: AsyncSession, user_id: int, sender_name: str, chat_id: str, preview: str,
    delivery: DeliveryRouter | None = None,
) -> Notification:
    return await create_notification(
        db, user_id, T.NEW_MESSAGE.value,
        title=f"New message from {sender_name}",
        body=preview[:140],
        data={"chatId": chat_id},
        priority="high",
        delivery=delivery,
    )


async def notify_friend_request(
    db: AsyncSession, user_id: int, requester_id: int, requester_name: str,
    delivery: DeliveryRouter | None = None,
) -> Notification:
    return await create_notification(
        db, user_id, T.FRIEND_REQUEST.value,
        title="New friend request",
        body=f"{requester_name} wants to be friends",
        data={"targetId": str(requester_id), "requesterId": str(requester_id)},
        delivery=delivery,
    )


async def notify_friend_accepted(
    db: AsyncSession, user_id: int, friend_id: int, friend_name: str,
    delivery: DeliveryRouter | None = None,
) -> Notification:
    return await create_notification(
        db, user_id, T.FRIEND_ACCEPTED.value,
        title="Friend request accepted",
        body=f"{friend_name} accepted your friend request",
        data={"targetId": str(friend_id)},
        delivery=delivery,
    )


_EVENT_TITLES = {
    T.EVENT_REMINDER.value: "Event reminder",
    T.EVENT_REGISTRATION.value: "New event registration",
    T.EVENT_STATUS_UPDATE.value: "Event updated",
    T.EVENT_CANCELLED.value: "Event cancelled",
}


async def notify_event(
    db: AsyncSession, user_id: int, type_: str, event_id: str, event_title: str, message: str,
    delivery: DeliveryRouter | None = None,
) -> Notification:
    """Event reminder, registration, status update or cancellation."""
    if type_ not in _EVENT_TITLES:
        msg = f"Not an event notification type: {type_}"
        raise ValueError(msg)
    return await create_notification(
        db, user_id, type_,
        title=f"{_EVENT_TITLES[type_]}: {event_title}",
        body=message,
        data={"eventId": event_id},
        priority="high" if type_ == T.EVENT_CANCELLED.value else "medium",
        delivery=delivery,
    )


async def notify_garden_update(
    db: AsyncSession, user_id: int, garden_id: str, garden_name: str, message: str,
    type_: str = T.GARDEN_UPDATE.value,
    delivery: DeliveryRouter | None = None,
) -> Notification:
    """Garden update or newsletter notification."""
    return await create_notification(
        db, user_id, type_,
        title=garden_name,
        body=message,
        data={"gardenId": garden_id},
        priority="low" if type_ != T.GARDEN_UPDATE.value else "medium",
        delivery=delivery,
    )


async def notify_permission_request(
    db: AsyncSession, user_id: int, requester_id: int, requester_name: str, request_type: str,
    delivery: DeliveryRouter | None = None,
) -> Notification:
    return await create_notification(
        db, user_id, T.PERMISSION_REQUEST.value,
        title="New permission request",
        body=f"{requester_name} requested {request_type} access",
        data={"requesterId": str(requester_id), "requestType": request_type},
        priority="high",
        delivery=delivery,
    )


async def notify_system(
    db: AsyncSession, user_id: int, title: str, body: str, priority: str = "medium",
    delivery: DeliveryRouter | None = None,
) -> Notification:
    return await create_notification(
        db, user_id, T.SYSTEM.value, title=title, body=body, priority=priority, delivery=delivery,
    )


async def notify_visit_reminder(
    db: AsyncSession, user_id: int, title: str, body: str, garden_id: str | None = None,
    visit_id: str | None = None, priority: str = "medium",
    delivery: DeliveryRouter | None = None,
) -> Notification:
    return await create_notification(
        db, user_id, T.VISIT_REMINDER.value,
        title=title,
        body=body,
        data={"gardenId": garden_id, "visitId": visit_id},
        priority=priority,
        delivery=delivery,
    )


# ---------------------------------------------------------------------------
# Feed
# ---------------------------------------------------------------------------


async def get_notifications(
    db: AsyncSession,
    user_id: int,
    page: int = 1,
    per_page: int = 20,
    unread_only: bool = False,
) -> tuple[list[Notification], int]:
    """Get user's notifications (paginated, most recent first)."""
    conditions = [Notification.user_id == user_id]
    if unread_only:
        conditions.append(Notification.read.is_(False))

    total_result = await db.execute(
        select(func.count()).select_from(Notification).where(*conditions)
    )
    total = total_result.scalar_one()

    result = await db.execute(
        select(Notification)
        .where(*conditions)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(result.scalars().all()), total


async def get_unread_count(db: AsyncSession, user_id: int) -> int:
    """Get count of unread notifications."""
    result = await db.execute(
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
    )
    return result.scalar_one()


async def mark_as_read(db: AsyncSession, user_id: int, notification_id: int) -> bool:
    """Mark a single notification as read. Returns True if found."""
    result = await db.execute(
        select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
    )
    notification = result.scalar_one_or_none()
    if notification is None:
        return False
    if not notification.read:
        notification.read = True
        notification.read_at = utcnow()
        await db.flush()
    return True


async def mark_many_as_read(db: AsyncSession, user_id: int, notification_ids: list[int]) -> int:
    """Mark the given notifications as read. Returns count updated."""
    if not notification_ids:
        return 0
    result = await db.execute(
        update(Notification)
        .where(
            Notification.user_id == user_id,
            Notification.id.in_(notification_ids),
            Notification.read.is_(False),
        )
        .values(read=True, read_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    return result.rowcount


async def mark_all_as_read(db: AsyncSession, user_id: int) -> int:
    """Mark all unread notifications as read. Returns count updated."""
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
        .values(read=True, read_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    return result.rowcount


async def delete_notification(db: AsyncSession, user_id: int, notification_id: int) -> bool:
    result = await db.execute(
        delete(Notification)
        .where(Notification.id == notification_id, Notification.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    return result.rowcount > 0


async def delete_all_notifications(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(
        delete(Notification)
        .where(Notification.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    return result.rowcount


async def cleanup_old_notifications(db: AsyncSession, retention_days: int, now: datetime | None = None) -> int:
    """Delete read notifications older than the retention window."""
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    result = await db.execute(
        delete(Notification)
        .where(Notification.read.is_(True), Notification.created_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    logger.info("Deleted %d read notifications older than %d days", result.rowcount, retention_days)
    return result.rowcount


# ---------------------------------------------------------------------------
# Push preferences
# ---------------------------------------------------------------------------


DEFAULT_CHANNEL_PREFERENCES: dict[str, bool] = {channel: True for channel in PUSH_CHANNEL_IDS}


async def get_notification_settings(db: AsyncSession, user_id: int) -> dict[str, Any]:
    """Push preferences merged over the defaults."""
    row = await db.get(NotificationSettings, user_id)
    channels = dict(DEFAULT_CHANNEL_PREFERENCES)
    if row is None:
        return {"push_enabled": True, "channels": channels}
    channels.update({k: bool(v) for k, v in (row.channels or {}).items() if k in channels})
    return {"push_enabled": row.push_enabled, "channels": channels}


async def update_notification_settings(
    db: AsyncSession,
    user_id: int,
    push_enabled: bool | None = None,
    channels: dict[str, bool] | None = None,
) -> dict[str, Any]:
    row = await db.get(NotificationSettings, user_id)
    if row is None:
        row = NotificationSettings(user_id=user_id, push_enabled=True, channels={}, updated_at=utcnow())
        db.add(row)
    if push_enabled is not None:
        row.push_enabled = push_enabled
    if channels:
        unknown = set(channels) - set(PUSH_CHANNEL_IDS)
        if unknown:
            msg = f"Unknown push channels: {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        # Reassign so the JSON column is marked dirty
        row.channels = {**(row.channels or {}), **channels}
    row.updated_at = utcnow()
    await db.flush()
    return await get_notification_settings(db, user_id)


async def push_allowed(db: AsyncSession, user_id: int, type_: str) -> bool:
    """Whether the user's preferences allow push for this notification type."""
    prefs = await get_notification_settings(db, user_id)
    if not prefs["push_enabled"]:
        return False
    return prefs["channels"].get(push_channel_for(type_), True)
