"""Gamification arq worker.

Consumes check-in, checkout, rating and friendship events from Redis
Streams and feeds them through the gamification engine. Notification
events from the rest of the platform (messages, friend requests, events,
garden news) arrive on their own stream and go straight to the composer.
Also hosts the scheduled maintenance jobs (streaks, mission expiry, long
visit reminders, retention).

Run with: arq pawpals.gamification.worker.WorkerSettings
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any

import redis.asyncio as aioredis
from arq import cron
from arq.connections import RedisSettings
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.config import get_settings
from pawpals.database import close_db, get_session_factory, init_db
from pawpals.db.models import Notification, User
from pawpals.gamification.engine import GamificationEngine
from pawpals.gamification.errors import GamificationError, UserNotFound
from pawpals.gamification.mission_service import expire_missions, fail_streak_missions
from pawpals.gamification.streak_service import check_streak_maintenance, check_streak_warnings
from pawpals.gamification.visit_service import send_visit_reminders
from pawpals.notifications import notification_service as notify
from pawpals.notifications.delivery import DeliveryRouter
from pawpals.notifications.notification_service import cleanup_old_notifications
from pawpals.notifications.push_service import cleanup_push_tokens, get_push_provider
from pawpals.notifications.realtime import RedisRealtimeChannel
from pawpals.notifications.types import NotificationType as T

logger = logging.getLogger(__name__)

CONSUMER_GROUP = "gamification-consumers"

STREAM_CHECKIN = "pawpals:checkin"
STREAM_CHECKOUT = "pawpals:checkout"
STREAM_RATING = "pawpals:rating"
STREAM_FRIENDSHIP = "pawpals:friendship"
STREAM_NOTIFICATION = "pawpals:notification"

STREAMS = [STREAM_CHECKIN, STREAM_CHECKOUT, STREAM_RATING, STREAM_FRIENDSHIP, STREAM_NOTIFICATION]


class MalformedEvent(ValueError):
    """A stream entry that can never be processed."""


def parse_event(raw_data: dict[str, Any]) -> dict[str, Any]:
    """Stream entries carry either a JSON ``data`` field or flat fields."""
    data_str = raw_data.get("data")
    if isinstance(data_str, str):
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            return dict(raw_data)
        if isinstance(data, dict):
            return data
    return dict(raw_data)


def _require(data: dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise MalformedEvent(f"missing field {key!r}")
    return value


def _as_int(data: dict[str, Any], key: str) -> int:
    try:
        return int(_require(data, key))
    except (TypeError, ValueError) as e:
        raise MalformedEvent(f"field {key!r} is not an integer") from e


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() in ("1", "true", "yes")
    return bool(value)


def _as_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as e:
        raise MalformedEvent(f"bad timestamp {value!r}") from e


_EVENT_TYPES = frozenset(
    {T.EVENT_REMINDER.value, T.EVENT_REGISTRATION.value, T.EVENT_STATUS_UPDATE.value, T.EVENT_CANCELLED.value}
)
_GARDEN_TYPES = frozenset(
    {T.GARDEN_UPDATE.value, T.NEWSLETTER_SUBSCRIPTION.value, T.NEWSLETTER_CONTENT.value}
)


async def compose_notification(db: AsyncSession, data: dict[str, Any]) -> Notification:
    """Route a notification event to its typed composer by ``type``."""
    type_ = str(_require(data, "type"))
    user_id = _as_int(data, "user_id")
    if await db.get(User, user_id) is None:
        raise UserNotFound(user_id)

    try:
        if type_ == T.NEW_MESSAGE.value:
            return await notify.notify_new_message(
                db, user_id, str(_require(data, "sender_name")), str(_require(data, "chat_id")),
                str(data.get("preview") or ""),
            )
        if type_ == T.FRIEND_REQUEST.value:
            return await notify.notify_friend_request(
                db, user_id, _as_int(data, "requester_id"), str(_require(data, "requester_name"))
            )
        if type_ == T.FRIEND_ACCEPTED.value:
            return await notify.notify_friend_accepted(
                db, user_id, _as_int(data, "friend_id"), str(_require(data, "friend_name"))
            )
        if type_ in _EVENT_TYPES:
            return await notify.notify_event(
                db, user_id, type_, str(_require(data, "event_id")), str(_require(data, "event_title")),
                str(data.get("message") or ""),
            )
        if type_ in _GARDEN_TYPES:
            return await notify.notify_garden_update(
                db, user_id, str(_require(data, "garden_id")), str(_require(data, "garden_name")),
                str(data.get("message") or ""), type_=type_,
            )
        if type_ == T.PERMISSION_REQUEST.value:
            return await notify.notify_permission_request(
                db, user_id, _as_int(data, "requester_id"), str(_require(data, "requester_name")),
                str(_require(data, "request_type")),
            )
        if type_ == T.SYSTEM.value:
            return await notify.notify_system(
                db, user_id, str(_require(data, "title")), str(_require(data, "body")),
                priority=str(data.get("priority") or "medium"),
            )
        if type_ == T.VISIT_REMINDER.value:
            return await notify.notify_visit_reminder(
                db, user_id, str(_require(data, "title")), str(_require(data, "body")),
                garden_id=data.get("garden_id"), visit_id=data.get("visit_id"),
                priority=str(data.get("priority") or "medium"),
            )
    except ValueError as e:
        if isinstance(e, MalformedEvent):
            raise
        raise MalformedEvent(str(e)) from e

    raise MalformedEvent(f"unsupported notification type {type_!r}")


async def process_event(
    db: AsyncSession,
    delivery: DeliveryRouter | None,
    stream: str,
    data: dict[str, Any],
) -> int:
    """Apply one stream event. Returns the points awarded across affected users."""
    engine = GamificationEngine(db, delivery)

    if stream == STREAM_CHECKIN:
        outcome = await engine.record_checkin(
            _as_int(data, "user_id"),
            str(_require(data, "visit_id")),
            str(_require(data, "garden_id")),
            garden_name=data.get("garden_name"),
            checked_in_at=_as_datetime(data.get("checked_in_at")),
        )
        return outcome.points_awarded

    if stream == STREAM_CHECKOUT:
        outcome = await engine.record_checkout(
            _as_int(data, "user_id"),
            str(_require(data, "visit_id")),
            str(_require(data, "garden_id")),
            _as_int(data, "duration_minutes"),
            garden_name=data.get("garden_name"),
        )
        return outcome.points_awarded

    if stream == STREAM_RATING:
        outcome = await engine.record_rating(
            _as_int(data, "user_id"),
            str(_require(data, "rating_id")),
            str(_require(data, "dog_id")),
            is_update=_as_bool(data.get("is_update", False)),
        )
        return outcome.points_awarded

    if stream == STREAM_FRIENDSHIP:
        outcomes = await engine.record_friendship(
            _as_int(data, "requester_id"),
            _as_int(data, "accepter_id"),
            str(_require(data, "friendship_id")),
        )
        return sum(o.points_awarded for o in outcomes)

    if stream == STREAM_NOTIFICATION:
        notification = await compose_notification(db, data)
        plan = await delivery.prepare(db, notification) if delivery is not None else None
        await db.commit()
        if delivery is not None:
            delivery.schedule(notification.user_id, plan)
        return 0

    raise MalformedEvent(f"unknown stream {stream!r}")


async def handle_message(ctx: dict, stream: str, msg_id: str, raw_data: dict[str, Any]) -> bool:  # type: ignore[type-arg]
    """Process and acknowledge one entry. Returns True when the entry was acked.

    Rejected events (domain errors, malformed payloads) are acked so they do
    not block the group; unexpected failures stay pending for redelivery.
    """
    redis_client: aioredis.Redis = ctx["redis"]
    try:
        data = parse_event(raw_data)
        async with get_session_factory()() as db:
            points = await process_event(db, ctx.get("delivery"), stream, data)
        if points:
            logger.info("Awarded %d points (stream=%s, event=%s)", points, stream, msg_id)
    except (GamificationError, MalformedEvent) as e:
        logger.warning("Rejected %s from %s: %s", msg_id, stream, e)
    except Exception:
        logger.exception("Failed to process %s from %s", msg_id, stream)
        return False

    await redis_client.xack(stream, CONSUMER_GROUP, msg_id)
    return True


async def consume_gamification_events(ctx: dict) -> None:  # type: ignore[type-arg]
    """Main consumer loop."""
    redis_client: aioredis.Redis = ctx["redis"]
    consumer_name = get_settings().redis_stream_consumer_name
    streams = {s: ">" for s in STREAMS}

    while True:
        try:
            events = await redis_client.xreadgroup(
                groupname=CONSUMER_GROUP,
                consumername=consumer_name,
                streams=streams,
                count=100,
                block=5000,
            )
        except aioredis.ResponseError as e:
            logger.error("XREADGROUP error: %s", e)
            await asyncio.sleep(1)
            continue

        if not events:
            continue

        for stream_name, messages in events:
            stream_str = stream_name if isinstance(stream_name, str) else stream_name.decode()
            for msg_id, raw_data in messages:
                await handle_message(ctx, stream_str, msg_id, raw_data)


async def gamification_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize Redis + DB connections and start the stream consumer."""
    settings = get_settings()
    await init_db(settings.database_url)

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )

    for stream in STREAMS:
        try:
            await redis_client.xgroup_create(stream, CONSUMER_GROUP, id="0", mkstream=True)
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    ctx["redis"] = redis_client
    ctx["delivery"] = DeliveryRouter(RedisRealtimeChannel(redis_client), get_push_provider())
    ctx["consumer_task"] = asyncio.create_task(consume_gamification_events(ctx))
    logger.info("Gamification worker started (consumer=%s)", settings.redis_stream_consumer_name)


async def gamification_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    task: asyncio.Task | None = ctx.get("consumer_task")  # type: ignore[type-arg]
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    delivery: DeliveryRouter | None = ctx.get("delivery")
    if delivery is not None:
        await delivery.drain()

    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Gamification worker shut down")


# --- Scheduled jobs ---


async def daily_streak_maintenance(ctx: dict) -> int:  # type: ignore[type-arg]
    """Zero broken streaks and fail the streak missions that depended on them."""
    async with get_session_factory()() as db:
        user_ids = await check_streak_maintenance(db)
        for user_id in user_ids:
            await fail_streak_missions(db, user_id)
        await db.commit()
    return len(user_ids)


async def evening_streak_warnings(ctx: dict) -> int:  # type: ignore[type-arg]
    """Remind users at 18:00 that today's visit keeps their streak alive."""
    async with get_session_factory()() as db:
        return await check_streak_warnings(db, ctx.get("delivery"))


async def hourly_mission_expiry(ctx: dict) -> int:  # type: ignore[type-arg]
    async with get_session_factory()() as db:
        expired = await expire_missions(db)
        await db.commit()
    return expired


async def send_long_visit_reminders(ctx: dict) -> int:  # type: ignore[type-arg]
    """Nudge owners whose check-in has been open too long to check out."""
    settings = get_settings()
    async with get_session_factory()() as db:
        return await send_visit_reminders(db, settings.visit_reminder_after_minutes, ctx.get("delivery"))


async def prune_notifications(ctx: dict) -> int:  # type: ignore[type-arg]
    """Drop feed entries past the retention window."""
    settings = get_settings()
    async with get_session_factory()() as db:
        deleted = await cleanup_old_notifications(db, settings.notification_retention_days)
        await db.commit()
    return deleted


async def prune_push_tokens(ctx: dict) -> int:  # type: ignore[type-arg]
    settings = get_settings()
    async with get_session_factory()() as db:
        deleted = await cleanup_push_tokens(db, settings.push_token_retention_days)
        await db.commit()
    return deleted


class WorkerSettings:
    """arq worker settings for the gamification consumer and maintenance jobs."""

    functions = [consume_gamification_events]
    cron_jobs = [
        cron(daily_streak_maintenance, hour=0, minute=5),
        cron(evening_streak_warnings, hour=18, minute=0),
        cron(hourly_mission_expiry, minute=1),
        cron(send_long_visit_reminders, minute={0, 30}),
        cron(prune_notifications, hour=3, minute=15),
        cron(prune_push_tokens, hour=3, minute=45),
    ]
    on_startup = gamification_startup
    on_shutdown = gamification_shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
    max_jobs = 4
    job_timeout = 0  # the consumer task runs forever
    allow_abort_jobs = True
