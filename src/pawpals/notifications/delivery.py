"""Delivery router: feed, then real-time socket, then push.

The feed row is written by the composer before dispatch and is never undone
here. Socket and push are best-effort, time-bounded, and every failure is
logged and swallowed: delivery never raises.

Two entry points:
- ``dispatch`` delivers inline with the caller's session (maintenance jobs).
- ``prepare`` + ``schedule`` split delivery around the caller's commit: the
  database reads happen inside the caller's transaction, the network sends
  run in a background task the caller does not wait for.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.config import Settings, get_settings
from pawpals.database import get_session_factory
from pawpals.db.models import Notification
from pawpals.gamification.errors import ChannelDeliveryFailed
from pawpals.notifications.notification_service import push_allowed, serialize_notification
from pawpals.notifications.push_service import (
    STATUS_ERROR,
    STATUS_INVALID_TOKEN,
    STATUS_SKIPPED,
    BasePushProvider,
    PushMessage,
    PushResult,
    get_active_registrations,
    get_push_provider,
    mark_tokens_invalid,
    touch_tokens,
)
from pawpals.notifications.realtime import LocalRealtimeChannel, RealtimeChannel
from pawpals.notifications.types import push_channel_for
from pawpals.ws.manager import FOREGROUND, manager

logger = structlog.get_logger()

# Expo priorities per notification priority
_PUSH_PRIORITY = {"low": "normal", "medium": "default", "high": "high", "urgent": "high"}

RealtimeEvent = tuple[str, dict[str, Any]]


@dataclass
class DeliveryReport:
    notification_id: int
    feed: bool = True
    session_state: str | None = None
    socket: bool = False
    push_attempted: int = 0
    push_delivered: int = 0
    push_skipped: bool = False
    delivered_tokens: list[str] = field(default_factory=list)
    deactivated_tokens: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class DeliveryPlan:
    """Everything a delivery needs from the database, loaded up front."""

    notification_id: int
    user_id: int
    notification_type: str
    message: dict[str, Any]
    push_messages: list[PushMessage] = field(default_factory=list)
    push_skipped: bool = False


def build_push_message(notification: Notification, token: str) -> PushMessage:
    wire = serialize_notification(notification)
    return PushMessage(
        to=token,
        title=notification.title,
        body=notification.body,
        data={
            "notificationId": notification.id,
            "type": notification.type,
            **(notification.data or {}),
            "navigation": wire["navigation"],
        },
        channel_id=push_channel_for(notification.type),
        priority=_PUSH_PRIORITY.get(notification.priority, "default"),
    )


class DeliveryRouter:
    """Routes a persisted notification to the socket and push channels."""

    def __init__(
        self,
        realtime: RealtimeChannel,
        push: BasePushProvider,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.realtime = realtime
        self.push = push
        self.realtime_timeout = settings.realtime_send_timeout_seconds
        self.push_timeout = settings.push_timeout_seconds
        self.push_aggregate_timeout = settings.push_aggregate_timeout_seconds
        self._tasks: set[asyncio.Task] = set()  # type: ignore[type-arg]

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def prepare(self, db: AsyncSession, notification: Notification) -> DeliveryPlan:
        """Load push preferences and device tokens for a notification."""
        user_id = notification.user_id
        plan = DeliveryPlan(
            notification_id=notification.id,
            user_id=user_id,
            notification_type=notification.type,
            message={"type": "notification", "notification": serialize_notification(notification)},
        )
        if not await push_allowed(db, user_id, notification.type):
            plan.push_skipped = True
            return plan

        for registration in await get_active_registrations(db, user_id):
            if registration.is_simulator:
                logger.debug("push_simulator_skipped", user_id=user_id, device=registration.device_name)
                continue
            plan.push_messages.append(build_push_message(notification, registration.token))
        return plan

    async def dispatch(self, db: AsyncSession, notification: Notification) -> DeliveryReport:
        """Deliver to live channels inline. Never raises."""
        try:
            plan = await self.prepare(db, notification)
        except Exception as exc:
            logger.error("delivery_prepare_failed", notification_id=notification.id, exc_info=exc)
            return DeliveryReport(notification_id=notification.id, errors=[str(exc)])
        report = await self.deliver(plan)
        try:
            await self._record_tokens(db, report)
        except SQLAlchemyError as exc:
            logger.error("push_bookkeeping_failed", notification_id=notification.id, exc_info=exc)
            report.errors.append(str(exc))
        return report

    async def deliver(self, plan: DeliveryPlan) -> DeliveryReport:
        """Socket first, push when the user is not looking at the app. Never raises."""
        report = DeliveryReport(notification_id=plan.notification_id)
        user_id = plan.user_id
        try:
            try:
                report.session_state = await asyncio.wait_for(
                    self.realtime.session_state(user_id), timeout=self.realtime_timeout
                )
            except Exception as exc:
                logger.warning("realtime_presence_failed", user_id=user_id, error=str(exc))
                report.errors.append(f"presence: {exc}")

            if report.session_state is not None:
                report.socket = await self._send_realtime(user_id, plan.message, report)

            if not report.socket or report.session_state != FOREGROUND:
                if plan.push_skipped:
                    report.push_skipped = True
                else:
                    await self._send_push(plan, report)
        except Exception as exc:
            logger.error("delivery_failed", notification_id=plan.notification_id, user_id=user_id, exc_info=exc)
            report.errors.append(str(exc))

        logger.info(
            "notification_dispatched",
            notification_id=plan.notification_id,
            user_id=user_id,
            type=plan.notification_type,
            socket=report.socket,
            push_attempted=report.push_attempted,
            push_delivered=report.push_delivered,
        )
        return report

    def schedule(
        self,
        user_id: int,
        plan: DeliveryPlan | None,
        events: Sequence[RealtimeEvent] = (),
    ) -> asyncio.Task:  # type: ignore[type-arg]
        """Deliver ``plan`` and publish ``events`` in the background.

        The task is held until it finishes; its failures are logged.
        """
        task = asyncio.create_task(self._deliver_in_background(user_id, plan, list(events)))
        self._tasks.add(task)
        task.add_done_callback(self._collect)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _collect(self, task: asyncio.Task) -> None:  # type: ignore[type-arg]
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background_delivery_failed", exc_info=exc)

    async def _deliver_in_background(
        self, user_id: int, plan: DeliveryPlan | None, events: list[RealtimeEvent]
    ) -> DeliveryReport | None:
        report = None
        if plan is not None:
            report = await self.deliver(plan)
            if report.delivered_tokens or report.deactivated_tokens:
                try:
                    async with get_session_factory()() as db:
                        await self._record_tokens(db, report)
                        await db.commit()
                except SQLAlchemyError as exc:
                    logger.error("push_bookkeeping_failed", notification_id=plan.notification_id, exc_info=exc)
                    report.errors.append(str(exc))
        for event_type, data in events:
            await self.publish_event(user_id, event_type, data)
        return report

    async def publish_event(self, user_id: int, event_type: str, data: dict[str, Any]) -> bool:
        """Send a gamification event on the real-time channel only. Never raises."""
        message = {"type": event_type, "data": data}
        try:
            sent = await asyncio.wait_for(self.realtime.send(user_id, message), timeout=self.realtime_timeout)
        except Exception as exc:
            logger.warning("realtime_event_failed", user_id=user_id, event=event_type, error=str(exc))
            return False
        return sent > 0

    async def _send_realtime(self, user_id: int, message: dict[str, Any], report: DeliveryReport) -> bool:
        try:
            try:
                sent = await asyncio.wait_for(self.realtime.send(user_id, message), timeout=self.realtime_timeout)
            except asyncio.TimeoutError as exc:
                raise ChannelDeliveryFailed("socket", "timed out") from exc
            if sent == 0:
                raise ChannelDeliveryFailed("socket", "no live connection")
        except ChannelDeliveryFailed as exc:
            logger.warning("realtime_send_failed", user_id=user_id, reason=exc.reason)
            report.errors.append(str(exc))
            return False
        except Exception as exc:
            logger.warning("realtime_send_failed", user_id=user_id, reason=str(exc))
            report.errors.append(f"socket: {exc}")
            return False
        return True

    async def _push_one(self, message: PushMessage) -> PushResult:
        try:
            return await asyncio.wait_for(self.push.send(message), timeout=self.push_timeout)
        except asyncio.TimeoutError:
            return PushResult(token=message.to, status=STATUS_ERROR, detail="timed out")
        except ChannelDeliveryFailed as exc:
            return PushResult(token=message.to, status=STATUS_ERROR, detail=exc.reason)
        except Exception as exc:
            return PushResult(token=message.to, status=STATUS_ERROR, detail=str(exc))

    async def _send_push(self, plan: DeliveryPlan, report: DeliveryReport) -> None:
        if not plan.push_messages:
            return

        user_id = plan.user_id
        report.push_attempted = len(plan.push_messages)
        tasks = [asyncio.ensure_future(self._push_one(message)) for message in plan.push_messages]
        done, pending = await asyncio.wait(tasks, timeout=self.push_aggregate_timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            report.errors.append(f"push: {len(pending)} device(s) exceeded aggregate timeout")

        results: list[PushResult] = [task.result() for task in done]
        for result in results:
            if result.status not in (STATUS_INVALID_TOKEN, STATUS_SKIPPED) and not result.delivered:
                logger.warning("push_send_failed", user_id=user_id, token=result.token[:24], reason=result.detail)
                report.errors.append(f"push: {result.detail}")

        report.delivered_tokens = [r.token for r in results if r.delivered]
        report.deactivated_tokens = [r.token for r in results if r.status == STATUS_INVALID_TOKEN]
        report.push_delivered = len(report.delivered_tokens)

    async def _record_tokens(self, db: AsyncSession, report: DeliveryReport) -> None:
        if report.deactivated_tokens:
            await mark_tokens_invalid(db, report.deactivated_tokens)
            logger.info("push_tokens_deactivated", count=len(report.deactivated_tokens))
        await touch_tokens(db, report.delivered_tokens)


_delivery: DeliveryRouter | None = None


def get_delivery_router() -> DeliveryRouter:
    """Delivery router for the API process (FastAPI dependency)."""
    global _delivery  # noqa: PLW0603
    if _delivery is None:
        _delivery = DeliveryRouter(LocalRealtimeChannel(manager), get_push_provider())
    return _delivery


async def close_delivery_router() -> None:
    """Let in-flight background deliveries finish (shutdown)."""
    global _delivery  # noqa: PLW0603
    if _delivery is not None:
        await _delivery.drain()
    _delivery = None


def reset_delivery_router() -> None:
    global _delivery  # noqa: PLW0603
    _delivery = None
