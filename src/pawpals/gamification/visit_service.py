"""Open park visits and the long-visit checkout reminder."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.db.models import ParkVisit
from pawpals.gamification.time_utils import utcnow
from pawpals.notifications.notification_service import notify_visit_reminder

if TYPE_CHECKING:
    from pawpals.notifications.delivery import DeliveryRouter

logger = logging.getLogger(__name__)


async def get_overdue_visits(
    db: AsyncSession, after_minutes: int, now: datetime | None = None
) -> list[ParkVisit]:
    """Visits still open ``after_minutes`` after check-in that were not reminded yet."""
    cutoff = (now or utcnow()) - timedelta(minutes=after_minutes)
    result = await db.execute(
        select(ParkVisit)
        .where(
            ParkVisit.checked_out_at.is_(None),
            ParkVisit.reminder_sent.is_(False),
            ParkVisit.checked_in_at <= cutoff,
        )
        .order_by(ParkVisit.checked_in_at)
    )
    return list(result.scalars().all())


async def send_visit_reminders(
    db: AsyncSession,
    after_minutes: int,
    delivery: DeliveryRouter | None = None,
    now: datetime | None = None,
) -> int:
    """Remind owners to check out of long visits, once per visit. Returns reminders sent."""
    reminders = []
    for visit in await get_overdue_visits(db, after_minutes, now):
        reminders.append(
            await notify_visit_reminder(
                db,
                visit.user_id,
                title="Visit Reminder",
                body=f"Don't forget to check out from {visit.garden_name or 'the park'}",
                garden_id=visit.garden_id,
                visit_id=visit.visit_id,
                priority="high",
            )
        )
        visit.reminder_sent = True
    await db.commit()

    if delivery is not None:
        for notification in reminders:
            await delivery.dispatch(db, notification)
        await db.commit()

    logger.info("Visit reminders: reminded %d open visits", len(reminders))
    return len(reminders)
