"""Streak tracking: daily check-in streaks, milestones and maintenance jobs.

A day is a calendar day in the server-configured streak timezone
(``PAWPALS_STREAK_TIMEZONE``, UTC by default).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.db.models import User, UserGamification
from pawpals.gamification.points_service import award_points, get_or_create_gamification
from pawpals.gamification.time_utils import activity_day, utcnow
from pawpals.notifications.notification_service import notify_visit_reminder

if TYPE_CHECKING:
    from pawpals.notifications.delivery import DeliveryRouter

logger = logging.getLogger(__name__)

# Streak length -> bonus points
STREAK_MILESTONES: dict[int, int] = {
    3: 25,
    7: 50,
    14: 100,
    30: 200,
    60: 400,
    100: 750,
    365: 2000,
}

STATUS_NONE = "none"
STATUS_ACTIVE = "active"
STATUS_AT_RISK = "at_risk"
STATUS_BROKEN = "broken"


@dataclass
class StreakUpdate:
    """Outcome of a streak update."""

    current_streak: int
    longest_streak: int
    previous_streak: int
    changed: bool
    was_reset: bool = False
    milestone: int | None = None
    milestone_points: int = 0


def streak_status(last_activity: date | None, current_streak: int, today: date) -> str:
    """Classify a streak relative to ``today``."""
    if last_activity is None or current_streak <= 0:
        return STATUS_NONE
    gap = (today - last_activity).days
    if gap <= 0:
        return STATUS_ACTIVE
    if gap == 1:
        return STATUS_AT_RISK
    return STATUS_BROKEN


def next_milestone(current_streak: int) -> int | None:
    for threshold in sorted(STREAK_MILESTONES):
        if threshold > current_streak:
            return threshold
    return None


async def update_streak(
    db: AsyncSession,
    user_id: int,
    activity_at: datetime | None = None,
) -> StreakUpdate:
    """Apply a qualifying activity to the user's streak.

    Same day: no change. Next day: +1. Gap of two or more days, or no
    history: restart at 1. Callers must hold the user's lock.
    """
    gam = await get_or_create_gamification(db, user_id)
    today = activity_day(activity_at)
    last = gam.last_activity_date
    previous = gam.current_streak

    if last is not None and gam.current_streak > 0 and today <= last:
        # Same day, or an out-of-order event for an earlier day
        return StreakUpdate(
            current_streak=gam.current_streak,
            longest_streak=gam.longest_streak,
            previous_streak=previous,
            changed=False,
        )

    was_reset = False
    if last is not None and gam.current_streak > 0 and (today - last).days == 1:
        gam.current_streak += 1
    else:
        was_reset = previous > 0
        gam.current_streak = 1
        gam.streak_start_date = today

    gam.longest_streak = max(gam.longest_streak, gam.current_streak)
    gam.last_activity_date = today
    gam.updated_at = utcnow()
    await db.flush()

    update_result = StreakUpdate(
        current_streak=gam.current_streak,
        longest_streak=gam.longest_streak,
        previous_streak=previous,
        changed=True,
        was_reset=was_reset,
    )

    bonus = STREAK_MILESTONES.get(gam.current_streak)
    if bonus:
        award = await award_points(
            db,
            user_id,
            "streak_milestone",
            bonus,
            context={"streak": gam.current_streak},
            description=f"{gam.current_streak}-day streak milestone",
            idempotency_key=f"streak_milestone:{user_id}:{gam.streak_start_date}:{gam.current_streak}",
        )
        if award.awarded:
            update_result.milestone = gam.current_streak
            update_result.milestone_points = bonus

    return update_result


async def get_streak_info(db: AsyncSession, user_id: int, today: date | None = None) -> dict:
    """Streak summary for display."""
    gam = await get_or_create_gamification(db, user_id)
    today = today or activity_day()
    status = streak_status(gam.last_activity_date, gam.current_streak, today)
    effective = 0 if status in (STATUS_NONE, STATUS_BROKEN) else gam.current_streak
    upcoming = next_milestone(effective)
    return {
        "current_streak": effective,
        "longest_streak": gam.longest_streak,
        "status": status,
        "last_activity_date": gam.last_activity_date,
        "streak_start_date": gam.streak_start_date if effective else None,
        "next_milestone": upcoming,
        "days_to_next_milestone": (upcoming - effective) if upcoming else None,
        "checked_in_today": status == STATUS_ACTIVE,
    }


async def reset_streak(db: AsyncSession, user_id: int) -> int:
    """Admin reset. Returns the streak length before the reset."""
    gam = await get_or_create_gamification(db, user_id)
    previous = gam.current_streak
    gam.current_streak = 0
    gam.streak_start_date = None
    gam.updated_at = utcnow()
    await db.flush()
    logger.info("Streak reset for user %d (was %d)", user_id, previous)
    return previous


async def check_streak_maintenance(db: AsyncSession, today: date | None = None) -> list[int]:
    """Zero out streaks that are broken as of ``today``.

    The UPDATE is conditional on the stale date, so a check-in that lands
    concurrently is never overwritten. Returns the affected user ids.
    """
    today = today or activity_day()
    cutoff = today - timedelta(days=1)
    result = await db.execute(
        update(UserGamification)
        .where(
            UserGamification.current_streak > 0,
            UserGamification.last_activity_date < cutoff,
        )
        .values(current_streak=0, streak_start_date=None, updated_at=utcnow())
        .returning(UserGamification.user_id)
        .execution_options(synchronize_session=False)
    )
    user_ids = [row[0] for row in result]
    await db.flush()
    logger.info("Streak maintenance: reset %d broken streaks", len(user_ids))
    return user_ids


async def get_at_risk_users(db: AsyncSession, today: date | None = None) -> list[UserGamification]:
    """Users whose streak ends unless they check in today."""
    today = today or activity_day()
    result = await db.execute(
        select(UserGamification).where(
            UserGamification.current_streak > 0,
            UserGamification.last_activity_date == today - timedelta(days=1),
        )
    )
    return list(result.scalars().all())


async def get_streak_leaderboard(db: AsyncSession, limit: int = 10, longest: bool = False) -> list[dict]:
    """Top users by current (or longest) streak."""
    column = UserGamification.longest_streak if longest else UserGamification.current_streak
    result = await db.execute(
        select(UserGamification, User)
        .join(User, UserGamification.user_id == User.id)
        .where(column > 0, User.is_active.is_(True))
        .order_by(column.desc(), UserGamification.user_id)
        .limit(limit)
    )
    return [
        {
            "rank": rank,
            "user_id": row.User.id,
            "display_name": row.User.display_name,
            "streak": row.UserGamification.longest_streak if longest else row.UserGamification.current_streak,
            "level": row.UserGamification.level,
        }
        for rank, row in enumerate(result, start=1)
    ]


async def check_streak_warnings(
    db: AsyncSession,
    delivery: DeliveryRouter | None = None,
    today: date | None = None,
) -> int:
    """Remind users whose streak ends tonight. Returns reminders sent.

    Reminders are committed before they are dispatched.
    """
    today = today or activity_day()
    reminders = [
        await notify_visit_reminder(
            db,
            gam.user_id,
            title="Don't lose your streak!",
            body=f"Your {gam.current_streak}-day streak ends today. Visit a park to keep it going.",
        )
        for gam in await get_at_risk_users(db, today)
    ]
    await db.commit()

    if delivery is not None:
        for notification in reminders:
            await delivery.dispatch(db, notification)
        await db.commit()

    logger.info("Streak warnings: reminded %d users", len(reminders))
    return len(reminders)
