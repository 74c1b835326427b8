"""Points ledger: append-only transactions with a cached cumulative total.

Every change to ``UserGamification.total_points`` goes through
``award_points`` (or the admin ``reset_points``), which writes a
``PointsTransaction`` in the same flush. The cached total therefore always
equals the sum of the user's transactions; ``reconcile_points`` repairs the
cache if it ever drifts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.db.models import PointsTransaction, User, UserGamification
from pawpals.gamification.errors import InvalidAmount, UserNotFound
from pawpals.gamification.level_thresholds import compute_level
from pawpals.gamification.time_utils import utcnow

logger = logging.getLogger(__name__)

# Default amounts per action. Callers may pass an explicit amount instead.
POINT_VALUES: dict[str, int] = {
    "checkin": 2,
    "checkout": 3,
    "visit": 5,
    "first_visit_day": 8,
    "streak_bonus": 3,
    "social_interaction": 2,
    "dog_rating": 2,
    "dog_rating_update": 1,
    "friendship_made": 3,
    "quality_visit_bonus": 2,
    "badge_earned": 15,
    "achievement_unlock": 25,
    "mission_complete": 10,
}

# Actions that only ever carry an explicit amount
EXPLICIT_ACTIONS = frozenset({"streak_milestone", "admin_award"})

ADMIN_RESET_ACTION = "admin_reset"


@dataclass
class PointsAward:
    """Result of a points award."""

    awarded: bool
    amount: int
    total_points: int
    level: int
    previous_level: int
    level_title: str
    transaction_id: int | None = None

    @property
    def leveled_up(self) -> bool:
        return self.level > self.previous_level


async def get_or_create_gamification(db: AsyncSession, user_id: int) -> UserGamification:
    """Get or create the denormalized gamification row for a user.

    Raises UserNotFound if the user row does not exist.
    """
    result = await db.execute(
        select(UserGamification).where(UserGamification.user_id == user_id)
    )
    gam = result.scalar_one_or_none()
    if gam is None:
        if await db.get(User, user_id) is None:
            raise UserNotFound(user_id)
        gam = UserGamification(
            user_id=user_id,
            total_points=0,
            level=1,
            level_title=compute_level(0)["title"],
            updated_at=utcnow(),
        )
        db.add(gam)
        await db.flush()
    return gam


def _apply_level(gam: UserGamification) -> dict:
    level_info = compute_level(gam.total_points)
    gam.level = level_info["level"]
    gam.level_title = level_info["title"]
    return level_info


async def award_points(
    db: AsyncSession,
    user_id: int,
    action: str,
    amount: int | None = None,
    *,
    context: dict[str, Any] | None = None,
    description: str | None = None,
    idempotency_key: str | None = None,
) -> PointsAward:
    """Append a points transaction and update the cached total and level.

    The amount defaults to ``POINT_VALUES[action]``. A repeated
    ``idempotency_key`` is a no-op and returns ``awarded=False``.
    Callers must hold the user's lock (see ``pawpals.gamification.locks``).
    """
    if amount is None:
        if action not in POINT_VALUES:
            msg = f"No point value defined for action {action!r}"
            raise InvalidAmount(msg)
        amount = POINT_VALUES[action]
    elif amount < 0:
        msg = f"Points amount must be non-negative, got {amount}"
        raise InvalidAmount(msg)

    gam = await get_or_create_gamification(db, user_id)
    previous_level = gam.level

    if idempotency_key is not None:
        existing = await db.execute(
            select(PointsTransaction.id).where(PointsTransaction.idempotency_key == idempotency_key)
        )
        if existing.scalar_one_or_none() is not None:
            return PointsAward(
                awarded=False,
                amount=0,
                total_points=gam.total_points,
                level=gam.level,
                previous_level=previous_level,
                level_title=gam.level_title,
            )

    now = utcnow()
    entry = PointsTransaction(
        user_id=user_id,
        action=action,
        amount=amount,
        description=description,
        context=context or {},
        idempotency_key=idempotency_key,
        created_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(entry)
    except IntegrityError:
        # Same key written by a concurrent transaction
        return PointsAward(
            awarded=False,
            amount=0,
            total_points=gam.total_points,
            level=gam.level,
            previous_level=previous_level,
            level_title=gam.level_title,
        )

    gam.total_points += amount
    level_info = _apply_level(gam)
    gam.updated_at = now
    await db.flush()

    if gam.level > previous_level:
        logger.info("User %d leveled up %d -> %d (%s)", user_id, previous_level, gam.level, level_info["title"])

    return PointsAward(
        awarded=True,
        amount=amount,
        total_points=gam.total_points,
        level=gam.level,
        previous_level=previous_level,
        level_title=gam.level_title,
        transaction_id=entry.id,
    )


async def reset_points(db: AsyncSession, user_id: int, reason: str = "admin reset") -> PointsAward:
    """Zero a user's points with a compensating ledger entry."""
    gam = await get_or_create_gamification(db, user_id)
    previous_level = gam.level
    now = utcnow()
    entry = PointsTransaction(
        user_id=user_id,
        action=ADMIN_RESET_ACTION,
        amount=-gam.total_points,
        description=reason,
        context={},
        created_at=now,
    )
    db.add(entry)
    gam.total_points = 0
    _apply_level(gam)
    gam.updated_at = now
    await db.flush()
    logger.warning("Points reset for user %d (%s)", user_id, reason)
    return PointsAward(
        awarded=True,
        amount=entry.amount,
        total_points=0,
        level=gam.level,
        previous_level=previous_level,
        level_title=gam.level_title,
        transaction_id=entry.id,
    )


async def get_ledger_total(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(PointsTransaction.amount), 0)).where(PointsTransaction.user_id == user_id)
    )
    return int(result.scalar_one())


async def reconcile_points(db: AsyncSession, user_id: int) -> tuple[int, int]:
    """Recompute the cached total from the ledger.

    Returns ``(cached_before, ledger_total)``.
    """
    gam = await get_or_create_gamification(db, user_id)
    ledger_total = await get_ledger_total(db, user_id)
    cached = gam.total_points
    if cached != ledger_total:
        logger.warning("Points drift for user %d: cached=%d ledger=%d", user_id, cached, ledger_total)
        gam.total_points = ledger_total
        _apply_level(gam)
        gam.updated_at = utcnow()
        await db.flush()
    return cached, ledger_total


async def get_points_history(
    db: AsyncSession,
    user_id: int,
    page: int = 1,
    per_page: int = 50,
) -> tuple[list[PointsTransaction], int]:
    """Ledger entries for a user, most recent first."""
    total_result = await db.execute(
        select(func.count()).select_from(PointsTransaction).where(PointsTransaction.user_id == user_id)
    )
    total = total_result.scalar_one()

    result = await db.execute(
        select(PointsTransaction)
        .where(PointsTransaction.user_id == user_id)
        .order_by(PointsTransaction.created_at.desc(), PointsTransaction.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(result.scalars().all()), total
