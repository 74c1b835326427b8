"""Badge evaluation and award with duplicate prevention."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.db.models import BadgeDefinition, UserBadge, UserGamification
from pawpals.gamification.errors import BadgeNotFound
from pawpals.gamification.points_service import award_points, get_or_create_gamification
from pawpals.gamification.time_utils import utcnow

logger = logging.getLogger(__name__)

# requirement_type -> profile statistic compared against requirement_target
STAT_REQUIREMENTS: dict[str, str] = {
    "total_visits": "total_visits",
    "unique_parks": "unique_parks",
    "current_streak": "current_streak",
    "friends_count": "friends_count",
    "ratings_count": "ratings_count",
    "level": "level",
    "missions_completed": "missions_completed",
}

# Requirement types evaluated against the triggering event instead of the profile
CONTEXT_REQUIREMENTS = frozenset({"visit_hour_before", "visit_hour_from"})


def requirement_met(badge: BadgeDefinition, gam: UserGamification, context: dict[str, Any] | None = None) -> bool:
    """Whether the profile (and trigger context) satisfies a badge requirement."""
    context = context or {}
    req = badge.requirement_type

    if req in STAT_REQUIREMENTS:
        return getattr(gam, STAT_REQUIREMENTS[req]) >= badge.requirement_target

    hour = context.get("hour")
    if hour is None:
        return False
    if req == "visit_hour_before":
        return hour < badge.requirement_target
    if req == "visit_hour_from":
        return hour >= badge.requirement_target

    logger.warning("Unknown badge requirement type %r on %s", req, badge.slug)
    return False


async def get_badge_by_slug(db: AsyncSession, slug: str) -> BadgeDefinition | None:
    """Fetch a badge definition by slug."""
    result = await db.execute(
        select(BadgeDefinition).where(BadgeDefinition.slug == slug)
    )
    return result.scalar_one_or_none()


async def get_earned_badge_ids(db: AsyncSession, user_id: int) -> set[int]:
    result = await db.execute(
        select(UserBadge.badge_id).where(UserBadge.user_id == user_id)
    )
    return set(result.scalars().all())


async def has_badge(db: AsyncSession, user_id: int, badge_id: int) -> bool:
    """Check if user already has a specific badge."""
    result = await db.execute(
        select(UserBadge.id).where(
            UserBadge.user_id == user_id,
            UserBadge.badge_id == badge_id,
        )
    )
    return result.scalar_one_or_none() is not None


async def award_badge(
    db: AsyncSession,
    user_id: int,
    badge: BadgeDefinition,
    metadata: dict | None = None,
) -> bool:
    """Award a badge to a user.

    Returns True if awarded, False if already earned. Handles:
    1. Insert into user_badges (UNIQUE constraint as the backstop)
    2. Grant the badge's points (idempotent via idempotency_key)
    3. Update user_gamification.badges_earned
    """
    if await has_badge(db, user_id, badge.id):
        return False

    now = utcnow()
    user_badge = UserBadge(
        user_id=user_id,
        badge_id=badge.id,
        earned_at=now,
        badge_metadata=metadata or {},
    )
    try:
        async with db.begin_nested():
            db.add(user_badge)
    except IntegrityError:
        return False  # Awarded concurrently

    if badge.points_reward > 0:
        await award_points(
            db,
            user_id,
            "badge_earned",
            badge.points_reward,
            context={"badge": badge.slug},
            description=f'Earned badge: "{badge.name}"',
            idempotency_key=f"badge:{badge.slug}:{user_id}",
        )

    gam = await get_or_create_gamification(db, user_id)
    gam.badges_earned += 1
    gam.updated_at = now
    await db.flush()

    logger.info("Awarded badge %s to user %d", badge.slug, user_id)
    return True


async def award_badge_by_slug(
    db: AsyncSession,
    user_id: int,
    slug: str,
    metadata: dict | None = None,
) -> bool:
    """Award a catalog badge by slug. Raises BadgeNotFound for unknown slugs."""
    badge = await get_badge_by_slug(db, slug)
    if badge is None:
        raise BadgeNotFound(slug)
    return await award_badge(db, user_id, badge, metadata)


async def check_and_award_badges(
    db: AsyncSession,
    user_id: int,
    categories: str | Iterable[str],
    context: dict[str, Any] | None = None,
) -> list[BadgeDefinition]:
    """Evaluate every unearned badge in ``categories`` and award those now met.

    Safe to call repeatedly: an already-earned badge is never awarded twice.
    """
    if isinstance(categories, str):
        categories = [categories]
    categories = list(categories)

    gam = await get_or_create_gamification(db, user_id)
    result = await db.execute(
        select(BadgeDefinition)
        .where(
            BadgeDefinition.is_active.is_(True),
            BadgeDefinition.category.in_(categories),
        )
        .order_by(BadgeDefinition.sort_order)
    )
    candidates = result.scalars().all()
    earned = await get_earned_badge_ids(db, user_id)

    awarded: list[BadgeDefinition] = []
    for badge in candidates:
        if badge.id in earned:
            continue
        if not requirement_met(badge, gam, context):
            continue
        metadata = {"trigger": context} if context else None
        if await award_badge(db, user_id, badge, metadata):
            awarded.append(badge)
    return awarded


async def get_user_badges(db: AsyncSession, user_id: int) -> list[UserBadge]:
    result = await db.execute(
        select(UserBadge)
        .where(UserBadge.user_id == user_id)
        .order_by(UserBadge.earned_at.desc())
    )
    return list(result.scalars().all())


async def get_all_badges(db: AsyncSession) -> list[BadgeDefinition]:
    result = await db.execute(
        select(BadgeDefinition)
        .where(BadgeDefinition.is_active.is_(True))
        .order_by(BadgeDefinition.sort_order)
    )
    return list(result.scalars().all())


async def get_badge_stats(db: AsyncSession, user_id: int) -> dict:
    """Earned vs available badges, overall and per rarity and category."""
    badges = await get_all_badges(db)
    earned = await get_earned_badge_ids(db, user_id)

    by_rarity: dict[str, dict[str, int]] = {}
    by_category: dict[str, dict[str, int]] = {}
    for badge in badges:
        for bucket, key in ((by_rarity, badge.rarity), (by_category, badge.category)):
            entry = bucket.setdefault(key, {"earned": 0, "total": 0})
            entry["total"] += 1
            if badge.id in earned:
                entry["earned"] += 1

    total = len(badges)
    earned_count = sum(1 for b in badges if b.id in earned)
    return {
        "total": total,
        "earned": earned_count,
        "completion": round(earned_count / total * 100, 1) if total else 0.0,
        "by_rarity": by_rarity,
        "by_category": by_category,
    }

