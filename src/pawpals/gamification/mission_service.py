"""Mission progress tracking and reward claims.

A user's mission instance is created lazily, on first progress, for the
mission window that contains "now" (recurring missions get a fresh instance
every period). Instance status only moves forward:
active -> completed, or active -> failed / expired.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.db.models import MissionDefinition, UserGamification, UserMission, UserMissionProgress
from pawpals.gamification.badge_service import award_badge_by_slug, get_badge_by_slug, has_badge
from pawpals.gamification.errors import (
    GamificationError,
    InvalidAmount,
    InvalidRequirementIndex,
    MissionAlreadyCompleted,
    MissionFull,
    MissionNotActive,
    MissionNotFound,
    MissionNotReady,
    RewardsAlreadyClaimed,
)
from pawpals.gamification.points_service import PointsAward, award_points, get_or_create_gamification
from pawpals.gamification.time_utils import current_window, ensure_aware, utcnow, window_end

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_EXPIRED = "expired"
TERMINAL_FAILURES = (STATUS_FAILED, STATUS_EXPIRED)

# Requirement types fed automatically by trigger events
REQ_VISIT_PARKS = "visit_parks"
REQ_VISIT_UNIQUE_PARKS = "visit_unique_parks"
REQ_RATE_DOGS = "rate_dogs"
REQ_MAKE_FRIENDS = "make_friends"
REQ_MAINTAIN_STREAK = "maintain_streak"


@dataclass
class MissionClaim:
    """Result of claiming a completed mission."""

    mission: MissionDefinition
    user_mission: UserMission
    points: PointsAward
    badges_awarded: list[str] = field(default_factory=list)
    badges_failed: list[str] = field(default_factory=list)
    special_reward: str | None = None


def reward_points_for(mission: MissionDefinition) -> int:
    """Reward points times the bonus multiplier, rounded half up."""
    return int(math.floor(mission.reward_points * (mission.bonus_multiplier or 1.0) + 0.5))


def completion_percentage(user_mission: UserMission) -> int:
    total = sum(p.target for p in user_mission.progress)
    if total == 0:
        return 100 if user_mission.status == STATUS_COMPLETED else 0
    done = sum(min(p.current, p.target) for p in user_mission.progress)
    return int(done * 100 / total)


def _is_open(mission: MissionDefinition, now: datetime) -> bool:
    return (
        mission.is_active
        and ensure_aware(mission.starts_at) <= now < ensure_aware(mission.ends_at)
    )


def _window_for(mission: MissionDefinition, now: datetime) -> datetime:
    return current_window(mission.mission_type, mission.is_recurring, mission.starts_at, now)


def instance_window_end(user_mission: UserMission) -> datetime:
    mission = user_mission.mission
    return window_end(mission.mission_type, mission.is_recurring, user_mission.window_start, mission.ends_at)


async def get_mission(db: AsyncSession, mission_id: str) -> MissionDefinition:
    result = await db.execute(
        select(MissionDefinition).where(MissionDefinition.mission_id == mission_id)
    )
    mission = result.scalar_one_or_none()
    if mission is None:
        raise MissionNotFound(mission_id)
    return mission


async def _get_instance(
    db: AsyncSession, user_id: int, mission: MissionDefinition, window_start: datetime
) -> UserMission | None:
    result = await db.execute(
        select(UserMission).where(
            UserMission.user_id == user_id,
            UserMission.mission_def_id == mission.id,
            UserMission.window_start == window_start,
        )
    )
    return result.scalar_one_or_none()


async def _latest_instance(
    db: AsyncSession, user_id: int, mission: MissionDefinition, *, claimable: bool = False
) -> UserMission | None:
    """Newest instance, or with ``claimable`` the newest completed one not yet claimed."""
    query = select(UserMission).where(UserMission.user_id == user_id, UserMission.mission_def_id == mission.id)
    if claimable:
        query = query.where(UserMission.status == STATUS_COMPLETED, UserMission.rewards_claimed.is_(False))
    result = await db.execute(query.order_by(UserMission.window_start.desc()).limit(1))
    return result.scalar_one_or_none()


async def prerequisites_met(
    db: AsyncSession, user_id: int, mission: MissionDefinition, gam: UserGamification
) -> bool:
    """Check level, streak, badge and mission prerequisites."""
    for prereq in mission.prerequisites or []:
        kind = prereq.get("type")
        value = prereq.get("value")
        if kind == "level":
            if gam.level < int(value):
                return False
        elif kind == "streak":
            if gam.current_streak < int(value):
                return False
        elif kind == "badge":
            badge = await get_badge_by_slug(db, str(value))
            if badge is None or not await has_badge(db, user_id, badge.id):
                return False
        elif kind == "mission":
            result = await db.execute(
                select(UserMission.id)
                .join(MissionDefinition, UserMission.mission_def_id == MissionDefinition.id)
                .where(
                    UserMission.user_id == user_id,
                    MissionDefinition.mission_id == str(value),
                    UserMission.status == STATUS_COMPLETED,
                )
                .limit(1)
            )
            if result.scalar_one_or_none() is None:
                return False
        else:
            logger.warning("Unknown prerequisite type %r on mission %s", kind, mission.mission_id)
            return False
    return True


async def _start_instance(
    db: AsyncSession, user_id: int, mission: MissionDefinition, window_start: datetime, now: datetime
) -> UserMission:
    """Create a zeroed instance, taking a participant slot."""
    claim_slot = (
        update(MissionDefinition)
        .where(MissionDefinition.id == mission.id)
        .values(current_participants=MissionDefinition.current_participants + 1)
        .execution_options(synchronize_session=False)
    )
    if mission.max_participants is not None:
        claim_slot = claim_slot.where(MissionDefinition.current_participants < mission.max_participants)
    result = await db.execute(claim_slot)
    if result.rowcount == 0:
        msg = f"Mission {mission.mission_id!r} has no free participant slots"
        raise MissionFull(msg)

    user_mission = UserMission(
        user_id=user_id,
        mission_def_id=mission.id,
        mission=mission,
        window_start=window_start,
        status=STATUS_ACTIVE,
        started_at=now,
        rewards_claimed=False,
        progress=[
            UserMissionProgress(requirement_index=i, current=0, target=int(req["target"]), completed=False)
            for i, req in enumerate(mission.requirements)
        ],
    )
    db.add(user_mission)
    await db.flush()
    return user_mission


def _apply_progress(
    user_mission: UserMission,
    requirement_index: int,
    now: datetime,
    increment_by: int = 0,
    value: int | None = None,
) -> bool:
    """Advance one counter (clamped to target). Returns True if the mission
    was promoted to completed by this call."""
    row = next(p for p in user_mission.progress if p.requirement_index == requirement_index)
    if row.completed:
        return False
    new_value = row.current + increment_by if value is None else max(row.current, value)
    row.current = min(new_value, row.target)
    if row.current >= row.target:
        row.completed = True
        row.completed_at = now

    if user_mission.status == STATUS_ACTIVE and all(p.completed for p in user_mission.progress):
        user_mission.status = STATUS_COMPLETED
        user_mission.completed_at = now
        return True
    return False


async def update_progress(
    db: AsyncSession,
    user_id: int,
    mission_id: str,
    requirement_index: int,
    increment_by: int = 1,
    now: datetime | None = None,
) -> UserMission:
    """Increment one requirement counter of the user's current mission instance."""
    user_mission, _ = await record_progress(db, user_id, mission_id, requirement_index, increment_by, now)
    return user_mission


async def record_progress(
    db: AsyncSession,
    user_id: int,
    mission_id: str,
    requirement_index: int,
    increment_by: int = 1,
    now: datetime | None = None,
) -> tuple[UserMission, bool]:
    """``update_progress`` that also reports whether this call completed the mission."""
    if increment_by < 1:
        msg = f"Progress increment must be positive, got {increment_by}"
        raise InvalidAmount(msg)

    now = now or utcnow()
    mission = await get_mission(db, mission_id)
    if not _is_open(mission, now):
        msg = f"Mission {mission_id!r} is not currently active"
        raise MissionNotActive(msg)
    if not 0 <= requirement_index < len(mission.requirements):
        raise InvalidRequirementIndex(requirement_index, len(mission.requirements))

    window_start = _window_for(mission, now)
    user_mission = await _get_instance(db, user_id, mission, window_start)
    if user_mission is None:
        gam = await get_or_create_gamification(db, user_id)
        if not await prerequisites_met(db, user_id, mission, gam):
            msg = f"Prerequisites for mission {mission_id!r} are not met"
            raise MissionNotActive(msg)
        user_mission = await _start_instance(db, user_id, mission, window_start, now)

    if user_mission.status == STATUS_COMPLETED:
        msg = f"Mission {mission_id!r} is already completed"
        raise MissionAlreadyCompleted(msg)
    if user_mission.status in TERMINAL_FAILURES:
        msg = f"Mission {mission_id!r} is {user_mission.status}"
        raise MissionNotActive(msg)

    completed = _apply_progress(user_mission, requirement_index, now, increment_by=increment_by)
    if completed:
        logger.info("User %d completed mission %s", user_id, mission_id)
    await db.flush()
    return user_mission, completed


async def advance_missions(
    db: AsyncSession,
    user_id: int,
    requirement_type: str,
    amount: int = 1,
    *,
    value: int | None = None,
    last_seen_at: datetime | None = None,
    now: datetime | None = None,
) -> list[UserMission]:
    """Feed a trigger event into every open mission with a matching requirement.

    ``value`` sets the counter to an absolute level (streak length) instead
    of incrementing. ``last_seen_at`` makes the event count only if the
    subject was not already seen in the current window (unique parks).
    Ineligible missions are skipped silently. Returns newly completed instances.
    """
    now = now or utcnow()
    result = await db.execute(
        select(MissionDefinition).where(
            MissionDefinition.is_active.is_(True),
            MissionDefinition.starts_at <= now,
            MissionDefinition.ends_at > now,
        )
    )
    missions = [
        m for m in result.scalars().all()
        if any(req.get("type") == requirement_type for req in m.requirements)
    ]
    if not missions:
        return []

    gam = await get_or_create_gamification(db, user_id)
    completed: list[UserMission] = []
    for mission in missions:
        window_start = _window_for(mission, now)
        if last_seen_at is not None and ensure_aware(last_seen_at) >= window_start:
            continue

        user_mission = await _get_instance(db, user_id, mission, window_start)
        if user_mission is None:
            if not await prerequisites_met(db, user_id, mission, gam):
                continue
            try:
                user_mission = await _start_instance(db, user_id, mission, window_start, now)
            except MissionFull:
                continue
        if user_mission.status != STATUS_ACTIVE:
            continue

        promoted = False
        for index, req in enumerate(mission.requirements):
            if req.get("type") != requirement_type:
                continue
            if value is not None:
                promoted = _apply_progress(user_mission, index, now, value=value) or promoted
            else:
                promoted = _apply_progress(user_mission, index, now, increment_by=amount) or promoted
        if promoted:
            logger.info("User %d completed mission %s", user_id, mission.mission_id)
            completed.append(user_mission)

    await db.flush()
    return completed


async def complete_mission(
    db: AsyncSession,
    user_id: int,
    mission_id: str,
    now: datetime | None = None,
) -> MissionClaim:
    """Claim the rewards of the user's newest unclaimed completed instance, exactly once.

    A completed window stays claimable after the next window has started.
    """
    now = now or utcnow()
    mission = await get_mission(db, mission_id)
    user_mission = await _latest_instance(db, user_id, mission, claimable=True)
    if user_mission is None:
        latest = await _latest_instance(db, user_id, mission)
        if latest is not None and latest.rewards_claimed:
            msg = f"Rewards for mission {mission_id!r} were already claimed"
            raise RewardsAlreadyClaimed(msg)
        msg = f"Mission {mission_id!r} is not completed yet"
        raise MissionNotReady(msg)

    # Conditional flip: exactly one concurrent claimer wins
    result = await db.execute(
        update(UserMission)
        .where(
            UserMission.id == user_mission.id,
            UserMission.status == STATUS_COMPLETED,
            UserMission.rewards_claimed.is_(False),
        )
        .values(rewards_claimed=True, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        msg = f"Rewards for mission {mission_id!r} were already claimed"
        raise RewardsAlreadyClaimed(msg)
    user_mission.rewards_claimed = True
    user_mission.claimed_at = now

    points = await award_points(
        db,
        user_id,
        "mission_complete",
        reward_points_for(mission),
        context={"mission": mission.mission_id, "multiplier": mission.bonus_multiplier},
        description=f'Completed mission: "{mission.title}"',
        idempotency_key=f"mission:{user_mission.id}",
    )

    gam = await get_or_create_gamification(db, user_id)
    gam.missions_completed += 1
    gam.updated_at = now

    claim = MissionClaim(
        mission=mission,
        user_mission=user_mission,
        points=points,
        special_reward=mission.special_reward,
    )
    for slug in mission.reward_badges or []:
        # One savepoint per badge keeps a failed award out of the claim
        try:
            async with db.begin_nested():
                awarded = await award_badge_by_slug(db, user_id, slug, {"mission": mission.mission_id})
            if awarded:
                claim.badges_awarded.append(slug)
        except (GamificationError, SQLAlchemyError):
            logger.warning("Mission %s reward badge %s could not be awarded", mission.mission_id, slug, exc_info=True)
            claim.badges_failed.append(slug)

    await db.flush()
    return claim


async def get_available_missions(
    db: AsyncSession,
    user_id: int,
    mission_type: str | None = None,
    now: datetime | None = None,
) -> list[tuple[MissionDefinition, UserMission | None]]:
    """Open missions the user is eligible for and has not exhausted."""
    now = now or utcnow()
    query = select(MissionDefinition).where(
        MissionDefinition.is_active.is_(True),
        MissionDefinition.starts_at <= now,
        MissionDefinition.ends_at > now,
    )
    if mission_type:
        query = query.where(MissionDefinition.mission_type == mission_type)
    result = await db.execute(query.order_by(MissionDefinition.mission_type, MissionDefinition.id))

    gam = await get_or_create_gamification(db, user_id)
    available: list[tuple[MissionDefinition, UserMission | None]] = []
    for mission in result.scalars().all():
        user_mission = await _get_instance(db, user_id, mission, _window_for(mission, now))
        if user_mission is not None:
            if user_mission.status in TERMINAL_FAILURES or user_mission.rewards_claimed:
                continue
        else:
            if (
                mission.max_participants is not None
                and mission.current_participants >= mission.max_participants
            ):
                continue
            if not await prerequisites_met(db, user_id, mission, gam):
                continue
        available.append((mission, user_mission))
    return available


async def get_user_missions(
    db: AsyncSession,
    user_id: int,
    status: str | None = None,
    mission_type: str | None = None,
) -> list[UserMission]:
    query = (
        select(UserMission)
        .join(MissionDefinition, UserMission.mission_def_id == MissionDefinition.id)
        .where(UserMission.user_id == user_id)
    )
    if status:
        query = query.where(UserMission.status == status)
    if mission_type:
        query = query.where(MissionDefinition.mission_type == mission_type)
    result = await db.execute(query.order_by(UserMission.started_at.desc(), UserMission.id.desc()))
    return list(result.unique().scalars().all())


async def get_user_mission_progress(
    db: AsyncSession,
    user_id: int,
    status: str | None = None,
    mission_type: str | None = None,
) -> dict[str, list[UserMission]]:
    """User mission instances grouped by status."""
    grouped: dict[str, list[UserMission]] = {
        STATUS_ACTIVE: [],
        STATUS_COMPLETED: [],
        STATUS_FAILED: [],
        STATUS_EXPIRED: [],
    }
    for user_mission in await get_user_missions(db, user_id, status, mission_type):
        grouped.setdefault(user_mission.status, []).append(user_mission)
    return grouped


async def fail_streak_missions(db: AsyncSession, user_id: int, now: datetime | None = None) -> list[UserMission]:
    """Fail active instances of streak missions after the user's streak broke."""
    now = now or utcnow()
    result = await db.execute(
        select(UserMission).where(UserMission.user_id == user_id, UserMission.status == STATUS_ACTIVE)
    )
    failed = []
    for user_mission in result.unique().scalars().all():
        if any(req.get("type") == REQ_MAINTAIN_STREAK for req in user_mission.mission.requirements):
            user_mission.status = STATUS_FAILED
            failed.append(user_mission)
    if failed:
        await db.flush()
        logger.info("Failed %d streak missions for user %d", len(failed), user_id)
    return failed


async def expire_missions(db: AsyncSession, now: datetime | None = None) -> int:
    """Mark active instances whose window has closed as expired."""
    now = now or utcnow()
    result = await db.execute(select(UserMission).where(UserMission.status == STATUS_ACTIVE))
    expired = 0
    for user_mission in result.unique().scalars().all():
        if now >= instance_window_end(user_mission):
            user_mission.status = STATUS_EXPIRED
            expired += 1
    await db.flush()
    logger.info("Expired %d mission instances", expired)
    return expired
