"""Gamification engine: applies trigger events to a user's gamification state.

Every public operation runs as one unit per user:
1. Take the in-process user lock and row-lock the profile
2. Update points, streak, badges and missions, and persist at most one feed
   notification describing the outcome
3. Load what delivery needs, commit, release the lock
4. Hand the notification and the real-time gamification events to a
   background delivery task; the caller does not wait for it

Trigger events carry a source id and are applied at most once
(``gamification_events`` registry).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.db.models import (
    BadgeDefinition,
    GamificationEvent,
    Notification,
    ParkVisit,
    User,
    UserGamification,
    UserMission,
    UserParkVisit,
)
from pawpals.gamification import mission_service
from pawpals.gamification.badge_service import award_badge, check_and_award_badges, get_badge_by_slug
from pawpals.gamification.errors import BadgeNotFound, InvalidAmount
from pawpals.gamification.locks import lock_profile_row, user_lock
from pawpals.gamification.points_service import award_points, get_or_create_gamification, reset_points
from pawpals.gamification.streak_service import StreakUpdate, reset_streak, update_streak
from pawpals.gamification.time_utils import activity_day, ensure_aware, local_hour, utcnow
from pawpals.notifications.delivery import DeliveryPlan, DeliveryRouter
from pawpals.notifications.notification_service import create_notification, notify_friend_accepted
from pawpals.notifications.types import NotificationType

logger = logging.getLogger(__name__)

T = NotificationType

QUALITY_VISIT_MINUTES = 30
CHECKIN_BADGE_CATEGORIES = ("visits", "exploration", "timing", "streaks")

# The notification sent when nothing better happened: (type, title, body, data),
# or a typed helper that persists it
DefaultNotification = Union[tuple[str, str, str, dict[str, Any]], Callable[[], Awaitable[Notification]]]


@dataclass
class TriggerOutcome:
    """What one trigger did to one user."""

    user_id: int
    duplicate: bool = False
    points_awarded: int = 0
    total_points: int = 0
    previous_total: int = 0
    level: int = 1
    previous_level: int = 1
    level_title: str = ""
    streak: StreakUpdate | None = None
    badges: list[BadgeDefinition] = field(default_factory=list)
    missions_completed: list[UserMission] = field(default_factory=list)
    claim: mission_service.MissionClaim | None = None
    user_mission: UserMission | None = None
    notification: Notification | None = None
    # Background socket/push delivery; resolves to a DeliveryReport (None without a notification)
    delivery_task: asyncio.Task | None = None  # type: ignore[type-arg]
    events: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    @property
    def leveled_up(self) -> bool:
        return self.level > self.previous_level


class GamificationEngine:
    """Facade used by the HTTP routers and the stream worker."""

    def __init__(self, db: AsyncSession, delivery: DeliveryRouter | None = None) -> None:
        self.db = db
        self.delivery = delivery

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    async def _run(
        self,
        user_id: int,
        apply: Callable[[TriggerOutcome, UserGamification], Awaitable[DefaultNotification | None]],
    ) -> TriggerOutcome:
        plan: DeliveryPlan | None = None
        async with user_lock(user_id):
            try:
                gam = await lock_profile_row(self.db, user_id)
                if gam is None:
                    gam = await get_or_create_gamification(self.db, user_id)
                outcome = TriggerOutcome(
                    user_id=user_id,
                    previous_total=gam.total_points,
                    previous_level=gam.level,
                )
                default = await apply(outcome, gam)
                if not outcome.duplicate:
                    await self._settle_levels(outcome, gam)
                outcome.level = gam.level
                outcome.level_title = gam.level_title
                outcome.total_points = gam.total_points
                if not outcome.duplicate:
                    self._collect_events(outcome, gam)
                    outcome.notification = await self._compose(outcome, default)
                    plan = await self._prepare_delivery(outcome)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
        if self.delivery is not None and (plan is not None or outcome.events):
            outcome.delivery_task = self.delivery.schedule(user_id, plan, outcome.events)
        return outcome

    async def _prepare_delivery(self, outcome: TriggerOutcome) -> DeliveryPlan | None:
        if self.delivery is None or outcome.notification is None:
            return None
        # Delivery problems never fail the trigger
        try:
            async with self.db.begin_nested():
                return await self.delivery.prepare(self.db, outcome.notification)
        except SQLAlchemyError:
            logger.exception("Failed to prepare delivery for user %d", outcome.user_id)
            return None

    async def _claim_event(self, event_key: str, user_id: int, event_type: str) -> bool:
        """Register a trigger event. False if it was already applied."""
        existing = await self.db.execute(
            select(GamificationEvent.id).where(GamificationEvent.event_key == event_key)
        )
        if existing.scalar_one_or_none() is not None:
            return False
        try:
            async with self.db.begin_nested():
                self.db.add(
                    GamificationEvent(
                        event_key=event_key,
                        user_id=user_id,
                        event_type=event_type,
                        processed_at=utcnow(),
                    )
                )
        except IntegrityError:
            return False
        return True

    async def _award(self, outcome: TriggerOutcome, action: str, amount: int | None = None, **kwargs: Any) -> None:
        award = await award_points(self.db, outcome.user_id, action, amount, **kwargs)
        if award.awarded:
            outcome.points_awarded += award.amount

    async def _settle_levels(self, outcome: TriggerOutcome, gam: UserGamification) -> None:
        # Level badges grant points, which may cross another threshold
        seen_level = outcome.previous_level
        while gam.level != seen_level:
            seen_level = gam.level
            outcome.badges += await check_and_award_badges(self.db, outcome.user_id, "levels")

    def _collect_events(self, outcome: TriggerOutcome, gam: UserGamification) -> None:
        if gam.total_points != outcome.previous_total:
            outcome.events.append((
                "points_updated",
                {
                    "total_points": gam.total_points,
                    "gained": gam.total_points - outcome.previous_total,
                    "level": gam.level,
                },
            ))
        if outcome.leveled_up:
            outcome.events.append((
                "level_up",
                {"level": gam.level, "title": gam.level_title, "previous_level": outcome.previous_level},
            ))
        if outcome.streak is not None and outcome.streak.changed:
            outcome.events.append((
                "streak_updated",
                {
                    "current_streak": outcome.streak.current_streak,
                    "previous_streak": outcome.streak.previous_streak,
                    "longest_streak": outcome.streak.longest_streak,
                    "milestone": outcome.streak.milestone,
                },
            ))
        for badge in outcome.badges:
            outcome.events.append((
                "achievement_unlocked",
                {
                    "slug": badge.slug,
                    "name": badge.name,
                    "icon": badge.icon,
                    "rarity": badge.rarity,
                    "points": badge.points_reward,
                },
            ))
        for user_mission in outcome.missions_completed:
            outcome.events.append((
                "mission_completed",
                {
                    "mission_id": user_mission.mission.mission_id,
                    "title": user_mission.mission.title,
                    "reward_points": mission_service.reward_points_for(user_mission.mission),
                },
            ))

    async def _compose(
        self, outcome: TriggerOutcome, default: DefaultNotification | None
    ) -> Notification | None:
        """Persist the single feed entry that best describes the outcome."""
        if outcome.badges:
            first = outcome.badges[0]
            if len(outcome.badges) == 1:
                title = f"Badge earned: {first.name}"
                body = first.description
            else:
                title = f"{len(outcome.badges)} badges earned"
                body = ", ".join(b.name for b in outcome.badges)
            type_, data = T.ACHIEVEMENT_EARNED.value, {
                "targetId": first.slug,
                "badges": [b.slug for b in outcome.badges],
            }
        elif outcome.leveled_up:
            type_ = T.LEVEL_UP.value
            title = f"Level {outcome.level} reached!"
            body = f"You are now a {outcome.level_title}"
            data = {"targetId": str(outcome.level), "level": outcome.level, "levelTitle": outcome.level_title}
        elif outcome.streak is not None and outcome.streak.milestone:
            days = outcome.streak.milestone
            type_ = T.ACHIEVEMENT_EARNED.value
            title = f"{days}-day streak!"
            body = f"You visited a park {days} days in a row. +{outcome.streak.milestone_points} points"
            data = {"targetId": f"streak_{days}", "streak": days}
        elif callable(default):
            return await default()
        elif default is not None:
            type_, title, body, data = default
        else:
            return None

        return await create_notification(
            self.db,
            outcome.user_id,
            type_,
            title=title,
            body=body,
            data=data,
            priority="high" if type_ in (T.ACHIEVEMENT_EARNED.value, T.LEVEL_UP.value) else "medium",
        )

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def record_checkin(
        self,
        user_id: int,
        visit_id: str,
        garden_id: str,
        garden_name: str | None = None,
        checked_in_at: datetime | None = None,
    ) -> TriggerOutcome:
        """A dog check-in at a park."""
        at = ensure_aware(checked_in_at or utcnow())

        async def apply(outcome: TriggerOutcome, gam: UserGamification) -> DefaultNotification | None:
            if not await self._claim_event(f"checkin:{visit_id}", user_id, "checkin"):
                outcome.duplicate = True
                return None

            day = activity_day(at)
            first_of_day = gam.last_activity_date is None or gam.last_activity_date < day
            gam.total_visits += 1
            self.db.add(
                ParkVisit(
                    visit_id=visit_id,
                    user_id=user_id,
                    garden_id=garden_id,
                    garden_name=garden_name,
                    checked_in_at=at,
                )
            )

            result = await self.db.execute(
                select(UserParkVisit).where(UserParkVisit.user_id == user_id, UserParkVisit.garden_id == garden_id)
            )
            park_visit = result.scalar_one_or_none()
            last_seen: datetime | None = None
            if park_visit is None:
                self.db.add(
                    UserParkVisit(
                        user_id=user_id,
                        garden_id=garden_id,
                        visit_count=1,
                        first_visited_at=at,
                        last_visited_at=at,
                    )
                )
                gam.unique_parks += 1
            else:
                last_seen = ensure_aware(park_visit.last_visited_at)
                park_visit.visit_count += 1
                park_visit.last_visited_at = max(last_seen, at)
            gam.updated_at = utcnow()
            await self.db.flush()

            context = {"visit": visit_id, "garden": garden_id}
            await self._award(outcome, "checkin", context=context, idempotency_key=f"checkin:{visit_id}")

            if first_of_day:
                await self._award(
                    outcome,
                    "first_visit_day",
                    context=context,
                    idempotency_key=f"first_visit_day:{user_id}:{day.isoformat()}",
                )
                outcome.streak = await update_streak(self.db, user_id, at)
                if outcome.streak.was_reset:
                    await mission_service.fail_streak_missions(self.db, user_id, now=at)
                if outcome.streak.changed and outcome.streak.current_streak > 1:
                    await self._award(
                        outcome,
                        "streak_bonus",
                        context={"streak": outcome.streak.current_streak},
                        idempotency_key=f"streak_bonus:{user_id}:{day.isoformat()}",
                    )

            outcome.badges += await check_and_award_badges(
                self.db,
                user_id,
                CHECKIN_BADGE_CATEGORIES,
                context={"hour": local_hour(at), "garden_id": garden_id},
            )

            outcome.missions_completed += await mission_service.advance_missions(
                self.db, user_id, mission_service.REQ_VISIT_PARKS, now=at
            )
            outcome.missions_completed += await mission_service.advance_missions(
                self.db, user_id, mission_service.REQ_VISIT_UNIQUE_PARKS, last_seen_at=last_seen, now=at
            )
            if outcome.streak is not None and outcome.streak.changed:
                outcome.missions_completed += await mission_service.advance_missions(
                    self.db,
                    user_id,
                    mission_service.REQ_MAINTAIN_STREAK,
                    value=outcome.streak.current_streak,
                    now=at,
                )

            place = garden_name or "the park"
            return (
                T.DOG_CHECKIN.value,
                f"Checked in at {place}",
                f"Enjoy your visit! +{outcome.points_awarded} points",
                {"visitId": visit_id, "gardenId": garden_id},
            )

        outcome = await self._run(user_id, apply)
        if not outcome.duplicate:
            logger.info(
                "Check-in %s for user %d: +%d points, %d badges",
                visit_id, user_id, outcome.points_awarded, len(outcome.badges),
            )
        return outcome

    async def record_checkout(
        self,
        user_id: int,
        visit_id: str,
        garden_id: str,
        duration_minutes: int,
        garden_name: str | None = None,
    ) -> TriggerOutcome:
        """A dog checkout. Long visits earn a quality bonus."""

        async def apply(outcome: TriggerOutcome, gam: UserGamification) -> DefaultNotification | None:
            if not await self._claim_event(f"checkout:{visit_id}", user_id, "checkout"):
                outcome.duplicate = True
                return None

            await self.db.execute(
                update(ParkVisit)
                .where(ParkVisit.visit_id == visit_id, ParkVisit.checked_out_at.is_(None))
                .values(checked_out_at=utcnow())
                .execution_options(synchronize_session=False)
            )

            context = {"visit": visit_id, "garden": garden_id, "duration_minutes": duration_minutes}
            await self._award(outcome, "checkout", context=context, idempotency_key=f"checkout:{visit_id}")
            if duration_minutes >= QUALITY_VISIT_MINUTES:
                await self._award(
                    outcome, "quality_visit_bonus", context=context, idempotency_key=f"quality_visit:{visit_id}"
                )

            place = garden_name or "the park"
            return (
                T.DOG_CHECKOUT.value,
                "Visit complete",
                f"{duration_minutes} minutes at {place}. +{outcome.points_awarded} points",
                {"visitId": visit_id, "gardenId": garden_id},
            )

        return await self._run(user_id, apply)

    async def record_rating(
        self,
        user_id: int,
        rating_id: str,
        dog_id: str,
        is_update: bool = False,
    ) -> TriggerOutcome:
        """The user rated a dog. Updates of an existing rating earn the reduced rate.

        ``rating_id`` identifies the rating event, so repeated updates of one
        rating need distinct ids.
        """

        async def apply(outcome: TriggerOutcome, gam: UserGamification) -> DefaultNotification | None:
            if not await self._claim_event(f"rating:{rating_id}", user_id, "rating"):
                outcome.duplicate = True
                return None

            context = {"rating": rating_id, "dog": dog_id}
            if is_update:
                await self._award(
                    outcome, "dog_rating_update", context=context, idempotency_key=f"rating:{rating_id}"
                )
                return None

            gam.ratings_count += 1
            gam.updated_at = utcnow()
            await self.db.flush()
            await self._award(outcome, "dog_rating", context=context, idempotency_key=f"rating:{rating_id}")
            outcome.badges += await check_and_award_badges(self.db, user_id, "ratings")
            outcome.missions_completed += await mission_service.advance_missions(
                self.db, user_id, mission_service.REQ_RATE_DOGS
            )
            return None

        return await self._run(user_id, apply)

    async def record_friendship(
        self,
        requester_id: int,
        accepter_id: int,
        friendship_id: str,
    ) -> tuple[TriggerOutcome, TriggerOutcome]:
        """A friend request was accepted. Both users gain a friend.

        The users are processed one after the other, never holding both locks.
        """

        async def for_user(user_id: int, friend_id: int, notify: bool):
            async def apply(outcome: TriggerOutcome, gam: UserGamification) -> DefaultNotification | None:
                if not await self._claim_event(f"friendship:{friendship_id}:{user_id}", user_id, "friendship"):
                    outcome.duplicate = True
                    return None

                gam.friends_count += 1
                gam.updated_at = utcnow()
                await self.db.flush()
                await self._award(
                    outcome,
                    "friendship_made",
                    context={"friendship": friendship_id, "friend": friend_id},
                    idempotency_key=f"friendship:{friendship_id}:{user_id}",
                )
                outcome.badges += await check_and_award_badges(self.db, user_id, "social")
                outcome.missions_completed += await mission_service.advance_missions(
                    self.db, user_id, mission_service.REQ_MAKE_FRIENDS
                )
                if not notify:
                    return None
                friend = await self.db.get(User, friend_id)
                name = friend.display_name if friend is not None else "Someone"
                return partial(notify_friend_accepted, self.db, user_id, friend_id, name)

            return await self._run(user_id, apply)

        requester = await for_user(requester_id, accepter_id, notify=True)
        accepter = await for_user(accepter_id, requester_id, notify=False)
        return requester, accepter

    # ------------------------------------------------------------------
    # Missions
    # ------------------------------------------------------------------

    async def update_mission_progress(
        self,
        user_id: int,
        mission_id: str,
        requirement_index: int,
        increment_by: int = 1,
    ) -> TriggerOutcome:
        now = utcnow()

        async def apply(outcome: TriggerOutcome, gam: UserGamification) -> DefaultNotification | None:
            user_mission, completed = await mission_service.record_progress(
                self.db, user_id, mission_id, requirement_index, increment_by, now=now
            )
            outcome.user_mission = user_mission
            if completed:
                outcome.missions_completed.append(user_mission)
            return None

        return await self._run(user_id, apply)

    async def complete_mission(self, user_id: int, mission_id: str) -> TriggerOutcome:
        """Claim a completed mission's rewards."""

        async def apply(outcome: TriggerOutcome, gam: UserGamification) -> DefaultNotification | None:
            claim = await mission_service.complete_mission(self.db, user_id, mission_id)
            outcome.claim = claim
            outcome.user_mission = claim.user_mission
            outcome.points_awarded += claim.points.amount
            for slug in claim.badges_awarded:
                badge = await get_badge_by_slug(self.db, slug)
                if badge is not None:
                    outcome.badges.append(badge)
            outcome.badges += await check_and_award_badges(self.db, user_id, "missions")

            mission = claim.mission
            body = f"+{claim.points.amount} points"
            if claim.special_reward:
                body += f" and {claim.special_reward}"
            return (
                T.ACHIEVEMENT_EARNED.value,
                f"Mission complete: {mission.title}",
                body,
                {"targetId": mission.mission_id, "missionId": mission.mission_id},
            )

        return await self._run(user_id, apply)

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def award_points(self, user_id: int, amount: int, reason: str) -> TriggerOutcome:
        if amount < 1:
            msg = f"Points amount must be positive, got {amount}"
            raise InvalidAmount(msg)

        async def apply(outcome: TriggerOutcome, gam: UserGamification) -> DefaultNotification | None:
            await self._award(outcome, "admin_award", amount, context={"reason": reason}, description=reason)
            return (T.SYSTEM.value, "Bonus points", f"You received {amount} points: {reason}", {})

        return await self._run(user_id, apply)

    async def reset_points(self, user_id: int, reason: str = "admin reset") -> TriggerOutcome:
        async def apply(outcome: TriggerOutcome, gam: UserGamification) -> DefaultNotification | None:
            await reset_points(self.db, user_id, reason)
            return None

        return await self._run(user_id, apply)

    async def reset_streak(self, user_id: int) -> TriggerOutcome:
        async def apply(outcome: TriggerOutcome, gam: UserGamification) -> DefaultNotification | None:
            previous = await reset_streak(self.db, user_id)
            outcome.streak = StreakUpdate(
                current_streak=0,
                longest_streak=gam.longest_streak,
                previous_streak=previous,
                changed=previous > 0,
                was_reset=previous > 0,
            )
            await mission_service.fail_streak_missions(self.db, user_id)
            return None

        return await self._run(user_id, apply)

    async def award_badge(self, user_id: int, slug: str) -> TriggerOutcome:
        """Grant a catalog badge directly."""

        async def apply(outcome: TriggerOutcome, gam: UserGamification) -> DefaultNotification | None:
            badge = await get_badge_by_slug(self.db, slug)
            if badge is None:
                raise BadgeNotFound(slug)
            if await award_badge(self.db, user_id, badge, {"source": "admin"}):
                outcome.badges.append(badge)
            return None

        return await self._run(user_id, apply)
