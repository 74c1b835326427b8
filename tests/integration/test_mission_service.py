"""Mission service tests: lazy instances, clamped progress and one-time claims."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.db.models import MissionDefinition, User, UserMission
from pawpals.gamification import mission_service
from pawpals.gamification.errors import (
    InvalidAmount,
    InvalidRequirementIndex,
    MissionAlreadyCompleted,
    MissionFull,
    MissionNotActive,
    MissionNotFound,
    MissionNotReady,
    RewardsAlreadyClaimed,
)
from pawpals.gamification.mission_service import (
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    STATUS_EXPIRED,
    STATUS_FAILED,
    advance_missions,
    complete_mission,
    completion_percentage,
    expire_missions,
    fail_streak_missions,
    get_available_missions,
    get_mission,
    get_user_mission_progress,
    reward_points_for,
    update_progress,
)
from pawpals.gamification.points_service import award_points, get_or_create_gamification

# A Wednesday; weekly windows start on Mondays
NOW = datetime(2026, 3, 4, 10, 0, tzinfo=timezone.utc)


class TestRewardPoints:
    def test_multiplier_rounds_half_up(self) -> None:
        assert reward_points_for(MissionDefinition(reward_points=15, bonus_multiplier=1.5)) == 23
        assert reward_points_for(MissionDefinition(reward_points=50, bonus_multiplier=2.0)) == 100
        assert reward_points_for(MissionDefinition(reward_points=10, bonus_multiplier=1.0)) == 10


class TestUpdateProgress:
    @pytest.mark.asyncio
    async def test_creates_instance_lazily(self, db_session: AsyncSession, user: User, seeded: None) -> None:
        user_mission = await update_progress(db_session, user.id, "weekly_social_5", 0, now=NOW)
        assert user_mission.status == STATUS_ACTIVE
        assert user_mission.window_start.date() == datetime(2026, 3, 2).date()
        assert [(p.current, p.target) for p in user_mission.progress] == [(1, 5)]
        assert completion_percentage(user_mission) == 20

        mission = await get_mission(db_session, "weekly_social_5")
        await db_session.refresh(mission)
        assert mission.current_participants == 1

    @pytest.mark.asyncio
    async def test_progress_clamped_to_target(self, db_session: AsyncSession, user: User, seeded: None) -> None:
        user_mission = await update_progress(db_session, user.id, "weekly_social_5", 0, increment_by=12, now=NOW)
        assert user_mission.progress[0].current == 5
        assert user_mission.progress[0].completed
        assert user_mission.status == STATUS_COMPLETED
        assert completion_percentage(user_mission) == 100

    @pytest.mark.asyncio
    async def test_completed_mission_rejects_progress(
        self, db_session: AsyncSession, user: User, seeded: None
    ) -> None:
        await update_progress(db_session, user.id, "weekly_social_5", 0, increment_by=5, now=NOW)
        with pytest.raises(MissionAlreadyCompleted):
            await update_progress(db_session, user.id, "weekly_social_5", 0, now=NOW)

    @pytest.mark.asyncio
    async def test_new_window_starts_fresh(self, db_session: AsyncSession, user: User, seeded: None) -> None:
        await update_progress(db_session, user.id, "daily_visit_3", 0, increment_by=3, now=NOW)
        tomorrow = await update_progress(db_session, user.id, "daily_visit_3", 0, now=NOW + timedelta(days=1))
        assert tomorrow.status == STATUS_ACTIVE
        assert tomorrow.progress[0].current == 1

    @pytest.mark.asyncio
    async def test_validation(self, db_session: AsyncSession, user: User, seeded: None) -> None:
        with pytest.raises(MissionNotFound):
            await update_progress(db_session, user.id, "moon_mission", 0, now=NOW)
        with pytest.raises(InvalidRequirementIndex):
            await update_progress(db_session, user.id, "weekly_social_5", 3, now=NOW)
        with pytest.raises(InvalidAmount):
            await update_progress(db_session, user.id, "weekly_social_5", 0, increment_by=0, now=NOW)

    @pytest.mark.asyncio
    async def test_not_open_before_start(self, db_session: AsyncSession, user: User, seeded: None) -> None:
        with pytest.raises(MissionNotActive):
            await update_progress(db_session, user.id, "weekly_social_5", 0, now=datetime(2020, 1, 1, tzinfo=timezone.utc))

    @pytest.mark.asyncio
    async def test_prerequisites(self, db_session: AsyncSession, user: User, seeded: None) -> None:
        with pytest.raises(MissionNotActive, match="Prerequisites"):
            await update_progress(db_session, user.id, "weekly_friends_3", 0, now=NOW)

        await award_points(db_session, user.id, "admin_award", 200)
        user_mission = await update_progress(db_session, user.id, "weekly_friends_3", 0, now=NOW)
        assert user_mission.progress[0].current == 1

    @pytest.mark.asyncio
    async def test_participant_cap(
        self, db_session: AsyncSession, user: User, other_user: User, seeded: None
    ) -> None:
        mission = await get_mission(db_session, "weekly_social_5")
        mission.max_participants = 1
        await db_session.flush()

        await update_progress(db_session, user.id, "weekly_social_5", 0, now=NOW)
        with pytest.raises(MissionFull):
            await update_progress(db_session, other_user.id, "weekly_social_5", 0, now=NOW)

        # The existing participant keeps going
        user_mission = await update_progress(db_session, user.id, "weekly_social_5", 0, now=NOW)
        assert user_mission.progress[0].current == 2


class TestAdvanceMissions:
    @pytest.mark.asyncio
    async def test_matching_requirement_only(self, db_session: AsyncSession, user: User, seeded: None) -> None:
        await advance_missions(db_session, user.id, "rate_dogs", now=NOW)
        progress = await get_user_mission_progress(db_session, user.id)
        active = progress[STATUS_ACTIVE]
        assert [m.mission.mission_id for m in active] == ["weekly_social_5"]

    @pytest.mark.asyncio
    async def test_ineligible_missions_skipped(self, db_session: AsyncSession, user: User, seeded: None) -> None:
        assert await advance_missions(db_session, user.id, "make_friends", now=NOW) == []
        rows = await db_session.execute(select(UserMission).where(UserMission.user_id == user.id))
        assert rows.unique().scalars().all() == []

    @pytest.mark.asyncio
    async def test_absolute_value(self, db_session: AsyncSession, user: User, seeded: None) -> None:
        await advance_missions(db_session, user.id, "maintain_streak", value=4, now=NOW)
        await advance_missions(db_session, user.id, "maintain_streak", value=2, now=NOW)
        progress = await get_user_mission_progress(db_session, user.id)
        assert progress[STATUS_ACTIVE][0].progress[0].current == 4

        completed = await advance_missions(db_session, user.id, "maintain_streak", value=7, now=NOW)
        assert [m.mission.mission_id for m in completed] == ["weekly_streak_7"]

    @pytest.mark.asyncio
    async def test_seen_in_window_does_not_count(self, db_session: AsyncSession, user: User, seeded: None) -> None:
        await advance_missions(db_session, user.id, "visit_unique_parks", now=NOW)
        await advance_missions(
            db_session, user.id, "visit_unique_parks", last_seen_at=NOW - timedelta(hours=2), now=NOW
        )
        await advance_missions(
            db_session, user.id, "visit_unique_parks", last_seen_at=NOW - timedelta(days=3), now=NOW
        )
        progress = await get_user_mission_progress(db_session, user.id)
        assert progress[STATUS_ACTIVE][0].progress[0].current == 2


class TestCompleteMission:
    @pytest.mark.asyncio
    async def test_claim_awards_points_and_badges(
        self, db_session: AsyncSession, user: User, seeded: None
    ) -> None:
        await update_progress(db_session, user.id, "daily_visit_3", 0, increment_by=3, now=NOW)
        claim = await complete_mission(db_session, user.id, "daily_visit_3", now=NOW)

        assert claim.points.amount == 15
        assert claim.badges_awarded == ["daily_explorer"]
        assert claim.badges_failed == []
        assert claim.user_mission.rewards_claimed
        gam = await get_or_create_gamification(db_session, user.id)
        assert gam.missions_completed == 1
        assert gam.total_points == 15

    @pytest.mark.asyncio
    async def test_claim_twice(self, db_session: AsyncSession, user: User, seeded: None) -> None:
        await update_progress(db_session, user.id, "daily_visit_3", 0, increment_by=3, now=NOW)
        await complete_mission(db_session, user.id, "daily_visit_3", now=NOW)
        with pytest.raises(RewardsAlreadyClaimed):
            await complete_mission(db_session, user.id, "daily_visit_3", now=NOW)

    @pytest.mark.asyncio
    async def test_claim_before_completion(self, db_session: AsyncSession, user: User, seeded: None) -> None:
        with pytest.raises(MissionNotReady):
            await complete_mission(db_session, user.id, "daily_visit_3", now=NOW)
        await update_progress(db_session, user.id, "daily_visit_3", 0, now=NOW)
        with pytest.raises(MissionNotReady):
            await complete_mission(db_session, user.id, "daily_visit_3", now=NOW)

    @pytest.mark.asyncio
    async def test_multiplier_and_special_reward(
        self, db_session: AsyncSession, user: User, seeded: None
    ) -> None:
        await advance_missions(db_session, user.id, "maintain_streak", value=7, now=NOW)
        claim = await complete_mission(db_session, user.id, "weekly_streak_7", now=NOW)
        assert claim.points.amount == 100
        assert claim.special_reward == "Golden leash profile frame"
        assert claim.badges_awarded == ["streak_master"]

    @pytest.mark.asyncio
    async def test_missing_reward_badge_does_not_block_points(
        self, db_session: AsyncSession, user: User, seeded: None
    ) -> None:
        mission = await get_mission(db_session, "daily_visit_3")
        mission.reward_badges = ["retired_badge"]
        await db_session.flush()

        await update_progress(db_session, user.id, "daily_visit_3", 0, increment_by=3, now=NOW)
        claim = await complete_mission(db_session, user.id, "daily_visit_3", now=NOW)
        assert claim.points.amount == 15
        assert claim.badges_failed == ["retired_badge"]

    @pytest.mark.asyncio
    async def test_database_error_in_one_badge_keeps_the_claim(
        self, db_session: AsyncSession, user: User, seeded: None, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        real_award = mission_service.award_badge_by_slug

        async def flaky_award(db: AsyncSession, user_id: int, slug: str, context: dict) -> bool:
            if slug == "broken_badge":
                await db.execute(text("INSERT INTO no_such_table VALUES (1)"))
            return await real_award(db, user_id, slug, context)

        monkeypatch.setattr(mission_service, "award_badge_by_slug", flaky_award)
        mission = await get_mission(db_session, "daily_visit_3")
        mission.reward_badges = ["broken_badge", "daily_explorer"]
        await db_session.flush()

        await update_progress(db_session, user.id, "daily_visit_3", 0, increment_by=3, now=NOW)
        claim = await complete_mission(db_session, user.id, "daily_visit_3", now=NOW)
        await db_session.commit()

        assert claim.badges_failed == ["broken_badge"]
        assert claim.badges_awarded == ["daily_explorer"]
        assert claim.user_mission.rewards_claimed
        gam = await get_or_create_gamification(db_session, user.id)
        assert gam.missions_completed == 1

    @pytest.mark.asyncio
    async def test_previous_window_claimable_after_rollover(
        self, db_session: AsyncSession, user: User, seeded: None
    ) -> None:
        done = await update_progress(db_session, user.id, "daily_visit_3", 0, increment_by=3, now=NOW)
        tomorrow = NOW + timedelta(days=1)
        await update_progress(db_session, user.id, "daily_visit_3", 0, now=tomorrow)

        claim = await complete_mission(db_session, user.id, "daily_visit_3", now=tomorrow)
        assert claim.user_mission.id == done.id
        assert claim.points.amount == 15

        # today's window is still in progress
        with pytest.raises(MissionNotReady):
            await complete_mission(db_session, user.id, "daily_visit_3", now=tomorrow)


class TestLifecycleJobs:
    @pytest.mark.asyncio
    async def test_fail_streak_missions(self, db_session: AsyncSession, user: User, seeded: None) -> None:
        await advance_missions(db_session, user.id, "maintain_streak", value=3, now=NOW)
        await advance_missions(db_session, user.id, "rate_dogs", now=NOW)

        failed = await fail_streak_missions(db_session, user.id, now=NOW)
        assert [m.mission.mission_id for m in failed] == ["weekly_streak_7"]

        # Failed is terminal
        await advance_missions(db_session, user.id, "maintain_streak", value=7, now=NOW)
        assert failed[0].status == STATUS_FAILED
        with pytest.raises(MissionNotActive):
            await update_progress(db_session, user.id, "weekly_streak_7", 0, now=NOW)

        available = await get_available_missions(db_session, user.id, now=NOW)
        assert "weekly_streak_7" not in [m.mission_id for m, _ in available]

    @pytest.mark.asyncio
    async def test_expire_closed_windows(self, db_session: AsyncSession, user: User, seeded: None) -> None:
        await update_progress(db_session, user.id, "daily_visit_3", 0, now=NOW)
        await update_progress(db_session, user.id, "weekly_social_5", 0, now=NOW)

        assert await expire_missions(db_session, now=NOW + timedelta(hours=1)) == 0
        assert await expire_missions(db_session, now=NOW + timedelta(days=1)) == 1

        progress = await get_user_mission_progress(db_session, user.id)
        assert [m.mission.mission_id for m in progress[STATUS_EXPIRED]] == ["daily_visit_3"]
        assert [m.mission.mission_id for m in progress[STATUS_ACTIVE]] == ["weekly_social_5"]

    @pytest.mark.asyncio
    async def test_completed_instances_never_expire(
        self, db_session: AsyncSession, user: User, seeded: None
    ) -> None:
        await update_progress(db_session, user.id, "daily_visit_3", 0, increment_by=3, now=NOW)
        assert await expire_missions(db_session, now=NOW + timedelta(days=2)) == 0


class TestAvailableMissions:
    @pytest.mark.asyncio
    async def test_lists_eligible(self, db_session: AsyncSession, user: User, seeded: None) -> None:
        available = await get_available_missions(db_session, user.id, now=NOW)
        ids = [m.mission_id for m, _ in available]
        assert "daily_visit_3" in ids
        assert "weekly_friends_3" not in ids  # needs level 2

    @pytest.mark.asyncio
    async def test_filter_by_type(self, db_session: AsyncSession, user: User, seeded: None) -> None:
        available = await get_available_missions(db_session, user.id, mission_type="daily", now=NOW)
        assert [m.mission_id for m, _ in available] == ["daily_visit_3"]

    @pytest.mark.asyncio
    async def test_claimed_instance_hidden(self, db_session: AsyncSession, user: User, seeded: None) -> None:
        await update_progress(db_session, user.id, "daily_visit_3", 0, increment_by=3, now=NOW)
        await complete_mission(db_session, user.id, "daily_visit_3", now=NOW)
        available = await get_available_missions(db_session, user.id, mission_type="daily", now=NOW)
        assert available == []
