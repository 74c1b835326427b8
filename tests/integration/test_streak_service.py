"""Streak service tests: day boundaries, milestones and maintenance jobs."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.db.models import Notification, User, UserGamification
from pawpals.gamification.points_service import get_ledger_total, get_or_create_gamification
from pawpals.gamification.streak_service import (
    STATUS_ACTIVE,
    STATUS_AT_RISK,
    STATUS_BROKEN,
    check_streak_maintenance,
    check_streak_warnings,
    get_at_risk_users,
    get_streak_info,
    get_streak_leaderboard,
    reset_streak,
    update_streak,
)

DAY_ONE = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _day(n: int, hour: int = 12) -> datetime:
    return DAY_ONE.replace(hour=hour) + timedelta(days=n)


async def _streak_of(db: AsyncSession, user_id: int, days: int) -> None:
    for n in range(days):
        await update_streak(db, user_id, _day(n))


class TestUpdateStreak:
    @pytest.mark.asyncio
    async def test_first_activity_starts_streak(self, db_session: AsyncSession, user: User) -> None:
        result = await update_streak(db_session, user.id, _day(0))
        assert result.changed
        assert result.current_streak == 1
        assert result.previous_streak == 0
        assert not result.was_reset

        gam = await get_or_create_gamification(db_session, user.id)
        assert gam.streak_start_date == date(2026, 3, 2)
        assert gam.last_activity_date == date(2026, 3, 2)

    @pytest.mark.asyncio
    async def test_same_day_is_noop(self, db_session: AsyncSession, user: User) -> None:
        await update_streak(db_session, user.id, _day(0, hour=8))
        result = await update_streak(db_session, user.id, _day(0, hour=21))
        assert not result.changed
        assert result.current_streak == 1

    @pytest.mark.asyncio
    async def test_next_day_extends(self, db_session: AsyncSession, user: User) -> None:
        await update_streak(db_session, user.id, _day(0, hour=23))
        result = await update_streak(db_session, user.id, _day(1, hour=0))
        assert result.changed
        assert result.current_streak == 2
        assert result.longest_streak == 2

    @pytest.mark.asyncio
    async def test_gap_restarts_at_one(self, db_session: AsyncSession, user: User) -> None:
        await _streak_of(db_session, user.id, 2)
        result = await update_streak(db_session, user.id, _day(4))
        assert result.current_streak == 1
        assert result.previous_streak == 2
        assert result.was_reset
        assert result.longest_streak == 2

    @pytest.mark.asyncio
    async def test_out_of_order_event_ignored(self, db_session: AsyncSession, user: User) -> None:
        await _streak_of(db_session, user.id, 2)
        result = await update_streak(db_session, user.id, _day(0))
        assert not result.changed
        assert result.current_streak == 2

    @pytest.mark.asyncio
    async def test_day_follows_configured_timezone(
        self, db_session: AsyncSession, user: User, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        from pawpals.config import get_settings

        monkeypatch.setenv("PAWPALS_STREAK_TIMEZONE", "America/New_York")
        get_settings.cache_clear()

        # 01:00 UTC on the 3rd is still the 2nd in New York
        await update_streak(db_session, user.id, datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc))
        result = await update_streak(db_session, user.id, datetime(2026, 3, 3, 1, 0, tzinfo=timezone.utc))
        assert not result.changed
        assert result.current_streak == 1


class TestMilestones:
    @pytest.mark.asyncio
    async def test_three_day_milestone_awards_bonus(self, db_session: AsyncSession, user: User) -> None:
        await _streak_of(db_session, user.id, 2)
        result = await update_streak(db_session, user.id, _day(2))
        assert result.milestone == 3
        assert result.milestone_points == 25
        assert await get_ledger_total(db_session, user.id) == 25

    @pytest.mark.asyncio
    async def test_non_milestone_day(self, db_session: AsyncSession, user: User) -> None:
        await _streak_of(db_session, user.id, 3)
        result = await update_streak(db_session, user.id, _day(3))
        assert result.current_streak == 4
        assert result.milestone is None
        assert result.milestone_points == 0

    @pytest.mark.asyncio
    async def test_new_streak_earns_milestone_again(self, db_session: AsyncSession, user: User) -> None:
        await _streak_of(db_session, user.id, 3)
        for n in range(10, 13):
            result = await update_streak(db_session, user.id, _day(n))
        assert result.milestone == 3
        assert await get_ledger_total(db_session, user.id) == 50


class TestStreakInfo:
    @pytest.mark.asyncio
    async def test_active_today(self, db_session: AsyncSession, user: User) -> None:
        await _streak_of(db_session, user.id, 2)
        info = await get_streak_info(db_session, user.id, today=_day(1).date())
        assert info["status"] == STATUS_ACTIVE
        assert info["current_streak"] == 2
        assert info["checked_in_today"]
        assert info["next_milestone"] == 3
        assert info["days_to_next_milestone"] == 1

    @pytest.mark.asyncio
    async def test_at_risk_keeps_count(self, db_session: AsyncSession, user: User) -> None:
        await _streak_of(db_session, user.id, 2)
        info = await get_streak_info(db_session, user.id, today=_day(2).date())
        assert info["status"] == STATUS_AT_RISK
        assert info["current_streak"] == 2
        assert not info["checked_in_today"]

    @pytest.mark.asyncio
    async def test_broken_reads_as_zero(self, db_session: AsyncSession, user: User) -> None:
        await _streak_of(db_session, user.id, 2)
        info = await get_streak_info(db_session, user.id, today=_day(5).date())
        assert info["status"] == STATUS_BROKEN
        assert info["current_streak"] == 0
        assert info["longest_streak"] == 2
        assert info["streak_start_date"] is None


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_resets_only_broken_streaks(
        self, db_session: AsyncSession, user: User, other_user: User
    ) -> None:
        await _streak_of(db_session, user.id, 2)  # last activity day 1
        await update_streak(db_session, other_user.id, _day(3))  # last activity day 3
        await db_session.commit()

        reset = await check_streak_maintenance(db_session, today=_day(4).date())
        await db_session.commit()
        assert reset == [user.id]

        rows = await db_session.execute(
            select(UserGamification.user_id, UserGamification.current_streak, UserGamification.longest_streak)
        )
        streaks = {uid: (current, longest) for uid, current, longest in rows}
        assert streaks[user.id] == (0, 2)
        assert streaks[other_user.id] == (1, 1)

    @pytest.mark.asyncio
    async def test_at_risk_users(self, db_session: AsyncSession, user: User, other_user: User) -> None:
        await update_streak(db_session, user.id, _day(0))
        await update_streak(db_session, other_user.id, _day(1))
        at_risk = await get_at_risk_users(db_session, today=_day(1).date())
        assert [g.user_id for g in at_risk] == [user.id]

    @pytest.mark.asyncio
    async def test_warnings_create_reminders(
        self, db_session: AsyncSession, user: User, other_user: User
    ) -> None:
        await _streak_of(db_session, user.id, 2)
        await update_streak(db_session, other_user.id, _day(2))

        sent = await check_streak_warnings(db_session, today=_day(2).date())
        assert sent == 1

        result = await db_session.execute(select(Notification))
        reminders = result.scalars().all()
        assert len(reminders) == 1
        assert reminders[0].user_id == user.id
        assert reminders[0].type == "visit_reminder"
        assert "2-day streak" in reminders[0].body

    @pytest.mark.asyncio
    async def test_admin_reset(self, db_session: AsyncSession, user: User) -> None:
        await _streak_of(db_session, user.id, 3)
        assert await reset_streak(db_session, user.id) == 3
        gam = await get_or_create_gamification(db_session, user.id)
        assert gam.current_streak == 0
        assert gam.longest_streak == 3


class TestLeaderboard:
    @pytest.mark.asyncio
    async def test_ordered_by_current_streak(
        self, db_session: AsyncSession, user: User, other_user: User
    ) -> None:
        await _streak_of(db_session, user.id, 2)
        await update_streak(db_session, other_user.id, _day(0))
        board = await get_streak_leaderboard(db_session)
        assert [(e["rank"], e["user_id"], e["streak"]) for e in board] == [(1, user.id, 2), (2, other_user.id, 1)]
        assert board[0]["display_name"] == "Dana Walker"
