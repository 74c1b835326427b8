"""Gamification endpoint tests: profile reads, leaderboards and admin actions."""

from __future__ import annotations

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.db.models import User
from pawpals.gamification.engine import GamificationEngine

BASE = "/api/v1/gamification"


async def _checkin(db: AsyncSession, user_id: int, visit_id: str = "v-1", garden_id: str = "g-1") -> None:
    await GamificationEngine(db).record_checkin(user_id, visit_id, garden_id, garden_name="Central Bark")
    await db.commit()


class TestPublicEndpoints:
    @pytest.mark.asyncio
    async def test_levels(self, client: AsyncClient) -> None:
        response = await client.get(f"{BASE}/levels")
        assert response.status_code == 200
        levels = response.json()["levels"]
        assert levels[0]["level"] == 1
        assert levels[0]["points_required"] == 0
        assert levels[1]["title"] == "Park Explorer"
        required = [lvl["points_required"] for lvl in levels]
        assert required == sorted(required)

    @pytest.mark.asyncio
    async def test_streak_leaderboard(
        self, client: AsyncClient, seeded: None, db_session: AsyncSession, user: User
    ) -> None:
        await _checkin(db_session, user.id)

        response = await client.get(f"{BASE}/leaderboard/streak")
        assert response.status_code == 200
        entries = response.json()["entries"]
        assert entries[0]["rank"] == 1
        assert entries[0]["user_id"] == user.id
        assert entries[0]["display_name"] == "Dana Walker"
        assert entries[0]["streak"] == 1

    @pytest.mark.asyncio
    async def test_longest_streak_leaderboard_empty(self, client: AsyncClient) -> None:
        response = await client.get(f"{BASE}/leaderboard/longest-streak", params={"limit": 5})
        assert response.status_code == 200
        assert response.json() == {"entries": []}


class TestProfileEndpoints:
    @pytest.mark.asyncio
    async def test_requires_auth(self, client: AsyncClient) -> None:
        response = await client.get(f"{BASE}/stats")
        assert response.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_stats_for_new_user(self, authed_client: AsyncClient, seeded: None) -> None:
        response = await authed_client.get(f"{BASE}/stats")
        assert response.status_code == 200
        data = response.json()
        assert data["total_points"] == 0
        assert data["level"]["level"] == 1
        assert data["level"]["is_max_level"] is False
        assert data["streak"]["current_streak"] == 0
        assert data["badges"] == {"earned": 0, "total": 24}
        assert data["stats"]["total_visits"] == 0

    @pytest.mark.asyncio
    async def test_stats_after_checkin(
        self, authed_client: AsyncClient, seeded: None, db_session: AsyncSession, user: User
    ) -> None:
        await _checkin(db_session, user.id)

        data = (await authed_client.get(f"{BASE}/stats")).json()
        assert data["total_points"] == 20
        assert data["badges"]["earned"] == 1
        assert data["streak"]["current_streak"] == 1
        assert data["streak"]["checked_in_today"] is True
        assert data["stats"]["total_visits"] == 1
        assert data["stats"]["unique_parks"] == 1

    @pytest.mark.asyncio
    async def test_level(self, authed_client: AsyncClient, seeded: None, db_session: AsyncSession, user: User) -> None:
        await _checkin(db_session, user.id)

        data = (await authed_client.get(f"{BASE}/level")).json()
        assert data["level"] == 1
        assert data["total_points"] == 20
        assert data["points_into_level"] == 20
        assert data["next_title"] == "Park Explorer"

    @pytest.mark.asyncio
    async def test_streak(self, authed_client: AsyncClient) -> None:
        response = await authed_client.get(f"{BASE}/streak")
        assert response.status_code == 200
        data = response.json()
        assert data["current_streak"] == 0
        assert data["checked_in_today"] is False

    @pytest.mark.asyncio
    async def test_badges(self, authed_client: AsyncClient, seeded: None, db_session: AsyncSession, user: User) -> None:
        await _checkin(db_session, user.id)

        data = (await authed_client.get(f"{BASE}/badges")).json()
        assert data["total_earned"] == 1
        assert data["total_available"] == 24
        assert data["earned"][0]["slug"] == "first_visit"

    @pytest.mark.asyncio
    async def test_badge_catalog_flags_earned(
        self, authed_client: AsyncClient, seeded: None, db_session: AsyncSession, user: User
    ) -> None:
        await _checkin(db_session, user.id)

        badges = (await authed_client.get(f"{BASE}/badges/all")).json()["badges"]
        earned = {b["slug"] for b in badges if b["earned"]}
        assert earned == {"first_visit"}
        assert len(badges) == 24

    @pytest.mark.asyncio
    async def test_badge_stats(self, authed_client: AsyncClient, seeded: None) -> None:
        data = (await authed_client.get(f"{BASE}/badges/stats")).json()
        assert data["total"] == 24
        assert data["earned"] == 0
        assert data["by_category"]["visits"] == {"earned": 0, "total": 4}

    @pytest.mark.asyncio
    async def test_points_history(
        self, authed_client: AsyncClient, seeded: None, db_session: AsyncSession, user: User
    ) -> None:
        await _checkin(db_session, user.id)

        data = (await authed_client.get(f"{BASE}/points/history", params={"per_page": 1})).json()
        assert data["total"] == 3
        assert data["per_page"] == 1
        assert len(data["entries"]) == 1


class TestAdminEndpoints:
    @pytest.mark.asyncio
    async def test_non_admin_forbidden(self, authed_client: AsyncClient, user: User) -> None:
        response = await authed_client.post(
            f"{BASE}/points/award", json={"user_id": user.id, "amount": 10, "reason": "bonus"}
        )
        assert response.status_code == 403
        assert response.json()["detail"] == "Admin privileges required"

    @pytest.mark.asyncio
    async def test_award_points(
        self, client: AsyncClient, seeded: None, user: User, admin_user: User, auth_headers
    ) -> None:
        response = await client.post(
            f"{BASE}/points/award",
            json={"user_id": user.id, "amount": 250, "reason": "park cleanup"},
            headers=auth_headers(admin_user),
        )
        assert response.status_code == 200
        data = response.json()
        assert data["user_id"] == user.id
        assert data["total_points"] == 250
        assert data["level"] == 2
        assert data["level_title"] == "Park Explorer"
        assert data["points_awarded"] == 250

        feed = await client.get("/api/v1/notifications", headers=auth_headers(user))
        assert feed.json()["notifications"][0]["type"] == "level_up"

    @pytest.mark.asyncio
    async def test_award_validates_amount(self, client: AsyncClient, user: User, admin_user: User, auth_headers) -> None:
        response = await client.post(
            f"{BASE}/points/award",
            json={"user_id": user.id, "amount": 0, "reason": "nothing"},
            headers=auth_headers(admin_user),
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_award_unknown_user(self, client: AsyncClient, admin_user: User, auth_headers) -> None:
        response = await client.post(
            f"{BASE}/points/award",
            json={"user_id": 9999, "amount": 10, "reason": "bonus"},
            headers=auth_headers(admin_user),
        )
        assert response.status_code == 404
        assert response.json()["code"] == "user_not_found"

    @pytest.mark.asyncio
    async def test_reset_points(
        self, client: AsyncClient, seeded: None, db_session: AsyncSession, user: User, admin_user: User, auth_headers
    ) -> None:
        await _checkin(db_session, user.id)

        response = await client.post(
            f"{BASE}/points/reset", json={"user_id": user.id}, headers=auth_headers(admin_user)
        )
        assert response.status_code == 200
        assert response.json()["total_points"] == 0
        assert response.json()["level"] == 1

        history = await client.get(f"{BASE}/points/history", headers=auth_headers(user))
        assert history.json()["entries"][0]["action"] == "admin_reset"
        assert history.json()["entries"][0]["amount"] == -20

    @pytest.mark.asyncio
    async def test_reset_streak(
        self, client: AsyncClient, seeded: None, db_session: AsyncSession, user: User, admin_user: User, auth_headers
    ) -> None:
        await _checkin(db_session, user.id)

        response = await client.post(
            f"{BASE}/streak/reset", json={"user_id": user.id}, headers=auth_headers(admin_user)
        )
        assert response.status_code == 200

        streak = await client.get(f"{BASE}/streak", headers=auth_headers(user))
        assert streak.json()["current_streak"] == 0
        assert streak.json()["longest_streak"] == 1

    @pytest.mark.asyncio
    async def test_award_badge(
        self, client: AsyncClient, seeded: None, user: User, admin_user: User, auth_headers
    ) -> None:
        response = await client.post(
            f"{BASE}/badges/award",
            json={"user_id": user.id, "slug": "night_owl"},
            headers=auth_headers(admin_user),
        )
        assert response.status_code == 200
        assert response.json()["badges_awarded"] == ["night_owl"]

    @pytest.mark.asyncio
    async def test_award_unknown_badge(
        self, client: AsyncClient, seeded: None, user: User, admin_user: User, auth_headers
    ) -> None:
        response = await client.post(
            f"{BASE}/badges/award",
            json={"user_id": user.id, "slug": "moon_walker"},
            headers=auth_headers(admin_user),
        )
        assert response.status_code == 404
        assert response.json()["code"] == "badge_not_found"
