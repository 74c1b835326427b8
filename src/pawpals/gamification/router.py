"""Gamification API endpoints: profile reads plus admin adjustments."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.auth.dependencies import get_admin_user, get_current_user
from pawpals.database import get_session
from pawpals.db.models import User, UserGamification
from pawpals.dependencies import get_engine
from pawpals.gamification.badge_service import get_all_badges, get_badge_stats, get_earned_badge_ids, get_user_badges
from pawpals.gamification.engine import GamificationEngine, TriggerOutcome
from pawpals.gamification.level_thresholds import LEVEL_THRESHOLDS, compute_level
from pawpals.gamification.points_service import get_or_create_gamification, get_points_history
from pawpals.gamification.schemas import (
    AdminActionResponse,
    AllBadgesResponse,
    AllLevelsResponse,
    AwardBadgeRequest,
    AwardPointsRequest,
    BadgeDefinitionResponse,
    BadgeStatsResponse,
    EarnedBadgeResponse,
    GamificationStatsResponse,
    LevelEntry,
    LevelResponse,
    PointsHistoryEntry,
    PointsHistoryResponse,
    ResetRequest,
    StreakLeaderboardEntry,
    StreakLeaderboardResponse,
    StreakResponse,
    UserBadgesResponse,
)
from pawpals.gamification.streak_service import get_streak_info, get_streak_leaderboard

router = APIRouter(prefix="/api/v1/gamification", tags=["Gamification"])


def _level_response(gam: UserGamification) -> LevelResponse:
    info = compute_level(gam.total_points)
    return LevelResponse(
        level=info["level"],
        title=info["title"],
        icon=info["icon"],
        total_points=gam.total_points,
        points_for_current_level=info["points_for_current_level"],
        points_for_next_level=info["points_for_next_level"],
        points_into_level=info["points_into_level"],
        progress=info["progress"],
        is_max_level=info["is_max_level"],
        next_title=info["next_title"],
    )


def _admin_response(outcome: TriggerOutcome) -> AdminActionResponse:
    return AdminActionResponse(
        user_id=outcome.user_id,
        total_points=outcome.total_points,
        level=outcome.level,
        level_title=outcome.level_title,
        points_awarded=outcome.points_awarded,
        badges_awarded=[b.slug for b in outcome.badges],
    )


# ── Public ──


@router.get("/levels", response_model=AllLevelsResponse)
async def list_levels():
    """All level definitions."""
    return AllLevelsResponse(
        levels=[
            LevelEntry(level=t["level"], title=t["title"], icon=t["icon"], points_required=t["points_required"])
            for t in LEVEL_THRESHOLDS
        ]
    )


@router.get("/leaderboard/streak", response_model=StreakLeaderboardResponse)
async def streak_leaderboard(
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
):
    entries = await get_streak_leaderboard(db, limit=limit)
    return StreakLeaderboardResponse(entries=[StreakLeaderboardEntry(**e) for e in entries])


@router.get("/leaderboard/longest-streak", response_model=StreakLeaderboardResponse)
async def longest_streak_leaderboard(
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
):
    entries = await get_streak_leaderboard(db, limit=limit, longest=True)
    return StreakLeaderboardResponse(entries=[StreakLeaderboardEntry(**e) for e in entries])


# ── Authenticated ──


@router.get("/stats", response_model=GamificationStatsResponse)
async def get_stats(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Full gamification summary, O(1) from the profile row."""
    gam = await get_or_create_gamification(db, user.id)
    streak = await get_streak_info(db, user.id)
    badges = await get_all_badges(db)
    return GamificationStatsResponse(
        total_points=gam.total_points,
        level=_level_response(gam),
        streak=StreakResponse(**streak),
        badges={"earned": gam.badges_earned, "total": len(badges)},
        stats={
            "total_visits": gam.total_visits,
            "unique_parks": gam.unique_parks,
            "friends_count": gam.friends_count,
            "ratings_count": gam.ratings_count,
            "missions_completed": gam.missions_completed,
        },
    )


@router.get("/level", response_model=LevelResponse)
async def get_level(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    gam = await get_or_create_gamification(db, user.id)
    return _level_response(gam)


@router.get("/streak", response_model=StreakResponse)
async def get_streak(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    return StreakResponse(**await get_streak_info(db, user.id))


@router.get("/badges", response_model=UserBadgesResponse)
async def get_my_badges(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Badges the current user has earned."""
    earned = await get_user_badges(db, user.id)
    available = await get_all_badges(db)
    return UserBadgesResponse(
        earned=[
            EarnedBadgeResponse(
                slug=ub.badge.slug,
                name=ub.badge.name,
                icon=ub.badge.icon,
                rarity=ub.badge.rarity,
                category=ub.badge.category,
                earned_at=ub.earned_at,
                metadata=ub.badge_metadata or {},
            )
            for ub in earned
        ],
        total_available=len(available),
        total_earned=len(earned),
    )


@router.get("/badges/all", response_model=AllBadgesResponse)
async def get_all_badge_definitions(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """The badge catalog, flagged with what the current user has earned."""
    badges = await get_all_badges(db)
    earned = await get_earned_badge_ids(db, user.id)
    return AllBadgesResponse(
        badges=[
            BadgeDefinitionResponse(
                slug=b.slug,
                name=b.name,
                description=b.description,
                icon=b.icon,
                category=b.category,
                rarity=b.rarity,
                requirement_type=b.requirement_type,
                requirement_target=b.requirement_target,
                points_reward=b.points_reward,
                earned=b.id in earned,
            )
            for b in badges
        ]
    )


@router.get("/badges/stats", response_model=BadgeStatsResponse)
async def get_my_badge_stats(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    return BadgeStatsResponse(**await get_badge_stats(db, user.id))


@router.get("/points/history", response_model=PointsHistoryResponse)
async def get_my_points_history(
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Points ledger (paginated, most recent first)."""
    entries, total = await get_points_history(db, user.id, page, per_page)
    return PointsHistoryResponse(
        entries=[
            PointsHistoryEntry(
                id=e.id,
                action=e.action,
                amount=e.amount,
                description=e.description,
                context=e.context or {},
                created_at=e.created_at,
            )
            for e in entries
        ],
        total=total,
        page=page,
        per_page=per_page,
    )


# ── Admin ──


@router.post("/points/award", response_model=AdminActionResponse)
async def admin_award_points(
    body: AwardPointsRequest,
    _admin: User = Depends(get_admin_user),
    engine: GamificationEngine = Depends(get_engine),
):
    outcome = await engine.award_points(body.user_id, body.amount, body.reason)
    return _admin_response(outcome)


@router.post("/points/reset", response_model=AdminActionResponse)
async def admin_reset_points(
    body: ResetRequest,
    _admin: User = Depends(get_admin_user),
    engine: GamificationEngine = Depends(get_engine),
):
    outcome = await engine.reset_points(body.user_id, body.reason)
    return _admin_response(outcome)


@router.post("/streak/reset", response_model=AdminActionResponse)
async def admin_reset_streak(
    body: ResetRequest,
    _admin: User = Depends(get_admin_user),
    engine: GamificationEngine = Depends(get_engine),
):
    outcome = await engine.reset_streak(body.user_id)
    return _admin_response(outcome)


@router.post("/badges/award", response_model=AdminActionResponse)
async def admin_award_badge(
    body: AwardBadgeRequest,
    _admin: User = Depends(get_admin_user),
    engine: GamificationEngine = Depends(get_engine),
):
    outcome = await engine.award_badge(body.user_id, body.slug)
    return _admin_response(outcome)
