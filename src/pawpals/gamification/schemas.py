"""Pydantic request/response models for gamification and mission endpoints."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field


# --- Levels ---


class LevelResponse(BaseModel):
    level: int
    title: str
    icon: str
    total_points: int
    points_for_current_level: int
    points_for_next_level: int | None = None
    points_into_level: int
    progress: float
    is_max_level: bool
    next_title: str | None = None


class LevelEntry(BaseModel):
    level: int
    title: str
    icon: str
    points_required: int


class AllLevelsResponse(BaseModel):
    levels: list[LevelEntry]


# --- Streak ---


class StreakResponse(BaseModel):
    current_streak: int
    longest_streak: int
    status: str
    last_activity_date: date | None = None
    streak_start_date: date | None = None
    next_milestone: int | None = None
    days_to_next_milestone: int | None = None
    checked_in_today: bool


class StreakLeaderboardEntry(BaseModel):
    rank: int
    user_id: int
    display_name: str
    streak: int
    level: int


class StreakLeaderboardResponse(BaseModel):
    entries: list[StreakLeaderboardEntry]


# --- Badges ---


class BadgeDefinitionResponse(BaseModel):
    slug: str
    name: str
    description: str
    icon: str | None = None
    category: str
    rarity: str
    requirement_type: str
    requirement_target: int
    points_reward: int
    earned: bool = False


class AllBadgesResponse(BaseModel):
    badges: list[BadgeDefinitionResponse]


class EarnedBadgeResponse(BaseModel):
    slug: str
    name: str
    icon: str | None = None
    rarity: str
    category: str
    earned_at: datetime
    metadata: dict = {}


class UserBadgesResponse(BaseModel):
    earned: list[EarnedBadgeResponse]
    total_available: int
    total_earned: int


class BadgeStatsResponse(BaseModel):
    total: int
    earned: int
    completion: float
    by_rarity: dict[str, dict[str, int]]
    by_category: dict[str, dict[str, int]]


# --- Points ---


class PointsHistoryEntry(BaseModel):
    id: int
    action: str
    amount: int
    description: str | None = None
    context: dict = {}
    created_at: datetime


class PointsHistoryResponse(BaseModel):
    entries: list[PointsHistoryEntry]
    total: int
    page: int
    per_page: int


# --- Summary ---


class GamificationStatsResponse(BaseModel):
    total_points: int
    level: LevelResponse
    streak: StreakResponse
    badges: dict[str, int]
    stats: dict[str, int]


# --- Admin ---


class AwardPointsRequest(BaseModel):
    user_id: int
    amount: int = Field(..., ge=1, le=100_000)
    reason: str = Field(..., min_length=1, max_length=200)


class ResetRequest(BaseModel):
    user_id: int
    reason: str = Field("admin reset", max_length=200)


class AwardBadgeRequest(BaseModel):
    user_id: int
    slug: str


class AdminActionResponse(BaseModel):
    user_id: int
    total_points: int
    level: int
    level_title: str
    points_awarded: int = 0
    badges_awarded: list[str] = []


# --- Missions ---


class RequirementProgress(BaseModel):
    index: int
    type: str
    description: str | None = None
    current: int
    target: int
    completed: bool


class MissionResponse(BaseModel):
    mission_id: str
    title: str
    description: str
    mission_type: str
    category: str
    difficulty: str
    reward_points: int
    reward_badges: list[str]
    special_reward: str | None = None
    bonus_multiplier: float
    is_recurring: bool
    window_start: datetime
    window_end: datetime
    requirements: list[RequirementProgress]
    status: str | None = None
    completion_percentage: int = 0
    rewards_claimed: bool = False


class MissionListResponse(BaseModel):
    missions: list[MissionResponse]


class MissionProgressResponse(BaseModel):
    active: list[MissionResponse]
    completed: list[MissionResponse]
    failed: list[MissionResponse]
    expired: list[MissionResponse]


class ProgressRequest(BaseModel):
    requirement_index: int = Field(..., ge=0)
    increment_by: int = Field(1, ge=1, le=1000)


class MissionClaimResponse(BaseModel):
    mission_id: str
    points_awarded: int
    total_points: int
    level: int
    leveled_up: bool
    badges_awarded: list[str]
    badges_failed: list[str]
    special_reward: str | None = None
