"""Mission API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.auth.dependencies import get_current_user
from pawpals.database import get_session
from pawpals.db.models import MissionDefinition, User, UserMission
from pawpals.dependencies import get_engine
from pawpals.gamification import mission_service
from pawpals.gamification.engine import GamificationEngine
from pawpals.gamification.schemas import (
    MissionClaimResponse,
    MissionListResponse,
    MissionProgressResponse,
    MissionResponse,
    ProgressRequest,
    RequirementProgress,
)
from pawpals.gamification.time_utils import current_window, utcnow, window_end

router = APIRouter(prefix="/api/v1/missions", tags=["Missions"])

MISSION_TYPES = "^(daily|weekly|monthly|special)$"
MISSION_STATUSES = "^(active|completed|failed|expired)$"


def _mission_response(mission: MissionDefinition, user_mission: UserMission | None) -> MissionResponse:
    if user_mission is not None:
        start = user_mission.window_start
        progress = {p.requirement_index: p for p in user_mission.progress}
    else:
        start = current_window(mission.mission_type, mission.is_recurring, mission.starts_at, utcnow())
        progress = {}

    requirements = []
    for index, req in enumerate(mission.requirements):
        row = progress.get(index)
        requirements.append(
            RequirementProgress(
                index=index,
                type=req["type"],
                description=req.get("description"),
                current=row.current if row else 0,
                target=int(req["target"]),
                completed=row.completed if row else False,
            )
        )

    return MissionResponse(
        mission_id=mission.mission_id,
        title=mission.title,
        description=mission.description,
        mission_type=mission.mission_type,
        category=mission.category,
        difficulty=mission.difficulty,
        reward_points=mission_service.reward_points_for(mission),
        reward_badges=list(mission.reward_badges or []),
        special_reward=mission.special_reward,
        bonus_multiplier=mission.bonus_multiplier,
        is_recurring=mission.is_recurring,
        window_start=start,
        window_end=window_end(mission.mission_type, mission.is_recurring, start, mission.ends_at),
        requirements=requirements,
        status=user_mission.status if user_mission else None,
        completion_percentage=mission_service.completion_percentage(user_mission) if user_mission else 0,
        rewards_claimed=user_mission.rewards_claimed if user_mission else False,
    )


@router.get("", response_model=MissionListResponse)
async def list_available_missions(
    type: str | None = Query(None, pattern=MISSION_TYPES),  # noqa: A002
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Missions the user can work on right now."""
    available = await mission_service.get_available_missions(db, user.id, type)
    return MissionListResponse(missions=[_mission_response(m, um) for m, um in available])


@router.get("/my-progress", response_model=MissionProgressResponse)
async def my_mission_progress(
    status: str | None = Query(None, pattern=MISSION_STATUSES),
    type: str | None = Query(None, pattern=MISSION_TYPES),  # noqa: A002
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    grouped = await mission_service.get_user_mission_progress(db, user.id, status, type)
    return MissionProgressResponse(
        **{key: [_mission_response(um.mission, um) for um in items] for key, items in grouped.items()}
    )


@router.post("/{mission_id}/progress", response_model=MissionResponse)
async def update_mission_progress(
    mission_id: str,
    body: ProgressRequest,
    user: User = Depends(get_current_user),
    engine: GamificationEngine = Depends(get_engine),
):
    outcome = await engine.update_mission_progress(user.id, mission_id, body.requirement_index, body.increment_by)
    return _mission_response(outcome.user_mission.mission, outcome.user_mission)


@router.post("/{mission_id}/complete", response_model=MissionClaimResponse)
async def complete_mission(
    mission_id: str,
    user: User = Depends(get_current_user),
    engine: GamificationEngine = Depends(get_engine),
):
    """Claim a completed mission's rewards (once)."""
    outcome = await engine.complete_mission(user.id, mission_id)
    claim = outcome.claim
    return MissionClaimResponse(
        mission_id=claim.mission.mission_id,
        points_awarded=claim.points.amount,
        total_points=outcome.total_points,
        level=outcome.level,
        leveled_up=outcome.leveled_up,
        badges_awarded=claim.badges_awarded,
        badges_failed=claim.badges_failed,
        special_reward=claim.special_reward,
    )
