"""Shared FastAPI dependencies."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.database import get_session as _get_session
from pawpals.gamification.engine import GamificationEngine
from pawpals.notifications.delivery import DeliveryRouter, get_delivery_router

get_db = _get_session


def get_delivery() -> DeliveryRouter:
    """The API process delivery router (overridden in tests)."""
    return get_delivery_router()


def get_engine(
    db: AsyncSession = Depends(get_db),
    delivery: DeliveryRouter = Depends(get_delivery),
) -> GamificationEngine:
    """A gamification engine bound to the request's session."""
    return GamificationEngine(db, delivery)
