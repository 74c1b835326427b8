"""Per-user mutual exclusion for gamification read-modify-write sequences.

Two layers:
- an in-process ``asyncio.Lock`` per user, so concurrent triggers for the same
  user within one worker run one after another;
- a ``SELECT ... FOR UPDATE`` on the user's profile row, which serializes
  writers across processes on PostgreSQL (a no-op on SQLite).

Different users never contend.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.db.models import UserGamification

_locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()


def get_user_lock(user_id: int) -> asyncio.Lock:
    """Return the lock for ``user_id``, creating it on first use."""
    lock = _locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _locks[user_id] = lock
    return lock


@asynccontextmanager
async def user_lock(user_id: int) -> AsyncIterator[None]:
    """Hold the in-process lock for ``user_id``."""
    lock = get_user_lock(user_id)
    async with lock:
        yield


async def lock_profile_row(db: AsyncSession, user_id: int) -> UserGamification | None:
    """Row-lock the user's profile for the rest of the transaction."""
    result = await db.execute(
        select(UserGamification)
        .where(UserGamification.user_id == user_id)
        .with_for_update()
    )
    return result.scalar_one_or_none()
