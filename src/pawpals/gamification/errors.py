"""Gamification error taxonomy.

Engine errors propagate synchronously to the caller and are mapped to HTTP
responses by the global error handler. ``ChannelDeliveryFailed`` is the one
exception: it is raised inside the delivery layer and never leaves it.
"""

from __future__ import annotations


class GamificationError(ValueError):
    """Base class for errors raised by the gamification engine."""

    status_code = 400
    code = "gamification_error"


class UserNotFound(GamificationError):
    status_code = 404
    code = "user_not_found"

    def __init__(self, user_id: int) -> None:
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class InvalidAmount(GamificationError):
    code = "invalid_amount"


class InvalidRequirementIndex(GamificationError):
    code = "invalid_requirement_index"

    def __init__(self, index: int, count: int) -> None:
        super().__init__(f"Requirement index {index} out of range (mission has {count} requirements)")
        self.index = index


class MissionNotFound(GamificationError):
    status_code = 404
    code = "mission_not_found"

    def __init__(self, mission_id: str) -> None:
        super().__init__(f"Mission {mission_id!r} not found")
        self.mission_id = mission_id


class MissionNotActive(GamificationError):
    code = "mission_not_active"


class MissionFull(GamificationError):
    status_code = 409
    code = "mission_full"


class MissionAlreadyCompleted(GamificationError):
    status_code = 409
    code = "mission_already_completed"


class MissionNotReady(GamificationError):
    code = "mission_not_ready"


class RewardsAlreadyClaimed(GamificationError):
    status_code = 409
    code = "rewards_already_claimed"


class BadgeNotFound(GamificationError):
    status_code = 404
    code = "badge_not_found"

    def __init__(self, slug: str) -> None:
        super().__init__(f"Badge {slug!r} not found")
        self.slug = slug


class ChannelDeliveryFailed(Exception):  # noqa: N818
    """A socket or push send failed. Logged and swallowed by the delivery router."""

    def __init__(self, channel: str, reason: str) -> None:
        super().__init__(f"{channel} delivery failed: {reason}")
        self.channel = channel
        self.reason = reason
