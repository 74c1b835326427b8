"""Notification type taxonomy shared by the composer, delivery and navigation."""

from __future__ import annotations

from enum import Enum


class NotificationType(str, Enum):
    DOG_CHECKIN = "dog_checkin"
    DOG_CHECKOUT = "dog_checkout"
    FRIEND_REQUEST = "friend_request"
    FRIEND_ACCEPTED = "friend_accepted"
    NEW_MESSAGE = "new_message"
    EVENT_REMINDER = "event_reminder"
    EVENT_REGISTRATION = "event_registration"
    EVENT_STATUS_UPDATE = "event_status_update"
    EVENT_CANCELLED = "event_cancelled"
    GARDEN_UPDATE = "garden_update"
    PERMISSION_REQUEST = "permission_request"
    NEWSLETTER_SUBSCRIPTION = "newsletter_subscription"
    NEWSLETTER_CONTENT = "newsletter_content"
    ACHIEVEMENT_EARNED = "achievement_earned"
    LEVEL_UP = "level_up"
    SYSTEM = "system"
    VISIT_REMINDER = "visit_reminder"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


VALID_TYPES = frozenset(t.value for t in NotificationType)
VALID_PRIORITIES = frozenset(p.value for p in Priority)

# Android notification channel per type; anything unlisted uses "default"
PUSH_CHANNELS: dict[str, str] = {
    NotificationType.DOG_CHECKIN.value: "visits",
    NotificationType.DOG_CHECKOUT.value: "visits",
    NotificationType.VISIT_REMINDER.value: "visits",
    NotificationType.EVENT_REMINDER.value: "events",
    NotificationType.EVENT_REGISTRATION.value: "events",
    NotificationType.EVENT_STATUS_UPDATE.value: "events",
    NotificationType.EVENT_CANCELLED.value: "events",
    NotificationType.FRIEND_REQUEST.value: "social",
    NotificationType.FRIEND_ACCEPTED.value: "social",
    NotificationType.NEW_MESSAGE.value: "social",
}

PUSH_CHANNEL_IDS = ("visits", "events", "social", "default")


def push_channel_for(type_: str) -> str:
    return PUSH_CHANNELS.get(type_, "default")
