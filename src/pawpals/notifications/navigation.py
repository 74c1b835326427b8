"""Deep-link resolution for notifications.

Each notification type maps to a client route, static params and a closure
that lifts identifiers out of the notification payload. The registry is
checked against the type taxonomy at startup, so a new type without a rule
fails fast instead of silently landing on the home screen.

Payload shape: ``{type, targetId?, chatId?, gardenId?, eventId?,
requesterId?, requestType?, visitId?, params?}``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pawpals.notifications.types import NotificationType

Extractor = Callable[[dict[str, Any]], dict[str, Any]]

DEFAULT_ROUTE = "/(tabs)/home"


@dataclass(frozen=True)
class NavigationRule:
    route: str
    params: dict[str, Any] = field(default_factory=dict)
    extract: Extractor | None = None


def _chat(payload: dict[str, Any]) -> dict[str, Any]:
    return {"chatId": payload.get("chatId") or payload.get("targetId")}


def _event(payload: dict[str, Any]) -> dict[str, Any]:
    return {"eventId": payload.get("eventId") or payload.get("targetId")}


def _requester(payload: dict[str, Any]) -> dict[str, Any]:
    return {"userId": payload.get("requesterId") or payload.get("targetId")}


def _friend(payload: dict[str, Any]) -> dict[str, Any]:
    return {"userId": payload.get("targetId")}


def _visit(payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "visitId": payload.get("visitId") or payload.get("targetId"),
        "gardenId": payload.get("gardenId"),
    }


def _garden(payload: dict[str, Any]) -> dict[str, Any]:
    return {"gardenId": payload.get("gardenId") or payload.get("targetId")}


def _permission(payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "requesterId": payload.get("requesterId"),
        "requestType": payload.get("requestType"),
    }


def _generic(payload: dict[str, Any]) -> dict[str, Any]:
    return {"id": payload.get("targetId")}


T = NotificationType

NAVIGATION_RULES: dict[str, NavigationRule] = {
    T.DOG_CHECKIN.value: NavigationRule("/(tabs)/parks", {"showActiveVisit": True}, _visit),
    T.DOG_CHECKOUT.value: NavigationRule("/(tabs)/home", {"showSummary": True}, _visit),
    T.FRIEND_REQUEST.value: NavigationRule("/(tabs)/social", {"tab": "requests"}, _requester),
    T.FRIEND_ACCEPTED.value: NavigationRule("/(tabs)/social", {"tab": "friends"}, _friend),
    T.NEW_MESSAGE.value: NavigationRule("/chat", {}, _chat),
    T.EVENT_REMINDER.value: NavigationRule("/(tabs)/events", {}, _event),
    T.EVENT_REGISTRATION.value: NavigationRule("/(tabs)/events", {"tab": "manage"}, _event),
    T.EVENT_STATUS_UPDATE.value: NavigationRule("/(tabs)/events", {}, _event),
    T.EVENT_CANCELLED.value: NavigationRule("/(tabs)/events", {"tab": "cancelled"}, _event),
    T.GARDEN_UPDATE.value: NavigationRule("/(tabs)/parks", {}, _garden),
    T.PERMISSION_REQUEST.value: NavigationRule(
        "/(tabs)/profile", {"tab": "admin", "section": "requests"}, _permission
    ),
    T.NEWSLETTER_SUBSCRIPTION.value: NavigationRule("/(tabs)/parks", {}, _garden),
    T.NEWSLETTER_CONTENT.value: NavigationRule("/(tabs)/parks", {}, _garden),
    T.ACHIEVEMENT_EARNED.value: NavigationRule("/(tabs)/profile", {"tab": "achievements"}, _generic),
    T.LEVEL_UP.value: NavigationRule("/(tabs)/profile", {"showLevelUp": True}, _generic),
    T.SYSTEM.value: NavigationRule("/(tabs)/home", {"showSystem": True}, _generic),
    T.VISIT_REMINDER.value: NavigationRule("/(tabs)/parks", {"showReminder": True}, _visit),
}


def validate_navigation_registry(rules: dict[str, NavigationRule] | None = None) -> None:
    """Raise RuntimeError if any notification type lacks a navigation rule."""
    rules = NAVIGATION_RULES if rules is None else rules
    missing = sorted(t.value for t in NotificationType if t.value not in rules)
    if missing:
        msg = f"Notification types without a navigation rule: {', '.join(missing)}"
        raise RuntimeError(msg)


def resolve(notification_type: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    """Resolve a notification to ``{"route": ..., "params": {...}}``.

    Unknown types go to the home route. Explicit ``payload["params"]`` win
    over static and extracted params. Empty values are dropped.
    """
    payload = payload or {}
    rule = NAVIGATION_RULES.get(notification_type)
    if rule is None:
        return {"route": DEFAULT_ROUTE, "params": {}}

    params: dict[str, Any] = dict(rule.params)
    if rule.extract is not None:
        params.update(rule.extract(payload))
    extra = payload.get("params")
    if isinstance(extra, dict):
        params.update(extra)

    return {
        "route": rule.route,
        "params": {k: v for k, v in params.items() if v is not None and v != ""},
    }
