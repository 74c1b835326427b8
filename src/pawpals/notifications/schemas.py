"""Pydantic request/response models for notification endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class NavigationTarget(BaseModel):
    route: str
    params: dict[str, Any] = {}


class NotificationResponse(BaseModel):
    id: int
    type: str
    title: str
    body: str
    data: dict[str, Any] = {}
    priority: str
    read: bool
    read_at: datetime | None = None
    created_at: datetime
    navigation: NavigationTarget


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    total: int
    unread_count: int
    page: int
    per_page: int


class UnreadCountResponse(BaseModel):
    unread_count: int


class MarkReadRequest(BaseModel):
    notification_ids: list[int] = Field(..., min_length=1, max_length=500)


class CountResponse(BaseModel):
    detail: str
    count: int


class NotificationSettingsResponse(BaseModel):
    push_enabled: bool
    channels: dict[str, bool]


class NotificationSettingsUpdate(BaseModel):
    push_enabled: bool | None = None
    channels: dict[str, bool] | None = None


class PushTokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    platform: str = Field(..., pattern="^(ios|android|web)$")
    device_name: str | None = Field(None, max_length=128)
    os_version: str | None = Field(None, max_length=32)
    app_version: str | None = Field(None, max_length=32)


class PushTokenDeleteRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class PushRegistrationResponse(BaseModel):
    token: str
    platform: str
    is_active: bool
    is_simulator: bool


class PushDevice(BaseModel):
    platform: str
    device_name: str | None = None
    app_version: str | None = None
    is_active: bool
    is_simulator: bool
    last_used_at: datetime


class PushStatusResponse(BaseModel):
    enabled: bool
    active_devices: int
    devices: list[PushDevice]


class PushStatisticsResponse(BaseModel):
    total_tokens: int
    active_tokens: int
    inactive_tokens: int
    tokens_by_platform: dict[str, int]
