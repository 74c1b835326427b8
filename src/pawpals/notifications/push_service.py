"""
Push delivery with provider abstraction, plus device token registration.

Supports the Expo push API (default) and a log-only provider for local
development. Provider is selected via configuration.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import httpx
import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.config import get_settings
from pawpals.db.models import PushRegistration
from pawpals.gamification.errors import ChannelDeliveryFailed
from pawpals.gamification.time_utils import utcnow

logger = structlog.get_logger()

VALID_PLATFORMS = frozenset({"ios", "android", "web"})

# Ticket errors that mean the token will never work again
INVALID_TOKEN_ERRORS = frozenset({"DeviceNotRegistered", "InvalidCredentials"})

STATUS_OK = "ok"
STATUS_INVALID_TOKEN = "invalid_token"
STATUS_ERROR = "error"
STATUS_SKIPPED = "skipped"


class InvalidPushToken(ValueError):
    """Token is not an Expo push token."""


def is_simulator_token(token: str) -> bool:
    return token.startswith("SimulatorToken[")


def is_expo_push_token(token: str) -> bool:
    return (
        (token.startswith("ExponentPushToken[") or token.startswith("ExpoPushToken["))
        and token.endswith("]")
    )


@dataclass
class PushMessage:
    to: str
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    channel_id: str = "default"
    priority: str = "default"
    sound: str | None = "default"

    def to_expo(self) -> dict[str, Any]:
        message: dict[str, Any] = {
            "to": self.to,
            "title": self.title,
            "body": self.body,
            "data": self.data,
            "channelId": self.channel_id,
            "priority": self.priority,
        }
        if self.sound:
            message["sound"] = self.sound
        return message


@dataclass
class PushResult:
    token: str
    status: str
    detail: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status == STATUS_OK


class BasePushProvider(ABC):
    """Abstract base class for push delivery providers."""

    @abstractmethod
    async def send(self, message: PushMessage) -> PushResult:
        """Send one message to one device.

        Returns a PushResult. Transport failures raise ChannelDeliveryFailed.
        """
        ...


class ExpoPushProvider(BasePushProvider):
    """Send push notifications via the Expo push HTTP API."""

    def __init__(
        self,
        url: str,
        access_token: str = "",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.access_token = access_token
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def send(self, message: PushMessage) -> PushResult:
        """Send via Expo and interpret the push ticket."""
        if not is_expo_push_token(message.to):
            return PushResult(token=message.to, status=STATUS_INVALID_TOKEN, detail="malformed token")

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(self.url, headers=self._headers(), json=message.to_expo())
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ChannelDeliveryFailed("push", str(exc)) from exc

        ticket = body.get("data", {})
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else {}

        if ticket.get("status") == "ok":
            logger.debug("push_sent", token=message.to[:24], ticket_id=ticket.get("id"))
            return PushResult(token=message.to, status=STATUS_OK, detail=ticket.get("id"))

        error = (ticket.get("details") or {}).get("error") or ticket.get("message") or "unknown"
        if error in INVALID_TOKEN_ERRORS:
            return PushResult(token=message.to, status=STATUS_INVALID_TOKEN, detail=error)
        return PushResult(token=message.to, status=STATUS_ERROR, detail=error)


class LogPushProvider(BasePushProvider):
    """Log-only provider for local development."""

    async def send(self, message: PushMessage) -> PushResult:
        logger.info("push_logged", to=message.to[:24], title=message.title, channel=message.channel_id)
        return PushResult(token=message.to, status=STATUS_OK)


def _create_provider() -> BasePushProvider:
    """Create push provider based on configuration."""
    settings = get_settings()
    provider_name = settings.push_provider.lower()

    if provider_name == "expo":
        return ExpoPushProvider(
            url=settings.expo_push_url,
            access_token=settings.expo_access_token,
            timeout=settings.push_timeout_seconds,
        )
    if provider_name == "log":
        return LogPushProvider()

    msg = f"Unknown push provider: {provider_name}"
    raise ValueError(msg)


_provider: BasePushProvider | None = None


def get_push_provider() -> BasePushProvider:
    """Get or create the push provider singleton."""
    global _provider  # noqa: PLW0603
    if _provider is None:
        _provider = _create_provider()
    return _provider


def reset_push_provider() -> None:
    """Reset the singleton (for testing)."""
    global _provider  # noqa: PLW0603
    _provider = None


# ---------------------------------------------------------------------------
# Token registration
# ---------------------------------------------------------------------------


async def register_push_token(
    db: AsyncSession,
    user_id: int,
    token: str,
    platform: str,
    device_name: str | None = None,
    os_version: str | None = None,
    app_version: str | None = None,
) -> PushRegistration:
    """Register a device token, or move an existing one to this user.

    Simulator tokens are stored (so the client sees a registration) but
    never sent to.
    """
    simulator = is_simulator_token(token)
    if not simulator and not is_expo_push_token(token):
        msg = "Invalid push token format"
        raise InvalidPushToken(msg)
    if platform not in VALID_PLATFORMS:
        msg = f"Invalid platform: {platform}"
        raise InvalidPushToken(msg)

    now = utcnow()
    result = await db.execute(select(PushRegistration).where(PushRegistration.token == token))
    registration = result.scalar_one_or_none()

    if registration is None:
        registration = PushRegistration(
            user_id=user_id,
            token=token,
            platform=platform,
            created_at=now,
        )
        db.add(registration)
    elif registration.user_id != user_id:
        logger.info("push_token_reassigned", from_user=registration.user_id, to_user=user_id)
        registration.user_id = user_id

    registration.platform = platform
    registration.device_name = device_name
    registration.os_version = os_version
    registration.app_version = app_version
    registration.is_simulator = simulator
    registration.is_active = True
    registration.last_used_at = now
    await db.flush()
    return registration


async def deactivate_push_token(db: AsyncSession, user_id: int, token: str) -> bool:
    """Deactivate the user's token (logout). Returns True if found."""
    result = await db.execute(
        update(PushRegistration)
        .where(PushRegistration.user_id == user_id, PushRegistration.token == token)
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    return result.rowcount > 0


async def get_active_registrations(db: AsyncSession, user_id: int) -> list[PushRegistration]:
    result = await db.execute(
        select(PushRegistration)
        .where(PushRegistration.user_id == user_id, PushRegistration.is_active.is_(True))
        .order_by(PushRegistration.id)
    )
    return list(result.scalars().all())


async def mark_tokens_invalid(db: AsyncSession, tokens: list[str]) -> int:
    if not tokens:
        return 0
    result = await db.execute(
        update(PushRegistration)
        .where(PushRegistration.token.in_(tokens))
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    return result.rowcount


async def touch_tokens(db: AsyncSession, tokens: list[str]) -> None:
    if not tokens:
        return
    await db.execute(
        update(PushRegistration)
        .where(PushRegistration.token.in_(tokens))
        .values(last_used_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.flush()


async def get_push_status(db: AsyncSession, user_id: int) -> dict[str, Any]:
    result = await db.execute(
        select(PushRegistration)
        .where(PushRegistration.user_id == user_id)
        .order_by(PushRegistration.last_used_at.desc())
    )
    registrations = list(result.scalars().all())
    active = [r for r in registrations if r.is_active]
    return {
        "enabled": bool(active),
        "active_devices": len(active),
        "devices": [
            {
                "platform": r.platform,
                "device_name": r.device_name,
                "app_version": r.app_version,
                "is_active": r.is_active,
                "is_simulator": r.is_simulator,
                "last_used_at": r.last_used_at,
            }
            for r in registrations
        ],
    }


async def cleanup_push_tokens(db: AsyncSession, retention_days: int, now: datetime | None = None) -> int:
    """Delete inactive tokens unused for longer than the retention window."""
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    result = await db.execute(
        delete(PushRegistration)
        .where(PushRegistration.is_active.is_(False), PushRegistration.last_used_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    logger.info("push_tokens_cleaned", deleted=result.rowcount, retention_days=retention_days)
    return result.rowcount


async def get_push_statistics(db: AsyncSession) -> dict[str, Any]:
    """Token counts across all users; platform breakdown covers active tokens only."""
    total = (await db.execute(select(func.count()).select_from(PushRegistration))).scalar_one()
    active = (
        await db.execute(
            select(func.count()).select_from(PushRegistration).where(PushRegistration.is_active.is_(True))
        )
    ).scalar_one()
    by_platform = await db.execute(
        select(PushRegistration.platform, func.count())
        .where(PushRegistration.is_active.is_(True))
        .group_by(PushRegistration.platform)
    )
    return {
        "total_tokens": total,
        "active_tokens": active,
        "inactive_tokens": total - active,
        "tokens_by_platform": {platform: count for platform, count in by_platform.all()},
    }
