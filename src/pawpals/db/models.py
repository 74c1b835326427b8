"""ORM models for the gamification engine and notification delivery.

Profile, catalog and ledger tables are owned by this service. The ``users``
table is a thin mirror of the account service and only carries what the
engine needs (existence, display name, admin flag).
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
    true,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pawpals.db.base import Base


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(Base):
    """Maps to the 'users' table."""

    __tablename__ = "users"
    __table_args__ = {"extend_existing": True}  # noqa: RUF012

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true())
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())

    gamification: Mapped[UserGamification | None] = relationship(
        "UserGamification", back_populates="user", uselist=False
    )

    @property
    def display_name(self) -> str:
        full = " ".join(p for p in (self.first_name, self.last_name) if p)
        return full or self.username


# ---------------------------------------------------------------------------
# Gamification: profile + ledger
# ---------------------------------------------------------------------------


class UserGamification(Base):
    """Denormalized gamification profile, single row per user, O(1) reads."""

    __tablename__ = "user_gamification"
    __table_args__ = {"extend_existing": True}  # noqa: RUF012

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    total_points: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    level_title: Mapped[str] = mapped_column(
        String(64), nullable=False, default="Rookie Walker", server_default="Rookie Walker"
    )
    badges_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    streak_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_activity_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Statistics the badge catalog is evaluated against
    total_visits: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    unique_parks: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    friends_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    ratings_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    missions_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    user: Mapped[User] = relationship("User", back_populates="gamification")


class PointsTransaction(Base):
    """Immutable points ledger entry with optional idempotency key."""

    __tablename__ = "points_transactions"
    __table_args__ = (
        Index("ix_points_transactions_user_created", "user_id", "created_at"),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    context: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String(256), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class GamificationEvent(Base):
    """Trigger events already applied, keyed by the event source's id."""

    __tablename__ = "gamification_events"
    __table_args__ = {"extend_existing": True}  # noqa: RUF012

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    event_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class UserParkVisit(Base):
    """Distinct parks a user has checked in at."""

    __tablename__ = "user_park_visits"
    __table_args__ = (
        UniqueConstraint("user_id", "garden_id", name="uq_user_park_visits_user_garden"),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    garden_id: Mapped[str] = mapped_column(String(64), nullable=False)
    visit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    first_visited_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_visited_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ParkVisit(Base):
    """One check-in, open until the matching checkout arrives."""

    __tablename__ = "park_visits"
    __table_args__ = (
        Index("ix_park_visits_open", "checked_out_at", "reminder_sent"),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    visit_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    garden_id: Mapped[str] = mapped_column(String(64), nullable=False)
    garden_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    checked_in_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    checked_out_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())


# ---------------------------------------------------------------------------
# Gamification: badges
# ---------------------------------------------------------------------------


class BadgeDefinition(Base):
    """Static badge catalog, seeded on startup."""

    __tablename__ = "badge_definitions"
    __table_args__ = {"extend_existing": True}  # noqa: RUF012

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    icon: Mapped[str | None] = mapped_column(String(16), nullable=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    rarity: Mapped[str] = mapped_column(String(16), nullable=False)
    requirement_type: Mapped[str] = mapped_column(String(32), nullable=False)
    requirement_target: Mapped[int] = mapped_column(Integer, nullable=False)
    points_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())


class UserBadge(Base):
    """Badges earned by users. UNIQUE(user_id, badge_id) prevents duplicates."""

    __tablename__ = "user_badges"
    __table_args__ = (
        UniqueConstraint("user_id", "badge_id", name="uq_user_badges_user_badge"),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    badge_id: Mapped[int] = mapped_column(Integer, ForeignKey("badge_definitions.id"), nullable=False)
    earned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    badge_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONB, nullable=False, default=dict)

    badge: Mapped[BadgeDefinition] = relationship("BadgeDefinition", lazy="joined")


# ---------------------------------------------------------------------------
# Gamification: missions
# ---------------------------------------------------------------------------


class MissionDefinition(Base):
    """Mission catalog entry with its requirements, rewards and window."""

    __tablename__ = "mission_definitions"
    __table_args__ = {"extend_existing": True}  # noqa: RUF012

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mission_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    mission_type: Mapped[str] = mapped_column(String(16), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    difficulty: Mapped[str] = mapped_column(String(16), nullable=False, default="easy", server_default="easy")
    # [{"type": "visit_unique_parks", "target": 3, "description": "..."}]
    requirements: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False, default=list)
    reward_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    reward_badges: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
    special_reward: Mapped[str | None] = mapped_column(String(128), nullable=True)
    bonus_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0, server_default="1")
    # [{"type": "level", "value": 3}]
    prerequisites: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False, default=list)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    max_participants: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())


class UserMission(Base):
    """A user's instance of a mission for one window."""

    __tablename__ = "user_missions"
    __table_args__ = (
        UniqueConstraint("user_id", "mission_def_id", "window_start", name="uq_user_missions_user_mission_window"),
        Index("ix_user_missions_user_status", "user_id", "status"),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    mission_def_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("mission_definitions.id", ondelete="CASCADE"), nullable=False
    )
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rewards_claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    mission: Mapped[MissionDefinition] = relationship("MissionDefinition", lazy="joined")
    progress: Mapped[list[UserMissionProgress]] = relationship(
        "UserMissionProgress",
        lazy="selectin",
        order_by="UserMissionProgress.requirement_index",
        cascade="all, delete-orphan",
    )


class UserMissionProgress(Base):
    """Progress counter for one requirement of a user mission."""

    __tablename__ = "user_mission_progress"
    __table_args__ = (
        UniqueConstraint("user_mission_id", "requirement_index", name="uq_user_mission_progress_requirement"),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_mission_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("user_missions.id", ondelete="CASCADE"), nullable=False
    )
    requirement_index: Mapped[int] = mapped_column(Integer, nullable=False)
    current: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    target: Mapped[int] = mapped_column(Integer, nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class Notification(Base):
    """Persisted in-app feed entries."""

    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "read"),
        Index("ix_notifications_user_created", "user_id", "created_at"),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    priority: Mapped[str] = mapped_column(String(8), nullable=False, default="medium", server_default="medium")
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PushRegistration(Base):
    """A device push token. Tokens move between users when re-registered."""

    __tablename__ = "push_registrations"
    __table_args__ = (
        Index("ix_push_registrations_user_active", "user_id", "is_active"),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token: Mapped[str] = mapped_column(String(256), unique=True, nullable=False)
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    device_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    os_version: Mapped[str | None] = mapped_column(String(32), nullable=True)
    app_version: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_simulator: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    last_used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class NotificationSettings(Base):
    """Per-user push preferences, keyed by push channel group."""

    __tablename__ = "notification_settings"
    __table_args__ = {"extend_existing": True}  # noqa: RUF012

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    push_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    channels: Mapped[dict[str, bool]] = mapped_column(JSONB, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
