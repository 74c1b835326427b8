"""Badge catalog and default missions, upserted on startup."""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from pawpals.db.models import BadgeDefinition, MissionDefinition
from pawpals.gamification.time_utils import day_start

logger = logging.getLogger(__name__)

BADGE_SEED_DATA: list[dict] = [
    # Visits
    {
        "slug": "first_visit",
        "name": "First Steps",
        "description": "Check in at a dog park for the first time",
        "icon": "\U0001f43e",
        "category": "visits",
        "rarity": "common",
        "requirement_type": "total_visits",
        "requirement_target": 1,
        "points_reward": 10,
        "sort_order": 1,
    },
    {
        "slug": "visit_10",
        "name": "Regular",
        "description": "Check in 10 times",
        "icon": "\U0001f333",
        "category": "visits",
        "rarity": "common",
        "requirement_type": "total_visits",
        "requirement_target": 10,
        "points_reward": 20,
        "sort_order": 2,
    },
    {
        "slug": "visit_50",
        "name": "Park Enthusiast",
        "description": "Check in 50 times",
        "icon": "\U0001f3de",
        "category": "visits",
        "rarity": "rare",
        "requirement_type": "total_visits",
        "requirement_target": 50,
        "points_reward": 50,
        "sort_order": 3,
    },
    {
        "slug": "visit_100",
        "name": "Park Legend",
        "description": "Check in 100 times",
        "icon": "\U0001f3c6",
        "category": "visits",
        "rarity": "epic",
        "requirement_type": "total_visits",
        "requirement_target": 100,
        "points_reward": 100,
        "sort_order": 4,
    },
    # Streaks
    {
        "slug": "streak_3",
        "name": "Warming Up",
        "description": "Visit a park 3 days in a row",
        "icon": "\U0001f525",
        "category": "streaks",
        "rarity": "common",
        "requirement_type": "current_streak",
        "requirement_target": 3,
        "points_reward": 15,
        "sort_order": 5,
    },
    {
        "slug": "streak_7",
        "name": "Week Walker",
        "description": "Visit a park 7 days in a row",
        "icon": "\U0001f4c5",
        "category": "streaks",
        "rarity": "rare",
        "requirement_type": "current_streak",
        "requirement_target": 7,
        "points_reward": 30,
        "sort_order": 6,
    },
    {
        "slug": "streak_30",
        "name": "Monthly Devotion",
        "description": "Visit a park 30 days in a row",
        "icon": "\U0001f4aa",
        "category": "streaks",
        "rarity": "epic",
        "requirement_type": "current_streak",
        "requirement_target": 30,
        "points_reward": 100,
        "sort_order": 7,
    },
    {
        "slug": "streak_100",
        "name": "Unstoppable",
        "description": "Visit a park 100 days in a row",
        "icon": "\U0001f48e",
        "category": "streaks",
        "rarity": "legendary",
        "requirement_type": "current_streak",
        "requirement_target": 100,
        "points_reward": 250,
        "sort_order": 8,
    },
    # Social
    {
        "slug": "social_1",
        "name": "New Friend",
        "description": "Make your first friend",
        "icon": "\U0001f91d",
        "category": "social",
        "rarity": "common",
        "requirement_type": "friends_count",
        "requirement_target": 1,
        "points_reward": 10,
        "sort_order": 9,
    },
    {
        "slug": "social_5",
        "name": "Friendly Pup",
        "description": "Make 5 friends",
        "icon": "\U0001f415",
        "category": "social",
        "rarity": "rare",
        "requirement_type": "friends_count",
        "requirement_target": 5,
        "points_reward": 30,
        "sort_order": 10,
    },
    {
        "slug": "social_20",
        "name": "Popular Pup",
        "description": "Make 20 friends",
        "icon": "\U0001f389",
        "category": "social",
        "rarity": "epic",
        "requirement_type": "friends_count",
        "requirement_target": 20,
        "points_reward": 75,
        "sort_order": 11,
    },
    # Ratings
    {
        "slug": "rating_1",
        "name": "First Impression",
        "description": "Rate a dog for the first time",
        "icon": "\u2b50",
        "category": "ratings",
        "rarity": "common",
        "requirement_type": "ratings_count",
        "requirement_target": 1,
        "points_reward": 5,
        "sort_order": 12,
    },
    {
        "slug": "rating_10",
        "name": "Dog Critic",
        "description": "Rate 10 dogs",
        "icon": "\U0001f31f",
        "category": "ratings",
        "rarity": "rare",
        "requirement_type": "ratings_count",
        "requirement_target": 10,
        "points_reward": 25,
        "sort_order": 13,
    },
    # Levels
    {
        "slug": "level_5",
        "name": "Pack Leader",
        "description": "Reach level 5",
        "icon": "\U0001f451",
        "category": "levels",
        "rarity": "rare",
        "requirement_type": "level",
        "requirement_target": 5,
        "points_reward": 50,
        "sort_order": 14,
    },
    {
        "slug": "level_10",
        "name": "Grand Master",
        "description": "Reach the maximum level",
        "icon": "\U0001f3c5",
        "category": "levels",
        "rarity": "legendary",
        "requirement_type": "level",
        "requirement_target": 10,
        "points_reward": 200,
        "sort_order": 15,
    },
    # Timing
    {
        "slug": "early_bird",
        "name": "Early Bird",
        "description": "Check in before 7 AM",
        "icon": "\U0001f305",
        "category": "timing",
        "rarity": "rare",
        "requirement_type": "visit_hour_before",
        "requirement_target": 7,
        "points_reward": 20,
        "sort_order": 16,
    },
    {
        "slug": "night_owl",
        "name": "Night Owl",
        "description": "Check in after 10 PM",
        "icon": "\U0001f989",
        "category": "timing",
        "rarity": "rare",
        "requirement_type": "visit_hour_from",
        "requirement_target": 22,
        "points_reward": 20,
        "sort_order": 17,
    },
    # Exploration
    {
        "slug": "park_hopper",
        "name": "Park Hopper",
        "description": "Visit 3 different parks",
        "icon": "\U0001f5fa",
        "category": "exploration",
        "rarity": "common",
        "requirement_type": "unique_parks",
        "requirement_target": 3,
        "points_reward": 15,
        "sort_order": 18,
    },
    {
        "slug": "explorer",
        "name": "Explorer",
        "description": "Visit 10 different parks",
        "icon": "\U0001f9ed",
        "category": "exploration",
        "rarity": "epic",
        "requirement_type": "unique_parks",
        "requirement_target": 10,
        "points_reward": 50,
        "sort_order": 19,
    },
    # Missions
    {
        "slug": "mission_1",
        "name": "On a Mission",
        "description": "Complete your first mission",
        "icon": "\U0001f3af",
        "category": "missions",
        "rarity": "common",
        "requirement_type": "missions_completed",
        "requirement_target": 1,
        "points_reward": 10,
        "sort_order": 20,
    },
    {
        "slug": "mission_10",
        "name": "Mission Master",
        "description": "Complete 10 missions",
        "icon": "\U0001f396",
        "category": "missions",
        "rarity": "epic",
        "requirement_type": "missions_completed",
        "requirement_target": 10,
        "points_reward": 75,
        "sort_order": 21,
    },
    # Mission rewards, never evaluated automatically
    {
        "slug": "daily_explorer",
        "name": "Daily Explorer",
        "description": "Visit 3 different parks in one day",
        "icon": "\U0001f9ed",
        "category": "rewards",
        "rarity": "rare",
        "requirement_type": "mission_reward",
        "requirement_target": 1,
        "points_reward": 0,
        "sort_order": 22,
    },
    {
        "slug": "social_butterfly",
        "name": "Social Butterfly",
        "description": "Rate 5 dogs in one week",
        "icon": "\U0001f98b",
        "category": "rewards",
        "rarity": "rare",
        "requirement_type": "mission_reward",
        "requirement_target": 1,
        "points_reward": 0,
        "sort_order": 23,
    },
    {
        "slug": "streak_master",
        "name": "Streak Master",
        "description": "Keep a 7-day streak within one week",
        "icon": "\U0001f525",
        "category": "rewards",
        "rarity": "epic",
        "requirement_type": "mission_reward",
        "requirement_target": 1,
        "points_reward": 0,
        "sort_order": 24,
    },
]

# Recurring windows are anchored on a Monday so weekly missions run Mon-Sun
MISSION_ANCHOR = date(2024, 1, 1)
MISSION_ENDS_AT = datetime(2100, 1, 1, tzinfo=timezone.utc)


def mission_seed_data() -> list[dict]:
    starts_at = day_start(MISSION_ANCHOR)
    return [
        {
            "mission_id": "daily_visit_3",
            "title": "Park Explorer",
            "description": "Visit 3 different dog parks today",
            "mission_type": "daily",
            "category": "exploration",
            "difficulty": "medium",
            "requirements": [
                {"type": "visit_unique_parks", "target": 3, "description": "Check in at 3 different parks"},
            ],
            "reward_points": 15,
            "reward_badges": ["daily_explorer"],
            "special_reward": None,
            "bonus_multiplier": 1.0,
            "prerequisites": [],
            "is_recurring": True,
            "starts_at": starts_at,
            "ends_at": MISSION_ENDS_AT,
            "max_participants": None,
        },
        {
            "mission_id": "weekly_social_5",
            "title": "Dog Judge",
            "description": "Rate 5 dogs this week",
            "mission_type": "weekly",
            "category": "social",
            "difficulty": "easy",
            "requirements": [
                {"type": "rate_dogs", "target": 5, "description": "Rate 5 dogs"},
            ],
            "reward_points": 25,
            "reward_badges": ["social_butterfly"],
            "special_reward": None,
            "bonus_multiplier": 1.0,
            "prerequisites": [],
            "is_recurring": True,
            "starts_at": starts_at,
            "ends_at": MISSION_ENDS_AT,
            "max_participants": None,
        },
        {
            "mission_id": "weekly_streak_7",
            "title": "Seven Day Stroll",
            "description": "Keep your streak going all week",
            "mission_type": "weekly",
            "category": "streaks",
            "difficulty": "hard",
            "requirements": [
                {"type": "maintain_streak", "target": 7, "description": "Reach a 7-day streak"},
            ],
            "reward_points": 50,
            "reward_badges": ["streak_master"],
            "special_reward": "Golden leash profile frame",
            "bonus_multiplier": 2.0,
            "prerequisites": [],
            "is_recurring": True,
            "starts_at": starts_at,
            "ends_at": MISSION_ENDS_AT,
            "max_participants": None,
        },
        {
            "mission_id": "weekly_friends_3",
            "title": "Pack Builder",
            "description": "Make 3 new friends this week",
            "mission_type": "weekly",
            "category": "social",
            "difficulty": "medium",
            "requirements": [
                {"type": "make_friends", "target": 3, "description": "Accept or send 3 friend requests"},
            ],
            "reward_points": 30,
            "reward_badges": [],
            "special_reward": None,
            "bonus_multiplier": 1.0,
            "prerequisites": [{"type": "level", "value": 2}],
            "is_recurring": True,
            "starts_at": starts_at,
            "ends_at": MISSION_ENDS_AT,
            "max_participants": None,
        },
    ]


def _insert_for(db: AsyncSession):
    return sqlite_insert if db.get_bind().dialect.name == "sqlite" else pg_insert


async def seed_badges(db: AsyncSession) -> int:
    """Upsert the badge catalog. Returns number of badges seeded."""
    insert = _insert_for(db)
    seeded = 0
    for badge_data in BADGE_SEED_DATA:
        stmt = insert(BadgeDefinition).values(**badge_data, is_active=True)
        stmt = stmt.on_conflict_do_update(
            index_elements=["slug"],
            set_={
                "name": stmt.excluded.name,
                "description": stmt.excluded.description,
                "icon": stmt.excluded.icon,
                "category": stmt.excluded.category,
                "rarity": stmt.excluded.rarity,
                "requirement_type": stmt.excluded.requirement_type,
                "requirement_target": stmt.excluded.requirement_target,
                "points_reward": stmt.excluded.points_reward,
                "sort_order": stmt.excluded.sort_order,
            },
        )
        await db.execute(stmt)
        seeded += 1
    return seeded


async def seed_missions(db: AsyncSession) -> int:
    """Upsert the default missions. Participant counters are left alone."""
    insert = _insert_for(db)
    seeded = 0
    for mission_data in mission_seed_data():
        stmt = insert(MissionDefinition).values(**mission_data, current_participants=0, is_active=True)
        stmt = stmt.on_conflict_do_update(
            index_elements=["mission_id"],
            set_={
                "title": stmt.excluded.title,
                "description": stmt.excluded.description,
                "mission_type": stmt.excluded.mission_type,
                "category": stmt.excluded.category,
                "difficulty": stmt.excluded.difficulty,
                "requirements": stmt.excluded.requirements,
                "reward_points": stmt.excluded.reward_points,
                "reward_badges": stmt.excluded.reward_badges,
                "special_reward": stmt.excluded.special_reward,
                "bonus_multiplier": stmt.excluded.bonus_multiplier,
                "prerequisites": stmt.excluded.prerequisites,
                "is_recurring": stmt.excluded.is_recurring,
                "starts_at": stmt.excluded.starts_at,
                "ends_at": stmt.excluded.ends_at,
                "max_participants": stmt.excluded.max_participants,
            },
        )
        await db.execute(stmt)
        seeded += 1
    return seeded


async def seed_catalog(db: AsyncSession) -> tuple[int, int]:
    """Seed badges and missions in one transaction."""
    badges = await seed_badges(db)
    missions = await seed_missions(db)
    await db.commit()
    logger.info("Seeded %d badge definitions and %d missions", badges, missions)
    return badges, missions
