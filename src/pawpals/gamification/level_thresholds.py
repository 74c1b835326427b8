"""Level thresholds and computation.

These values MUST match the mobile client's level table.
"""

from __future__ import annotations

LEVEL_THRESHOLDS: list[dict] = [
    {"level": 1, "title": "Rookie Walker", "icon": "\U0001f43e", "points_required": 0},
    {"level": 2, "title": "Park Explorer", "icon": "\U0001f333", "points_required": 200},
    {"level": 3, "title": "Social Pup", "icon": "\U0001f415", "points_required": 600},
    {"level": 4, "title": "Streak Master", "icon": "\U0001f525", "points_required": 1300},
    {"level": 5, "title": "Pack Leader", "icon": "\U0001f451", "points_required": 2400},
    {"level": 6, "title": "Park Veteran", "icon": "\U0001f3c5", "points_required": 4000},
    {"level": 7, "title": "Champion Walker", "icon": "\U0001f3c6", "points_required": 6300},
    {"level": 8, "title": "Elite Trainer", "icon": "\U0001f48e", "points_required": 9500},
    {"level": 9, "title": "Legendary Walker", "icon": "\u2b50", "points_required": 15000},
    {"level": 10, "title": "Grand Master", "icon": "\U0001f31f", "points_required": 25000},
]


def validate_level_thresholds(thresholds: list[dict] | None = None) -> None:
    """Raise RuntimeError unless the table is non-empty, starts at 0 and ascends.

    Called at startup: a broken level table is a configuration error.
    """
    table = LEVEL_THRESHOLDS if thresholds is None else thresholds
    if not table:
        msg = "Level threshold table is empty"
        raise RuntimeError(msg)
    if table[0]["points_required"] != 0:
        msg = "First level threshold must require 0 points"
        raise RuntimeError(msg)
    for prev, cur in zip(table, table[1:]):
        if cur["points_required"] <= prev["points_required"] or cur["level"] <= prev["level"]:
            msg = f"Level thresholds must be strictly ascending (level {cur['level']})"
            raise RuntimeError(msg)


def compute_level(total_points: int, thresholds: list[dict] | None = None) -> dict:
    """Compute level info from cumulative points.

    The level is the highest threshold whose requirement is <= total_points.
    """
    table = LEVEL_THRESHOLDS if thresholds is None else thresholds
    if not table:
        msg = "Level threshold table is empty"
        raise RuntimeError(msg)

    index = 0
    for i, entry in enumerate(table):
        if total_points >= entry["points_required"]:
            index = i
        else:
            break

    current = table[index]
    is_max = index == len(table) - 1
    next_level = current if is_max else table[index + 1]

    points_into_level = total_points - current["points_required"]
    points_for_level = next_level["points_required"] - current["points_required"]
    progress = 1.0 if is_max else points_into_level / points_for_level

    return {
        "level": current["level"],
        "title": current["title"],
        "icon": current["icon"],
        "points_for_current_level": current["points_required"],
        "points_for_next_level": None if is_max else next_level["points_required"],
        "points_into_level": points_into_level,
        "progress": round(min(max(progress, 0.0), 1.0), 4),
        "is_max_level": is_max,
        "next_title": None if is_max else next_level["title"],
    }
