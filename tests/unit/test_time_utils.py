"""Calendar-day and mission window helpers."""

from datetime import date, datetime, timedelta, timezone

from pawpals.gamification.time_utils import activity_day, current_window, day_start, ensure_aware, local_hour, window_end

UTC = timezone.utc
START = datetime(2024, 1, 1, tzinfo=UTC)
END = datetime(2100, 1, 1, tzinfo=UTC)


class TestActivityDay:
    def test_utc_day(self):
        assert activity_day(datetime(2025, 3, 10, 23, 30, tzinfo=UTC), "UTC") == date(2025, 3, 10)

    def test_configured_timezone_shifts_the_day(self):
        # 23:30 UTC is already the next morning in Tokyo
        assert activity_day(datetime(2025, 3, 10, 23, 30, tzinfo=UTC), "Asia/Tokyo") == date(2025, 3, 11)

    def test_naive_datetimes_are_utc(self):
        assert ensure_aware(datetime(2025, 1, 1, 12)).tzinfo is UTC
        assert activity_day(datetime(2025, 1, 1, 12), "UTC") == date(2025, 1, 1)

    def test_day_start_in_timezone(self):
        assert day_start(date(2025, 6, 1), "UTC") == datetime(2025, 6, 1, tzinfo=UTC)
        assert day_start(date(2025, 6, 1), "Europe/Berlin") == datetime(2025, 5, 31, 22, tzinfo=UTC)

    def test_local_hour(self):
        assert local_hour(datetime(2025, 6, 1, 5, 15, tzinfo=UTC), "UTC") == 5
        assert local_hour(datetime(2025, 6, 1, 5, 15, tzinfo=UTC), "Europe/Berlin") == 7


class TestMissionWindows:
    def test_daily_window(self):
        now = datetime(2025, 6, 3, 15, 0, tzinfo=UTC)
        start = current_window("daily", True, START, now)
        assert start == datetime(2025, 6, 3, tzinfo=UTC)
        assert window_end("daily", True, start, END) == datetime(2025, 6, 4, tzinfo=UTC)

    def test_weekly_window_starts_on_anchor_weekday(self):
        now = datetime(2025, 6, 5, 9, 0, tzinfo=UTC)  # a Thursday
        start = current_window("weekly", True, START, now)
        assert start.weekday() == START.weekday()
        assert start <= now < start + timedelta(days=7)

    def test_window_boundary_belongs_to_new_window(self):
        boundary = datetime(2025, 6, 3, tzinfo=UTC)
        assert current_window("daily", True, START, boundary) == boundary

    def test_non_recurring_single_window(self):
        ends = datetime(2025, 7, 1, tzinfo=UTC)
        start = current_window("special", False, START, datetime(2025, 6, 3, tzinfo=UTC))
        assert start == START
        assert window_end("special", False, start, ends) == ends

    def test_window_capped_by_mission_end(self):
        ends = datetime(2025, 6, 3, 12, tzinfo=UTC)
        start = datetime(2025, 6, 3, tzinfo=UTC)
        assert window_end("daily", True, start, ends) == ends

    def test_before_start(self):
        assert current_window("daily", True, START, START - timedelta(days=3)) == START
