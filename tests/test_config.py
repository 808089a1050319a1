import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from fleet_booking.config import AppSettings, make_clock, to_wall_clock


class TestAppSettings(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = AppSettings.from_env({})
        self.assertEqual(settings, AppSettings(Path("data"), "Asia/Jakarta", "ID"))

    def test_env_overrides(self) -> None:
        settings = AppSettings.from_env(
            {
                "FLEET_BOOKING_DATA_DIR": "/srv/fleet",
                "FLEET_BOOKING_TIMEZONE": "UTC",
                "FLEET_BOOKING_HOLIDAY_COUNTRY": "KR",
            }
        )
        self.assertEqual(settings, AppSettings(Path("/srv/fleet"), "UTC", "KR"))


class TestMakeClock(unittest.TestCase):
    def test_returns_naive_wall_clock_in_zone(self) -> None:
        value = make_clock("Asia/Jakarta")()

        self.assertIsNone(value.tzinfo)
        expected = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(hours=7)
        self.assertLess(abs(value - expected), timedelta(minutes=1))

    def test_to_wall_clock_converts_offsets_and_keeps_naive(self) -> None:
        aware = datetime(2025, 1, 1, 2, 0, tzinfo=timezone.utc)
        self.assertEqual(to_wall_clock(aware, "Asia/Jakarta"), datetime(2025, 1, 1, 9, 0))
        self.assertEqual(to_wall_clock(datetime(2025, 1, 1, 9, 0)), datetime(2025, 1, 1, 9, 0))


if __name__ == "__main__":
    unittest.main()
