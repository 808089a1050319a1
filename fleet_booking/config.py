from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Mapping
from zoneinfo import ZoneInfo
import os

DEFAULT_POLL_INTERVAL_SECONDS = 900
DEFAULT_HOURS_BUFFER = 0
DEFAULT_MAX_RUNTIME_SECONDS = 0
DEFAULT_TIMEZONE = "Asia/Jakarta"
DEFAULT_HOLIDAY_COUNTRY = "ID"
DEFAULT_DATA_DIR = "data"

ENV_PREFIX = "FLEET_BOOKING_"

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class ReaperSettings:
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    hours_buffer: float = DEFAULT_HOURS_BUFFER
    max_runtime: float = DEFAULT_MAX_RUNTIME_SECONDS

    def __post_init__(self) -> None:
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be greater than zero")
        if self.hours_buffer < 0:
            raise ValueError("hours_buffer must not be negative")
        if self.max_runtime < 0:
            raise ValueError("max_runtime must not be negative")

    @property
    def buffer(self) -> timedelta:
        return timedelta(hours=self.hours_buffer)

    @staticmethod
    def from_env(environ: Mapping[str, str] | None = None) -> "ReaperSettings":
        env = os.environ if environ is None else environ
        return ReaperSettings(
            poll_interval=_read_number(env, "POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            hours_buffer=_read_number(env, "HOURS_BUFFER", DEFAULT_HOURS_BUFFER),
            max_runtime=_read_number(env, "MAX_RUNTIME", DEFAULT_MAX_RUNTIME_SECONDS),
        )


@dataclass(frozen=True)
class AppSettings:
    data_dir: Path = Path(DEFAULT_DATA_DIR)
    timezone: str = DEFAULT_TIMEZONE
    holiday_country: str = DEFAULT_HOLIDAY_COUNTRY

    @staticmethod
    def from_env(environ: Mapping[str, str] | None = None) -> "AppSettings":
        env = os.environ if environ is None else environ
        return AppSettings(
            data_dir=Path(env.get(ENV_PREFIX + "DATA_DIR", DEFAULT_DATA_DIR)),
            timezone=env.get(ENV_PREFIX + "TIMEZONE", DEFAULT_TIMEZONE),
            holiday_country=env.get(ENV_PREFIX + "HOLIDAY_COUNTRY", DEFAULT_HOLIDAY_COUNTRY),
        )


def make_clock(timezone: str = DEFAULT_TIMEZONE) -> Clock:
    """Return a clock producing naive wall-clock datetimes in ``timezone``.

    Bookings are stored as naive local times, so the zone is applied once
    here instead of through a process-wide default.
    """
    zone = ZoneInfo(timezone)

    def now() -> datetime:
        return datetime.now(zone).replace(tzinfo=None)

    return now


def to_wall_clock(value: datetime, timezone: str = DEFAULT_TIMEZONE) -> datetime:
    """Return ``value`` as a naive wall-clock datetime in ``timezone``.

    Naive values are taken to be wall-clock times already and pass through.
    """
    if value.tzinfo is None:
        return value
    return value.astimezone(ZoneInfo(timezone)).replace(tzinfo=None)


def _read_number(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(ENV_PREFIX + key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"{ENV_PREFIX + key} must be a number, got {raw!r}") from error
