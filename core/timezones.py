"""
Cadence-local wall time → UTC fire instants.

A cadence says "09:00 on day 2" in its own zone. To turn that into an
instant we take today's date in the zone, add the day offset, treat the
resulting wall time as if it were UTC, look at what that guess reads as in
the zone, and shift by the difference. A second pass settles guesses that
land on the other side of a DST switch. Wall times that do not exist
(the spring-forward gap) map forward, so 02:30 becomes 03:30.
"""
from __future__ import annotations

import random
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

logger = structlog.get_logger()

DEFAULT_TIMEZONE = "America/New_York"
SAME_DAY_RETRY = timedelta(minutes=5)
NEXT_DAY = timedelta(hours=24)

# Random slot window used when a step has no configured time
WORKDAY_START_HOUR = 9
WORKDAY_HOURS = 8


def get_zone(name: Optional[str]) -> ZoneInfo:
    """Resolve a zone name, falling back to the default zone for unknown names."""
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_timezone", timezone=name, fallback=DEFAULT_TIMEZONE)
        return ZoneInfo(DEFAULT_TIMEZONE)


def parse_hhmm(value: str) -> tuple[int, int]:
    hours, minutes = value.split(":")
    return int(hours), int(minutes)


def local_today(tz: str, now: datetime) -> date:
    return now.astimezone(get_zone(tz)).date()


def wall_time_to_utc(target: date, hhmm: str, tz: str) -> datetime:
    """UTC instant at which the clock in `tz` reads `hhmm` on `target`."""
    zone = get_zone(tz)
    hours, minutes = parse_hhmm(hhmm)
    wanted = datetime.combine(target, time(hours, minutes))

    guess = wanted.replace(tzinfo=timezone.utc)
    first = guess + (wanted - guess.astimezone(zone).replace(tzinfo=None))
    second = first + (wanted - first.astimezone(zone).replace(tzinfo=None))
    if second.astimezone(zone).replace(tzinfo=None) == wanted:
        return second
    # Wall time skipped by a spring-forward gap: move forward past the gap
    return max(first, second)


def compute_fire_time(hhmm: str, day_offset: int, tz: str, now: datetime) -> datetime:
    """`hhmm` local time, `day_offset` days after today in `tz`. No past correction."""
    target = local_today(tz, now) + timedelta(days=day_offset)
    return wall_time_to_utc(target, hhmm, tz)


def next_fire_time(hhmm: str, day_diff: int, tz: str, now: datetime) -> datetime:
    """
    Fire time for a step `day_diff` days after the one just processed.

    An instant already in the past becomes now + 5 min for a same-day
    step and moves one day later otherwise.
    """
    at = compute_fire_time(hhmm, day_diff, tz, now)
    if at <= now:
        at = now + SAME_DAY_RETRY if day_diff == 0 else at + NEXT_DAY
    return at


def fallback_fire_time(day_diff: int, tz: str, now: datetime,
                       same_day_delay_hours: float = 1.0,
                       rng: Optional[random.Random] = None) -> datetime:
    """
    Fire time for a step with no configured time of day.

    Same day: after the cadence's same-day delay. Later days: a random
    minute between 09:00 and 16:59 local on the target day, a day later
    if that has already passed.
    """
    if day_diff == 0:
        return now + timedelta(hours=same_day_delay_hours)

    rng = rng or random.Random()
    hhmm = f"{WORKDAY_START_HOUR + rng.randrange(WORKDAY_HOURS):02d}:{rng.randrange(60):02d}"
    at = compute_fire_time(hhmm, day_diff, tz, now)
    if at <= now:
        at += NEXT_DAY
    return at


def to_local(instant: datetime, tz: str) -> datetime:
    return instant.astimezone(get_zone(tz))
