"""Free-slot search over the busy periods of a calendar."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Iterable, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..integrations.google_calendar import BusyPeriod
from .models import TimeSlot

SLOT_STEP_MINUTES = 15
DEFAULT_WORKING_HOURS = ("09:00", "18:00")


def parse_clock(value: str) -> time:
    try:
        hour, minute = (int(part) for part in value.split(":"))
        return time(hour, minute)
    except ValueError as exc:
        raise ValueError(f"Invalid working hour '{value}'; expected HH:MM") from exc


def resolve_zone(time_zone: str) -> ZoneInfo:
    try:
        return ZoneInfo(time_zone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown time zone '{time_zone}'") from exc


def localize(value: datetime, zone: ZoneInfo) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=zone)
    return value.astimezone(zone)


def find_free_slots(
    busy: Iterable[BusyPeriod],
    *,
    duration_minutes: int,
    time_min: datetime,
    time_max: datetime,
    time_zone: str,
    working_hours: Sequence[str] = DEFAULT_WORKING_HOURS,
    step_minutes: int = SLOT_STEP_MINUTES,
) -> list[TimeSlot]:
    """Compute bookable slots inside ``[time_min, time_max]``.

    Every day of the window is walked from the start of working hours in
    ``step_minutes`` increments. A candidate is kept when it ends before
    working hours close, lies inside the window and overlaps no busy period.
    Naive datetimes are read in ``time_zone``.
    """

    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be positive")
    if step_minutes <= 0:
        raise ValueError("step_minutes must be positive")

    zone = resolve_zone(time_zone)
    opens_at, closes_at = (parse_clock(value) for value in working_hours)
    if closes_at <= opens_at:
        raise ValueError("Working hours must close after they open")

    window_start = localize(time_min, zone)
    window_end = localize(time_max, zone)
    if window_end <= window_start:
        return []

    periods = list(busy)
    duration = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=step_minutes)

    slots: list[TimeSlot] = []
    day: date = window_start.date()
    while day <= window_end.date():
        cursor = datetime.combine(day, opens_at, tzinfo=zone)
        day_end = datetime.combine(day, closes_at, tzinfo=zone)
        while cursor + duration <= day_end:
            slot_end = cursor + duration
            if (
                cursor >= window_start
                and slot_end <= window_end
                and not any(period.overlaps(cursor, slot_end) for period in periods)
            ):
                slots.append(TimeSlot(start=cursor, end=slot_end))
            cursor += step
        day += timedelta(days=1)
    return slots
