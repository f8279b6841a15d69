"""
Shift tables and timestamp -> shift classification.

A shift is a fixed wall-clock window of the support team's local day. The
same day is viewed at three granularities: six 4-hour shifts (coarse), the
same with the evening shift split in two (fine), and the merged handover
shifts used when cards are assigned. Every table is a strict partition of
the day, checked at import time, so a minute always lands in exactly one
shift of the chosen table.
"""
from __future__ import annotations

import enum
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import NamedTuple

from dateutil import tz as dateutil_tz

from trello_client import parse_dt

DEFAULT_TIMEZONE = "Asia/Ho_Chi_Minh"
MINUTES_PER_DAY = 24 * 60


class Shift(NamedTuple):
    label: str
    start: int  # minute of day, inclusive
    end: int  # minute of day, exclusive

    def contains(self, minute: int) -> bool:
        return self.start <= minute < self.end

    @property
    def display(self) -> str:
        return f"{self.label} ({_hhmm(self.start)} - {_hhmm(self.end % MINUTES_PER_DAY)})"


class Granularity(enum.Enum):
    COARSE = "coarse"
    FINE = "fine"
    HANDOVER = "handover"


def _hhmm(minute: int) -> str:
    return f"{minute // 60:02d}:{minute % 60:02d}"


def _hours(label: str, start_hour: int, end_hour: int) -> Shift:
    return Shift(label, start_hour * 60, end_hour * 60)


SHIFT_TABLES: dict[Granularity, tuple[Shift, ...]] = {
    Granularity.COARSE: (
        _hours("Ca 1", 0, 4),
        _hours("Ca 2", 4, 8),
        _hours("Ca 3", 8, 12),
        _hours("Ca 4", 12, 16),
        _hours("Ca 5", 16, 20),
        _hours("Ca 6", 20, 24),
    ),
    Granularity.FINE: (
        _hours("Ca 1", 0, 4),
        _hours("Ca 2", 4, 8),
        _hours("Ca 3", 8, 12),
        _hours("Ca 4", 12, 16),
        _hours("Ca 5.1", 16, 18),
        _hours("Ca 5.2", 18, 20),
        _hours("Ca 6", 20, 24),
    ),
    Granularity.HANDOVER: (
        _hours("Ca 1", 0, 4),
        _hours("Ca 2", 4, 8),
        _hours("Ca 3", 8, 12),
        _hours("Ca 4 + 5.1", 12, 18),
        _hours("Ca 5.2 + 6", 18, 24),
    ),
}


def _validate_table(granularity: Granularity, table: tuple[Shift, ...]) -> None:
    expected_start = 0
    labels = set()
    for shift in table:
        if shift.start != expected_start or shift.end <= shift.start:
            raise ValueError(f"{granularity.value} shift table is not contiguous at {shift.label}")
        if shift.label in labels:
            raise ValueError(f"{granularity.value} shift table repeats {shift.label}")
        labels.add(shift.label)
        expected_start = shift.end
    if expected_start != MINUTES_PER_DAY:
        raise ValueError(f"{granularity.value} shift table does not cover the whole day")


for _g, _table in SHIFT_TABLES.items():
    _validate_table(_g, _table)


def parse_granularity(value) -> Granularity:
    if isinstance(value, Granularity):
        return value
    try:
        return Granularity(str(value).lower())
    except ValueError:
        choices = ", ".join(g.value for g in Granularity)
        raise ValueError(f"Unknown shift granularity {value!r} (expected one of: {choices})") from None


def local_timezone(tz=None) -> tzinfo:
    """Resolve a tz name (or pass a tzinfo through); None means DEFAULT_TIMEZONE."""
    if isinstance(tz, tzinfo):
        return tz
    name = tz or DEFAULT_TIMEZONE
    resolved = dateutil_tz.gettz(name)
    if resolved is None:
        raise ValueError(f"Unknown timezone: {name}")
    return resolved


def shifts_for(granularity=Granularity.FINE) -> tuple[Shift, ...]:
    return SHIFT_TABLES[parse_granularity(granularity)]


def shift_labels(granularity=Granularity.FINE) -> list[str]:
    return [s.label for s in shifts_for(granularity)]


def get_shift(label: str, granularity=Granularity.FINE) -> Shift:
    for shift in shifts_for(granularity):
        if shift.label == label:
            return shift
    raise ValueError(f"Unknown shift {label!r} for {parse_granularity(granularity).value} granularity")


def classify_minute(minute: int, granularity=Granularity.FINE) -> Shift:
    if not 0 <= minute < MINUTES_PER_DAY:
        raise ValueError(f"Minute of day out of range: {minute}")
    for shift in shifts_for(granularity):
        if shift.contains(minute):
            return shift
    # unreachable: tables are validated as partitions at import
    raise AssertionError(f"No shift contains minute {minute}")


def classify(timestamp, granularity=Granularity.FINE, tz=None) -> Shift:
    """Shift of a timestamp, after converting it to the local timezone."""
    dt = parse_dt(timestamp)
    if dt is None:
        raise ValueError(f"Not a timestamp: {timestamp!r}")
    local = dt.astimezone(local_timezone(tz))
    return classify_minute(local.hour * 60 + local.minute, granularity)


def _local_midnight(day: date, tz) -> datetime:
    return datetime.combine(day, time(0), tzinfo=local_timezone(tz))


def day_window(day: date, tz=None) -> tuple[datetime, datetime]:
    """UTC [since, before) covering one local calendar day."""
    start = _local_midnight(day, tz)
    end = _local_midnight(day + timedelta(days=1), tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def shift_window(day: date, label: str, granularity=Granularity.FINE, tz=None) -> tuple[datetime, datetime]:
    """UTC [since, before) of one shift on one local calendar day."""
    shift = get_shift(label, granularity)
    midnight = _local_midnight(day, tz)
    since = midnight + timedelta(minutes=shift.start)
    before = midnight + timedelta(minutes=shift.end)
    return since.astimezone(timezone.utc), before.astimezone(timezone.utc)


def current_shift(granularity=Granularity.FINE, tz=None, now: datetime | None = None) -> Shift:
    now = now or datetime.now(timezone.utc)
    return classify(now, granularity, tz)
