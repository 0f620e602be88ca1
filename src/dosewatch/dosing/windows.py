"""Scheduled-dose resolution across timezones and DST transitions.

Regimens store wall-clock times (``HH:MM``) in the animal's timezone.  An
occurrence is resolved per local calendar date with ``fold=0``:

- a wall time skipped by a spring-forward gap keeps the pre-transition
  offset, so it lands one hour later on the clock (02:30 becomes 03:30);
- a wall time repeated by a fall-back overlap resolves to its first
  occurrence.

Either way every (local date, time) pair yields exactly one UTC instant, so
the output is a pure function of the regimen, range and timezone.
"""

from __future__ import annotations

import functools
import uuid
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dosewatch.dosing.errors import ValidationError
from dosewatch.dosing.models import Regimen, ScheduledDose

_SLOT_SEARCH_RADIUS = timedelta(days=1)
# How far ahead of its slot a dose may be given and still count for it.
DEFAULT_EARLY_WINDOW = timedelta(minutes=60)


@functools.lru_cache(maxsize=256)
def load_timezone(name: str) -> ZoneInfo:
    """Return the ZoneInfo for an IANA name, raising ValidationError if unknown."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(
            f"Unknown timezone: {name!r}", details={"timezone": name}
        ) from exc


def _require_aware(value: datetime, name: str) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError(f"{name} must be timezone-aware", details={name: value.isoformat()})


def local_date(instant: datetime, timezone: str) -> date:
    """Calendar date of *instant* in *timezone*."""
    _require_aware(instant, "instant")
    return instant.astimezone(load_timezone(timezone)).date()


def day_bounds(day: date, timezone: str) -> tuple[datetime, datetime]:
    """UTC ``[start, end)`` of a local calendar day (23 or 25 hours across DST)."""
    tz = load_timezone(timezone)
    start = datetime.combine(day, datetime.min.time(), tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), datetime.min.time(), tzinfo=tz)
    return start.astimezone(UTC), end.astimezone(UTC)


def resolve_occurrences(
    regimen: Regimen,
    range_start: datetime,
    range_end: datetime,
    *,
    timezone: str,
    animal_id: uuid.UUID | None = None,
) -> list[ScheduledDose]:
    """Return the regimen's scheduled doses inside ``[range_start, range_end)``.

    PRN regimens have no occurrences.  Dates outside the regimen's
    ``start_date``/``end_date`` and instants at or after ``discontinued_at``
    are excluded.  *animal_id* overrides the regimen's own animal for group
    dosing.
    """
    _require_aware(range_start, "range_start")
    _require_aware(range_end, "range_end")
    if regimen.is_prn or range_end <= range_start:
        return []
    if not regimen.active and regimen.discontinued_at is None:
        return []

    tz = load_timezone(timezone)
    times = regimen.local_times()
    target = animal_id or regimen.animal_id

    day = range_start.astimezone(tz).date() - timedelta(days=1)
    last_day = range_end.astimezone(tz).date() + timedelta(days=1)
    if regimen.start_date is not None:
        day = max(day, regimen.start_date)
    if regimen.end_date is not None:
        last_day = min(last_day, regimen.end_date)

    instants: set[datetime] = set()
    while day <= last_day:
        for wall in times:
            instant = datetime.combine(day, wall, tzinfo=tz).astimezone(UTC)
            if not range_start <= instant < range_end:
                continue
            if regimen.discontinued_at is not None and instant >= regimen.discontinued_at:
                continue
            instants.add(instant)
        day += timedelta(days=1)

    return [ScheduledDose(instant, regimen.id, target) for instant in sorted(instants)]


def nearest_occurrence(
    regimen: Regimen,
    instant: datetime,
    *,
    timezone: str,
    hint: datetime | None = None,
    early: timedelta = DEFAULT_EARLY_WINDOW,
) -> datetime | None:
    """Pick the scheduled slot an administration at *instant* fulfils.

    Candidates run from one day before *instant* to *early* after it; a
    slot further ahead is not due yet and is never claimed.  The closest
    candidate wins.  *hint* (the client's own timestamp) only breaks exact
    ties; after that the earlier slot wins.  Returns None for PRN regimens
    or when nothing is scheduled nearby.
    """
    candidates = resolve_occurrences(
        regimen,
        instant - _SLOT_SEARCH_RADIUS,
        instant + early + timedelta(microseconds=1),
        timezone=timezone,
    )
    if not candidates:
        return None

    def _rank(dose: ScheduledDose) -> tuple[timedelta, timedelta, datetime]:
        tie_break = abs(dose.scheduled_for - hint) if hint is not None else timedelta(0)
        return abs(dose.scheduled_for - instant), tie_break, dose.scheduled_for

    return min(candidates, key=_rank).scheduled_for
