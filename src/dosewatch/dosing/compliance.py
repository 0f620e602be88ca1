"""Adherence and streak summaries computed from dose statuses."""

from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any

from dosewatch.dosing.models import OPEN_STATUSES, DoseStatus
from dosewatch.dosing.windows import day_bounds, local_date


@dataclass(frozen=True)
class DoseObservation:
    scheduled_for: datetime | None
    status: DoseStatus
    recorded_at: datetime | None = None


@dataclass
class ComplianceSummary:
    scheduled: int = 0
    completed: int = 0
    on_time: int = 0
    late: int = 0
    very_late: int = 0
    missed: int = 0
    open: int = 0
    prn: int = 0
    adherence_pct: float = 0.0
    streak_days: int = 0
    per_animal: dict[str, ComplianceSummary] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "scheduled": self.scheduled,
            "completed": self.completed,
            "on_time": self.on_time,
            "late": self.late,
            "very_late": self.very_late,
            "missed": self.missed,
            "open": self.open,
            "prn": self.prn,
            "adherence_pct": self.adherence_pct,
            "streak_days": self.streak_days,
        }
        if self.per_animal:
            data["per_animal"] = {k: v.to_dict() for k, v in self.per_animal.items()}
        return data


def adherence(completed: int, scheduled: int) -> float:
    """Percentage of settled doses that were given; 0.0 when nothing was scheduled."""
    if scheduled == 0:
        return 0.0
    return round(completed / scheduled * 100, 1)


def aggregate(
    observations: Iterable[DoseObservation],
    range_start: datetime,
    range_end: datetime,
    *,
    timezone: str,
    now: datetime | None = None,
) -> ComplianceSummary:
    """Summarise doses scheduled in ``[range_start, range_end)``.

    ``scheduled`` counts settled doses only (given or missed); doses still
    pending, due or overdue are reported as ``open``.  PRN administrations
    given inside the range are counted separately and never affect adherence.

    The streak walks local days backward from the last fully elapsed day
    (capped at the range end): a day with a missed dose ends it, a day with
    no settled doses is passed over, any other day adds one.
    """
    now = now if now is not None else datetime.now(UTC)
    summary = ComplianceSummary()
    missed_days: set[date] = set()
    settled_days: set[date] = set()

    for obs in observations:
        if obs.status == DoseStatus.PRN or obs.scheduled_for is None:
            if obs.recorded_at is not None and range_start <= obs.recorded_at < range_end:
                summary.prn += 1
            continue
        if not range_start <= obs.scheduled_for < range_end:
            continue
        if obs.status in OPEN_STATUSES:
            summary.open += 1
            continue

        summary.scheduled += 1
        day = local_date(obs.scheduled_for, timezone)
        settled_days.add(day)
        if obs.status == DoseStatus.MISSED:
            summary.missed += 1
            missed_days.add(day)
        elif obs.status == DoseStatus.ON_TIME:
            summary.on_time += 1
        elif obs.status == DoseStatus.LATE:
            summary.late += 1
        elif obs.status == DoseStatus.VERY_LATE:
            summary.very_late += 1

    summary.completed = summary.on_time + summary.late + summary.very_late
    summary.adherence_pct = adherence(summary.completed, summary.scheduled)
    summary.streak_days = _streak(
        settled_days, missed_days, range_start, range_end, timezone=timezone, now=now
    )
    return summary


def _streak(
    settled_days: set[date],
    missed_days: set[date],
    range_start: datetime,
    range_end: datetime,
    *,
    timezone: str,
    now: datetime,
) -> int:
    first_day = local_date(range_start, timezone)
    day = local_date(min(now, range_end), timezone)
    # Only fully elapsed days count
    if day_bounds(day, timezone)[1] > min(now, range_end):
        day -= timedelta(days=1)

    streak = 0
    while day >= first_day:
        if day in missed_days:
            break
        if day in settled_days:
            streak += 1
        day -= timedelta(days=1)
    return streak


def aggregate_by_animal(
    observations: Iterable[tuple[uuid.UUID, DoseObservation]],
    range_start: datetime,
    range_end: datetime,
    *,
    timezone: str,
    now: datetime | None = None,
) -> ComplianceSummary:
    """Household summary with a per-animal breakdown."""
    grouped: dict[uuid.UUID, list[DoseObservation]] = defaultdict(list)
    everything: list[DoseObservation] = []
    for animal_id, obs in observations:
        grouped[animal_id].append(obs)
        everything.append(obs)

    total = aggregate(everything, range_start, range_end, timezone=timezone, now=now)
    total.per_animal = {
        str(animal_id): aggregate(obs, range_start, range_end, timezone=timezone, now=now)
        for animal_id, obs in grouped.items()
    }
    return total

