"""Standalone business logic shared by the REST API, the CLI and the sweeper.

All functions accept an asyncpg connection pool (or compatible object)
directly.  They do not authenticate callers; the caller is responsible for
ensuring the caregiver ids passed in belong to the authenticated user.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from dosewatch.core.telemetry import traced
from dosewatch.dosing import cosign, store
from dosewatch.dosing.compliance import (
    ComplianceSummary,
    DoseObservation,
    aggregate,
    aggregate_by_animal,
)
from dosewatch.dosing.errors import NotFoundError, ValidationError
from dosewatch.dosing.models import DEFAULT_TIMEZONE, AdministrationRecord, Tolerance
from dosewatch.dosing.recording import (
    BulkRecordRequest,
    BulkRecordResult,
    RecordingPolicy,
    RecordRequest,
    RecordResult,
    edit_administration,
    record,
    record_bulk,
    undo_administration,
)
from dosewatch.dosing.status import DoseStatusEntry, collect_dose_statuses

logger = logging.getLogger(__name__)

MAX_QUERY_RANGE = timedelta(days=366)


def _validate_range(range_start: datetime, range_end: datetime) -> None:
    for name, value in (("start", range_start), ("end", range_end)):
        if value.tzinfo is None:
            raise ValidationError(f"{name} must be timezone-aware", details={"field": name})
    if range_end <= range_start:
        raise ValidationError("end must be after start")
    if range_end - range_start > MAX_QUERY_RANGE:
        raise ValidationError(f"Query range may span at most {MAX_QUERY_RANGE.days} days")


async def record_administration(
    pool: Any,
    request: RecordRequest | BulkRecordRequest,
    *,
    policy: RecordingPolicy | None = None,
    now: datetime | None = None,
) -> RecordResult | BulkRecordResult:
    """Record a single administration, or a bulk one when given a BulkRecordRequest."""
    if isinstance(request, BulkRecordRequest):
        return await record_bulk(pool, request, policy=policy, now=now)
    return await record(pool, request, policy=policy, now=now)


async def confirm_cosign(
    pool: Any,
    administration_id: uuid.UUID,
    caregiver_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> AdministrationRecord:
    return await cosign.confirm(pool, administration_id, caregiver_id, now=now)


async def expire_cosign_requests(pool: Any, *, now: datetime | None = None) -> list[uuid.UUID]:
    return await cosign.expire_stale(pool, now=now)


@traced("dosewatch.dose_statuses")
async def get_dose_statuses(
    pool: Any,
    animal_ids: list[uuid.UUID],
    range_start: datetime,
    range_end: datetime,
    *,
    tolerance: Tolerance | None = None,
    now: datetime | None = None,
) -> list[DoseStatusEntry]:
    """Every dose of *animal_ids* in range with its status.

    Doses past their missed cutoff are materialized as missed records on the
    way through.
    """
    _validate_range(range_start, range_end)
    entries, _ = await collect_dose_statuses(
        pool,
        list(dict.fromkeys(animal_ids)),
        range_start,
        range_end,
        defaults=tolerance or Tolerance(),
        now=now,
    )
    return entries


@traced("dosewatch.compliance")
async def get_compliance_summary(
    pool: Any,
    *,
    range_start: datetime,
    range_end: datetime,
    animal_id: uuid.UUID | None = None,
    household_id: uuid.UUID | None = None,
    tolerance: Tolerance | None = None,
    now: datetime | None = None,
) -> ComplianceSummary:
    """Adherence for one animal, or for a household with a per-animal breakdown."""
    if (animal_id is None) == (household_id is None):
        raise ValidationError("Exactly one of animal_id or household_id is required")
    _validate_range(range_start, range_end)
    now = now if now is not None else datetime.now(UTC)

    if animal_id is not None:
        animal = await store.fetch_animal(pool, animal_id)
        if animal is None:
            raise NotFoundError(
                f"Animal not found: {animal_id}", details={"animal_id": str(animal_id)}
            )
        animal_ids = [animal.id]
        timezone = animal.timezone
    else:
        animals = await store.fetch_household_animals(pool, household_id)
        timezone = await store.fetch_household_timezone(pool, household_id)
        if timezone is None:
            raise NotFoundError(
                f"Household not found: {household_id}",
                details={"household_id": str(household_id)},
            )
        animal_ids = [a.id for a in animals]

    entries, _ = await collect_dose_statuses(
        pool,
        animal_ids,
        range_start,
        range_end,
        defaults=tolerance or Tolerance(),
        now=now,
    )
    if animal_id is not None:
        return aggregate(
            [DoseObservation(e.scheduled_for, e.status, e.recorded_at) for e in entries],
            range_start,
            range_end,
            timezone=timezone,
            now=now,
        )
    return aggregate_by_animal(
        [(e.animal_id, DoseObservation(e.scheduled_for, e.status, e.recorded_at)) for e in entries],
        range_start,
        range_end,
        timezone=timezone or DEFAULT_TIMEZONE,
        now=now,
    )


@dataclass
class SweepResult:
    expired_cosigns: int
    materialized_missed: int

    def to_dict(self) -> dict[str, int]:
        return {
            "expired_cosigns": self.expired_cosigns,
            "materialized_missed": self.materialized_missed,
        }


@traced("dosewatch.sweep")
async def sweep(
    pool: Any,
    *,
    tolerance: Tolerance | None = None,
    lookback: timedelta = timedelta(hours=48),
    now: datetime | None = None,
) -> SweepResult:
    """Persist co-sign expiries and materialize missed doses over *lookback*."""
    now = now if now is not None else datetime.now(UTC)
    expired = await cosign.expire_stale(pool, now=now)
    animal_ids = await store.fetch_scheduled_animal_ids(pool)
    _, materialized = await collect_dose_statuses(
        pool,
        animal_ids,
        now - lookback,
        now,
        defaults=tolerance or Tolerance(),
        now=now,
    )
    return SweepResult(expired_cosigns=len(expired), materialized_missed=materialized)


__all__ = [
    "BulkRecordRequest",
    "BulkRecordResult",
    "RecordRequest",
    "RecordResult",
    "SweepResult",
    "confirm_cosign",
    "edit_administration",
    "expire_cosign_requests",
    "get_compliance_summary",
    "get_dose_statuses",
    "record_administration",
    "sweep",
    "undo_administration",
]
