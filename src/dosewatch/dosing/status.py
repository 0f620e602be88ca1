"""Dose status evaluation and missed-dose materialization.

:func:`evaluate` is pure.  :func:`collect_dose_statuses` joins resolved
occurrences with stored records and, once a dose passes its missed cutoff
with nothing recorded, inserts a synthetic ``missed`` record authored by
:data:`~dosewatch.dosing.models.SYSTEM_CAREGIVER_ID`.  The insert is keyed by
``missed:{regimen}:{animal}:{slot}`` so concurrent readers create one row.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from dosewatch.core.metrics import dose_metrics
from dosewatch.dosing import store
from dosewatch.dosing.errors import ValidationError
from dosewatch.dosing.events import AdministrationEventType, record_administration_event
from dosewatch.dosing.models import (
    SYSTEM_CAREGIVER_ID,
    AdministrationRecord,
    AnimalContext,
    DoseStatus,
    Regimen,
    Tolerance,
)
from dosewatch.dosing.windows import resolve_occurrences

logger = logging.getLogger(__name__)


def evaluate(
    scheduled_for: datetime | None,
    recorded_at: datetime | None,
    tolerance: Tolerance,
    *,
    now: datetime | None = None,
) -> DoseStatus:
    """Classify a dose.

    With a recording, lateness is measured from the slot: up to ``late`` is
    on time (early counts as on time), up to ``very_late`` is late, beyond is
    very late.  Without one, the dose is pending before its slot, due for the
    ``late`` window, overdue until the missed cutoff, then missed.
    """
    if scheduled_for is None:
        if recorded_at is None:
            raise ValidationError("A dose needs a scheduled time or a recorded time")
        return DoseStatus.PRN

    if recorded_at is not None:
        delta = recorded_at - scheduled_for
        if delta <= tolerance.late:
            return DoseStatus.ON_TIME
        if delta <= tolerance.very_late:
            return DoseStatus.LATE
        return DoseStatus.VERY_LATE

    current = now if now is not None else datetime.now(UTC)
    if current < scheduled_for:
        return DoseStatus.PENDING
    elapsed = current - scheduled_for
    if elapsed < tolerance.late:
        return DoseStatus.DUE
    if elapsed < tolerance.missed_cutoff:
        return DoseStatus.OVERDUE
    return DoseStatus.MISSED


def missed_idempotency_key(
    regimen_id: uuid.UUID, animal_id: uuid.UUID, scheduled_for: datetime
) -> str:
    return f"missed:{regimen_id}:{animal_id}:{scheduled_for.astimezone(UTC).isoformat()}"


@dataclass
class DoseStatusEntry:
    """A scheduled dose (or PRN administration) with its current status."""

    regimen_id: uuid.UUID
    animal_id: uuid.UUID
    scheduled_for: datetime | None
    status: DoseStatus
    administration_id: uuid.UUID | None = None
    recorded_at: datetime | None = None
    cosign_pending: bool = False
    cosign_missing: bool = False

    @property
    def sort_key(self) -> datetime:
        return self.scheduled_for or self.recorded_at or datetime.min.replace(tzinfo=UTC)

    def to_dict(self) -> dict[str, Any]:
        return {
            "regimen_id": str(self.regimen_id),
            "animal_id": str(self.animal_id),
            "scheduled_for": self.scheduled_for.isoformat() if self.scheduled_for else None,
            "status": self.status.value,
            "administration_id": str(self.administration_id) if self.administration_id else None,
            "recorded_at": self.recorded_at.isoformat() if self.recorded_at else None,
            "cosign_pending": self.cosign_pending,
            "cosign_missing": self.cosign_missing,
        }

    @classmethod
    def from_record(cls, record: AdministrationRecord) -> DoseStatusEntry:
        return cls(
            regimen_id=record.regimen_id,
            animal_id=record.animal_id,
            scheduled_for=record.scheduled_for,
            status=record.status,
            administration_id=record.id,
            recorded_at=record.recorded_at,
            cosign_pending=record.cosign_pending,
            cosign_missing=record.cosign_missing,
        )


async def materialize_missed(
    pool: Any,
    regimen: Regimen,
    animal: AnimalContext,
    scheduled_for: datetime,
    tolerance: Tolerance,
) -> AdministrationRecord | None:
    """Insert the synthetic missed record for a slot; None if one already exists."""
    key = missed_idempotency_key(regimen.id, animal.id, scheduled_for)
    async with pool.acquire() as conn, conn.transaction():
        record = await store.insert_administration(
            conn,
            {
                "regimen_id": regimen.id,
                "animal_id": animal.id,
                "household_id": animal.household_id,
                "caregiver_id": SYSTEM_CAREGIVER_ID,
                "scheduled_for": scheduled_for,
                "recorded_at": scheduled_for + tolerance.missed_cutoff,
                "status": DoseStatus.MISSED,
                "idempotency_key": key,
            },
        )
        if record is None:
            return None
        await record_administration_event(
            conn,
            AdministrationEventType.MISSED_MATERIALIZED,
            administration_id=record.id,
            actor=SYSTEM_CAREGIVER_ID,
            metadata={"scheduled_for": scheduled_for.isoformat()},
            occurred_at=record.recorded_at,
        )
    logger.debug(
        "Materialized missed dose regimen=%s animal=%s slot=%s",
        regimen.id,
        animal.id,
        scheduled_for.isoformat(),
    )
    return record


async def collect_dose_statuses(
    pool: Any,
    animal_ids: list[uuid.UUID],
    range_start: datetime,
    range_end: datetime,
    *,
    defaults: Tolerance,
    now: datetime | None = None,
    materialize: bool = True,
) -> tuple[list[DoseStatusEntry], int]:
    """Statuses for every dose of *animal_ids* in range.

    Returns the entries sorted by time, and the number of missed records
    materialized by this call.
    """
    now = now if now is not None else datetime.now(UTC)
    if not animal_ids:
        return [], 0

    animals = {a.id: a for a in await store.fetch_animals(pool, animal_ids)}
    regimens = await store.fetch_regimens_for_animals(pool, animal_ids)
    records = await store.fetch_administrations(pool, animal_ids, range_start, range_end)

    by_slot: dict[tuple[uuid.UUID, uuid.UUID, datetime], AdministrationRecord] = {
        (r.regimen_id, r.animal_id, r.scheduled_for): r
        for r in records
        if r.scheduled_for is not None
    }
    consumed: set[uuid.UUID] = set()
    entries: list[DoseStatusEntry] = []
    materialized = 0

    for regimen in regimens:
        animal = animals.get(regimen.animal_id)
        if animal is None:
            continue
        tolerance = regimen.tolerance(defaults)
        for dose in resolve_occurrences(
            regimen, range_start, range_end, timezone=animal.timezone
        ):
            record = by_slot.get((regimen.id, animal.id, dose.scheduled_for))
            if record is None:
                status = evaluate(dose.scheduled_for, None, tolerance, now=now)
                if status == DoseStatus.MISSED and materialize:
                    record = await materialize_missed(
                        pool, regimen, animal, dose.scheduled_for, tolerance
                    )
                    if record is not None:
                        materialized += 1
                    else:
                        record = await store.fetch_live_for_slot(
                            pool, regimen.id, animal.id, dose.scheduled_for
                        )
                if record is None:
                    entries.append(
                        DoseStatusEntry(regimen.id, animal.id, dose.scheduled_for, status)
                    )
                    continue
            consumed.add(record.id)
            entries.append(DoseStatusEntry.from_record(record))

    # PRN administrations and group doses given from another animal's regimen
    for record in records:
        if record.id not in consumed:
            entries.append(DoseStatusEntry.from_record(record))

    entries.sort(key=lambda e: (e.sort_key, str(e.regimen_id), str(e.animal_id)))
    dose_metrics.missed_materialized(materialized)
    return entries, materialized
