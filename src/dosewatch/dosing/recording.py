"""Idempotent administration recording, single and bulk.

A recording is identified by its client-generated idempotency key.  The
``administrations`` table holds a unique index on the key and a partial
unique index on the live scheduled slot, and inserts run as
``INSERT ... ON CONFLICT DO NOTHING``.  Whatever already occupies the key or
the slot is handed back as a replay; callers never see a duplicate row or a
conflict error.

``recorded_at`` is the server-received instant.  The client's own clock is
kept as ``client_recorded_at`` and used only to break ties when choosing the
scheduled slot.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from opentelemetry import trace

from dosewatch.core.metrics import dose_metrics
from dosewatch.dosing import store
from dosewatch.dosing.cosign import (
    CoSignSuggestion,
    create_cosign_request,
    implicit_cosign_suggestion,
)
from dosewatch.dosing.errors import (
    ConflictError,
    DosingError,
    NotFoundError,
    RegimenDiscontinuedError,
    ValidationError,
)
from dosewatch.dosing.events import AdministrationEventType, record_administration_event
from dosewatch.dosing.inventory import OverrideFlags, check_inventory_source, decrement_units
from dosewatch.dosing.models import (
    AdministrationRecord,
    AnimalContext,
    CoSignRequest,
    DoseStatus,
    Regimen,
    Tolerance,
)
from dosewatch.dosing.status import evaluate
from dosewatch.dosing.windows import local_date, nearest_occurrence

logger = logging.getLogger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 200
MAX_NOTES_LENGTH = 2000


@dataclass(frozen=True)
class RecordingPolicy:
    """Thresholds and windows applied while recording."""

    tolerance: Tolerance = field(default_factory=Tolerance)
    cosign_window: timedelta = timedelta(minutes=30)
    implicit_cosign_window: timedelta = timedelta(minutes=30)

    @classmethod
    def from_config(cls, config: Any) -> RecordingPolicy:
        """Build from a :class:`dosewatch.config.DosewatchConfig`."""
        return cls(
            tolerance=Tolerance.from_config(config.tolerance),
            cosign_window=timedelta(minutes=config.cosign.window_minutes),
            implicit_cosign_window=timedelta(minutes=config.cosign.implicit_window_minutes),
        )


@dataclass
class RecordRequest:
    regimen_id: uuid.UUID
    animal_id: uuid.UUID
    caregiver_id: uuid.UUID
    idempotency_key: str
    household_id: uuid.UUID | None = None
    client_recorded_at: datetime | None = None
    inventory_source_id: uuid.UUID | None = None
    override: OverrideFlags = field(default_factory=OverrideFlags)
    notes: str | None = None
    skipped: bool = False


@dataclass
class BulkRecordRequest:
    """One regimen given to several animals at once (group dosing)."""

    regimen_id: uuid.UUID
    animal_ids: list[uuid.UUID]
    caregiver_id: uuid.UUID
    idempotency_key: str
    household_id: uuid.UUID | None = None
    client_recorded_at: datetime | None = None
    inventory_source_id: uuid.UUID | None = None
    override: OverrideFlags = field(default_factory=OverrideFlags)
    notes: str | None = None

    def for_animal(self, animal_id: uuid.UUID) -> RecordRequest:
        """The per-animal request, keyed ``{key}-{animal_id}``."""
        return RecordRequest(
            regimen_id=self.regimen_id,
            animal_id=animal_id,
            caregiver_id=self.caregiver_id,
            idempotency_key=f"{self.idempotency_key}-{animal_id}",
            household_id=self.household_id,
            client_recorded_at=self.client_recorded_at,
            inventory_source_id=self.inventory_source_id,
            override=self.override,
            notes=self.notes,
        )


@dataclass
class RecordResult:
    record: AdministrationRecord
    replayed: bool = False
    cosign_request: CoSignRequest | None = None
    suggestion: CoSignSuggestion | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "record": self.record.to_dict(),
            "replayed": self.replayed,
            "cosign_request": self.cosign_request.to_dict() if self.cosign_request else None,
            "suggestion": self.suggestion.to_dict() if self.suggestion else None,
        }


@dataclass(frozen=True)
class PartialBulkFailure:
    """Why one animal of a bulk recording was not recorded."""

    animal_id: uuid.UUID
    code: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"animal_id": str(self.animal_id), "code": self.code, "reason": self.reason}


@dataclass
class BulkRecordResult:
    successful: list[RecordResult] = field(default_factory=list)
    failed: list[PartialBulkFailure] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        return {
            "total": len(self.successful) + len(self.failed),
            "successful": len(self.successful),
            "failed": len(self.failed),
        }

    @property
    def outcome(self) -> str:
        """``succeeded``, ``partial`` or ``failed``."""
        if not self.failed:
            return "succeeded"
        if not self.successful:
            return "failed"
        return "partial"

    def to_dict(self) -> dict[str, Any]:
        return {
            "successful": [r.to_dict() for r in self.successful],
            "failed": [f.to_dict() for f in self.failed],
            "summary": self.summary,
            "outcome": self.outcome,
        }


def _validate_request(request: RecordRequest) -> None:
    key = request.idempotency_key
    if not isinstance(key, str) or not key.strip():
        raise ValidationError("idempotency_key must be a non-empty string")
    if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValidationError(
            f"idempotency_key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters"
        )
    for name in ("regimen_id", "animal_id", "caregiver_id"):
        if not isinstance(getattr(request, name), uuid.UUID):
            raise ValidationError(f"{name} must be a UUID", details={"field": name})
    if request.notes is not None and len(request.notes) > MAX_NOTES_LENGTH:
        raise ValidationError(f"notes must be at most {MAX_NOTES_LENGTH} characters")
    if request.client_recorded_at is not None and request.client_recorded_at.tzinfo is None:
        raise ValidationError("client_recorded_at must be timezone-aware")


def _check_target(
    regimen: Regimen, animal: AnimalContext, request: RecordRequest, now: datetime
) -> None:
    if regimen.household_id is not None and animal.household_id != regimen.household_id:
        raise ValidationError(
            "Animal is not in the regimen's household",
            details={"animal_id": str(animal.id), "regimen_id": str(regimen.id)},
        )
    if request.household_id is not None and request.household_id != animal.household_id:
        raise ValidationError(
            "household_id does not match the animal's household",
            details={"household_id": str(request.household_id)},
        )
    if not regimen.is_active_at(now):
        raise RegimenDiscontinuedError(regimen.id)
    if request.skipped and regimen.is_prn:
        raise ValidationError("PRN doses cannot be skipped", details={"regimen_id": str(regimen.id)})


async def _replay(
    pool: Any,
    existing: AdministrationRecord,
    request: RecordRequest,
    *,
    suggestion: CoSignSuggestion | None = None,
) -> RecordResult:
    cosign_request = await store.fetch_cosign_request(pool, existing.id)
    dose_metrics.recording("replayed")
    logger.info(
        "Replayed administration %s for key %s",
        existing.id,
        request.idempotency_key,
    )
    return RecordResult(
        record=existing, replayed=True, cosign_request=cosign_request, suggestion=suggestion
    )


async def _supersede_missed(
    conn: Any, occupant: AdministrationRecord, caregiver_id: uuid.UUID, now: datetime
) -> None:
    await conn.execute(
        "UPDATE administrations SET is_deleted = true, edited_by = $2, edited_at = $3 "
        "WHERE id = $1",
        occupant.id,
        caregiver_id,
        now,
    )
    await record_administration_event(
        conn,
        AdministrationEventType.MISSED_SUPERSEDED,
        administration_id=occupant.id,
        actor=caregiver_id,
        occurred_at=now,
    )


async def record(
    pool: Any,
    request: RecordRequest,
    *,
    policy: RecordingPolicy | None = None,
    now: datetime | None = None,
) -> RecordResult:
    """Record one administration, or return the record it duplicates.

    Raises
    ------
    ValidationError
        Malformed input, unknown ids, or an animal outside the household.
    RegimenDiscontinuedError
        The regimen is not active at the server-received time.
    InventoryMismatchError
        The inventory source fails a check and no override was given.
    """
    policy = policy or RecordingPolicy()
    now = now if now is not None else datetime.now(UTC)
    started = time.monotonic()
    tracer = trace.get_tracer("dosewatch")
    with tracer.start_as_current_span("dosewatch.record") as span:
        span.set_attribute("regimen.id", str(request.regimen_id))
        span.set_attribute("animal.id", str(request.animal_id))
        _validate_request(request)

        existing = await store.fetch_by_key(pool, request.idempotency_key)
        if existing is not None:
            span.set_attribute("record.replayed", True)
            return await _replay(pool, existing, request)

        regimen = await store.fetch_regimen(pool, request.regimen_id)
        if regimen is None:
            raise NotFoundError(
                f"Regimen not found: {request.regimen_id}",
                details={"regimen_id": str(request.regimen_id)},
            )
        animal = await store.fetch_animal(pool, request.animal_id)
        if animal is None:
            raise NotFoundError(
                f"Animal not found: {request.animal_id}",
                details={"animal_id": str(request.animal_id)},
            )
        _check_target(regimen, animal, request, now)

        tolerance = regimen.tolerance(policy.tolerance)
        scheduled_for: datetime | None = None
        if not regimen.is_prn:
            scheduled_for = nearest_occurrence(
                regimen,
                now,
                timezone=animal.timezone,
                hint=request.client_recorded_at,
                early=tolerance.late,
            )
            if scheduled_for is None:
                raise ValidationError(
                    "No scheduled dose of this regimen near the recording time",
                    details={"regimen_id": str(regimen.id), "recorded_at": now.isoformat()},
                )

        status = (
            DoseStatus.MISSED
            if request.skipped
            else evaluate(scheduled_for, now, tolerance, now=now)
        )
        needs_cosign = regimen.needs_cosign and not request.skipped
        window = (
            timedelta(minutes=animal.cosign_window_minutes)
            if animal.cosign_window_minutes
            else policy.cosign_window
        )

        try:
            async with pool.acquire() as conn, conn.transaction():
                override = None
                if request.inventory_source_id is not None:
                    override = await check_inventory_source(
                        conn,
                        request.inventory_source_id,
                        household_id=animal.household_id,
                        medication_id=regimen.medication_id,
                        on_date=local_date(now, animal.timezone),
                        override=request.override,
                    )

                if scheduled_for is not None:
                    occupant = await store.fetch_live_for_slot(
                        conn, regimen.id, animal.id, scheduled_for, for_update=True
                    )
                    if occupant is not None:
                        if occupant.is_synthetic and not request.skipped:
                            await _supersede_missed(conn, occupant, request.caregiver_id, now)
                        else:
                            raise ConflictError(occupant)

                created = await store.insert_administration(
                    conn,
                    {
                        "regimen_id": regimen.id,
                        "animal_id": animal.id,
                        "household_id": animal.household_id,
                        "caregiver_id": request.caregiver_id,
                        "scheduled_for": scheduled_for,
                        "recorded_at": now,
                        "client_recorded_at": request.client_recorded_at,
                        "status": status,
                        "inventory_source_id": request.inventory_source_id,
                        "inventory_override": override,
                        "notes": request.notes,
                        "cosign_pending": needs_cosign,
                        "idempotency_key": request.idempotency_key,
                    },
                )
                if created is None:
                    raced = await store.fetch_by_key(conn, request.idempotency_key)
                    if raced is None and scheduled_for is not None:
                        raced = await store.fetch_live_for_slot(
                            conn, regimen.id, animal.id, scheduled_for
                        )
                    if raced is None:
                        raise RuntimeError(
                            f"Insert for key {request.idempotency_key!r} conflicted "
                            "but no conflicting record is visible"
                        )
                    raise ConflictError(raced)

                cosign_request = None
                if needs_cosign:
                    cosign_request = await create_cosign_request(
                        conn, created, window=window, now=now
                    )
                if request.inventory_source_id is not None and not request.skipped:
                    await decrement_units(conn, request.inventory_source_id)

                await record_administration_event(
                    conn,
                    AdministrationEventType.RECORDED,
                    administration_id=created.id,
                    actor=request.caregiver_id,
                    metadata={
                        "status": status.value,
                        "scheduled_for": scheduled_for.isoformat() if scheduled_for else None,
                        "idempotency_key": request.idempotency_key,
                    },
                    occurred_at=now,
                )
                if override is not None:
                    await record_administration_event(
                        conn,
                        AdministrationEventType.INVENTORY_OVERRIDE,
                        administration_id=created.id,
                        actor=request.caregiver_id,
                        reason=request.override.reason,
                        metadata=override,
                        occurred_at=now,
                    )
        except ConflictError as exc:
            span.set_attribute("record.replayed", True)
            suggestion = implicit_cosign_suggestion(
                exc.existing,
                request.caregiver_id,
                now,
                regimen=regimen,
                window=policy.implicit_cosign_window,
            )
            if suggestion is not None:
                logger.info(
                    "Regimen %s looks co-signed in practice (caregivers %s and %s)",
                    regimen.id,
                    suggestion.first_caregiver_id,
                    suggestion.second_caregiver_id,
                )
            return await _replay(pool, exc.existing, request, suggestion=suggestion)

    dose_metrics.recording("created")
    dose_metrics.record_latency((time.monotonic() - started) * 1000)
    logger.info(
        "Recorded administration %s regimen=%s animal=%s status=%s",
        created.id,
        regimen.id,
        animal.id,
        status.value,
    )
    return RecordResult(record=created, cosign_request=cosign_request)


async def record_bulk(
    pool: Any,
    request: BulkRecordRequest,
    *,
    policy: RecordingPolicy | None = None,
    now: datetime | None = None,
) -> BulkRecordResult:
    """Record one regimen for several animals; each animal succeeds or fails alone.

    Failures are reported per animal, never raised.  Replaying the same bulk
    request yields the same successful set and creates nothing new.
    """
    if not isinstance(request.idempotency_key, str) or not request.idempotency_key.strip():
        raise ValidationError("idempotency_key must be a non-empty string")
    animal_ids = list(dict.fromkeys(request.animal_ids))
    if not animal_ids:
        raise ValidationError("animal_ids must contain at least one animal")
    now = now if now is not None else datetime.now(UTC)

    async def _one(animal_id: uuid.UUID) -> RecordResult | PartialBulkFailure:
        try:
            return await record(pool, request.for_animal(animal_id), policy=policy, now=now)
        except DosingError as exc:
            dose_metrics.recording("rejected")
            return PartialBulkFailure(animal_id=animal_id, code=exc.code, reason=exc.message)
        except Exception as exc:
            logger.exception(
                "Bulk recording %s failed for animal %s", request.idempotency_key, animal_id
            )
            dose_metrics.recording("error")
            return PartialBulkFailure(animal_id=animal_id, code="internal_error", reason=str(exc))

    tracer = trace.get_tracer("dosewatch")
    with tracer.start_as_current_span("dosewatch.record_bulk") as span:
        span.set_attribute("bulk.size", len(animal_ids))
        outcomes = await asyncio.gather(*(_one(animal_id) for animal_id in animal_ids))

    result = BulkRecordResult()
    for outcome in outcomes:
        if isinstance(outcome, PartialBulkFailure):
            result.failed.append(outcome)
            dose_metrics.bulk_item("failed")
        else:
            result.successful.append(outcome)
            dose_metrics.bulk_item("succeeded")

    if result.failed:
        logger.warning(
            "Bulk recording %s %s: %d of %d animal(s) failed",
            request.idempotency_key,
            result.outcome,
            len(result.failed),
            len(animal_ids),
        )
    return result


async def edit_administration(
    pool: Any,
    administration_id: uuid.UUID,
    caregiver_id: uuid.UUID,
    *,
    notes: str | None,
    now: datetime | None = None,
) -> AdministrationRecord:
    """Amend the notes on a live record; the original row is kept and flagged edited."""
    if notes is not None and len(notes) > MAX_NOTES_LENGTH:
        raise ValidationError(f"notes must be at most {MAX_NOTES_LENGTH} characters")
    now = now if now is not None else datetime.now(UTC)
    async with pool.acquire() as conn, conn.transaction():
        row = await conn.fetchrow(
            "UPDATE administrations "
            "SET notes = $2, is_edited = true, edited_by = $3, edited_at = $4 "
            "WHERE id = $1 AND NOT is_deleted RETURNING *",
            administration_id,
            notes,
            caregiver_id,
            now,
        )
        if row is None:
            existing = await store.fetch_administration(conn, administration_id)
            if existing is None:
                raise NotFoundError(
                    f"Administration not found: {administration_id}",
                    details={"administration_id": str(administration_id)},
                )
            raise ValidationError(
                f"Administration {administration_id} was undone and cannot be edited",
                details={"administration_id": str(administration_id)},
            )
        await record_administration_event(
            conn,
            AdministrationEventType.EDITED,
            administration_id=administration_id,
            actor=caregiver_id,
            metadata={"notes": notes},
            occurred_at=now,
        )
    return AdministrationRecord.from_row(row)


async def undo_administration(
    pool: Any,
    administration_id: uuid.UUID,
    caregiver_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> AdministrationRecord:
    """Soft-delete a record, freeing its slot.  Undoing twice returns the undone record."""
    now = now if now is not None else datetime.now(UTC)
    async with pool.acquire() as conn, conn.transaction():
        row = await conn.fetchrow(
            "UPDATE administrations "
            "SET is_deleted = true, is_edited = true, edited_by = $2, edited_at = $3 "
            "WHERE id = $1 AND NOT is_deleted RETURNING *",
            administration_id,
            caregiver_id,
            now,
        )
        if row is None:
            existing = await store.fetch_administration(conn, administration_id)
            if existing is None:
                raise NotFoundError(
                    f"Administration not found: {administration_id}",
                    details={"administration_id": str(administration_id)},
                )
            return existing
        undone = AdministrationRecord.from_row(row)
        if undone.inventory_source_id is not None and undone.status != DoseStatus.MISSED:
            await conn.execute(
                "UPDATE inventory_items SET units_remaining = units_remaining + 1 "
                "WHERE id = $1 AND units_remaining IS NOT NULL",
                undone.inventory_source_id,
            )
        await record_administration_event(
            conn,
            AdministrationEventType.UNDONE,
            administration_id=administration_id,
            actor=caregiver_id,
            occurred_at=now,
        )
    logger.info("Administration %s undone by %s", administration_id, caregiver_id)
    return undone
