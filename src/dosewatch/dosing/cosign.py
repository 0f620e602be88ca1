"""Two-caregiver confirmation (co-sign) for high-risk administrations.

A CoSignRequest moves ``pending -> confirmed`` or ``pending -> expired``;
both are terminal.  Confirmation is a single conditional UPDATE, so of two
concurrent confirmers exactly one wins and the other gets
:class:`StaleCoSignError`.  Expiry is decided on the server clock against
``expires_at``: reads derive it lazily, and :func:`expire_stale` persists it
and flags the administration ``cosign_missing``.  The administration itself
is never reverted.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from opentelemetry import trace

from dosewatch.core.metrics import dose_metrics
from dosewatch.dosing import store
from dosewatch.dosing.errors import NotFoundError, StaleCoSignError, ValidationError
from dosewatch.dosing.events import AdministrationEventType, record_administration_event
from dosewatch.dosing.models import (
    SYSTEM_CAREGIVER_ID,
    AdministrationRecord,
    CoSignRequest,
    CoSignState,
    Regimen,
)

logger = logging.getLogger(__name__)


async def create_cosign_request(
    conn: Any,
    record: AdministrationRecord,
    *,
    window: timedelta,
    now: datetime,
) -> CoSignRequest:
    """Open the co-sign request for *record*; call inside the recording transaction."""
    row = await conn.fetchrow(
        "INSERT INTO cosign_requests "
        "(administration_id, requested_by, requested_at, expires_at, state) "
        "VALUES ($1, $2, $3, $4, 'pending') RETURNING *",
        record.id,
        record.caregiver_id,
        now,
        now + window,
    )
    request = CoSignRequest.from_row(row)
    await record_administration_event(
        conn,
        AdministrationEventType.COSIGN_REQUESTED,
        administration_id=record.id,
        actor=record.caregiver_id,
        metadata={"expires_at": request.expires_at.isoformat()},
        occurred_at=now,
    )
    dose_metrics.cosign_transition(CoSignState.PENDING)
    return request


async def confirm(
    pool: Any,
    administration_id: uuid.UUID,
    caregiver_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> AdministrationRecord:
    """Confirm a pending co-sign as a second caregiver.

    Raises
    ------
    NotFoundError
        The administration does not exist.
    ValidationError
        No co-sign was requested, or the confirmer is the recording caregiver.
    StaleCoSignError
        The request is expired, already confirmed, or its record was undone.
    """
    now = now if now is not None else datetime.now(UTC)
    tracer = trace.get_tracer("dosewatch")
    with tracer.start_as_current_span("dosewatch.cosign.confirm") as span:
        span.set_attribute("administration.id", str(administration_id))

        record = await store.fetch_administration(pool, administration_id)
        if record is None:
            raise NotFoundError(
                f"Administration not found: {administration_id}",
                details={"administration_id": str(administration_id)},
            )
        request = await store.fetch_cosign_request(pool, administration_id)
        if request is None:
            raise ValidationError(
                f"Administration {administration_id} has no co-sign request",
                details={"administration_id": str(administration_id)},
            )
        if caregiver_id in (request.requested_by, record.caregiver_id):
            raise ValidationError(
                "A co-sign must come from a different caregiver",
                details={"caregiver_id": str(caregiver_id)},
            )
        if record.is_deleted:
            raise StaleCoSignError(administration_id, "deleted")

        confirmed: AdministrationRecord | None = None
        async with pool.acquire() as conn, conn.transaction():
            won = await conn.fetchrow(
                "UPDATE cosign_requests "
                "SET state = 'confirmed', confirmed_by = $2, resolved_at = $3 "
                "WHERE administration_id = $1 AND state = 'pending' AND expires_at > $3 "
                "RETURNING *",
                administration_id,
                caregiver_id,
                now,
            )
            if won is not None:
                row = await conn.fetchrow(
                    "UPDATE administrations "
                    "SET cosign_pending = false, cosigned_by = $2, cosigned_at = $3 "
                    "WHERE id = $1 AND NOT is_deleted RETURNING *",
                    administration_id,
                    caregiver_id,
                    now,
                )
                if row is None:
                    # Undone between the read above and the CAS; roll back the confirm.
                    raise StaleCoSignError(administration_id, "deleted")
                await record_administration_event(
                    conn,
                    AdministrationEventType.COSIGN_CONFIRMED,
                    administration_id=administration_id,
                    actor=caregiver_id,
                    occurred_at=now,
                )
                confirmed = AdministrationRecord.from_row(row)

        if confirmed is not None:
            dose_metrics.cosign_transition(CoSignState.CONFIRMED)
            logger.info(
                "Co-sign confirmed for administration %s by %s", administration_id, caregiver_id
            )
            return confirmed

        current = await store.fetch_cosign_request(pool, administration_id)
        if (
            current is not None
            and current.state == CoSignState.CONFIRMED
            and current.confirmed_by == caregiver_id
        ):
            # Same confirmer retrying (e.g. an offline replay): already done.
            replayed = await store.fetch_administration(pool, administration_id)
            if replayed is not None:
                return replayed
        state = current.effective_state(now) if current is not None else None
        if current is not None and current.state == CoSignState.PENDING and (
            state == CoSignState.EXPIRED
        ):
            await expire_stale(pool, now=now, administration_id=administration_id)
        logger.info(
            "Co-sign for administration %s rejected as stale (state=%s)",
            administration_id,
            state,
        )
        raise StaleCoSignError(administration_id, state.value if state else None)


async def expire_stale(
    pool: Any,
    *,
    now: datetime | None = None,
    administration_id: uuid.UUID | None = None,
) -> list[uuid.UUID]:
    """Persist expiry for overdue pending requests.

    Returns the administration ids newly flagged ``cosign_missing``.  With
    *administration_id* only that request is considered.
    """
    now = now if now is not None else datetime.now(UTC)
    sql = (
        "UPDATE cosign_requests SET state = 'expired', resolved_at = $1 "
        "WHERE state = 'pending' AND expires_at <= $1"
    )
    args: list[Any] = [now]
    if administration_id is not None:
        sql += " AND administration_id = $2"
        args.append(administration_id)
    sql += " RETURNING administration_id"

    async with pool.acquire() as conn, conn.transaction():
        rows = await conn.fetch(sql, *args)
        expired = [r["administration_id"] for r in rows]
        if expired:
            await conn.execute(
                "UPDATE administrations SET cosign_pending = false, cosign_missing = true "
                "WHERE id = ANY($1::uuid[])",
                expired,
            )
            for expired_id in expired:
                await record_administration_event(
                    conn,
                    AdministrationEventType.COSIGN_EXPIRED,
                    administration_id=expired_id,
                    actor=SYSTEM_CAREGIVER_ID,
                    occurred_at=now,
                )

    if expired:
        dose_metrics.cosign_transition(CoSignState.EXPIRED, len(expired))
        logger.info("Expired %d co-sign request(s)", len(expired))
    return expired


@dataclass(frozen=True)
class CoSignSuggestion:
    """Two caregivers independently gave the same dose of a non-flagged regimen."""

    regimen_id: uuid.UUID
    animal_id: uuid.UUID
    administration_id: uuid.UUID
    first_caregiver_id: uuid.UUID
    second_caregiver_id: uuid.UUID
    gap_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "regimen_id": str(self.regimen_id),
            "animal_id": str(self.animal_id),
            "administration_id": str(self.administration_id),
            "first_caregiver_id": str(self.first_caregiver_id),
            "second_caregiver_id": str(self.second_caregiver_id),
            "gap_seconds": self.gap_seconds,
        }


def implicit_cosign_suggestion(
    existing: AdministrationRecord,
    caregiver_id: uuid.UUID,
    attempted_at: datetime,
    *,
    regimen: Regimen,
    window: timedelta,
) -> CoSignSuggestion | None:
    """Suggest flagging *regimen* for co-sign after a second caregiver's attempt.

    Only a suggestion: the regimen is never modified here.
    """
    if regimen.needs_cosign or existing.is_synthetic or existing.is_deleted:
        return None
    if caregiver_id == existing.caregiver_id:
        return None
    gap = abs(attempted_at - existing.recorded_at)
    if gap > window:
        return None
    return CoSignSuggestion(
        regimen_id=regimen.id,
        animal_id=existing.animal_id,
        administration_id=existing.id,
        first_caregiver_id=existing.caregiver_id,
        second_caregiver_id=caregiver_id,
        gap_seconds=gap.total_seconds(),
    )
