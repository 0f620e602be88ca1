"""Administration endpoints: record, edit, undo and co-sign.

Recording is idempotent on the client's key.  A replay answers 200 with the
stored record and ``meta.replayed = true``; a fresh recording answers 201.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Response

from dosewatch.api.models import (
    Administration,
    ApiMeta,
    ApiResponse,
    BulkRecordOutcome,
    CaregiverActionRequest,
    EditAdministrationRequest,
    ExpireCoSignsResponse,
    RecordAdministrationRequest,
    RecordOutcome,
)
from dosewatch.core.logging import set_household_context
from dosewatch.dosing import operations
from dosewatch.dosing.models import AdministrationRecord
from dosewatch.dosing.recording import BulkRecordResult, RecordingPolicy, RecordResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["administrations"])


def _get_pool() -> Any:
    """Dependency stub; overridden at app startup or in tests."""
    raise RuntimeError("Database pool not initialized")


def _get_policy() -> RecordingPolicy:
    """Dependency stub; defaults apply until overridden at app startup."""
    return RecordingPolicy()


def _administration(record: AdministrationRecord) -> Administration:
    return Administration.model_validate(record.to_dict())


def _outcome(result: RecordResult) -> RecordOutcome:
    return RecordOutcome(
        administration=_administration(result.record),
        replayed=result.replayed,
        cosign_request=result.cosign_request.to_dict() if result.cosign_request else None,
        suggestion=result.suggestion.to_dict() if result.suggestion else None,
    )


@router.post("/administrations")
async def record_administration(
    body: RecordAdministrationRequest,
    response: Response,
    pool: Any = Depends(_get_pool),
    policy: RecordingPolicy = Depends(_get_policy),
) -> ApiResponse[RecordOutcome] | ApiResponse[BulkRecordOutcome]:
    """Record a dose for one animal, or for several with ``animal_ids``."""
    if body.household_id is not None:
        set_household_context(str(body.household_id))
    result = await operations.record_administration(pool, body.to_domain(), policy=policy)

    if isinstance(result, BulkRecordResult):
        outcome = BulkRecordOutcome(
            successful=[_outcome(r) for r in result.successful],
            failed=[f.to_dict() for f in result.failed],
            summary=result.summary,
            outcome=result.outcome,
        )
        replayed = bool(result.successful) and all(r.replayed for r in result.successful)
        response.status_code = 200 if replayed or not result.successful else 201
        return ApiResponse[BulkRecordOutcome](
            data=outcome, meta=ApiMeta(replayed=replayed, outcome=result.outcome)
        )

    response.status_code = 200 if result.replayed else 201
    return ApiResponse[RecordOutcome](
        data=_outcome(result), meta=ApiMeta(replayed=result.replayed)
    )


@router.patch("/administrations/{administration_id}")
async def edit_administration(
    administration_id: UUID,
    body: EditAdministrationRequest,
    pool: Any = Depends(_get_pool),
) -> ApiResponse[Administration]:
    """Amend notes on a live administration."""
    record = await operations.edit_administration(
        pool, administration_id, body.caregiver_id, notes=body.notes
    )
    return ApiResponse[Administration](data=_administration(record))


@router.post("/administrations/{administration_id}/undo")
async def undo_administration(
    administration_id: UUID,
    body: CaregiverActionRequest,
    pool: Any = Depends(_get_pool),
) -> ApiResponse[Administration]:
    record = await operations.undo_administration(pool, administration_id, body.caregiver_id)
    return ApiResponse[Administration](data=_administration(record))


@router.post("/administrations/{administration_id}/cosign")
async def confirm_cosign(
    administration_id: UUID,
    body: CaregiverActionRequest,
    pool: Any = Depends(_get_pool),
) -> ApiResponse[Administration]:
    """Confirm a pending co-sign as the second caregiver.

    Answers 409 ``stale_cosign`` when the request already expired or another
    caregiver confirmed first.
    """
    record = await operations.confirm_cosign(pool, administration_id, body.caregiver_id)
    return ApiResponse[Administration](data=_administration(record))


@router.post("/cosign/expire")
async def expire_cosign_requests(
    pool: Any = Depends(_get_pool),
) -> ApiResponse[ExpireCoSignsResponse]:
    """Persist expiry for every overdue co-sign request now."""
    expired = await operations.expire_cosign_requests(pool)
    return ApiResponse[ExpireCoSignsResponse](
        data=ExpireCoSignsResponse(
            expired_count=len(expired), administration_ids=[str(i) for i in expired]
        )
    )
