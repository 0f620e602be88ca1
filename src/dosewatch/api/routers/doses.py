"""Dose status and compliance endpoints."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from dosewatch.api.models import ApiMeta, ApiResponse, ComplianceOut, DoseStatusOut
from dosewatch.core.logging import set_household_context
from dosewatch.dosing import operations
from dosewatch.dosing.recording import RecordingPolicy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["doses"])


def _get_pool() -> Any:
    """Dependency stub; overridden at app startup or in tests."""
    raise RuntimeError("Database pool not initialized")


def _get_policy() -> RecordingPolicy:
    """Dependency stub; defaults apply until overridden at app startup."""
    return RecordingPolicy()


@router.get("/doses")
async def list_doses(
    animal_id: list[UUID] = Query(...),
    start: datetime = Query(...),
    end: datetime = Query(...),
    pool: Any = Depends(_get_pool),
    policy: RecordingPolicy = Depends(_get_policy),
) -> ApiResponse[list[DoseStatusOut]]:
    """Every dose of the given animals in ``[start, end)`` with its status.

    Doses already past their missed cutoff are written as missed records
    while answering.
    """
    entries = await operations.get_dose_statuses(
        pool, animal_id, start, end, tolerance=policy.tolerance
    )
    return ApiResponse[list[DoseStatusOut]](
        data=[DoseStatusOut.model_validate(e.to_dict()) for e in entries],
        meta=ApiMeta(total=len(entries)),
    )


@router.get("/compliance")
async def compliance_summary(
    start: datetime = Query(...),
    end: datetime = Query(...),
    animal_id: UUID | None = Query(default=None),
    household_id: UUID | None = Query(default=None),
    pool: Any = Depends(_get_pool),
    policy: RecordingPolicy = Depends(_get_policy),
) -> ApiResponse[ComplianceOut]:
    """Adherence for one animal, or per household with a per-animal breakdown."""
    if household_id is not None:
        set_household_context(str(household_id))
    summary = await operations.get_compliance_summary(
        pool,
        range_start=start,
        range_end=end,
        animal_id=animal_id,
        household_id=household_id,
        tolerance=policy.tolerance,
    )
    return ApiResponse[ComplianceOut](data=ComplianceOut.model_validate(summary.to_dict()))
