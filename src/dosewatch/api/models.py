"""Pydantic request/response models for the dosewatch REST API.

Successful responses follow ``{"data": T, "meta": {...}}``; errors follow
``{"error": {"code": "...", "message": "...", "details": {...}}}``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from dosewatch.dosing.inventory import OverrideFlags
from dosewatch.dosing.recording import (
    MAX_IDEMPOTENCY_KEY_LENGTH,
    MAX_NOTES_LENGTH,
    BulkRecordRequest,
    RecordRequest,
)

# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class RecordAdministrationRequest(BaseModel):
    """Record a dose for one animal (``animal_id``) or several (``animal_ids``)."""

    regimen_id: UUID
    caregiver_id: UUID
    idempotency_key: str = Field(min_length=1, max_length=MAX_IDEMPOTENCY_KEY_LENGTH)
    animal_id: UUID | None = None
    animal_ids: list[UUID] | None = None
    household_id: UUID | None = None
    client_recorded_at: datetime | None = None
    inventory_source_id: UUID | None = None
    allow_override: bool = False
    override_reason: str | None = None
    notes: str | None = Field(default=None, max_length=MAX_NOTES_LENGTH)
    skipped: bool = False

    @model_validator(mode="after")
    def _one_target(self) -> RecordAdministrationRequest:
        if (self.animal_id is None) == (not self.animal_ids):
            raise ValueError("Provide exactly one of animal_id or animal_ids")
        if self.animal_ids and self.skipped:
            raise ValueError("skipped is only supported for single-animal recordings")
        return self

    @property
    def is_bulk(self) -> bool:
        return bool(self.animal_ids)

    def to_domain(self) -> RecordRequest | BulkRecordRequest:
        override = OverrideFlags(allow_override=self.allow_override, reason=self.override_reason)
        if self.animal_ids:
            return BulkRecordRequest(
                regimen_id=self.regimen_id,
                animal_ids=list(self.animal_ids),
                caregiver_id=self.caregiver_id,
                idempotency_key=self.idempotency_key,
                household_id=self.household_id,
                client_recorded_at=self.client_recorded_at,
                inventory_source_id=self.inventory_source_id,
                override=override,
                notes=self.notes,
            )
        return RecordRequest(
            regimen_id=self.regimen_id,
            animal_id=self.animal_id,
            caregiver_id=self.caregiver_id,
            idempotency_key=self.idempotency_key,
            household_id=self.household_id,
            client_recorded_at=self.client_recorded_at,
            inventory_source_id=self.inventory_source_id,
            override=override,
            notes=self.notes,
            skipped=self.skipped,
        )


class CaregiverActionRequest(BaseModel):
    caregiver_id: UUID


class EditAdministrationRequest(BaseModel):
    caregiver_id: UUID
    notes: str | None = Field(default=None, max_length=MAX_NOTES_LENGTH)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class Administration(BaseModel):
    id: str
    regimen_id: str
    animal_id: str
    household_id: str
    caregiver_id: str
    scheduled_for: datetime | None = None
    recorded_at: datetime
    client_recorded_at: datetime | None = None
    status: str
    inventory_source_id: str | None = None
    inventory_override: dict[str, Any] | None = None
    notes: str | None = None
    cosign_pending: bool = False
    cosign_missing: bool = False
    cosigned_by: str | None = None
    cosigned_at: datetime | None = None
    idempotency_key: str
    is_edited: bool = False
    edited_by: str | None = None
    edited_at: datetime | None = None
    is_deleted: bool = False
    created_at: datetime | None = None


class CoSignRequestOut(BaseModel):
    id: str
    administration_id: str
    requested_by: str
    requested_at: datetime
    expires_at: datetime
    state: str
    confirmed_by: str | None = None
    resolved_at: datetime | None = None


class CoSignSuggestionOut(BaseModel):
    regimen_id: str
    animal_id: str
    administration_id: str
    first_caregiver_id: str
    second_caregiver_id: str
    gap_seconds: float


class RecordOutcome(BaseModel):
    administration: Administration
    replayed: bool = False
    cosign_request: CoSignRequestOut | None = None
    suggestion: CoSignSuggestionOut | None = None


class BulkFailure(BaseModel):
    animal_id: str
    code: str
    reason: str


class BulkSummary(BaseModel):
    total: int
    successful: int
    failed: int


class BulkRecordOutcome(BaseModel):
    successful: list[RecordOutcome]
    failed: list[BulkFailure]
    summary: BulkSummary
    outcome: str


class DoseStatusOut(BaseModel):
    regimen_id: str
    animal_id: str
    scheduled_for: datetime | None = None
    status: str
    administration_id: str | None = None
    recorded_at: datetime | None = None
    cosign_pending: bool = False
    cosign_missing: bool = False


class ComplianceOut(BaseModel):
    scheduled: int
    completed: int
    on_time: int
    late: int
    very_late: int
    missed: int
    open: int
    prn: int
    adherence_pct: float
    streak_days: int
    per_animal: dict[str, ComplianceOut] | None = None


class ExpireCoSignsResponse(BaseModel):
    expired_count: int
    administration_ids: list[str]
