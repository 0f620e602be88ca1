"""Dosing module: schedules, idempotent recording, co-sign and compliance."""

from dosewatch.dosing.compliance import ComplianceSummary, adherence
from dosewatch.dosing.cosign import CoSignSuggestion
from dosewatch.dosing.errors import (
    ConflictError,
    DosingError,
    InventoryMismatchError,
    NotFoundError,
    RegimenDiscontinuedError,
    StaleCoSignError,
    ValidationError,
)
from dosewatch.dosing.models import (
    AdministrationRecord,
    CoSignRequest,
    CoSignState,
    DoseStatus,
    Regimen,
    ScheduleType,
    Tolerance,
)
from dosewatch.dosing.recording import (
    BulkRecordRequest,
    BulkRecordResult,
    PartialBulkFailure,
    RecordingPolicy,
    RecordRequest,
    RecordResult,
)
from dosewatch.dosing.status import DoseStatusEntry, evaluate
from dosewatch.dosing.windows import nearest_occurrence, resolve_occurrences

__all__ = [
    "AdministrationRecord",
    "BulkRecordRequest",
    "BulkRecordResult",
    "CoSignRequest",
    "CoSignState",
    "CoSignSuggestion",
    "ComplianceSummary",
    "ConflictError",
    "DoseStatus",
    "DoseStatusEntry",
    "DosingError",
    "InventoryMismatchError",
    "NotFoundError",
    "PartialBulkFailure",
    "RecordRequest",
    "RecordResult",
    "RecordingPolicy",
    "Regimen",
    "RegimenDiscontinuedError",
    "ScheduleType",
    "StaleCoSignError",
    "Tolerance",
    "ValidationError",
    "adherence",
    "evaluate",
    "nearest_occurrence",
    "resolve_occurrences",
]
