"""Data models for the client-side offline action queue."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


class QueuedOperation(enum.StrEnum):
    RECORD = "record"
    EDIT = "edit"
    UNDO = "undo"
    COSIGN = "cosign"


class QueueState(enum.StrEnum):
    PENDING = "pending"
    REJECTED = "rejected"


@dataclass(frozen=True)
class SyncRejection:
    """Why the server permanently refused an action."""

    code: str
    message: str
    status_code: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncRejection:
        return cls(
            code=data["code"],
            message=data.get("message", ""),
            status_code=data.get("status_code"),
            details=data.get("details") or {},
        )


@dataclass
class QueuedAction:
    """A mutation captured while offline, replayed on the next flush.

    ``ordering_key`` groups actions whose relative order matters: the regimen
    for recordings, the administration for edits, undos and co-signs.
    """

    idempotency_key: str
    operation: QueuedOperation
    ordering_key: str
    payload: dict[str, Any]
    created_at: datetime
    attempts: int = 0
    state: QueueState = QueueState.PENDING
    sequence: int | None = None
    last_error: str | None = None
    rejection: SyncRejection | None = None

    @classmethod
    def create(
        cls,
        operation: QueuedOperation | str,
        payload: dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> QueuedAction:
        """Build an action with its idempotency key fixed at capture time."""
        operation = QueuedOperation(operation)
        if operation == QueuedOperation.RECORD:
            entity = payload.get("regimen_id")
        else:
            entity = payload.get("administration_id")
        if not entity:
            field_name = "regimen_id" if operation == QueuedOperation.RECORD else "administration_id"
            raise ValueError(f"{operation.value} actions require {field_name} in the payload")
        return cls(
            idempotency_key=f"{operation.value}:{entity}:{uuid.uuid4().hex}",
            operation=operation,
            ordering_key=str(entity),
            payload=dict(payload),
            created_at=now if now is not None else datetime.now(UTC),
        )


@dataclass
class AppliedAction:
    action: QueuedAction
    response: dict[str, Any] | None = None
    replayed: bool = False


@dataclass
class RejectedAction:
    action: QueuedAction
    rejection: SyncRejection


@dataclass
class FlushResult:
    applied: list[AppliedAction] = field(default_factory=list)
    rejected: list[RejectedAction] = field(default_factory=list)
    deferred: list[QueuedAction] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        return {
            "applied": len(self.applied),
            "rejected": len(self.rejected),
            "deferred": len(self.deferred),
        }
