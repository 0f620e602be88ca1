"""Error taxonomy for dose recording and co-signing.

Each error carries a stable machine-readable ``code`` and a ``details`` dict
so the REST layer and the offline reconciler can classify failures without
parsing messages.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dosewatch.dosing.models import AdministrationRecord


class DosingError(Exception):
    """Base class for all domain errors raised by the dosing package."""

    code = "dosing_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(DosingError):
    """Malformed or inconsistent input, rejected before persistence."""

    code = "validation_error"


class NotFoundError(ValidationError):
    """A referenced regimen, animal, inventory item or record does not exist."""

    code = "not_found"


class RegimenDiscontinuedError(ValidationError):
    """The regimen is inactive or was discontinued before the administration."""

    code = "regimen_discontinued"

    def __init__(self, regimen_id: uuid.UUID) -> None:
        self.regimen_id = regimen_id
        super().__init__(
            f"Regimen {regimen_id} is discontinued",
            details={"regimen_id": str(regimen_id)},
        )


class ConflictError(DosingError):
    """A write collided with an existing record for the same key or slot.

    Resolved inside the recording pipeline into a replay result; callers of
    :func:`dosewatch.dosing.recording.record` never see it.

    Attributes:
        existing: The record that already occupies the key or slot.
    """

    code = "conflict"

    def __init__(self, existing: AdministrationRecord) -> None:
        self.existing = existing
        super().__init__(
            f"Administration already recorded as {existing.id}",
            details={"administration_id": str(existing.id)},
        )


class StaleCoSignError(DosingError):
    """The co-sign request is no longer pending (expired, confirmed, or deleted).

    Attributes:
        administration_id: The administration whose co-sign was attempted.
        state: The request state observed when the confirmation lost.
    """

    code = "stale_cosign"

    def __init__(self, administration_id: uuid.UUID, state: str | None) -> None:
        self.administration_id = administration_id
        self.state = state
        super().__init__(
            f"Co-sign for administration {administration_id} is not pending (state={state!r})",
            details={"administration_id": str(administration_id), "state": state},
        )


class InventoryMismatchError(DosingError):
    """The chosen inventory item cannot source this dose.

    Attributes:
        reasons: Machine-readable reasons, a subset of
            ``expired``, ``medication_mismatch``, ``exhausted``.
    """

    code = "inventory_mismatch"

    def __init__(self, item_id: uuid.UUID, reasons: list[str]) -> None:
        self.item_id = item_id
        self.reasons = list(reasons)
        super().__init__(
            f"Inventory item {item_id} rejected: {', '.join(self.reasons)}",
            details={"inventory_item_id": str(item_id), "reasons": self.reasons},
        )
