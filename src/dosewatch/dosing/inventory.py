"""Inventory source validation for recorded doses."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any

from dosewatch.dosing import store
from dosewatch.dosing.errors import InventoryMismatchError, NotFoundError
from dosewatch.dosing.models import InventoryItem

EXPIRED = "expired"
MEDICATION_MISMATCH = "medication_mismatch"
EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class OverrideFlags:
    """Caller's explicit acknowledgement that an inventory check may be bypassed."""

    allow_override: bool = False
    reason: str | None = None


def mismatch_reasons(item: InventoryItem, *, medication_id: uuid.UUID, on_date: date) -> list[str]:
    """Return every reason *item* cannot source a dose of *medication_id* on *on_date*."""
    reasons: list[str] = []
    if item.expires_on is not None and item.expires_on < on_date:
        reasons.append(EXPIRED)
    if item.medication_id != medication_id:
        reasons.append(MEDICATION_MISMATCH)
    if item.units_remaining is not None and item.units_remaining <= 0:
        reasons.append(EXHAUSTED)
    return reasons


async def check_inventory_source(
    conn: Any,
    item_id: uuid.UUID,
    *,
    household_id: uuid.UUID,
    medication_id: uuid.UUID,
    on_date: date,
    override: OverrideFlags,
) -> dict[str, Any] | None:
    """Validate the inventory item a dose is drawn from.

    Returns None when the item is usable, or the override audit payload when
    mismatches were bypassed.  Raises InventoryMismatchError otherwise.  An
    item from another household is treated as unknown and cannot be
    overridden.
    """
    item = await store.fetch_inventory_item(conn, item_id)
    if item is None or item.household_id != household_id:
        raise NotFoundError(
            f"Inventory item {item_id} not found in household",
            details={"inventory_item_id": str(item_id)},
        )

    reasons = mismatch_reasons(item, medication_id=medication_id, on_date=on_date)
    if not reasons:
        return None
    if not override.allow_override:
        raise InventoryMismatchError(item_id, reasons)
    return {"inventory_item_id": str(item_id), "reasons": reasons, "reason": override.reason}


async def decrement_units(conn: Any, item_id: uuid.UUID) -> None:
    """Consume one unit; tracked counts never go below zero."""
    await conn.execute(
        "UPDATE inventory_items SET units_remaining = GREATEST(units_remaining - 1, 0) "
        "WHERE id = $1 AND units_remaining IS NOT NULL",
        item_id,
    )
