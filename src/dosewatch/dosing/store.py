"""SQL access helpers shared by the recording, status and co-sign modules.

Every helper takes ``conn``, which may be an asyncpg pool or a connection
inside an open transaction.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any

from dosewatch.dosing.models import (
    AdministrationRecord,
    AnimalContext,
    CoSignRequest,
    InventoryItem,
    Regimen,
)

ADMINISTRATION_INSERT_COLUMNS: tuple[str, ...] = (
    "regimen_id",
    "animal_id",
    "household_id",
    "caregiver_id",
    "scheduled_for",
    "recorded_at",
    "client_recorded_at",
    "status",
    "inventory_source_id",
    "inventory_override",
    "notes",
    "cosign_pending",
    "idempotency_key",
)

# No conflict target: both the idempotency_key index and the live-slot
# partial index resolve to "nothing inserted".
_INSERT_ADMINISTRATION_SQL = (
    f"INSERT INTO administrations ({', '.join(ADMINISTRATION_INSERT_COLUMNS)}) "
    f"VALUES ({', '.join(f'${i}' for i in range(1, len(ADMINISTRATION_INSERT_COLUMNS) + 1))}) "
    "ON CONFLICT DO NOTHING RETURNING *"
)

_ANIMAL_SELECT = (
    "SELECT a.id, a.household_id, a.timezone, "
    "h.timezone AS household_timezone, h.cosign_window_minutes "
    "FROM animals a JOIN households h ON h.id = a.household_id "
)


async def insert_administration(
    conn: Any, values: dict[str, Any]
) -> AdministrationRecord | None:
    """Insert a record; return None when the key or the live slot is taken."""
    args = []
    for column in ADMINISTRATION_INSERT_COLUMNS:
        value = values.get(column)
        if column == "inventory_override" and value is not None:
            value = json.dumps(value)
        elif column == "status" and value is not None:
            value = str(value)
        elif column == "cosign_pending":
            value = bool(value)
        args.append(value)
    row = await conn.fetchrow(_INSERT_ADMINISTRATION_SQL, *args)
    return AdministrationRecord.from_row(row) if row is not None else None


async def fetch_by_key(conn: Any, idempotency_key: str) -> AdministrationRecord | None:
    row = await conn.fetchrow(
        "SELECT * FROM administrations WHERE idempotency_key = $1", idempotency_key
    )
    return AdministrationRecord.from_row(row) if row is not None else None


async def fetch_administration(
    conn: Any, administration_id: uuid.UUID, *, for_update: bool = False
) -> AdministrationRecord | None:
    sql = "SELECT * FROM administrations WHERE id = $1"
    if for_update:
        sql += " FOR UPDATE"
    row = await conn.fetchrow(sql, administration_id)
    return AdministrationRecord.from_row(row) if row is not None else None


async def fetch_live_for_slot(
    conn: Any,
    regimen_id: uuid.UUID,
    animal_id: uuid.UUID,
    scheduled_for: datetime,
    *,
    for_update: bool = False,
) -> AdministrationRecord | None:
    """Return the live record occupying a scheduled slot, if any."""
    sql = (
        "SELECT * FROM administrations "
        "WHERE regimen_id = $1 AND animal_id = $2 AND scheduled_for = $3 AND NOT is_deleted"
    )
    if for_update:
        sql += " FOR UPDATE"
    row = await conn.fetchrow(sql, regimen_id, animal_id, scheduled_for)
    return AdministrationRecord.from_row(row) if row is not None else None


async def fetch_administrations(
    conn: Any,
    animal_ids: list[uuid.UUID],
    range_start: datetime,
    range_end: datetime,
) -> list[AdministrationRecord]:
    """Live records for *animal_ids* whose slot (or, for PRN, recording) is in range."""
    rows = await conn.fetch(
        "SELECT * FROM administrations "
        "WHERE animal_id = ANY($1::uuid[]) AND NOT is_deleted "
        "AND COALESCE(scheduled_for, recorded_at) >= $2 "
        "AND COALESCE(scheduled_for, recorded_at) < $3 "
        "ORDER BY COALESCE(scheduled_for, recorded_at)",
        animal_ids,
        range_start,
        range_end,
    )
    return [AdministrationRecord.from_row(r) for r in rows]


async def fetch_regimen(conn: Any, regimen_id: uuid.UUID) -> Regimen | None:
    row = await conn.fetchrow(
        "SELECT r.*, a.household_id FROM regimens r "
        "JOIN animals a ON a.id = r.animal_id WHERE r.id = $1",
        regimen_id,
    )
    return Regimen.from_row(row) if row is not None else None


async def fetch_regimens_for_animals(conn: Any, animal_ids: list[uuid.UUID]) -> list[Regimen]:
    rows = await conn.fetch(
        "SELECT r.*, a.household_id FROM regimens r "
        "JOIN animals a ON a.id = r.animal_id "
        "WHERE r.animal_id = ANY($1::uuid[]) ORDER BY r.id",
        animal_ids,
    )
    return [Regimen.from_row(r) for r in rows]


async def fetch_animal(conn: Any, animal_id: uuid.UUID) -> AnimalContext | None:
    row = await conn.fetchrow(_ANIMAL_SELECT + "WHERE a.id = $1", animal_id)
    return AnimalContext.from_row(row) if row is not None else None


async def fetch_animals(conn: Any, animal_ids: list[uuid.UUID]) -> list[AnimalContext]:
    rows = await conn.fetch(_ANIMAL_SELECT + "WHERE a.id = ANY($1::uuid[])", animal_ids)
    return [AnimalContext.from_row(r) for r in rows]


async def fetch_household_animals(conn: Any, household_id: uuid.UUID) -> list[AnimalContext]:
    rows = await conn.fetch(_ANIMAL_SELECT + "WHERE a.household_id = $1", household_id)
    return [AnimalContext.from_row(r) for r in rows]


async def fetch_household_timezone(conn: Any, household_id: uuid.UUID) -> str | None:
    return await conn.fetchval("SELECT timezone FROM households WHERE id = $1", household_id)


async def fetch_scheduled_animal_ids(conn: Any) -> list[uuid.UUID]:
    """Animals with at least one active fixed-schedule regimen."""
    rows = await conn.fetch(
        "SELECT DISTINCT animal_id FROM regimens "
        "WHERE schedule_type = 'FIXED' AND active AND discontinued_at IS NULL"
    )
    return [r["animal_id"] for r in rows]


async def fetch_inventory_item(conn: Any, item_id: uuid.UUID) -> InventoryItem | None:
    row = await conn.fetchrow("SELECT * FROM inventory_items WHERE id = $1", item_id)
    return InventoryItem.from_row(row) if row is not None else None


async def fetch_cosign_request(
    conn: Any, administration_id: uuid.UUID
) -> CoSignRequest | None:
    row = await conn.fetchrow(
        "SELECT * FROM cosign_requests WHERE administration_id = $1", administration_id
    )
    return CoSignRequest.from_row(row) if row is not None else None
