"""Immutable administration audit event helpers."""

from __future__ import annotations

import enum
import json
import uuid
from datetime import UTC, datetime
from typing import Any


class AdministrationEventType(enum.StrEnum):
    """Canonical event names for administration audit records."""

    RECORDED = "recorded"
    MISSED_MATERIALIZED = "missed_materialized"
    MISSED_SUPERSEDED = "missed_superseded"
    EDITED = "edited"
    UNDONE = "undone"
    INVENTORY_OVERRIDE = "inventory_override"
    COSIGN_REQUESTED = "cosign_requested"
    COSIGN_CONFIRMED = "cosign_confirmed"
    COSIGN_EXPIRED = "cosign_expired"


async def record_administration_event(
    conn: Any,
    event_type: AdministrationEventType | str,
    *,
    administration_id: uuid.UUID,
    actor: uuid.UUID | str,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> None:
    """Persist an immutable administration event row.

    *conn* may be a pool or a connection inside an open transaction; the
    event then commits or rolls back with the write it describes.
    """
    event_name = (
        event_type.value if isinstance(event_type, AdministrationEventType) else str(event_type)
    )
    event_time = occurred_at if occurred_at is not None else datetime.now(UTC)

    await conn.execute(
        "INSERT INTO administration_events "
        "(event_type, administration_id, actor, reason, event_metadata, occurred_at) "
        "VALUES ($1, $2, $3, $4, $5, $6)",
        event_name,
        administration_id,
        str(actor),
        reason,
        json.dumps(metadata or {}),
        event_time,
    )
