"""Durable local storage for queued offline actions.

The queue survives process restarts: actions live in a local SQLite file
until the server applies them, or until a rejected action is acknowledged.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Protocol

from dosewatch.offline.models import QueuedAction, QueuedOperation, QueueState, SyncRejection


class QueueStore(Protocol):
    """Protocol for offline queue backends."""

    def add(self, action: QueuedAction) -> QueuedAction:
        """Persist *action*, assigning its sequence.  Re-adding a key returns the stored one."""
        ...

    def get(self, idempotency_key: str) -> QueuedAction | None: ...

    def pending(self) -> list[QueuedAction]:
        """Pending actions in capture order."""
        ...

    def rejected(self) -> list[QueuedAction]: ...

    def record_attempt(self, idempotency_key: str, attempts: int, error: str | None) -> None: ...

    def mark_rejected(self, idempotency_key: str, rejection: SyncRejection) -> None: ...

    def remove(self, idempotency_key: str) -> bool: ...


_SCHEMA = """
CREATE TABLE IF NOT EXISTS queued_actions (
    sequence        INTEGER PRIMARY KEY AUTOINCREMENT,
    idempotency_key TEXT NOT NULL UNIQUE,
    operation       TEXT NOT NULL,
    ordering_key    TEXT NOT NULL,
    payload         TEXT NOT NULL,
    created_at      TEXT NOT NULL,
    attempts        INTEGER NOT NULL DEFAULT 0,
    state           TEXT NOT NULL DEFAULT 'pending',
    last_error      TEXT,
    rejection       TEXT
)
"""


class SqliteQueueStore:
    """QueueStore backed by a local SQLite database file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        if str(path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path))
        self._conn.row_factory = sqlite3.Row
        with self._conn:
            self._conn.execute(_SCHEMA)

    def close(self) -> None:
        self._conn.close()

    def _from_row(self, row: sqlite3.Row) -> QueuedAction:
        rejection = json.loads(row["rejection"]) if row["rejection"] else None
        return QueuedAction(
            idempotency_key=row["idempotency_key"],
            operation=QueuedOperation(row["operation"]),
            ordering_key=row["ordering_key"],
            payload=json.loads(row["payload"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            attempts=row["attempts"],
            state=QueueState(row["state"]),
            sequence=row["sequence"],
            last_error=row["last_error"],
            rejection=SyncRejection.from_dict(rejection) if rejection else None,
        )

    def add(self, action: QueuedAction) -> QueuedAction:
        with self._conn:
            self._conn.execute(
                "INSERT OR IGNORE INTO queued_actions "
                "(idempotency_key, operation, ordering_key, payload, created_at, attempts, state) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    action.idempotency_key,
                    action.operation.value,
                    action.ordering_key,
                    json.dumps(action.payload),
                    action.created_at.isoformat(),
                    action.attempts,
                    action.state.value,
                ),
            )
        stored = self.get(action.idempotency_key)
        assert stored is not None
        return stored

    def get(self, idempotency_key: str) -> QueuedAction | None:
        row = self._conn.execute(
            "SELECT * FROM queued_actions WHERE idempotency_key = ?", (idempotency_key,)
        ).fetchone()
        return self._from_row(row) if row is not None else None

    def pending(self) -> list[QueuedAction]:
        rows = self._conn.execute(
            "SELECT * FROM queued_actions WHERE state = 'pending' ORDER BY sequence"
        ).fetchall()
        return [self._from_row(r) for r in rows]

    def rejected(self) -> list[QueuedAction]:
        rows = self._conn.execute(
            "SELECT * FROM queued_actions WHERE state = 'rejected' ORDER BY sequence"
        ).fetchall()
        return [self._from_row(r) for r in rows]

    def record_attempt(self, idempotency_key: str, attempts: int, error: str | None) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE queued_actions SET attempts = ?, last_error = ? WHERE idempotency_key = ?",
                (attempts, error, idempotency_key),
            )

    def mark_rejected(self, idempotency_key: str, rejection: SyncRejection) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE queued_actions SET state = 'rejected', rejection = ?, last_error = ? "
                "WHERE idempotency_key = ?",
                (json.dumps(rejection.to_dict()), rejection.message, idempotency_key),
            )

    def remove(self, idempotency_key: str) -> bool:
        with self._conn:
            cursor = self._conn.execute(
                "DELETE FROM queued_actions WHERE idempotency_key = ?", (idempotency_key,)
            )
        return cursor.rowcount > 0
