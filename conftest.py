"""Root conftest: shared fixtures for the dosewatch test suite.

Provides:
- ``MockPool``: an in-memory stand-in for the asyncpg pool that understands
  the SQL issued by :mod:`dosewatch.dosing`, including ``ON CONFLICT DO
  NOTHING`` on the idempotency key and the live-slot index, conditional
  ``UPDATE ... RETURNING`` and transaction rollback.
- ``postgres_container`` / ``provisioned_postgres_pool`` for integration
  tests against a real Postgres (skipped when Docker is unavailable).
"""

from __future__ import annotations

import asyncio
import copy
import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any

import pytest

from dosewatch.dosing.store import ADMINISTRATION_INSERT_COLUMNS

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None


# ---------------------------------------------------------------------------
# In-memory pool
# ---------------------------------------------------------------------------


class MockPool:
    """In-memory mock of an asyncpg pool for the dosing tables.

    ``acquire()`` yields the pool itself; ``transaction()`` serialises
    transactions with a lock and restores a snapshot when the block raises.
    Unknown SQL fails loudly so drift between the code and this mock shows
    up as a test failure.
    """

    _TABLES = (
        "households",
        "animals",
        "regimens",
        "inventory_items",
        "administrations",
        "cosign_requests",
        "administration_events",
    )

    def __init__(self) -> None:
        self.households: dict[uuid.UUID, dict[str, Any]] = {}
        self.animals: dict[uuid.UUID, dict[str, Any]] = {}
        self.regimens: dict[uuid.UUID, dict[str, Any]] = {}
        self.inventory_items: dict[uuid.UUID, dict[str, Any]] = {}
        self.administrations: dict[uuid.UUID, dict[str, Any]] = {}
        self.cosign_requests: dict[uuid.UUID, dict[str, Any]] = {}  # by administration_id
        self.administration_events: list[dict[str, Any]] = []
        self.queries: list[str] = []
        self._tx_lock = asyncio.Lock()

    # -- seeding -------------------------------------------------------------

    def seed_household(
        self, *, timezone: str = "UTC", cosign_window_minutes: int | None = None
    ) -> uuid.UUID:
        household_id = uuid.uuid4()
        self.households[household_id] = {
            "id": household_id,
            "name": "Test household",
            "timezone": timezone,
            "cosign_window_minutes": cosign_window_minutes,
        }
        return household_id

    def seed_animal(self, household_id: uuid.UUID, *, timezone: str | None = None) -> uuid.UUID:
        animal_id = uuid.uuid4()
        self.animals[animal_id] = {
            "id": animal_id,
            "household_id": household_id,
            "name": f"animal-{animal_id.hex[:6]}",
            "timezone": timezone,
        }
        return animal_id

    def seed_regimen(
        self,
        animal_id: uuid.UUID,
        *,
        schedule_type: str = "FIXED",
        times_local: list[str] | None = None,
        start_date: date = date(2025, 1, 1),
        medication_id: uuid.UUID | None = None,
        **overrides: Any,
    ) -> uuid.UUID:
        regimen_id = uuid.uuid4()
        row = {
            "id": regimen_id,
            "animal_id": animal_id,
            "medication_id": medication_id or uuid.uuid4(),
            "name": "Test regimen",
            "schedule_type": schedule_type,
            "times_local": list(times_local if times_local is not None else ["08:00"]),
            "start_date": start_date,
            "end_date": None,
            "late_minutes": None,
            "very_late_minutes": None,
            "cutoff_minutes": None,
            "high_risk": False,
            "requires_co_sign": False,
            "active": True,
            "discontinued_at": None,
        }
        row.update(overrides)
        self.regimens[regimen_id] = row
        return regimen_id

    def seed_inventory(
        self,
        household_id: uuid.UUID,
        medication_id: uuid.UUID,
        *,
        expires_on: date | None = None,
        units_remaining: int | None = None,
    ) -> uuid.UUID:
        item_id = uuid.uuid4()
        self.inventory_items[item_id] = {
            "id": item_id,
            "household_id": household_id,
            "medication_id": medication_id,
            "expires_on": expires_on,
            "units_remaining": units_remaining,
        }
        return item_id

    def live_administrations(self) -> list[dict[str, Any]]:
        return [r for r in self.administrations.values() if not r["is_deleted"]]

    def events_of(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self.administration_events if e["event_type"] == event_type]

    # -- pool / connection protocol -------------------------------------------

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[MockPool]:
        yield self

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self._tx_lock:
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in self._TABLES}
            try:
                yield
            except BaseException:
                for name, value in snapshot.items():
                    setattr(self, name, value)
                raise

    async def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None:
        rows = self._run(query, args)
        return rows[0] if rows else None

    async def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        return self._run(query, args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        rows = self._run(query, args)
        if not rows:
            return None
        return next(iter(rows[0].values()))

    async def execute(self, query: str, *args: Any) -> str:
        rows = self._run(query, args)
        return f"UPDATE {len(rows)}"

    # -- SQL emulation ----------------------------------------------------------

    def _run(self, query: str, args: tuple[Any, ...]) -> list[dict[str, Any]]:
        sql = " ".join(query.split())
        self.queries.append(sql)

        if sql.startswith("INSERT INTO administrations"):
            return self._insert_administration(args)
        if sql.startswith("INSERT INTO cosign_requests"):
            return self._insert_cosign_request(args)
        if sql.startswith("INSERT INTO administration_events"):
            self.administration_events.append(
                {
                    "event_type": args[0],
                    "administration_id": args[1],
                    "actor": args[2],
                    "reason": args[3],
                    "event_metadata": args[4],
                    "occurred_at": args[5],
                }
            )
            return [{}]
        if sql.startswith("SELECT * FROM administrations"):
            return self._select_administrations(sql, args)
        if sql.startswith("UPDATE administrations"):
            return self._update_administrations(sql, args)
        if sql.startswith("UPDATE cosign_requests"):
            return self._update_cosign_requests(sql, args)
        if sql.startswith("SELECT * FROM cosign_requests"):
            row = self.cosign_requests.get(args[0])
            return [dict(row)] if row else []
        if sql.startswith("SELECT r.*, a.household_id FROM regimens"):
            return self._select_regimens(sql, args)
        if sql.startswith("SELECT DISTINCT animal_id FROM regimens"):
            ids = {
                r["animal_id"]
                for r in self.regimens.values()
                if r["schedule_type"] == "FIXED" and r["active"] and r["discontinued_at"] is None
            }
            return [{"animal_id": i} for i in sorted(ids, key=str)]
        if sql.startswith("SELECT a.id, a.household_id, a.timezone"):
            return self._select_animals(sql, args)
        if sql.startswith("SELECT timezone FROM households"):
            household = self.households.get(args[0])
            return [{"timezone": household["timezone"]}] if household else []
        if sql.startswith("SELECT * FROM inventory_items"):
            item = self.inventory_items.get(args[0])
            return [dict(item)] if item else []
        if sql.startswith("UPDATE inventory_items"):
            item = self.inventory_items.get(args[0])
            if item is None or item["units_remaining"] is None:
                return []
            if "units_remaining + 1" in sql:
                item["units_remaining"] += 1
            else:
                item["units_remaining"] = max(item["units_remaining"] - 1, 0)
            return [dict(item)]
        raise AssertionError(f"MockPool does not understand SQL: {sql}")

    def _slot_taken(self, regimen_id: Any, animal_id: Any, scheduled_for: Any) -> bool:
        if scheduled_for is None:
            return False
        return any(
            r["regimen_id"] == regimen_id
            and r["animal_id"] == animal_id
            and r["scheduled_for"] == scheduled_for
            and not r["is_deleted"]
            for r in self.administrations.values()
        )

    def _insert_administration(self, args: tuple[Any, ...]) -> list[dict[str, Any]]:
        values = dict(zip(ADMINISTRATION_INSERT_COLUMNS, args, strict=True))
        if any(
            r["idempotency_key"] == values["idempotency_key"]
            for r in self.administrations.values()
        ):
            return []
        if self._slot_taken(values["regimen_id"], values["animal_id"], values["scheduled_for"]):
            return []
        row = {
            "id": uuid.uuid4(),
            **values,
            "cosign_missing": False,
            "cosigned_by": None,
            "cosigned_at": None,
            "is_edited": False,
            "edited_by": None,
            "edited_at": None,
            "is_deleted": False,
            "created_at": datetime.now(UTC),
        }
        self.administrations[row["id"]] = row
        return [dict(row)]

    def _insert_cosign_request(self, args: tuple[Any, ...]) -> list[dict[str, Any]]:
        administration_id, requested_by, requested_at, expires_at = args
        if administration_id in self.cosign_requests:
            raise AssertionError("duplicate cosign request for administration")
        row = {
            "id": uuid.uuid4(),
            "administration_id": administration_id,
            "requested_by": requested_by,
            "requested_at": requested_at,
            "expires_at": expires_at,
            "state": "pending",
            "confirmed_by": None,
            "resolved_at": None,
        }
        self.cosign_requests[administration_id] = row
        return [dict(row)]

    def _select_administrations(self, sql: str, args: tuple[Any, ...]) -> list[dict[str, Any]]:
        rows = list(self.administrations.values())
        if "WHERE idempotency_key = $1" in sql:
            return [dict(r) for r in rows if r["idempotency_key"] == args[0]]
        if "WHERE regimen_id = $1 AND animal_id = $2 AND scheduled_for = $3" in sql:
            return [
                dict(r)
                for r in rows
                if r["regimen_id"] == args[0]
                and r["animal_id"] == args[1]
                and r["scheduled_for"] == args[2]
                and not r["is_deleted"]
            ]
        if "WHERE animal_id = ANY($1::uuid[])" in sql:
            animal_ids, start, end = args
            selected = [
                r
                for r in rows
                if r["animal_id"] in animal_ids
                and not r["is_deleted"]
                and start <= (r["scheduled_for"] or r["recorded_at"]) < end
            ]
            selected.sort(key=lambda r: r["scheduled_for"] or r["recorded_at"])
            return [dict(r) for r in selected]
        if "WHERE id = $1" in sql:
            row = self.administrations.get(args[0])
            return [dict(row)] if row else []
        raise AssertionError(f"MockPool does not understand SQL: {sql}")

    def _update_administrations(self, sql: str, args: tuple[Any, ...]) -> list[dict[str, Any]]:
        if "WHERE id = ANY($1::uuid[])" in sql:
            touched = []
            for administration_id in args[0]:
                row = self.administrations.get(administration_id)
                if row is not None:
                    row["cosign_pending"] = False
                    row["cosign_missing"] = True
                    touched.append(dict(row))
            return touched

        row = self.administrations.get(args[0])
        if row is None:
            return []
        if "AND NOT is_deleted" in sql and row["is_deleted"]:
            return []
        if "SET notes = $2" in sql:
            row.update(notes=args[1], is_edited=True, edited_by=args[2], edited_at=args[3])
        elif "SET cosign_pending = false, cosigned_by = $2" in sql:
            row.update(cosign_pending=False, cosigned_by=args[1], cosigned_at=args[2])
        elif "SET is_deleted = true" in sql:
            row.update(is_deleted=True, edited_by=args[1], edited_at=args[2])
            if "is_edited = true" in sql:
                row["is_edited"] = True
        else:
            raise AssertionError(f"MockPool does not understand SQL: {sql}")
        return [dict(row)]

    def _update_cosign_requests(self, sql: str, args: tuple[Any, ...]) -> list[dict[str, Any]]:
        if "SET state = 'confirmed'" in sql:
            administration_id, caregiver_id, now = args
            row = self.cosign_requests.get(administration_id)
            if row is None or row["state"] != "pending" or not row["expires_at"] > now:
                return []
            row.update(state="confirmed", confirmed_by=caregiver_id, resolved_at=now)
            return [dict(row)]
        if "SET state = 'expired'" in sql:
            now = args[0]
            only = args[1] if len(args) > 1 else None
            expired = []
            for row in self.cosign_requests.values():
                if only is not None and row["administration_id"] != only:
                    continue
                if row["state"] == "pending" and row["expires_at"] <= now:
                    row.update(state="expired", resolved_at=now)
                    expired.append({"administration_id": row["administration_id"]})
            return expired
        raise AssertionError(f"MockPool does not understand SQL: {sql}")

    def _regimen_row(self, regimen: dict[str, Any]) -> dict[str, Any] | None:
        animal = self.animals.get(regimen["animal_id"])
        if animal is None:
            return None
        return {**regimen, "household_id": animal["household_id"]}

    def _select_regimens(self, sql: str, args: tuple[Any, ...]) -> list[dict[str, Any]]:
        if "WHERE r.id = $1" in sql:
            regimen = self.regimens.get(args[0])
            row = self._regimen_row(regimen) if regimen else None
            return [row] if row else []
        rows = [
            self._regimen_row(r) for r in self.regimens.values() if r["animal_id"] in args[0]
        ]
        return sorted((r for r in rows if r), key=lambda r: str(r["id"]))

    def _animal_row(self, animal: dict[str, Any]) -> dict[str, Any]:
        household = self.households[animal["household_id"]]
        return {
            "id": animal["id"],
            "household_id": animal["household_id"],
            "timezone": animal["timezone"],
            "household_timezone": household["timezone"],
            "cosign_window_minutes": household["cosign_window_minutes"],
        }

    def _select_animals(self, sql: str, args: tuple[Any, ...]) -> list[dict[str, Any]]:
        if "WHERE a.id = ANY($1::uuid[])" in sql:
            animals = [a for a in self.animals.values() if a["id"] in args[0]]
        elif "WHERE a.household_id = $1" in sql:
            animals = [a for a in self.animals.values() if a["household_id"] == args[0]]
        else:
            animals = [a for a in self.animals.values() if a["id"] == args[0]]
        return [self._animal_row(a) for a in animals]


@pytest.fixture
def mock_pool() -> MockPool:
    """Provide an empty MockPool for tests."""
    return MockPool()


# ---------------------------------------------------------------------------
# Postgres (testcontainers)
# ---------------------------------------------------------------------------


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this session.

    Each ``provisioned_postgres_pool()`` call creates a fresh database, so
    rows never leak between tests.
    """
    if not docker_available:
        pytest.skip("Docker not available")
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh, migrated database and asyncpg pool for one test usage.

    Tests should use this as::

        async with provisioned_postgres_pool() as pool:
            ...
    """
    from dosewatch.db import Database
    from dosewatch.migrations import run_migrations

    @asynccontextmanager
    async def _provision(
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 5,
    ) -> AsyncIterator[Pool]:
        db = Database(
            db_name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        await run_migrations(db.sqlalchemy_url())
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision
