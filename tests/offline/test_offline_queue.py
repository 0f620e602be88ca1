"""Tests for the offline action queue and its reconciler."""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime

import pytest

from dosewatch.offline import (
    OfflineQueue,
    QueuedAction,
    QueuedOperation,
    QueueState,
    RetryPolicy,
    SqliteQueueStore,
    SyncOutcome,
    SyncRejection,
    TransientSyncError,
)

pytestmark = pytest.mark.unit

REGIMEN = str(uuid.uuid4())


class FakeTransport:
    """Scripted SyncTransport; unscripted actions are applied."""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.scripts: dict[str, list[SyncOutcome | Exception]] = {}
        self.gate: asyncio.Event | None = None

    def script(self, action: QueuedAction, *steps: SyncOutcome | Exception) -> None:
        self.scripts[action.idempotency_key] = list(steps)

    async def send(self, action: QueuedAction) -> SyncOutcome:
        if self.gate is not None:
            await self.gate.wait()
        self.sent.append(action.idempotency_key)
        steps = self.scripts.get(action.idempotency_key)
        step = steps.pop(0) if steps else SyncOutcome(applied=True, response={"ok": True})
        if isinstance(step, Exception):
            raise step
        return step


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def store(tmp_path):
    queue_store = SqliteQueueStore(tmp_path / "queue.sqlite3")
    yield queue_store
    queue_store.close()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def queue(store, transport, sleep) -> OfflineQueue:
    return OfflineQueue(store, transport, policy=RetryPolicy(max_attempts=3), sleep=sleep)


def _record(regimen_id: str = REGIMEN) -> QueuedAction:
    return QueuedAction.create(
        QueuedOperation.RECORD, {"regimen_id": regimen_id, "animal_id": str(uuid.uuid4())}
    )


DISCONTINUED = SyncOutcome(
    applied=False,
    rejection=SyncRejection(
        code="regimen_discontinued", message="Regimen is discontinued", status_code=409
    ),
)


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------


def test_idempotency_key_is_fixed_at_capture():
    action = _record()
    operation, entity, token = action.idempotency_key.split(":")
    assert operation == "record"
    assert entity == REGIMEN
    assert len(token) == 32
    assert action.ordering_key == REGIMEN
    assert _record().idempotency_key != action.idempotency_key


def test_follow_up_actions_are_ordered_by_administration():
    administration_id = str(uuid.uuid4())
    action = QueuedAction.create("undo", {"administration_id": administration_id})
    assert action.operation == QueuedOperation.UNDO
    assert action.ordering_key == administration_id


def test_capture_requires_an_entity():
    with pytest.raises(ValueError, match="administration_id"):
        QueuedAction.create(QueuedOperation.COSIGN, {"caregiver_id": "x"})


def test_queue_survives_restart(tmp_path):
    path = tmp_path / "queue.sqlite3"
    first = SqliteQueueStore(path)
    actions = [first.add(_record()) for _ in range(3)]
    first.add(actions[0])  # re-adding the same key is a no-op
    first.close()

    reopened = SqliteQueueStore(path)
    try:
        pending = reopened.pending()
        assert [a.idempotency_key for a in pending] == [a.idempotency_key for a in actions]
        assert [a.sequence for a in pending] == sorted(a.sequence for a in pending)
        assert pending[0].payload == actions[0].payload
    finally:
        reopened.close()


def test_backoff_is_capped():
    policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=5.0)
    assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


# ---------------------------------------------------------------------------
# Flush
# ---------------------------------------------------------------------------


async def test_rejection_after_discontinuation(queue, transport):
    actions = [queue.enqueue(_record()) for _ in range(3)]
    transport.script(actions[2], DISCONTINUED)

    result = await queue.flush()

    assert [a.action.idempotency_key for a in result.applied] == [
        a.idempotency_key for a in actions[:2]
    ]
    assert [r.action.idempotency_key for r in result.rejected] == [actions[2].idempotency_key]
    assert result.rejected[0].rejection.code == "regimen_discontinued"
    assert result.summary == {"applied": 2, "rejected": 1, "deferred": 0}

    assert queue.pending() == []
    (held,) = queue.rejected()
    assert held.idempotency_key == actions[2].idempotency_key
    assert held.state == QueueState.REJECTED
    assert held.rejection.status_code == 409


async def test_rejection_holds_back_later_actions_for_the_regimen(queue, transport):
    refused, follower = queue.enqueue(_record()), queue.enqueue(_record())
    other = queue.enqueue(_record(str(uuid.uuid4())))
    transport.script(refused, DISCONTINUED)

    first = await queue.flush()

    assert [r.action.idempotency_key for r in first.rejected] == [refused.idempotency_key]
    assert [a.action.idempotency_key for a in first.applied] == [other.idempotency_key]
    assert [a.idempotency_key for a in first.deferred] == [follower.idempotency_key]
    assert follower.idempotency_key not in transport.sent

    # Still held on the next flush, until the rejection is acknowledged
    second = await queue.flush()
    assert [a.idempotency_key for a in second.deferred] == [follower.idempotency_key]
    assert follower.idempotency_key not in transport.sent

    assert queue.acknowledge(refused.idempotency_key) is True
    third = await queue.flush()
    assert [a.action.idempotency_key for a in third.applied] == [follower.idempotency_key]
    assert queue.pending() == []


async def test_acknowledge_clears_rejection(queue, transport):
    action = queue.enqueue(_record())
    transport.script(action, DISCONTINUED)
    await queue.flush()

    assert queue.acknowledge(action.idempotency_key) is True
    assert queue.rejected() == []
    assert queue.acknowledge(action.idempotency_key) is False


async def test_pending_actions_cannot_be_acknowledged(queue):
    action = queue.enqueue(_record())
    assert queue.acknowledge(action.idempotency_key) is False
    assert len(queue.pending()) == 1


async def test_transient_failures_retry_with_backoff(queue, transport, sleep, store):
    action = queue.enqueue(_record())
    transport.script(
        action,
        TransientSyncError("connection reset"),
        TransientSyncError("503"),
        SyncOutcome(applied=True, replayed=True),
    )

    result = await queue.flush()

    assert sleep.delays == [0.5, 1.0]
    assert transport.sent == [action.idempotency_key] * 3
    assert result.applied[0].replayed is True
    assert store.get(action.idempotency_key) is None


async def test_exhausted_retries_defer_the_ordering_key(queue, transport, sleep, store):
    stuck = queue.enqueue(_record())
    behind = queue.enqueue(_record())
    other = queue.enqueue(_record(str(uuid.uuid4())))
    transport.script(stuck, *(TransientSyncError("offline") for _ in range(3)))

    result = await queue.flush()

    assert sleep.delays == [0.5, 1.0]
    assert [a.idempotency_key for a in result.deferred] == [
        stuck.idempotency_key,
        behind.idempotency_key,
    ]
    assert [a.action.idempotency_key for a in result.applied] == [other.idempotency_key]
    assert behind.idempotency_key not in transport.sent

    kept = store.get(stuck.idempotency_key)
    assert kept.attempts == 3
    assert kept.last_error == "offline"
    assert [a.idempotency_key for a in queue.pending()] == [
        stuck.idempotency_key,
        behind.idempotency_key,
    ]

    # Next flush picks up where this one left off
    result = await queue.flush()
    assert result.summary == {"applied": 2, "rejected": 0, "deferred": 0}
    assert queue.pending() == []


async def test_concurrent_flushes_share_one_run(queue, transport):
    actions = [queue.enqueue(_record()) for _ in range(2)]
    transport.gate = asyncio.Event()

    first = asyncio.create_task(queue.flush())
    second = asyncio.create_task(queue.flush())
    await asyncio.sleep(0)
    assert queue.flushing is True
    transport.gate.set()
    results = await asyncio.gather(first, second)

    assert results[0] is results[1]
    assert transport.sent == [a.idempotency_key for a in actions]
    assert queue.flushing is False


async def test_empty_flush(queue, transport):
    result = await queue.flush()
    assert result.summary == {"applied": 0, "rejected": 0, "deferred": 0}
    assert transport.sent == []


def test_created_at_round_trips(store):
    captured = datetime(2025, 3, 3, 8, 5, tzinfo=UTC)
    action = QueuedAction.create(QueuedOperation.RECORD, {"regimen_id": REGIMEN}, now=captured)
    assert store.add(action).created_at == captured
