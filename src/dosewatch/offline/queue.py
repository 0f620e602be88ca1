"""Offline queue and sync reconciler.

Actions are captured synchronously with their idempotency key already fixed,
so a replay after a lost response is recognised by the server as the same
write.  :meth:`OfflineQueue.flush` replays pending actions in capture order:

- applied (or server-replayed) actions leave the queue;
- permanently refused actions move to ``rejected`` until acknowledged, and
  later actions with the same ordering key wait until then;
- transient failures retry with bounded exponential backoff, and once an
  action gives up for this flush, later actions with the same ordering key
  are deferred so they never overtake it.

Only one flush runs at a time; a concurrent caller awaits the in-flight one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace

from dosewatch.core.metrics import dose_metrics
from dosewatch.offline.models import (
    AppliedAction,
    FlushResult,
    QueuedAction,
    RejectedAction,
)
from dosewatch.offline.store import QueueStore
from dosewatch.offline.transport import SyncOutcome, SyncTransport, TransientSyncError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 30.0

    def delay(self, attempt: int) -> float:
        """Backoff before retry number *attempt* (1-based)."""
        return min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)

    @classmethod
    def from_config(cls, config: Any) -> RetryPolicy:
        """Build from a :class:`dosewatch.config.OfflineConfig`."""
        return cls(
            max_attempts=config.max_attempts,
            base_delay_seconds=config.base_delay_seconds,
            max_delay_seconds=config.max_delay_seconds,
        )


class OfflineQueue:
    """Durable queue of offline mutations with a single-flight reconciler."""

    def __init__(
        self,
        store: QueueStore,
        transport: SyncTransport,
        *,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._transport = transport
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._flush_task: asyncio.Task[FlushResult] | None = None

    def enqueue(self, action: QueuedAction) -> QueuedAction:
        """Persist *action* for the next flush and return the stored copy."""
        stored = self._store.add(action)
        logger.debug(
            "Queued %s action %s (sequence=%s)",
            stored.operation.value,
            stored.idempotency_key,
            stored.sequence,
        )
        return stored

    def pending(self) -> list[QueuedAction]:
        return self._store.pending()

    def rejected(self) -> list[QueuedAction]:
        """Rejected actions awaiting user review."""
        return self._store.rejected()

    def acknowledge(self, idempotency_key: str) -> bool:
        """Drop a rejected action once the user has seen it."""
        action = self._store.get(idempotency_key)
        if action is None or action.rejection is None:
            return False
        return self._store.remove(idempotency_key)

    @property
    def flushing(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    async def flush(self) -> FlushResult:
        """Replay pending actions; joins the in-flight flush if one is running."""
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_once())
        return await asyncio.shield(self._flush_task)

    async def _flush_once(self) -> FlushResult:
        result = FlushResult()
        # Unacknowledged rejections hold back their ordering key.
        blocked = {action.ordering_key for action in self._store.rejected()}
        tracer = trace.get_tracer("dosewatch")
        with tracer.start_as_current_span("dosewatch.offline.flush") as span:
            for action in self._store.pending():
                if action.ordering_key in blocked:
                    result.deferred.append(action)
                    continue

                outcome = await self._deliver(action)
                if outcome is None:
                    blocked.add(action.ordering_key)
                    result.deferred.append(action)
                elif outcome.applied:
                    self._store.remove(action.idempotency_key)
                    result.applied.append(
                        AppliedAction(action, response=outcome.response, replayed=outcome.replayed)
                    )
                else:
                    self._store.mark_rejected(action.idempotency_key, outcome.rejection)
                    action.rejection = outcome.rejection
                    blocked.add(action.ordering_key)
                    result.rejected.append(RejectedAction(action, outcome.rejection))

            for name, count in result.summary.items():
                span.set_attribute(f"flush.{name}", count)
                dose_metrics.flush_outcome(name, count)

        if result.applied or result.rejected or result.deferred:
            logger.info(
                "Offline flush: %d applied, %d rejected, %d deferred",
                len(result.applied),
                len(result.rejected),
                len(result.deferred),
            )
        return result

    async def _deliver(self, action: QueuedAction) -> SyncOutcome | None:
        """Send with retries; None when transient failures exhausted this flush's budget."""
        tries = 0
        while True:
            try:
                return await self._transport.send(action)
            except TransientSyncError as exc:
                tries += 1
                action.attempts += 1
                action.last_error = str(exc)
                self._store.record_attempt(action.idempotency_key, action.attempts, str(exc))
                if tries >= self._policy.max_attempts:
                    logger.warning(
                        "Giving up on %s for this flush after %d attempt(s): %s",
                        action.idempotency_key,
                        tries,
                        exc,
                    )
                    return None
                await self._sleep(self._policy.delay(tries))
