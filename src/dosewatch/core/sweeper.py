"""Background sweeper for co-sign expiry and missed-dose materialization.

The sweeper is an owned task with an explicit lifecycle:

- ``start()`` spawns the loop (no-op when disabled or already running)
- ``stop()`` cancels the loop and waits for it to finish
- ``status()`` reports progress without side effects

Each pass persists expiry for overdue co-sign requests and writes synthetic
missed records for doses past their cutoff within the lookback window.  A
failed pass is logged and the loop keeps going.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from dosewatch.config import SweeperConfig
from dosewatch.dosing.models import Tolerance
from dosewatch.dosing.operations import SweepResult, sweep

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweeperStatus:
    running: bool
    runs: int
    last_run_at: datetime | None
    last_error: str | None
    last_expired: int
    last_materialized: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "runs": self.runs,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
            "last_expired": self.last_expired,
            "last_materialized": self.last_materialized,
        }


class DoseSweeper:
    """Periodic expiry and missed-dose pass over all households."""

    def __init__(
        self,
        pool: Any,
        config: SweeperConfig | None = None,
        *,
        tolerance: Tolerance | None = None,
    ) -> None:
        self._pool = pool
        self._config = config or SweeperConfig()
        self._tolerance = tolerance or Tolerance()
        self._task: asyncio.Task | None = None
        self._runs = 0
        self._last_run_at: datetime | None = None
        self._last_error: str | None = None
        self._last_result = SweepResult(expired_cosigns=0, materialized_missed=0)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the sweeper background task."""
        if not self._config.enabled:
            logger.info("Dose sweeper disabled via config")
            return
        if self._task is not None:
            logger.warning("Dose sweeper task already running")
            return
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Started dose sweeper (interval=%ss)", self._config.interval_seconds)

    async def stop(self) -> None:
        """Stop the sweeper background task gracefully."""
        if self._task is None:
            return
        logger.info("Stopping dose sweeper")
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Dose sweeper stopped")

    def status(self) -> SweeperStatus:
        return SweeperStatus(
            running=self.running,
            runs=self._runs,
            last_run_at=self._last_run_at,
            last_error=self._last_error,
            last_expired=self._last_result.expired_cosigns,
            last_materialized=self._last_result.materialized_missed,
        )

    async def run_once(self, now: datetime | None = None) -> SweepResult:
        """Run a single pass immediately and record its outcome."""
        now = now if now is not None else datetime.now(UTC)
        try:
            result = await sweep(
                self._pool,
                tolerance=self._tolerance,
                lookback=timedelta(hours=self._config.lookback_hours),
                now=now,
            )
        except Exception as exc:
            self._last_error = f"{type(exc).__name__}: {exc}"
            raise
        finally:
            self._runs += 1
            self._last_run_at = now
        self._last_error = None
        self._last_result = result
        if result.expired_cosigns or result.materialized_missed:
            logger.info(
                "Sweep expired %d co-sign(s), materialized %d missed dose(s)",
                result.expired_cosigns,
                result.materialized_missed,
            )
        return result

    async def _sweep_loop(self) -> None:
        try:
            while True:
                try:
                    await self.run_once()
                except Exception:
                    logger.exception("Dose sweep failed")
                await asyncio.sleep(self._config.interval_seconds)
        except asyncio.CancelledError:
            logger.debug("Dose sweeper loop cancelled")
            raise
