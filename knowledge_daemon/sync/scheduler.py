"""
Background sync scheduler.

A daemon thread runs an incremental pass every ``interval`` seconds and a
full (bidirectional) pass every ``full_every``-th tick.  After
``failure_threshold`` consecutive failed passes the scheduler stops retrying
incrementally and arms a one-shot full-sync recovery after
``recovery_delay`` seconds; ticks are skipped while it is pending.  Stopping
cancels everything and makes one best-effort final full sync bounded by
``shutdown_timeout``.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from ..errors import SyncInProgressError
from .engine import BIDIRECTIONAL, FULL, INCREMENTAL, TO_GRAPH, GraphSyncEngine, SyncResult

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Periodic driver for a :class:`GraphSyncEngine`.

    Parameters
    ----------
    engine:
        Engine whose passes are scheduled.
    interval:
        Seconds between ticks.
    full_every:
        Every N-th tick runs a full pass instead of an incremental one.
    failure_threshold:
        Consecutive failures that trigger the delayed recovery.
    recovery_delay:
        Seconds before the recovery full pass runs.
    shutdown_timeout:
        Upper bound, in seconds, on the final full sync in :meth:`stop`.
    """

    def __init__(
        self,
        engine: GraphSyncEngine,
        interval: float = 900.0,
        full_every: int = 4,
        failure_threshold: int = 3,
        recovery_delay: float = 300.0,
        shutdown_timeout: float = 30.0,
    ) -> None:
        self._engine = engine
        self.interval = interval
        self.full_every = max(1, int(full_every))
        self.failure_threshold = max(1, int(failure_threshold))
        self.recovery_delay = recovery_delay
        self.shutdown_timeout = shutdown_timeout

        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._recovery_timer: Optional[threading.Timer] = None
        self._ticks = 0
        self._consecutive_failures = 0
        self._last_result: Optional[SyncResult] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the scheduler thread (no-op if already running)."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="sync-scheduler")
        self._thread.start()
        logger.info("[Scheduler] Started: every %.0fs, full every %d tick(s)",
                    self.interval, self.full_every)

    def stop(self, final_sync: bool = True, timeout: Optional[float] = None) -> Optional[SyncResult]:
        """
        Cancel the loop and any pending recovery, then optionally run one
        final full sync.  Joining the loop and the final pass share a single
        deadline of *timeout* seconds (default ``shutdown_timeout``).
        """
        timeout = self.shutdown_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        self._stop_event.set()
        with self._state_lock:
            if self._recovery_timer is not None:
                self._recovery_timer.cancel()
                self._recovery_timer = None

        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("[Scheduler] Loop still busy after %.0fs", timeout)
            self._thread = None

        if not final_sync:
            return None

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.warning("[Scheduler] No time left for the final sync")
            return None

        outcome: dict = {}

        def _final() -> None:
            outcome["result"] = self._full_pass("final")

        worker = threading.Thread(target=_final, daemon=True, name="sync-final")
        worker.start()
        worker.join(timeout=remaining)
        if worker.is_alive():
            logger.warning("[Scheduler] Final sync did not finish within %.0fs", timeout)
            return None
        logger.info("[Scheduler] Stopped")
        return outcome.get("result")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def recovery_pending(self) -> bool:
        with self._state_lock:
            return self._recovery_timer is not None

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def ticks(self) -> int:
        return self._ticks

    @property
    def last_result(self) -> Optional[SyncResult]:
        return self._last_result

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.tick()

    def tick(self) -> Optional[SyncResult]:
        """Run the pass due at this tick; None if skipped."""
        self._ticks += 1
        if self.recovery_pending:
            logger.debug("[Scheduler] Tick %d skipped: recovery pending", self._ticks)
            return None
        if self._ticks % self.full_every == 0:
            return self._full_pass(f"tick {self._ticks}")
        return self._record(self._attempt(self._engine.export_incremental,
                                          INCREMENTAL, TO_GRAPH))

    def _full_pass(self, reason: str) -> Optional[SyncResult]:
        logger.debug("[Scheduler] Full sync (%s)", reason)
        return self._record(self._attempt(self._engine.bidirectional, FULL, BIDIRECTIONAL))

    @staticmethod
    def _attempt(run, kind: str, direction: str) -> Optional[SyncResult]:
        try:
            return run()
        except SyncInProgressError:
            logger.info("[Scheduler] Pass skipped: another sync is running")
            return None
        except Exception as exc:
            logger.exception("[Scheduler] %s/%s pass crashed", kind, direction)
            return SyncResult(kind, direction, False, error=str(exc))

    def _record(self, result: Optional[SyncResult]) -> Optional[SyncResult]:
        if result is None:
            return None
        self._last_result = result
        if result.success:
            if self._consecutive_failures:
                logger.info("[Scheduler] Sync recovered after %d failure(s)",
                            self._consecutive_failures)
            self._consecutive_failures = 0
            return result

        self._consecutive_failures += 1
        logger.warning("[Scheduler] Sync failed (%d consecutive): %s",
                       self._consecutive_failures, result.error)
        if self._consecutive_failures >= self.failure_threshold:
            self._arm_recovery()
        return result

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def _arm_recovery(self) -> None:
        with self._state_lock:
            if self._recovery_timer is not None or self._stop_event.is_set():
                return
            timer = threading.Timer(self.recovery_delay, self._recover)
            timer.daemon = True
            self._recovery_timer = timer
        logger.warning("[Scheduler] %d consecutive failures; full-sync recovery in %.0fs",
                       self._consecutive_failures, self.recovery_delay)
        timer.start()

    def _recover(self) -> None:
        with self._state_lock:
            self._recovery_timer = None
        if self._stop_event.is_set():
            return
        self._full_pass("recovery")
