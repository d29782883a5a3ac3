"""
Sync Worker Service.

Background daemon thread that periodically runs a full
:meth:`ReconciliationEngine.sync_all` cycle for the signed-in user.  The
caller invokes :meth:`start` / :meth:`stop`; the worker thread wakes at a
configurable interval with exponential backoff on consecutive failures.

Besides the periodic schedule, a cycle is triggered by
:meth:`sync_now` and, after a short debounce, whenever the
:class:`ConnectivityMonitor` reports that the device came back online.
Callbacks registered with :meth:`add_cycle_listener` receive the report
of every completed cycle on the worker thread.

Thread Safety
-------------
The worker never touches the store itself.  Each cycle is submitted to
the :class:`BackgroundRunner` loop, and the worker thread only waits for
its report.
"""

from __future__ import annotations

import concurrent.futures
import threading
from typing import Callable, Optional

from finsync.auth import SessionManager
from finsync.config import AppConfig
from finsync.logger import StructuredLogger
from finsync.services.background import BackgroundRunner
from finsync.services.base_service import BaseService
from finsync.services.connectivity import ConnectivityMonitor
from finsync.services.reconciliation import ReconciliationEngine, SyncReport

CycleListener = Callable[[SyncReport], None]


class SyncWorkerService(BaseService):
    """Daemon thread that keeps the local store reconciled with the server.

    Parameters
    ----------
    engine:
        The reconciliation engine whose ``sync_all`` is run.
    runner:
        Background runner owning the engine's event loop.
    session:
        Session holding the signed-in user (the owner to sync).
    connectivity:
        Online/offline flag; offline cycles are skipped.
    config:
        Application configuration (intervals, debounce).
    logger:
        Structured JSON logger.
    """

    # Upper bound on how long the worker waits for one cycle's report.
    _CYCLE_TIMEOUT_S: float = 120.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __init__(
        self,
        engine: ReconciliationEngine,
        runner: BackgroundRunner,
        session: SessionManager,
        connectivity: ConnectivityMonitor,
        config: AppConfig,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._engine = engine
        self._runner = runner
        self._session = session
        self._connectivity = connectivity
        self._base_interval_s: float = config.SYNC_BASE_INTERVAL_S
        self._max_interval_s: float = config.SYNC_MAX_INTERVAL_S
        self._debounce_s: float = config.CONNECTIVITY_DEBOUNCE_S

        self._thread: Optional[threading.Thread] = None
        self._stop_event: threading.Event = threading.Event()
        self._wake_event: threading.Event = threading.Event()
        self._debounce_timer: Optional[threading.Timer] = None
        self._timer_lock: threading.Lock = threading.Lock()
        self._consecutive_failures: int = 0
        self._last_report: Optional[SyncReport] = None
        self._cycle_listeners: list[CycleListener] = []
        self._listener_lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the sync worker on a daemon thread.

        Idempotent: calling ``start()`` when the worker is already
        running is a no-op.
        """
        if self._thread is not None and self._thread.is_alive():
            self._logger.debug("Sync worker already running.")
            return

        self._stop_event.clear()
        self._wake_event.clear()
        self._consecutive_failures = 0
        self._connectivity.add_listener(self._on_connectivity_change)

        self._thread = threading.Thread(
            target=self._run_loop,
            name="SyncWorker",
            daemon=True,
        )
        self._thread.start()
        self._logger.info("Sync worker started.")

    def stop(self) -> None:
        """Signal the worker to stop and wait up to 10 s for it to exit.

        Safe to call when the worker is not running.
        """
        self._connectivity.remove_listener(self._on_connectivity_change)
        self._cancel_debounce()

        if self._thread is None:
            return

        self._stop_event.set()
        self._wake_event.set()
        self._thread.join(timeout=10.0)

        if self._thread.is_alive():
            self._logger.warning(
                "Sync worker thread did not terminate within 10 s."
            )
        else:
            self._logger.info("Sync worker stopped.")

        self._thread = None

    @property
    def is_running(self) -> bool:
        """``True`` when the worker thread is alive."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def last_report(self) -> Optional[SyncReport]:
        """Report of the most recent completed cycle, if any."""
        return self._last_report

    def sync_now(self) -> None:
        """Wake the worker for an immediate cycle."""
        self._wake_event.set()

    def add_cycle_listener(self, listener: CycleListener) -> None:
        with self._listener_lock:
            self._cycle_listeners.append(listener)

    def remove_cycle_listener(self, listener: CycleListener) -> None:
        with self._listener_lock:
            if listener in self._cycle_listeners:
                self._cycle_listeners.remove(listener)

    def run_once(self) -> Optional[SyncReport]:
        """Run one cycle on the calling thread and return its report.

        Returns ``None`` when the cycle was skipped (offline, signed out,
        or another cycle already running) or failed outright.
        """
        if not self._connectivity.is_online:
            self._logger.debug("Offline; sync cycle skipped.")
            return None
        if not self._session.is_authenticated:
            self._logger.debug("No signed-in user; sync cycle skipped.")
            return None

        owner_id = self._session.get_current_user().id
        future = self._runner.submit(self._engine.sync_all(owner_id))
        try:
            report = future.result(timeout=self._CYCLE_TIMEOUT_S)
        except concurrent.futures.TimeoutError:
            future.cancel()
            self._consecutive_failures += 1
            self._logger.warning(
                "Sync cycle exceeded %.0f s and was cancelled.", self._CYCLE_TIMEOUT_S,
            )
            return None
        except Exception:
            self._consecutive_failures += 1
            self._logger.warning("Sync cycle failed", exc_info=True)
            return None

        if report is None:
            return None

        self._last_report = report
        if report["succeeded"]:
            self._consecutive_failures = 0
        else:
            self._consecutive_failures += 1

        self._notify_cycle_listeners(report)
        return report

    def _notify_cycle_listeners(self, report: SyncReport) -> None:
        with self._listener_lock:
            listeners = list(self._cycle_listeners)
        for listener in listeners:
            try:
                listener(report)
            except Exception:
                self._logger.error("Sync cycle listener failed.", exc_info=True)

    # ------------------------------------------------------------------
    # Core loop
    # ------------------------------------------------------------------

    def _run_loop(self) -> None:
        """Main loop executed on the daemon thread.

        Wrapped in a top-level ``try/except`` so that an unexpected
        exception logs an error rather than silently killing the thread.
        """
        try:
            while not self._stop_event.is_set():
                interval = self._calculate_backoff_interval()
                self._wake_event.wait(timeout=interval)
                self._wake_event.clear()
                if self._stop_event.is_set():
                    break
                self.run_once()
        except Exception:
            self._logger.error(
                "Sync worker thread terminated due to unhandled exception.",
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    def _on_connectivity_change(self, online: bool) -> None:
        if not online:
            self._cancel_debounce()
            return

        with self._timer_lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
            timer = threading.Timer(self._debounce_s, self.sync_now)
            timer.daemon = True
            self._debounce_timer = timer
            timer.start()
        self._logger.info(
            "Back online; sync scheduled in %.1f s.", self._debounce_s,
        )

    def _cancel_debounce(self) -> None:
        with self._timer_lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
                self._debounce_timer = None

    # ------------------------------------------------------------------
    # Exponential backoff
    # ------------------------------------------------------------------

    def _calculate_backoff_interval(self) -> float:
        """Return the sleep interval for the current failure count.

        On zero failures the base interval is used.  Each consecutive
        failure doubles the interval (capped at the configured maximum).
        """
        if self._consecutive_failures == 0:
            return min(self._base_interval_s, self._max_interval_s)

        backoff = self._base_interval_s * (2 ** min(self._consecutive_failures, 6))
        return min(backoff, self._max_interval_s)
