"""
Background Runner.

Owns the single asyncio event loop on which every sync-engine coroutine
runs.  The loop lives on a daemon thread, so presentation code (and the
sync worker thread) submit coroutines from the outside and either forget
them or wait on the returned :class:`concurrent.futures.Future`.

Follows the daemon-thread lifecycle used by
:class:`~finsync.services.sync_worker.SyncWorkerService`: ``start()`` /
``stop()`` are idempotent, and a crashing task is logged, never silently
dropped.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from collections.abc import Coroutine
from typing import Any, Optional, TypeVar

from finsync.logger import StructuredLogger

T = TypeVar("T")


class BackgroundRunner:
    """Runs coroutines on a private event loop hosted by a daemon thread.

    Parameters
    ----------
    logger:
        Structured JSON logger.

    Do not call :meth:`drain` or block on a returned future from inside a
    coroutine running on this loop: it would wait on itself.
    """

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger = logger
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._futures: set[concurrent.futures.Future[Any]] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the loop thread.  No-op when already running."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return

            loop = asyncio.new_event_loop()
            ready = threading.Event()
            self._loop = loop
            self._thread = threading.Thread(
                target=self._run_loop,
                args=(loop, ready),
                name="SyncLoop",
                daemon=True,
            )
            self._thread.start()
            ready.wait()
        self._logger.info("Background runner started.")

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the loop, cancelling anything still running.

        Safe to call when the runner is not running.
        """
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = None
            self._thread = None

        if loop is None or thread is None:
            return

        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=timeout)
        if thread.is_alive():
            self._logger.warning(
                "Background runner thread did not terminate within %.0f s.", timeout,
            )
        else:
            self._logger.info("Background runner stopped.")

    @property
    def is_running(self) -> bool:
        """``True`` when the loop thread is alive."""
        thread = self._thread
        return thread is not None and thread.is_alive()

    # ------------------------------------------------------------------
    # Work submission
    # ------------------------------------------------------------------

    def submit(self, coro: Coroutine[Any, Any, T]) -> concurrent.futures.Future[T]:
        """Schedule *coro* on the loop, starting the runner if needed."""
        self.start()
        with self._lock:
            loop = self._loop
            if loop is None:
                coro.close()
                raise RuntimeError("Background runner is stopped.")
            future = asyncio.run_coroutine_threadsafe(coro, loop)
            self._futures.add(future)
        future.add_done_callback(self._on_done)
        return future

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every submitted coroutine has finished.

        Work submitted while draining is waited for as well.

        Returns:
            ``True`` if everything finished within *timeout*.
        """
        while True:
            with self._lock:
                pending = [f for f in self._futures if not f.done()]
            if not pending:
                return True
            _, not_done = concurrent.futures.wait(pending, timeout=timeout)
            if not_done:
                return False

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _run_loop(self, loop: asyncio.AbstractEventLoop, ready: threading.Event) -> None:
        asyncio.set_event_loop(loop)
        loop.call_soon(ready.set)
        try:
            loop.run_forever()
        finally:
            try:
                tasks = asyncio.all_tasks(loop)
                for task in tasks:
                    task.cancel()
                if tasks:
                    loop.run_until_complete(
                        asyncio.gather(*tasks, return_exceptions=True)
                    )
                loop.run_until_complete(loop.shutdown_asyncgens())
            finally:
                loop.close()

    def _on_done(self, future: concurrent.futures.Future[Any]) -> None:
        with self._lock:
            self._futures.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self._logger.error(
                "Background task failed: %s", exc, exc_info=exc,
            )
