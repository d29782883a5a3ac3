"""
Connectivity Monitor.

Holds the process-wide online/offline flag.  Whatever detects network
changes (the host application, a platform reachability API, a failed
request) reports them through :meth:`ConnectivityMonitor.set_online`;
interested services subscribe with :meth:`add_listener` and are told
about every transition.
"""

from __future__ import annotations

import threading
from typing import Callable

from finsync.logger import StructuredLogger

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor:
    """Thread-safe online flag with change listeners."""

    def __init__(self, logger: StructuredLogger, initially_online: bool = True) -> None:
        self._logger = logger
        self._lock = threading.Lock()
        self._online: bool = initially_online
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        with self._lock:
            return self._online

    def set_online(self, online: bool) -> None:
        """Record the current connectivity; listeners fire only on a change."""
        with self._lock:
            if online == self._online:
                return
            self._online = online
            listeners = list(self._listeners)

        self._logger.info("Connectivity changed: %s.", "online" if online else "offline")
        for listener in listeners:
            try:
                listener(online)
            except Exception:
                self._logger.error("Connectivity listener failed.", exc_info=True)

    def add_listener(self, listener: ConnectivityListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ConnectivityListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
