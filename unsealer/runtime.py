from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Callable

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class ErrorEvent:
    timestamp: float
    message: str
    level: str = "ERROR"  # ERROR|INFO
    address: str | None = None


@dataclass
class WorkerHandle:
    address: str
    cancel: Event
    thread: Thread | None = None
    started_at: str = field(default_factory=utc_now)

    def alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()


# Builds the (not yet started) thread for a watcher on `address` that honors `cancel`.
WatcherFactory = Callable[[str, Event], Thread]


class WorkerRegistry:
    """Live endpoint watchers keyed by address.

    Only the reconciler and daemon startup mutate the registry. A watcher only
    ever observes its own cancellation event.
    """

    def __init__(self, factory: WatcherFactory):
        self._factory = factory
        self._lock = Lock()
        self._workers: dict[str, WorkerHandle] = {}

    def __contains__(self, address: object) -> bool:
        with self._lock:
            return address in self._workers

    def __len__(self) -> int:
        with self._lock:
            return len(self._workers)

    def addresses(self) -> set[str]:
        """Point-in-time snapshot of the registered addresses."""
        with self._lock:
            return set(self._workers)

    def exited(self) -> set[str]:
        """Addresses whose watcher was cancelled and has exited but is still registered."""
        with self._lock:
            return {a for a, h in self._workers.items() if h.cancel.is_set() and not h.alive()}

    def handles(self) -> list[WorkerHandle]:
        with self._lock:
            return sorted(self._workers.values(), key=lambda h: h.address)

    def start(self, address: str) -> bool:
        """Start a watcher for address unless one is already registered."""
        with self._lock:
            existing = self._workers.get(address)
            if existing is not None and (existing.alive() or not existing.cancel.is_set()):
                return False
            cancel = Event()
            handle = WorkerHandle(address=address, cancel=cancel)
            handle.thread = self._factory(address, cancel)
            self._workers[address] = handle
            handle.thread.start()
        logger.info("invoking worker for %s", address)
        return True

    def stop(self, address: str, timeout: float | None = None) -> bool:
        """Signal the watcher for address to stop and deregister it once it has exited.

        The handle stays registered while the watcher drains, so a concurrent
        start() for the same address cannot create a second watcher.
        """
        with self._lock:
            handle = self._workers.get(address)
            if handle is None:
                return False
            handle.cancel.set()
        logger.info("removing worker for %s", address)
        if handle.thread is not None:
            handle.thread.join(timeout)
        if handle.alive():
            logger.warning("worker for %s did not exit within %.1fs", address, timeout or 0)
            return False
        with self._lock:
            if self._workers.get(address) is handle:
                del self._workers[address]
        return True

    def stop_all(self, timeout: float | None = None) -> None:
        """Cancel every watcher first, then wait for each to exit."""
        with self._lock:
            handles = list(self._workers.values())
            for h in handles:
                h.cancel.set()
        for h in handles:
            if h.thread is not None:
                h.thread.join(timeout)
        with self._lock:
            for h in handles:
                if not h.alive() and self._workers.get(h.address) is h:
                    del self._workers[h.address]
