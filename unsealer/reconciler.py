from __future__ import annotations

import logging
from threading import Event, Thread
from typing import Callable

from . import db
from .discovery import Discovery
from .runtime import WorkerRegistry
from .settings import Settings

logger = logging.getLogger(__name__)


class Reconciler:
    """Keeps the worker registry in sync with the discovered set of Vault nodes."""

    def __init__(self, registry: WorkerRegistry, discovery: Discovery, settings: Callable[[], Settings]):
        self.registry = registry
        self.discovery = discovery
        self.settings = settings
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="reconciler", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thr:
            self._thr.join(timeout)

    def _loop(self) -> None:
        logger.info("reconciler started")
        db.log_event("INFO", "Reconciler started")
        while not self._stop.wait(self.settings().discovery_interval):
            try:
                self.tick()
            except Exception:
                logger.exception("reconciler tick failed")
        logger.info("closing reconciler")

    def tick(self) -> bool:
        """Run one reconciliation pass. Returns False when discovery failed."""
        try:
            discovered = set(self.discovery.list_targets())
        except Exception as e:
            # Never tear down watchers because discovery is flaky.
            logger.error("discovery failed, skipping reconciliation: %s", e)
            return False

        st = self.settings()
        desired = discovered | set(st.nodes)
        current = self.registry.addresses()
        # A watcher still finishing an unseal sequence is deregistered on a later tick.
        drain_timeout = st.request_timeout * (len(st.tokens) + 1)

        # Exited watchers still registered from an earlier timed-out stop are restarted.
        for addr in sorted((desired - current) | (desired & self.registry.exited())):
            if self.registry.start(addr):
                db.log_event("INFO", "Worker added", address=addr)
        for addr in sorted(current - desired):
            if self.registry.stop(addr, timeout=drain_timeout):
                db.log_event("INFO", "Worker removed", address=addr)
        return True
