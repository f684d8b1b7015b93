from __future__ import annotations

import logging
import signal
from threading import Event, Thread

import uvicorn

from . import db
from .alerts import EmailNotifier, LogNotifier, Notifier
from .api import create_app
from .discovery import Discovery, build_discovery
from .notifier import NotificationAggregator
from .reconciler import Reconciler
from .runtime import WorkerRegistry
from .settings import CONFIG_REFRESH_INTERVAL_S, SettingsStore
from .vault import VaultClient
from .watcher import EndpointWatcher, SealStatusClient

logger = logging.getLogger(__name__)


class Daemon:
    """Wires watchers, reconciler, notifier and the optional status API together.

    Shutdown order: reconciler and watchers first, then the notifier's final
    flush, then the API server.
    """

    def __init__(
        self,
        store: SettingsStore,
        client: SealStatusClient | None = None,
        discovery: Discovery | None = None,
        sink: Notifier | None = None,
    ):
        st = store.current()
        self.store = store
        self.client = client if client is not None else VaultClient(timeout_s=st.request_timeout)
        self.discovery = discovery if discovery is not None else build_discovery(st)
        if sink is None:
            sink = EmailNotifier(st.email) if st.email.enabled else LogNotifier()
        self.aggregator = NotificationAggregator(sink, store.current)
        self.registry = WorkerRegistry(self._make_watcher)
        self.reconciler = Reconciler(self.registry, self.discovery, store.current) if self.discovery else None
        self._shutdown = Event()
        self._reload_thr: Thread | None = None
        self._api_server: uvicorn.Server | None = None
        self._api_thr: Thread | None = None

    def _make_watcher(self, address: str, cancel: Event) -> Thread:
        watcher = EndpointWatcher(address, self.client, self.store.current, self.aggregator.notify, cancel)
        return Thread(target=watcher.run, name=f"watcher:{address}", daemon=True)

    def start(self) -> None:
        st = self.store.current()
        db.configure(st.journal_path)
        db.log_event("INFO", "vault-unsealer started")
        self.aggregator.start()

        for addr in st.nodes:
            self.registry.start(addr)

        if self.reconciler is not None:
            # Populate from discovery right away rather than after the first tick.
            self.reconciler.tick()
            self.reconciler.start()

        if self.store.path:
            self._reload_thr = Thread(target=self._reload_loop, name="config-reload", daemon=True)
            self._reload_thr.start()

        if st.api_port > 0:
            self._start_api(st.api_host, st.api_port)

    def _reload_loop(self) -> None:
        while not self._shutdown.wait(CONFIG_REFRESH_INTERVAL_S):
            self.store.reload()

    def _start_api(self, host: str, port: int) -> None:
        config = uvicorn.Config(create_app(self), host=host, port=port, log_level="warning")
        self._api_server = uvicorn.Server(config)
        self._api_thr = Thread(target=self._api_server.run, name="status-api", daemon=True)
        self._api_thr.start()
        logger.info("status api listening on %s:%d", host, port)

    def request_shutdown(self) -> None:
        self._shutdown.set()

    def stop(self) -> None:
        self._shutdown.set()
        if self.reconciler is not None:
            self.reconciler.stop()
            self.reconciler.join()
        self.registry.stop_all()
        self.aggregator.stop()
        if self._api_server is not None:
            self._api_server.should_exit = True
            if self._api_thr:
                self._api_thr.join(5.0)
        if isinstance(self.client, VaultClient):
            self.client.close()
        db.log_event("INFO", "vault-unsealer stopped")
        logger.info("shutdown complete")

    def run_forever(self) -> None:
        """Run until SIGINT/SIGTERM (or SIGQUIT), then shut down cleanly."""

        def _on_signal(signum, frame) -> None:
            logger.info("invoked termination (%s), cleaning up", signal.Signals(signum).name)
            self._shutdown.set()

        for name in ("SIGINT", "SIGTERM", "SIGQUIT"):
            sig = getattr(signal, name, None)
            if sig is not None:
                signal.signal(sig, _on_signal)

        self.start()
        while not self._shutdown.wait(1.0):
            pass
        self.stop()
