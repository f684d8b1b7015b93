from __future__ import annotations

import logging
import queue
import time
from datetime import datetime, timezone
from threading import Thread
from typing import Callable

from . import db
from .alerts import AlertDeliveryError, Notifier, local_hostname
from .runtime import ErrorEvent
from .settings import Settings

logger = logging.getLogger(__name__)

REPORT_HEADER = "vault-unsealer ran into errors when attempting to check seal status/unseal. here are the errors:\n"

_STOP = object()


def format_report(events: list[ErrorEvent], footer: str = "") -> str:
    lines = [REPORT_HEADER]
    for ev in events:
        ts = datetime.fromtimestamp(ev.timestamp, tz=timezone.utc).strftime("%d %b %y %H:%M UTC")
        lines.append(f"{ts} :: {ev.level.lower()}: {ev.message}")
    if footer:
        lines.append(f"\n{footer}")
    return "\n".join(lines)


def batch_summary(events: list[ErrorEvent]) -> str:
    errors = sum(1 for ev in events if ev.level == "ERROR")
    if errors:
        return f"{errors} errors occurred"
    return f"{len(events)} nodes unsealed"


class NotificationAggregator:
    """Debounces events into batched alerts.

    Events arrive through a mailbox; only the aggregator thread touches the
    pending queue. A batch goes out when no event arrived for
    `notify_queue_delay`, or as soon as an arriving event finds the oldest
    pending one at least `notify_max_elapsed` old.
    """

    def __init__(
        self,
        sink: Notifier,
        settings: Callable[[], Settings],
        clock: Callable[[], float] = time.time,
    ):
        self.sink = sink
        self.settings = settings
        self.clock = clock
        self.pending: list[ErrorEvent] = []
        self.batches_sent = 0
        self._mailbox: queue.Queue[object] = queue.Queue()
        self._thr: Thread | None = None

    def notify(self, message: str, level: str = "ERROR", address: str | None = None) -> None:
        """Emit an event. Safe to call from any thread."""
        level = level.upper()
        logger.log(logging.INFO if level == "INFO" else logging.ERROR, "notify: %s", message)
        db.log_event(level, message, address=address)
        self._mailbox.put(ErrorEvent(timestamp=self.clock(), message=message, level=level, address=address))

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._thr = Thread(target=self._loop, name="notifier", daemon=True)
        self._thr.start()

    def stop(self, timeout: float | None = None) -> None:
        """Ask the loop to do its final flush and exit, then wait for it."""
        self._mailbox.put(_STOP)
        if self._thr:
            self._thr.join(timeout)

    def _loop(self) -> None:
        logger.info("starting notifier")
        while True:
            try:
                item = self._mailbox.get(timeout=self.settings().notify_queue_delay)
            except queue.Empty:
                self.flush()
                continue
            if item is _STOP:
                break
            if isinstance(item, ErrorEvent):
                self.on_event(item)
        self._drain()
        self.flush()
        logger.info("notifier stopped")

    def _drain(self) -> None:
        while True:
            try:
                item = self._mailbox.get_nowait()
            except queue.Empty:
                return
            if isinstance(item, ErrorEvent):
                self.pending.append(item)

    def on_event(self, ev: ErrorEvent) -> None:
        self.pending.append(ev)
        if self.clock() - self.pending[0].timestamp >= self.settings().notify_max_elapsed:
            self.flush()

    def flush(self) -> bool:
        """Send everything pending as one batch. Returns True if a batch was handed to the sink."""
        if not self.pending:
            return False
        batch, self.pending = self.pending, []

        st = self.settings()
        logger.info("attempting to send notifications for %d alerts", len(batch))
        footer = f"sent from vault-unsealer. hostname: {local_hostname()}"
        subject = f"vault-unsealer: {st.environment or 'default'}: {batch_summary(batch)}"
        try:
            self.sink.send(format_report(batch, footer), subject)
        except AlertDeliveryError as e:
            # At-most-once: the batch is dropped, not requeued.
            logger.error("unable to send notification: %s", e)
        except Exception:
            logger.exception("notifier sink failed")
        self.batches_sent += 1
        return True
