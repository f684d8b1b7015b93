from __future__ import annotations

import logging
from threading import Event
from typing import Callable, Protocol

from .settings import Settings
from .vault import SealStatus, SealStatusError

logger = logging.getLogger(__name__)

ERROR_BACKOFF_STEP_S = 30.0


class SealStatusClient(Protocol):
    def check_status(self, address: str) -> SealStatus: ...

    def unseal(self, address: str, token: str) -> SealStatus: ...


class Emitter(Protocol):
    def __call__(self, message: str, level: str = "ERROR", address: str | None = None) -> None: ...


def compute_backoff(check_interval: float, max_check_interval: float, error_count: int) -> float:
    """Backoff after `error_count` consecutive errors, capped at max_check_interval."""
    return min(max_check_interval, check_interval + ERROR_BACKOFF_STEP_S * max(0, error_count))


class EndpointWatcher:
    """Check/unseal loop for a single Vault node.

    The loop only observes `cancel` while waiting between iterations, so an
    unseal sequence that has started always runs to completion.
    """

    def __init__(
        self,
        address: str,
        client: SealStatusClient,
        settings: Callable[[], Settings],
        emit: Emitter,
        cancel: Event,
    ):
        self.address = address
        self.client = client
        self.settings = settings
        self.emit = emit
        self.cancel = cancel
        self.error_count = 0

    def next_delay(self, st: Settings) -> float:
        return st.check_interval + compute_backoff(st.check_interval, st.max_check_interval, self.error_count)

    def run(self) -> None:
        logger.info("starting worker for %s", self.address)
        while True:
            st = self.settings()
            delay = self.next_delay(st)
            if self.error_count > 0:
                logger.info("delaying checks for %s by %.1fs due to %d errors", self.address, delay, self.error_count)
            if self.cancel.wait(delay):
                break
            try:
                self.run_once(st)
            except Exception as e:
                self.error_count += 1
                self.emit(f"unexpected error on {self.address}: {type(e).__name__}: {e}", address=self.address)
        logger.info("closing worker for %s", self.address)

    def run_once(self, st: Settings) -> None:
        """One check, followed by an unseal sequence when the node is sealed."""
        logger.debug("running checks on %s", self.address)
        try:
            status = self.client.check_status(self.address)
        except SealStatusError as e:
            self.error_count += 1
            if e.transient and self.error_count == 1:
                # A single timeout is most likely a network blip; only report repeats.
                logger.error("checking seal status on %s: %s", self.address, e)
                return
            self.emit(f"checking seal status on {self.address}: {e}", address=self.address)
            return

        logger.info(
            "seal status for %s: sealed=%s progress=%d/%d",
            self.address,
            status.sealed,
            status.progress,
            status.threshold,
        )
        if not status.sealed:
            self.error_count = 0
            return

        self.unseal(st.tokens, status)

    def unseal(self, tokens: tuple[str, ...], status: SealStatus) -> bool:
        """Submit tokens in order until the node reports unsealed.

        A failing token does not abort the sequence; other tokens (or other
        unsealer instances) may still reach the threshold.
        """
        for i, token in enumerate(tokens, start=1):
            logger.info(
                "using unseal token %d on %s (progress %d/%d)",
                i,
                self.address,
                status.progress,
                status.threshold,
            )
            try:
                status = self.client.unseal(self.address, token)
            except SealStatusError as e:
                self.emit(f"using unseal key {i} on {self.address}: {e}", address=self.address)
                self.error_count += 1
                continue

            logger.info("token %d successfully sent to %s", i, self.address)
            if not status.sealed:
                self.emit(f"(was sealed) {self.address} now unsealed with tokens", level="INFO", address=self.address)
                return True
        return False
