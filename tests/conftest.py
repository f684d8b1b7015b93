from __future__ import annotations

import os
import sys
import time
from dataclasses import replace
from threading import Lock
from typing import Callable

import pytest

# Ensure project root is importable (so `import cli` works without installing).
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from unsealer import db  # noqa: E402
from unsealer.alerts import AlertDeliveryError  # noqa: E402
from unsealer.settings import Settings  # noqa: E402
from unsealer.vault import SealStatus, SealStatusError  # noqa: E402


def make_settings(**kw) -> Settings:
    """Unvalidated snapshot, so tests can use sub-second intervals."""
    base = Settings(
        check_interval=30.0,
        max_check_interval=600.0,
        nodes=(),
        tokens=("t1", "t2"),
        notify_queue_delay=60.0,
        notify_max_elapsed=600.0,
    )
    return replace(base, **kw)


def wait_for(pred: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return pred()


class ScriptedVault:
    """Seal-status client replaying scripted results.

    `checks` holds SealStatus objects or exceptions returned by successive
    check_status calls; `unseals` maps token -> SealStatus or exception.
    """

    def __init__(self, checks=None, unseals=None):
        self.checks = list(checks or [])
        self.unseals = dict(unseals or {})
        self.check_calls: list[str] = []
        self.unseal_calls: list[tuple[str, str]] = []

    def check_status(self, address: str) -> SealStatus:
        self.check_calls.append(address)
        result = self.checks.pop(0) if self.checks else SealStatus(sealed=False)
        if isinstance(result, Exception):
            raise result
        return result

    def unseal(self, address: str, token: str) -> SealStatus:
        self.unseal_calls.append((address, token))
        result = self.unseals.get(token, SealStatus(sealed=True))
        if isinstance(result, Exception):
            raise result
        return result


class ClusterVault:
    """Thread-safe fake cluster: each node unseals after `threshold` tokens."""

    def __init__(self, sealed: dict[str, bool], threshold: int = 2):
        self.lock = Lock()
        self.sealed = dict(sealed)
        self.threshold = threshold
        self.progress: dict[str, int] = {a: 0 for a in sealed}
        self.checks = 0

    def check_status(self, address: str) -> SealStatus:
        with self.lock:
            self.checks += 1
            return SealStatus(self.sealed.get(address, False), self.progress.get(address, 0), self.threshold)

    def unseal(self, address: str, token: str) -> SealStatus:
        with self.lock:
            self.progress[address] = self.progress.get(address, 0) + 1
            if self.progress[address] >= self.threshold:
                self.sealed[address] = False
                self.progress[address] = 0
            return SealStatus(self.sealed.get(address, False), self.progress[address], self.threshold)


class RecordingEmitter:
    def __init__(self):
        self.events: list[tuple[str, str]] = []

    def __call__(self, message: str, level: str = "ERROR", address: str | None = None) -> None:
        self.events.append((level, message))


class RecordingSink:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.batches: list[tuple[str, str]] = []

    def send(self, body: str, subject: str) -> None:
        self.batches.append((body, subject))
        if self.fail:
            raise AlertDeliveryError("smtp down")


def transient_error() -> SealStatusError:
    return SealStatusError("ConnectTimeout: timed out", transient=True)


@pytest.fixture
def journal(tmp_path):
    db.configure(str(tmp_path / "journal.db"))
    yield db
    db.configure(None)
