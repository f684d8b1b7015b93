from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

SEAL_STATUS_PATH = "/v1/sys/seal-status"
UNSEAL_PATH = "/v1/sys/unseal"


class SealStatusError(Exception):
    """A seal-status or unseal call failed.

    `transient` is True for network timeouts, which watchers treat as
    possible blips.
    """

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


@dataclass(frozen=True)
class SealStatus:
    sealed: bool
    progress: int = 0
    threshold: int = 0
    shares: int = 0

    @classmethod
    def from_payload(cls, data: Any) -> "SealStatus":
        if not isinstance(data, dict) or "sealed" not in data:
            raise SealStatusError(f"unexpected seal status payload: {data!r}")
        try:
            return cls(
                sealed=bool(data["sealed"]),
                progress=int(data.get("progress") or 0),
                threshold=int(data.get("t") or 0),
                shares=int(data.get("n") or 0),
            )
        except (TypeError, ValueError):
            raise SealStatusError(f"malformed seal status payload: {data!r}") from None


class VaultClient:
    """Minimal client for the Vault sys/seal-status and sys/unseal endpoints.

    One httpx.Client is shared across watchers; requests are never retried,
    the watcher loop decides when to try again.
    """

    def __init__(self, timeout_s: float = 15.0, transport: httpx.BaseTransport | None = None):
        self._client = httpx.Client(timeout=timeout_s, follow_redirects=False, transport=transport)

    def close(self) -> None:
        self._client.close()

    def check_status(self, address: str) -> SealStatus:
        return self._call("GET", address, SEAL_STATUS_PATH)

    def unseal(self, address: str, token: str) -> SealStatus:
        return self._call("PUT", address, UNSEAL_PATH, json={"key": token})

    def _call(self, method: str, address: str, path: str, json: dict[str, str] | None = None) -> SealStatus:
        url = f"{address.rstrip('/')}{path}"
        try:
            resp = self._client.request(method, url, json=json)
        except httpx.TimeoutException as e:
            raise SealStatusError(f"{type(e).__name__}: {e}", transient=True) from e
        except httpx.HTTPError as e:
            raise SealStatusError(f"{type(e).__name__}: {e}") from e

        if resp.status_code != 200:
            raise SealStatusError(f"{method} {url}: HTTP {resp.status_code}: {_error_detail(resp)}")
        try:
            data = resp.json()
        except ValueError:
            raise SealStatusError(f"{method} {url}: invalid JSON") from None
        return SealStatus.from_payload(data)


def _error_detail(resp: httpx.Response) -> str:
    try:
        errors = resp.json().get("errors")
    except (ValueError, AttributeError):
        errors = None
    if errors:
        return "; ".join(str(e) for e in errors)
    return resp.text[:200].strip() or resp.reason_phrase
