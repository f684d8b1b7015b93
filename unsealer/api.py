from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import FastAPI, Query

from . import db
from .api_models import EventOut, HealthResponse, WorkerOut

if TYPE_CHECKING:
    from .daemon import Daemon


def create_app(daemon: "Daemon") -> FastAPI:
    """Read-only status API for a running daemon. Never exposes tokens."""
    app = FastAPI(title="vault-unsealer")

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        st = daemon.store.current()
        return HealthResponse(
            environment=st.environment,
            mode=st.discovery or "static",
            workers=len(daemon.registry),
            pending_notifications=len(daemon.aggregator.pending),
            batches_sent=daemon.aggregator.batches_sent,
        )

    @app.get("/workers", response_model=list[WorkerOut])
    def workers() -> list[WorkerOut]:
        return [
            WorkerOut(address=h.address, alive=h.alive(), cancelled=h.cancel.is_set(), started_at=h.started_at)
            for h in daemon.registry.handles()
        ]

    @app.get("/events", response_model=list[EventOut])
    def events(limit: int = Query(50, ge=1, le=1000), address: str | None = None) -> list[EventOut]:
        return [EventOut(**e) for e in db.latest_events(limit, address=address)]

    return app
