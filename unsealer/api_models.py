from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = "ok"
    environment: str = ""
    mode: str = Field(..., description="static|docker|dns")
    workers: int = Field(..., ge=0)
    pending_notifications: int = Field(0, ge=0)
    batches_sent: int = Field(0, ge=0)


class WorkerOut(BaseModel):
    address: str
    alive: bool
    cancelled: bool
    started_at: str


class EventOut(BaseModel):
    id: int
    ts: str
    level: str
    address: str | None = None
    message: str
