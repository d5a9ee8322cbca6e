from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from pushrelay.apps.api.response import SuccessEnvelope, envelope
from pushrelay.persistence.db import pool_stats

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    db_pool: dict[str, int | None]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    # Liveness only: pool counters come from the process, no database round trip.
    payload = HealthResponse(status="ok", db_pool=pool_stats())
    return envelope(request, payload)
