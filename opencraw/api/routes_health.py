"""Liveness and channel inventory routes."""

from __future__ import annotations

import time
from typing import Annotated, Any

from fastapi import APIRouter, Depends

from opencraw.api.state import AppState, get_state

router = APIRouter(prefix="/api/v1/os", tags=["health"])


@router.get("/health")
async def health(state: Annotated[AppState, Depends(get_state)]) -> dict[str, Any]:
    return {
        "status": "ok",
        "uptime_seconds": int(time.monotonic() - state.started_at),
        "sessions": len(state.sessions),
        "in_flight": state.gateway.in_flight,
    }


@router.get("/channels")
async def list_channels(state: Annotated[AppState, Depends(get_state)]) -> dict[str, Any]:
    """Registered channel ids plus what each one supports."""
    channels = state.gateway.channels
    return {
        "channels": sorted(channels),
        "capabilities": [
            {"channel_id": channel_id, "supports_reactions": channels[channel_id].supports_reactions}
            for channel_id in sorted(channels)
        ],
    }
