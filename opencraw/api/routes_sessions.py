"""Session inspection and management routes."""

from __future__ import annotations

from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from opencraw.api.state import AppState, error_response, get_state
from opencraw.core.models import ModelPinning

router = APIRouter(prefix="/api/v1/os/sessions", tags=["sessions"])


# ── Request models ───────────────────────────────────────────────────────────


class ModelOverrideRequest(BaseModel):
    model: str | None = None
    model_pinning: ModelPinning | None = None


def _parse_id(raw: str) -> UUID | None:
    try:
        return UUID(raw)
    except ValueError:
        return None


# ── Routes ───────────────────────────────────────────────────────────────────


@router.get("")
async def list_sessions(state: Annotated[AppState, Depends(get_state)]) -> dict[str, Any]:
    return {"sessions": [s.to_dict() for s in state.sessions.list()]}


@router.delete("/{session_id}", response_model=None)
async def delete_session(
    session_id: str, state: Annotated[AppState, Depends(get_state)]
) -> dict[str, Any] | JSONResponse:
    parsed = _parse_id(session_id)
    if parsed is None:
        return error_response("invalid id")
    deleted = await state.sessions.delete_by_id(parsed)
    return {"status": "ok" if deleted else "not_found"}


@router.post("/{session_id}/model", response_model=None)
async def set_session_model(
    session_id: str,
    req: ModelOverrideRequest,
    state: Annotated[AppState, Depends(get_state)],
) -> dict[str, Any] | JSONResponse:
    """Set or clear the model override of one session."""
    parsed = _parse_id(session_id)
    if parsed is None:
        return error_response("invalid id")
    try:
        summary = await state.sessions.set_model_override_by_id(
            parsed, req.model, req.model_pinning, state.available_models
        )
    except ValueError as e:
        return error_response(str(e))
    if summary is None:
        return error_response("session not found", status_code=404)
    return {"status": "ok", "session": summary.to_dict()}
