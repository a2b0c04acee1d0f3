"""Live configuration routes guarded by ``base_hash``."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from opencraw.api.state import AppState, error_response, get_state
from opencraw.config.control import ConfigConflictError
from opencraw.config.schema import ConfigError

router = APIRouter(prefix="/api/v1/os/config", tags=["config"])


class ConfigPatchRequest(BaseModel):
    base_hash: str | None = None
    patch: dict[str, Any]


class ConfigApplyRequest(BaseModel):
    base_hash: str | None = None
    config: dict[str, Any]


@router.get("/get")
async def get_config(state: Annotated[AppState, Depends(get_state)]) -> dict[str, Any]:
    """Current configuration with secrets redacted."""
    return {"status": "ok", **state.config.snapshot().to_dict()}


@router.post("/patch", response_model=None)
async def patch_config(
    req: ConfigPatchRequest, state: Annotated[AppState, Depends(get_state)]
) -> dict[str, Any] | JSONResponse:
    try:
        snapshot = await state.config.patch(req.base_hash, req.patch)
    except ConfigConflictError as e:
        return error_response(str(e), status_code=409, base_hash=state.config.snapshot().base_hash)
    except ConfigError as e:
        return error_response(str(e))
    return {"status": "ok", **snapshot.to_dict(include_config=False), "restart_required": True}


@router.post("/apply", response_model=None)
async def apply_config(
    req: ConfigApplyRequest, state: Annotated[AppState, Depends(get_state)]
) -> dict[str, Any] | JSONResponse:
    """Replace the whole configuration document."""
    try:
        snapshot = await state.config.apply(req.base_hash, req.config)
    except ConfigConflictError as e:
        return error_response(str(e), status_code=409, base_hash=state.config.snapshot().base_hash)
    except ConfigError as e:
        return error_response(str(e))
    return {"status": "ok", **snapshot.to_dict(include_config=False), "restart_required": True}
