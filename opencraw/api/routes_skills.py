"""Skill registry routes."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from opencraw.api.state import AppState, error_response, get_state
from opencraw.core.skills import SkillError, SkillInstall, SkillNotFoundError

router = APIRouter(prefix="/api/v1/os/skills", tags=["skills"])


class SkillInstallRequest(BaseModel):
    name: str
    description: str
    source: str | None = None
    content: str | None = None
    signature: str | None = None


@router.get("")
async def list_skills(state: Annotated[AppState, Depends(get_state)]) -> dict[str, Any]:
    return {"skills": [r.to_dict() for r in state.skills.list()]}


@router.get("/search")
async def search_skills(
    state: Annotated[AppState, Depends(get_state)], q: str = ""
) -> dict[str, Any]:
    return {"query": q, "skills": [r.to_dict() for r in state.skills.search(q)]}


@router.post("/install", response_model=None)
async def install_skill(
    req: SkillInstallRequest, state: Annotated[AppState, Depends(get_state)]
) -> dict[str, Any] | JSONResponse:
    """Scan a skill against the install policy and record the decision."""
    try:
        record = await state.skills.install(SkillInstall(**req.model_dump()))
    except SkillError as e:
        return error_response(str(e))
    return {"status": "ok", "skill": record.to_dict()}


@router.post("/{skill_id}/approve", response_model=None)
async def approve_skill(
    skill_id: str, state: Annotated[AppState, Depends(get_state)]
) -> dict[str, Any] | JSONResponse:
    try:
        record = await state.skills.approve(skill_id)
    except SkillNotFoundError as e:
        return error_response(str(e), status_code=404)
    except SkillError as e:
        return error_response(str(e), status_code=409)
    return {"status": "ok", "skill": record.to_dict()}


@router.post("/{skill_id}/revoke", response_model=None)
async def revoke_skill(
    skill_id: str, state: Annotated[AppState, Depends(get_state)]
) -> dict[str, Any] | JSONResponse:
    try:
        record = await state.skills.revoke(skill_id)
    except SkillNotFoundError as e:
        return error_response(str(e), status_code=404)
    return {"status": "ok", "skill": record.to_dict()}
