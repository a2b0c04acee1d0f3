"""
Automation ingest routes.

Webhook and poll endpoints are exempt from bearer auth by default; they are
guarded by the shared secret header instead.
"""

from __future__ import annotations

import json
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from opencraw.api.state import AppState, error_response, get_state
from opencraw.core.automation import IngestAuthError, IngestError, IngestKind, parse_ingest_body

router = APIRouter(prefix="/api/v1/os/automation", tags=["automation"])

SECRET_HEADER = "x-opencraw-webhook-secret"
EVENT_ID_HEADER = "x-opencraw-event-id"


async def _ingest(
    kind: IngestKind, source: str, request: Request, state: AppState
) -> dict[str, Any] | JSONResponse:
    raw = await request.body()
    try:
        body = json.loads(raw) if raw.strip() else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        return error_response(f"invalid JSON body: {e}")
    try:
        contract = parse_ingest_body(body, request.headers.get(EVENT_ID_HEADER))
        receipt = state.automation.ingest(
            kind, source, contract, request.headers.get(SECRET_HEADER)
        )
    except IngestAuthError as e:
        return error_response(str(e), status_code=401)
    except IngestError as e:
        return error_response(str(e))
    return {"status": "accepted", "receipt": receipt.to_dict()}


@router.get("/status")
async def automation_status(state: Annotated[AppState, Depends(get_state)]) -> dict[str, Any]:
    return {"status": "ok", **state.automation.status()}


@router.post("/webhook/{source}", response_model=None)
async def ingest_webhook(
    source: str, request: Request, state: Annotated[AppState, Depends(get_state)]
) -> dict[str, Any] | JSONResponse:
    return await _ingest("webhook", source, request, state)


@router.post("/poll/{source}", response_model=None)
async def ingest_poll(
    source: str, request: Request, state: Annotated[AppState, Depends(get_state)]
) -> dict[str, Any] | JSONResponse:
    return await _ingest("poll", source, request, state)
