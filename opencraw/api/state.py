"""Process-wide objects the control-plane routes operate on."""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from opencraw.adapters.channels.webchat import WebchatChannel
from opencraw.config.control import ConfigControl
from opencraw.core.automation import AutomationInbox
from opencraw.core.gateway import Gateway
from opencraw.core.session import SessionStore
from opencraw.core.skills import SkillRegistry


@dataclass
class AppState:
    config: ConfigControl
    sessions: SessionStore
    gateway: Gateway
    skills: SkillRegistry
    automation: AutomationInbox
    webchat: WebchatChannel | None = None
    available_models: Sequence[str] = ()
    started_at: float = field(default_factory=time.monotonic)


def get_state(request: Request) -> AppState:
    """FastAPI dependency: the AppState stored on ``app.state.opencraw``."""
    return request.app.state.opencraw


def error_response(message: str, status_code: int = 400, **extra: Any) -> JSONResponse:
    return JSONResponse({"status": "error", "error": message, **extra}, status_code=status_code)
