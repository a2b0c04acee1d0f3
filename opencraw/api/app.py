"""FastAPI application for the control plane and the webchat socket."""

from __future__ import annotations

from fastapi import FastAPI, WebSocket

from opencraw.api import (
    routes_automation,
    routes_config,
    routes_health,
    routes_messages,
    routes_sessions,
    routes_skills,
)
from opencraw.api.auth import MutatingAuthPolicy, require_mutating_auth
from opencraw.api.state import AppState


def create_app(state: AppState, auth_policy: MutatingAuthPolicy | None = None) -> FastAPI:
    """
    Build the app around an already wired AppState.

    Args:
        state: Runtime objects the routes read and mutate.
        auth_policy: Mutating-request policy; defaults to one derived from
            the live settings.
    """
    app = FastAPI(title="opencraw", docs_url=None, redoc_url=None)
    app.state.opencraw = state
    app.state.auth_policy = auth_policy or MutatingAuthPolicy.from_settings(state.config.settings)
    app.middleware("http")(require_mutating_auth)

    for module in (
        routes_health,
        routes_sessions,
        routes_config,
        routes_skills,
        routes_automation,
        routes_messages,
    ):
        app.include_router(module.router)

    if state.webchat is not None:
        webchat = state.webchat

        @app.websocket("/ws")
        async def webchat_socket(websocket: WebSocket) -> None:
            await webchat.handle_socket(websocket)

    return app
