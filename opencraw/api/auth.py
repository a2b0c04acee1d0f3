"""
Bearer-token auth for mutating control-plane requests.

In strict mode (``runtime.mode == "prod"`` or any configured token) every
POST/PUT/PATCH/DELETE outside the exempt prefixes needs a UUID ``x-org-id``
header and a bearer token from the pool whose scopes cover the path.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from loguru import logger

from opencraw.config.schema import Settings

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
FULL_ACCESS_SCOPES = frozenset({"*", "control:write"})

_SCOPE_PREFIXES: tuple[tuple[str, str], ...] = (
    ("/api/v1/os/config/", "config:write"),
    ("/api/v1/os/sessions/", "sessions:write"),
    ("/api/v1/os/automation/", "automation:write"),
    ("/api/v1/os/skills/", "skills:write"),
    ("/api/v1/os/messages/", "messages:write"),
    ("/api/v1/os/channels/", "channels:write"),
)


@dataclass(frozen=True)
class ScopedToken:
    token: str
    scopes: frozenset[str] = frozenset()  # empty = every scope

    def grants(self, required_scope: str) -> bool:
        if not self.scopes:
            return True
        return bool(self.scopes & FULL_ACCESS_SCOPES) or required_scope in self.scopes


@dataclass(frozen=True)
class MutatingAuthPolicy:
    strict: bool = False
    tokens: tuple[ScopedToken, ...] = ()
    exempt_prefixes: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_settings(cls, settings: Settings) -> MutatingAuthPolicy:
        security = settings.security
        tokens: list[ScopedToken] = []
        seen: set[str] = set()
        primary = (security.control_api_key or "").strip()
        if primary:
            seen.add(primary)
            tokens.append(ScopedToken(primary))
        for entry in security.control_api_keys:
            token = entry.token.strip()
            if not token or token in seen:
                continue
            seen.add(token)
            scopes = frozenset(s.strip().lower() for s in entry.scopes if s.strip())
            tokens.append(ScopedToken(token, scopes))
        return cls(
            strict=settings.runtime.mode == "prod" or bool(tokens),
            tokens=tuple(tokens),
            exempt_prefixes=tuple(
                p.strip() for p in security.mutating_auth_exempt_prefixes if p.strip()
            ),
        )

    def find(self, provided: str) -> ScopedToken | None:
        return next((t for t in self.tokens if t.token == provided), None)


def required_scope(path: str) -> str:
    for prefix, scope in _SCOPE_PREFIXES:
        if path.startswith(prefix):
            return scope
    return "control:write"


def path_matches_prefix(path: str, prefix: str) -> bool:
    """Prefix match on path-segment boundaries (``/a/b`` does not match ``/a/bc``)."""
    if path == prefix:
        return True
    if not path.startswith(prefix):
        return False
    return prefix.endswith("/") or path[len(prefix) :].startswith("/")


def parse_bearer(header: str | None) -> str | None:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def valid_org_id(header: str | None) -> bool:
    if not header:
        return False
    try:
        uuid.UUID(header.strip())
    except ValueError:
        return False
    return True


def unauthorized(message: str, code: str, scope: str | None = None) -> JSONResponse:
    logger.warning("api: mutating auth rejected ({}): {}", code, message)
    body: dict[str, str] = {"status": "error", "error": message, "error_code": code}
    if scope is not None:
        body["required_scope"] = scope
    return JSONResponse(body, status_code=401)


def check_request(
    policy: MutatingAuthPolicy, method: str, path: str, headers: dict[str, str]
) -> JSONResponse | None:
    """Return a 401 response for a rejected request, or None to let it through."""
    if method.upper() not in MUTATING_METHODS:
        return None
    if any(path_matches_prefix(path, p) for p in policy.exempt_prefixes):
        return None
    if not policy.strict:
        return None
    if not valid_org_id(headers.get("x-org-id")):
        return unauthorized("missing or invalid x-org-id header", "missing_or_invalid_org_id")
    if not policy.tokens:
        return unauthorized(
            "mutating requests require security.control_api_key or security.control_api_keys",
            "missing_control_api_auth_config",
        )
    scope = required_scope(path)
    provided = parse_bearer(headers.get("authorization"))
    if provided is None:
        return unauthorized("missing bearer token", "missing_bearer_token", scope)
    token = policy.find(provided)
    if token is None:
        return unauthorized("invalid bearer token", "invalid_bearer_token", scope)
    if not token.grants(scope):
        return unauthorized(
            f"bearer token missing required scope: {scope}", "missing_required_scope", scope
        )
    return None


async def require_mutating_auth(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """HTTP middleware: reads the policy from ``app.state.auth_policy``."""
    policy: MutatingAuthPolicy = getattr(request.app.state, "auth_policy", MutatingAuthPolicy())
    rejected = check_request(
        policy,
        request.method,
        request.url.path,
        {k.lower(): v for k, v in request.headers.items()},
    )
    if rejected is not None:
        return rejected
    return await call_next(request)
