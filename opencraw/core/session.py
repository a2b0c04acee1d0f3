"""
In-memory session store keyed by ``(channel_id, sender_id)``.

Every mutation of a session happens while holding that key's lock, so turns
for one user run strictly one after another while different users proceed
in parallel. ``asyncio.Lock`` wakes waiters in FIFO order, which gives
per-session arrival ordering as long as callers acquire the lock as their
first await.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from uuid import UUID

from loguru import logger

from opencraw.core.models import ModelPinning, Session, SessionSummary

type SessionKey = tuple[str, str]


def match_model(name: str, available_models: Sequence[str]) -> str | None:
    """Return the configured spelling of ``name`` (case-insensitive), if any."""
    wanted = name.strip().lower()
    for candidate in available_models:
        if candidate.lower() == wanted:
            return candidate
    return None


class SessionStore:
    """Concurrent map of sessions with per-key exclusive access."""

    def __init__(self) -> None:
        self._sessions: dict[SessionKey, Session] = {}
        self._locks: dict[SessionKey, asyncio.Lock] = {}
        self._lock_users: dict[SessionKey, int] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get_or_create(self, channel_id: str, sender_id: str) -> Session:
        """Return the session for a key, creating an empty one on first use."""
        key = (channel_id, sender_id)
        session = self._sessions.get(key)
        if session is None:
            session = Session(channel_id=channel_id, sender_id=sender_id)
            self._sessions[key] = session
            logger.debug("session: created {} for {}:{}", session.id, channel_id, sender_id)
        return session

    @asynccontextmanager
    async def acquire(self, channel_id: str, sender_id: str) -> AsyncIterator[Session]:
        """Hold the key's lock and yield its (possibly new) session."""
        async with self._locked((channel_id, sender_id)):
            yield self.get_or_create(channel_id, sender_id)

    @asynccontextmanager
    async def _locked(self, key: SessionKey) -> AsyncIterator[None]:
        # A key keeps its lock while it has a session or someone holds or awaits it.
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                if key not in self._sessions:
                    self._locks.pop(key, None)

    def get_by_id(self, session_id: UUID) -> Session | None:
        for session in self._sessions.values():
            if session.id == session_id:
                return session
        return None

    def list(self) -> list[SessionSummary]:
        """Snapshot of all sessions, most recently active first."""
        summaries = [s.summary() for s in self._sessions.values()]
        summaries.sort(key=lambda s: s.last_active, reverse=True)
        return summaries

    async def delete_by_id(self, session_id: UUID) -> bool:
        """Remove the session with this id. Returns False if none matched."""
        session = self.get_by_id(session_id)
        if session is None:
            return False
        key = session.key
        async with self._locked(key):
            current = self._sessions.get(key)
            if current is None or current.id != session_id:
                return False
            del self._sessions[key]
        logger.info("session: deleted {}", session_id)
        return True

    async def set_model_override_by_id(
        self,
        session_id: UUID,
        model: str | None,
        pinning: ModelPinning | None = None,
        available_models: Sequence[str] = (),
    ) -> SessionSummary | None:
        """
        Set or clear a session's model override.

        Args:
            session_id: Internal session UUID.
            model: Model name, or None/blank to clear the override.
            pinning: New pinning mode; None keeps the current one.
            available_models: Configured model names to match against.

        Returns:
            The updated summary, or None when no session has this id.

        Raises:
            ValueError: Strict pinning without a model, or an unknown model.
        """
        normalized = (model or "").strip() or None
        if pinning is ModelPinning.STRICT and normalized is None:
            raise ValueError("model_pinning=strict requires a model")
        if normalized is not None:
            matched = match_model(normalized, available_models)
            if matched is None:
                raise ValueError(f'unknown model "{normalized}"')
            normalized = matched

        session = self.get_by_id(session_id)
        if session is None:
            return None
        key = session.key
        async with self._locked(key):
            current = self._sessions.get(key)
            if current is None or current.id != session_id:
                return None
            current.model_override = normalized
            if pinning is not None:
                current.model_pinning = pinning
            current.enforce_invariants()
            current.touch()
            return current.summary()
