"""
Live configuration with optimistic concurrency.

``ConfigControl`` owns the current ``Settings`` snapshot and its content hash.
Writers present the hash they read (``base_hash``); a stale hash is refused,
so two operators editing at once cannot silently overwrite each other.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from opencraw.config.schema import ConfigError, Settings
from opencraw.core.models import utcnow
from opencraw.core.storage import atomic_write_text

REDACTED = "REDACTED"

# (section path, field) pairs whose non-empty values never leave the process
_SECRET_FIELDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("keys",), "openai_api_key"),
    (("keys",), "anthropic_api_key"),
    (("channels", "telegram"), "bot_token"),
    (("channels", "discord"), "bot_token"),
    (("channels", "slack"), "bot_token"),
    (("channels", "whatsapp"), "access_token"),
    (("security",), "control_api_key"),
    (("automation",), "webhook_secret"),
)


class ConfigConflictError(ConfigError):
    """The patch was based on a stale snapshot."""


def hash_settings(settings: Settings) -> str:
    """SHA-256 over the canonical JSON form of the settings."""
    canonical = json.dumps(
        settings.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def merge_patch(target: Any, patch: Any) -> Any:
    """
    Merge ``patch`` into ``target`` recursively and return the result.

    Objects merge key by key; a ``null`` value deletes the key (so the field
    falls back to its default); any other value replaces the target.
    """
    if not isinstance(target, dict) or not isinstance(patch, dict):
        return patch
    merged = dict(target)
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = merge_patch(merged.get(key), value)
    return merged


def redact(config: dict[str, Any]) -> dict[str, Any]:
    """Replace secrets in a dumped config with ``REDACTED``."""
    for path, name in _SECRET_FIELDS:
        section: Any = config
        for part in path:
            section = section.get(part) if isinstance(section, dict) else None
        if isinstance(section, dict) and section.get(name):
            section[name] = REDACTED
    security = config.get("security")
    if isinstance(security, dict):
        for entry in security.get("control_api_keys") or []:
            if isinstance(entry, dict) and entry.get("token"):
                entry["token"] = REDACTED
    automation = config.get("automation")
    if isinstance(automation, dict) and isinstance(automation.get("source_secrets"), dict):
        automation["source_secrets"] = {k: REDACTED for k in automation["source_secrets"]}
    return config


def unredact(config: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """
    Put current secrets back where ``config`` still carries ``REDACTED``, so a
    document read from the API can be written back unchanged.
    """
    for path, name in _SECRET_FIELDS:
        section: Any = config
        live: Any = current
        for part in path:
            section = section.get(part) if isinstance(section, dict) else None
            live = live.get(part) if isinstance(live, dict) else None
        if isinstance(section, dict) and section.get(name) == REDACTED:
            section[name] = live.get(name) if isinstance(live, dict) else None
    security = config.get("security")
    live_keys = (current.get("security") or {}).get("control_api_keys") or []
    if isinstance(security, dict):
        # pooled tokens are matched by position
        for i, entry in enumerate(security.get("control_api_keys") or []):
            if isinstance(entry, dict) and entry.get("token") == REDACTED and i < len(live_keys):
                entry["token"] = live_keys[i].get("token")
    automation = config.get("automation")
    live_secrets = (current.get("automation") or {}).get("source_secrets") or {}
    if isinstance(automation, dict) and isinstance(automation.get("source_secrets"), dict):
        automation["source_secrets"] = {
            k: live_secrets.get(k, "") if v == REDACTED else v
            for k, v in automation["source_secrets"].items()
        }
    return config


@dataclass(frozen=True)
class ConfigSnapshot:
    path: Path
    base_hash: str
    updated_at: datetime
    settings: Settings

    def to_dict(self, *, include_config: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "path": str(self.path),
            "base_hash": self.base_hash,
            "updated_at": self.updated_at.isoformat(),
        }
        if include_config:
            data["config"] = redact(self.settings.model_dump(mode="json"))
        return data


class ConfigControl:
    """
    Holds the live settings behind a lock.

    Readers get immutable snapshots; writers validate, persist the file
    atomically and only then swap the in-memory state.
    """

    def __init__(self, path: Path, settings: Settings) -> None:
        self._path = path
        self._settings = settings
        self._hash = hash_settings(settings)
        self._updated_at = utcnow()
        self._lock = asyncio.Lock()

    @property
    def settings(self) -> Settings:
        return self._settings

    def snapshot(self) -> ConfigSnapshot:
        return ConfigSnapshot(
            path=self._path,
            base_hash=self._hash,
            updated_at=self._updated_at,
            settings=self._settings.model_copy(deep=True),
        )

    async def apply(self, base_hash: str | None, document: dict[str, Any]) -> ConfigSnapshot:
        """
        Replace the whole configuration with ``document``.

        ``REDACTED`` placeholders keep the current secret, so a document read
        from ``snapshot().to_dict()`` can be edited and written back.

        Raises:
            ConfigConflictError: ``base_hash`` is given and is not current.
            ConfigError: The document is invalid.
        """
        async with self._lock:
            self._check_base(base_hash)
            document = unredact(document, self._settings.model_dump(mode="json"))
            await self._commit(self._validate(document))
            return self.snapshot()

    async def patch(self, base_hash: str | None, patch: dict[str, Any]) -> ConfigSnapshot:
        """
        Merge ``patch`` into the current configuration.

        Raises:
            ConfigConflictError: ``base_hash`` is given and is not current.
            ConfigError: The merged configuration is invalid.
        """
        async with self._lock:
            self._check_base(base_hash)
            current = self._settings.model_dump(mode="json")
            merged = unredact(merge_patch(current, patch), current)
            await self._commit(self._validate(merged))
            return self.snapshot()

    def _check_base(self, base_hash: str | None) -> None:
        if base_hash is not None and base_hash != self._hash:
            raise ConfigConflictError("base_hash mismatch")

    @staticmethod
    def _validate(document: dict[str, Any]) -> Settings:
        try:
            candidate = Settings.model_validate(document)
        except ValidationError as e:
            raise ConfigError(f"invalid config: {e}") from e
        candidate.ensure_valid()
        return candidate

    async def _commit(self, settings: Settings) -> None:
        await asyncio.to_thread(atomic_write_text, self._path, settings.model_dump_json(indent=2))
        self._settings = settings
        self._hash = hash_settings(settings)
        self._updated_at = utcnow()
        logger.info("config: wrote {} (hash {})", self._path, self._hash[:12])
