"""
Skills registry with a policy-gated install flow.

A skill install is scanned against the configured policy and gets one of
three decisions: approve (active immediately), warn (active only after an
operator approves it) or block (never active). Records are persisted as a
JSON document in the data directory.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from loguru import logger

from opencraw.core.models import utcnow
from opencraw.core.storage import atomic_write_text

_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")

_DENY_PATTERNS: tuple[tuple[str, str], ...] = (
    ("rm -rf /", "contains destructive filesystem command pattern"),
    ("curl | sh", "contains pipe-to-shell install pattern"),
    ("powershell -enc", "contains obfuscated PowerShell execution pattern"),
    ("drop table", "contains destructive SQL pattern"),
)


class SkillError(ValueError):
    """Invalid install input or a forbidden registry transition."""


class SkillNotFoundError(SkillError):
    pass


class SkillDecision(StrEnum):
    APPROVE = "approve"
    WARN = "warn"
    BLOCK = "block"


@dataclass
class SkillPolicy:
    """Install policy for skills."""

    require_source_provenance: bool = False
    require_https_source: bool = True
    require_trusted_source: bool = False
    trusted_source_prefixes: list[str] = field(default_factory=list)
    require_sha256_signature: bool = False

    def is_trusted(self, source: str) -> bool:
        normalized = source.strip().lower()
        return any(normalized.startswith(p.strip().lower()) for p in self.trusted_source_prefixes)


@dataclass
class SkillInstall:
    """Operator-supplied skill payload."""

    name: str
    description: str
    source: str | None = None
    content: str | None = None
    signature: str | None = None

    def normalized(self) -> SkillInstall:
        name = self.name.strip()
        if not name:
            raise SkillError("skill name must not be empty")
        if not _NAME_RE.match(name):
            raise SkillError("skill name may only contain alphanumeric, '-', '_', or '.'")
        description = self.description.strip()
        if not description:
            raise SkillError("skill description must not be empty")
        return SkillInstall(
            name=name,
            description=description,
            source=_blank_to_none(self.source),
            content=_blank_to_none(self.content),
            signature=_blank_to_none(self.signature),
        )

    def digest(self) -> str:
        """sha256 over the canonical JSON of the payload, signature excluded."""
        artifact = {k: v for k, v in asdict(self).items() if k != "signature"}
        canonical = json.dumps(artifact, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class SkillRecord:
    skill_id: str
    name: str
    description: str
    source: str | None
    content: str | None
    signature: str | None
    digest_sha256: str
    decision: SkillDecision
    policy_reasons: list[str]
    active: bool = False
    approved_by_operator: bool = False
    scan_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["decision"] = self.decision.value
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SkillRecord:
        data = dict(data)
        data["decision"] = SkillDecision(data["decision"])
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        data["updated_at"] = datetime.fromisoformat(data["updated_at"])
        return cls(**data)


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


def evaluate_policy(
    skill: SkillInstall, digest: str, policy: SkillPolicy
) -> tuple[SkillDecision, list[str]]:
    """
    Scan a normalized install payload.

    Returns:
        The decision and its reasons. Block reasons win over warnings.
    """
    warnings: list[str] = []
    blocks: list[str] = []

    source = (skill.source or "").strip()
    if not source:
        if policy.require_source_provenance or policy.require_trusted_source:
            blocks.append("missing source provenance")
        else:
            warnings.append("missing source provenance")
    elif not source.lower().startswith("https://"):
        if policy.require_https_source or policy.require_trusted_source:
            blocks.append("source URL must use https://")
        else:
            warnings.append("source URL is not HTTPS")
    elif policy.require_trusted_source and not policy.is_trusted(source):
        blocks.append("source URL is not in trusted source roots")
    elif policy.trusted_source_prefixes and not policy.is_trusted(source):
        warnings.append("source URL is outside configured trusted source roots")

    signature = (skill.signature or "").strip()
    if not signature:
        if policy.require_sha256_signature:
            blocks.append("missing artifact signature")
        else:
            warnings.append("missing artifact signature")
    elif signature.startswith("sha256:"):
        expected = signature.removeprefix("sha256:").strip().lower()
        if not expected:
            target = blocks if policy.require_sha256_signature else warnings
            target.append("empty sha256 signature payload")
        elif expected != digest.lower():
            blocks.append("sha256 signature does not match artifact digest")
    elif policy.require_sha256_signature:
        blocks.append("signature must use sha256:<digest> format")

    corpus = "\n".join(
        part.lower() for part in (skill.name, skill.description, skill.content or "") if part
    )
    blocks.extend(reason for pattern, reason in _DENY_PATTERNS if pattern in corpus)

    if blocks:
        return SkillDecision.BLOCK, blocks
    if warnings:
        return SkillDecision.WARN, warnings
    return SkillDecision.APPROVE, []


def _is_active(decision: SkillDecision, approved_by_operator: bool) -> bool:
    if decision is SkillDecision.APPROVE:
        return True
    if decision is SkillDecision.WARN:
        return approved_by_operator
    return False


class SkillRegistry:
    """
    Skill records keyed by id, persisted to ``<data_dir>/skills.json``.

    Args:
        path: JSON file holding all records; None keeps the registry in memory.
        policy: Install policy used on every install.
    """

    def __init__(self, path: Path | None, policy: SkillPolicy | None = None) -> None:
        self._path = path
        self._policy = policy or SkillPolicy()
        self._skills: dict[str, SkillRecord] = {}
        self._lock = asyncio.Lock()

    @classmethod
    async def load(cls, path: Path | None, policy: SkillPolicy | None = None) -> SkillRegistry:
        registry = cls(path, policy)
        if path is not None and path.exists():
            raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
            for item in json.loads(raw).get("skills", []):
                record = SkillRecord.from_dict(item)
                registry._skills[record.skill_id] = record
            logger.info("skills: loaded {} records from {}", len(registry._skills), path)
        return registry

    def list(self) -> list[SkillRecord]:
        return sorted(self._skills.values(), key=lambda r: r.updated_at, reverse=True)

    def search(self, query: str) -> list[SkillRecord]:
        needle = query.strip().lower()
        if not needle:
            return self.list()
        return [
            r
            for r in self.list()
            if needle
            in "\n".join(
                (r.name, r.description, r.source or "", r.content or "")
            ).lower()
        ]

    def get(self, skill_id: str) -> SkillRecord | None:
        return self._skills.get(skill_id)

    async def install(self, payload: SkillInstall) -> SkillRecord:
        """Scan and upsert a skill. Re-installing the same payload rescans it."""
        skill = payload.normalized()
        digest = skill.digest()
        skill_id = f"skill-{digest[:16]}"
        decision, reasons = evaluate_policy(skill, digest, self._policy)
        now = utcnow()
        async with self._lock:
            prior = self._skills.get(skill_id)
            approved = (
                prior.approved_by_operator
                if prior is not None and decision is not SkillDecision.BLOCK
                else False
            )
            record = SkillRecord(
                skill_id=skill_id,
                name=skill.name,
                description=skill.description,
                source=skill.source,
                content=skill.content,
                signature=skill.signature,
                digest_sha256=digest,
                decision=decision,
                policy_reasons=reasons,
                active=_is_active(decision, approved),
                approved_by_operator=approved,
                scan_count=(prior.scan_count if prior else 0) + 1,
                created_at=prior.created_at if prior else now,
                updated_at=now,
            )
            self._skills[skill_id] = record
            await self._persist()
        logger.info("skills: installed {} ({}) decision={}", record.name, skill_id, decision)
        return record

    async def approve(self, skill_id: str) -> SkillRecord:
        async with self._lock:
            record = self._require(skill_id)
            if record.decision is SkillDecision.BLOCK:
                raise SkillError(f"blocked skill cannot be approved: {skill_id}")
            record.approved_by_operator = True
            record.active = True
            record.updated_at = utcnow()
            await self._persist()
        logger.info("skills: {} approved by operator", skill_id)
        return record

    async def revoke(self, skill_id: str) -> SkillRecord:
        async with self._lock:
            record = self._require(skill_id)
            record.approved_by_operator = False
            record.active = False
            record.updated_at = utcnow()
            await self._persist()
        logger.info("skills: {} revoked", skill_id)
        return record

    def _require(self, skill_id: str) -> SkillRecord:
        record = self._skills.get(skill_id)
        if record is None:
            raise SkillNotFoundError(f"skill not found: {skill_id}")
        return record

    async def _persist(self) -> None:
        if self._path is None:
            return
        document = {"skills": [r.to_dict() for r in self._skills.values()]}
        await asyncio.to_thread(atomic_write_text, self._path, json.dumps(document, indent=2))

