"""
Automation inbox: webhook and poll ingestion with event-id de-duplication.

Ingested events are kept in memory only. Each accepted event yields a
receipt; a repeated event id for the same source and kind is acknowledged
as a duplicate without being recorded again.
"""

from __future__ import annotations

import hmac
from collections import Counter, OrderedDict, deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal
from uuid import uuid4

from loguru import logger

from opencraw.core.models import utcnow

INGEST_ENVELOPE_SCHEMA = "opencraw_ingest_envelope_v1"
_ENVELOPE_KEYS = frozenset({"schema", "event_id", "occurred_at", "metadata", "payload"})

type IngestKind = Literal["webhook", "poll"]


class IngestError(ValueError):
    """Malformed ingest request (bad envelope or conflicting event ids)."""


class IngestAuthError(IngestError):
    """Missing or wrong shared secret."""


@dataclass
class IngestContract:
    """Normalized ingest request, whatever shape the body had."""

    payload: Any
    event_id: str | None = None
    occurred_at: datetime | None = None
    metadata: Any = None


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _as_envelope(body: Any) -> dict[str, Any] | None:
    if not isinstance(body, dict):
        return None
    if "schema" not in body or "payload" not in body or not set(body) <= _ENVELOPE_KEYS:
        return None
    if not isinstance(body["schema"], str):
        return None
    return body


def parse_ingest_body(body: Any, header_event_id: str | None = None) -> IngestContract:
    """
    Accept either a raw JSON body or an ``opencraw_ingest_envelope_v1`` envelope.

    Args:
        body: Decoded JSON request body.
        header_event_id: Value of ``x-opencraw-event-id``, if any.

    Raises:
        IngestError: Wrong envelope schema, unparsable timestamp, or header and
            envelope event ids that disagree.
    """
    header_event_id = _clean(header_event_id)
    envelope = _as_envelope(body)
    if envelope is None:
        return IngestContract(payload=body, event_id=header_event_id)

    schema = envelope["schema"].strip()
    if schema != INGEST_ENVELOPE_SCHEMA:
        raise IngestError(
            f'invalid ingest envelope schema "{schema}"; expected "{INGEST_ENVELOPE_SCHEMA}"'
        )
    body_event_id = _clean(envelope.get("event_id"))
    if header_event_id and body_event_id and header_event_id != body_event_id:
        raise IngestError("ingest event_id mismatch between header and envelope")

    occurred_at = None
    raw_occurred = envelope.get("occurred_at")
    if raw_occurred is not None:
        try:
            occurred_at = datetime.fromisoformat(str(raw_occurred))
        except ValueError as e:
            raise IngestError(f"invalid occurred_at: {raw_occurred}") from e

    return IngestContract(
        payload=envelope["payload"],
        event_id=header_event_id or body_event_id,
        occurred_at=occurred_at,
        metadata=envelope.get("metadata"),
    )


@dataclass
class IngestReceipt:
    receipt_id: str
    kind: IngestKind
    source: str
    event_id: str | None
    duplicate: bool = False
    received_at: datetime = field(default_factory=utcnow)
    occurred_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "receipt_id": self.receipt_id,
            "kind": self.kind,
            "source": self.source,
            "event_id": self.event_id,
            "duplicate": self.duplicate,
            "received_at": self.received_at.isoformat(),
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
        }


@dataclass
class _IngestRecord:
    receipt: IngestReceipt
    payload: Any
    metadata: Any


class AutomationInbox:
    """
    In-memory ingest log.

    Args:
        webhook_secret: Global shared secret, required for every source when set.
        source_secrets: Per-source secrets; they take precedence over the global one.
        max_records: How many accepted events are retained.
        max_event_ids: How many event ids are remembered for de-duplication;
            the least recently seen are forgotten first.
    """

    def __init__(
        self,
        webhook_secret: str | None = None,
        source_secrets: Mapping[str, str] | None = None,
        max_records: int = 500,
        max_event_ids: int = 10_000,
    ) -> None:
        self._secret = (webhook_secret or "").strip() or None
        self._source_secrets = {k: v for k, v in (source_secrets or {}).items() if v.strip()}
        self._records: deque[_IngestRecord] = deque(maxlen=max_records)
        self._seen: OrderedDict[tuple[str, str, str], IngestReceipt] = OrderedDict()
        self._max_event_ids = max_event_ids
        self._by_source: Counter[str] = Counter()
        self._duplicates = 0

    def _check_secret(self, source: str, provided: str | None) -> None:
        expected = self._source_secrets.get(source, self._secret)
        if expected is None:
            return
        provided = _clean(provided)
        if provided is None:
            raise IngestAuthError("missing webhook secret")
        if not hmac.compare_digest(provided.encode(), expected.encode()):
            raise IngestAuthError("invalid webhook secret")

    def ingest(
        self,
        kind: IngestKind,
        source: str,
        contract: IngestContract,
        provided_secret: str | None = None,
    ) -> IngestReceipt:
        """Authenticate, de-duplicate and record one event."""
        source = source.strip()
        if not source:
            raise IngestError("source must not be empty")
        self._check_secret(source, provided_secret)

        if contract.event_id is not None:
            key = (kind, source, contract.event_id)
            seen = self._seen.get(key)
            if seen is not None:
                self._seen.move_to_end(key)
                self._duplicates += 1
                logger.debug("automation: duplicate {} event {} from {}", kind, contract.event_id, source)
                return IngestReceipt(
                    receipt_id=seen.receipt_id,
                    kind=kind,
                    source=source,
                    event_id=contract.event_id,
                    duplicate=True,
                    received_at=seen.received_at,
                    occurred_at=seen.occurred_at,
                )

        receipt = IngestReceipt(
            receipt_id=str(uuid4()),
            kind=kind,
            source=source,
            event_id=contract.event_id,
            occurred_at=contract.occurred_at,
        )
        if contract.event_id is not None:
            self._seen[(kind, source, contract.event_id)] = receipt
            if len(self._seen) > self._max_event_ids:
                self._seen.popitem(last=False)
        self._records.append(_IngestRecord(receipt, contract.payload, contract.metadata))
        self._by_source[source] += 1
        logger.info("automation: accepted {} event from {} ({})", kind, source, receipt.receipt_id)
        return receipt

    def status(self, recent: int = 20) -> dict[str, Any]:
        return {
            "received": sum(self._by_source.values()),
            "duplicates": self._duplicates,
            "sources": dict(self._by_source),
            "recent": [r.receipt.to_dict() for r in list(self._records)[-recent:]],
        }
