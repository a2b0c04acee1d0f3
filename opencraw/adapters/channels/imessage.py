"""
iMessage channel adapter (macOS).

Reads new rows from a read-only copy of the Messages ``chat.db`` and sends
replies by driving the Messages app through ``osascript``. Needs Full Disk
Access for the database and Automation permission for the sends.
"""

from __future__ import annotations

import asyncio
import contextlib
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from opencraw.core.errors import ChannelError
from opencraw.core.models import InboundMessage, OutboundMessage

if TYPE_CHECKING:
    from opencraw.config.schema import ImessageConfig

MAX_PER_POLL = 200
OSASCRIPT_TIMEOUT_SECONDS = 10.0
_BACKOFF_STEP_S = 0.25
_BACKOFF_STEPS_MAX = 20

_NEW_ROWS_SQL = """
SELECT
  m.ROWID,
  m.guid,
  m.text,
  m.is_from_me,
  h.id AS handle_id,
  h.service AS handle_service,
  c.guid AS chat_guid,
  c.display_name AS chat_display_name,
  c.service_name AS chat_service_name
FROM message m
LEFT JOIN handle h ON h.ROWID = m.handle_id
LEFT JOIN chat_message_join cmj ON cmj.message_id = m.ROWID
LEFT JOIN chat c ON c.ROWID = cmj.chat_id
WHERE m.ROWID > ?
ORDER BY m.ROWID ASC
LIMIT ?
"""


@dataclass(frozen=True)
class ChatRow:
    rowid: int
    guid: str
    text: str | None
    is_from_me: bool
    handle_id: str | None
    handle_service: str | None
    chat_guid: str | None
    chat_display_name: str | None
    chat_service_name: str | None


# ── Database access (blocking; run via asyncio.to_thread) ───────────────────


def _connect_readonly(path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(f"{path.resolve().as_uri()}?mode=ro", uri=True, timeout=1.0)
    conn.row_factory = sqlite3.Row
    return conn


def read_rows(path: Path, after: int | None, limit: int) -> tuple[int, list[ChatRow]]:
    """
    Fetch rows newer than ``after``.

    When ``after`` is None the cursor starts at the current max row id, so
    history is not replayed. Returns the starting cursor and the rows.
    """
    with contextlib.closing(_connect_readonly(path)) as conn:
        if after is None:
            after = conn.execute("SELECT IFNULL(MAX(ROWID), 0) FROM message").fetchone()[0]
        rows = conn.execute(_NEW_ROWS_SQL, (after, limit)).fetchall()
    return after, [
        ChatRow(
            rowid=r[0],
            guid=r[1],
            text=r[2],
            is_from_me=bool(r[3]),
            handle_id=r[4],
            handle_service=r[5],
            chat_guid=r[6],
            chat_display_name=r[7],
            chat_service_name=r[8],
        )
        for r in rows
    ]


# ── Text helpers ─────────────────────────────────────────────────────────────


def is_chat_handle(handle: str) -> bool:
    return ";chat" in handle or handle.startswith("chat")


def strip_any_prefix(text: str, prefixes: list[str]) -> str | None:
    """
    Strip the first matching prefix (case-insensitive) and a following ``:``
    or ``,``. Returns None when no prefix matches.
    """
    trimmed = text.lstrip()
    for prefix in prefixes:
        prefix = prefix.strip()
        if not prefix or not trimmed.lower().startswith(prefix.lower()):
            continue
        rest = trimmed[len(prefix) :].lstrip()
        rest = rest.removeprefix(":").lstrip()
        rest = rest.removeprefix(",").lstrip()
        return rest
    return None


def escape_applescript(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def build_send_script(handle: str, body: str) -> str:
    """
    AppleScript that sends ``body`` to a chat guid or a buddy address.

    Handles look like ``iMessage;-;+15550001111`` (buddy), ``iMessage;+;chat123``
    (group chat), ``chat123`` or a bare address.
    """
    service: str | None = None
    address = handle
    is_chat = handle.startswith("chat")
    parts = handle.split(";", 2)
    if len(parts) == 3 and parts[0] in ("iMessage", "SMS"):
        service = parts[0]
        address = parts[2]
        is_chat = is_chat or address.startswith("chat")

    body = escape_applescript(body)
    if is_chat:
        return (
            'tell application "Messages"\n'
            f'    set targetChat to chat id "{escape_applescript(handle)}"\n'
            f'    send "{body}" to targetChat\n'
            "end tell"
        )
    service_type = "SMS" if service == "SMS" else "iMessage"
    return (
        'tell application "Messages"\n'
        f"    set targetService to first service whose service type is {service_type}\n"
        f'    set targetBuddy to buddy "{escape_applescript(address)}" of targetService\n'
        f'    send "{body}" to targetBuddy\n'
        "end tell"
    )


class ImessageChannel:
    """
    iMessage adapter.

    Args:
        config: ImessageConfig from opencraw settings.
    """

    channel_id = "imessage"
    supports_reactions = False

    def __init__(self, config: ImessageConfig, max_per_poll: int = MAX_PER_POLL) -> None:
        self._config = config
        self._source_db = Path(config.source_db).expanduser() if config.source_db else None
        self._max_per_poll = max_per_poll
        self._cursor: int | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def cursor(self) -> int | None:
        return self._cursor

    # ── ChannelPort interface ────────────────────────────────────────────────

    async def start(self, sink: asyncio.Queue[InboundMessage]) -> None:
        if self._source_db is None:
            raise ChannelError("imessage source_db is required")
        self._task = asyncio.create_task(self._poll_loop(sink), name="imessage-poll")
        logger.info("imessage: polling {}", self._source_db)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def send(self, recipient_id: str, message: OutboundMessage) -> None:
        handle = recipient_id.strip()
        if not handle:
            raise ChannelError("recipient_id is required")
        body = message.content.strip()
        if not body:
            raise ChannelError("message content is empty")

        proc = await asyncio.create_subprocess_exec(
            "osascript",
            "-e",
            build_send_script(handle, body),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=OSASCRIPT_TIMEOUT_SECONDS)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise ChannelError("osascript timed out") from None
        if proc.returncode != 0:
            raise ChannelError(f"osascript failed: {stderr.decode(errors='replace').strip()}")

    # ── Polling ──────────────────────────────────────────────────────────────

    def _to_inbound(self, row: ChatRow) -> InboundMessage | None:
        if row.is_from_me:
            return None
        sender = (row.handle_id or "").strip()
        content = (row.text or "").strip()
        if not sender or not content:
            return None
        is_group = row.chat_guid is not None and is_chat_handle(row.chat_guid)
        prefixes = self._config.group_prefixes
        if is_group and prefixes:
            stripped = strip_any_prefix(content, prefixes)
            if stripped is None:
                logger.debug("imessage: group message without prefix in {}", row.chat_guid)
                return None
            content = stripped
        return InboundMessage(
            kind="message",
            message_id=row.guid,
            channel_id=self.channel_id,
            sender_id=row.handle_id or "",
            content=content,
            thread_id=row.chat_guid,
            is_group=is_group,
            metadata={
                "handle_id": row.handle_id,
                "handle_service": row.handle_service,
                "chat_guid": row.chat_guid,
                "chat_display_name": row.chat_display_name,
                "chat_service_name": row.chat_service_name,
            },
        )

    async def poll_once(self, sink: asyncio.Queue[InboundMessage]) -> int:
        """Read new rows and emit inbounds; returns the number emitted."""
        if self._source_db is None:
            raise ChannelError("imessage source_db is required")
        after = self._cursor
        if after is None and not self._config.start_from_latest:
            after = 0
        start, rows = await asyncio.to_thread(
            read_rows, self._source_db, after, self._max_per_poll
        )
        # the cursor moves past filtered rows too
        self._cursor = max((r.rowid for r in rows), default=start)

        emitted = 0
        for row in rows:
            inbound = self._to_inbound(row)
            if inbound is not None:
                await sink.put(inbound)
                emitted += 1
        return emitted

    async def _poll_loop(self, sink: asyncio.Queue[InboundMessage]) -> None:
        failures = 0
        interval = self._config.poll_interval_ms / 1000
        while True:
            try:
                await self.poll_once(sink)
                failures = 0
            except sqlite3.Error as e:
                failures += 1
                logger.warning(
                    "imessage: poll failed ({} in a row, grant Full Disk Access to read chat.db?): {}",
                    failures,
                    e,
                )
                await asyncio.sleep(min(failures, _BACKOFF_STEPS_MAX) * _BACKOFF_STEP_S)
            await asyncio.sleep(interval)
