"""
CLI entry point for opencraw.

Commands:
  opencraw serve     Start the gateway, the control plane and all enabled channels
  opencraw doctor    Check the configuration and report problems
  opencraw send      Send a message through a running gateway
"""

from __future__ import annotations

import asyncio
import sys
import uuid
from pathlib import Path

import cyclopts
import httpx
from rich.console import Console
from rich.table import Table

from opencraw.adapters.llm.client import detect_provider
from opencraw.cli.gateway import _run_gateway, _setup_logging
from opencraw.config.schema import ConfigError, Settings, default_config_path, load_settings
from opencraw.core.errors import ChannelError

app = cyclopts.App(name="opencraw", help="A self-hosted multi-channel AI assistant gateway.")


def _load(config: Path | None) -> tuple[Settings, Path]:
    path = config or default_config_path()
    try:
        return load_settings(path), path
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        raise SystemExit(1) from e


@app.command
def serve(config: Path | None = None, log_level: str = "INFO") -> None:
    """Start the gateway (control plane, webchat and all enabled channels)."""
    _setup_logging(log_level)
    settings, path = _load(config)
    try:
        asyncio.run(_run_gateway(settings, path))
    except ChannelError as e:
        print(f"error: {e}", file=sys.stderr)
        raise SystemExit(1) from e
    except KeyboardInterrupt:
        pass


# ── doctor ───────────────────────────────────────────────────────────────────


def diagnose(settings: Settings) -> list[tuple[str, bool, str]]:
    """Return ``(check, ok, detail)`` rows for a loaded configuration."""
    rows: list[tuple[str, bool, str]] = []
    for model in settings.configured_models():
        provider = detect_provider(model)
        key = (
            settings.keys.anthropic_api_key
            if provider == "anthropic"
            else settings.keys.openai_api_key
        )
        rows.append((f"model {model}", bool(key), f"{provider} key {'set' if key else 'missing'}"))
    for name in settings.channels.enabled_names():
        rows.append((f"channel {name}", True, "enabled"))
    imessage = settings.channels.imessage
    if imessage.enabled:
        db = Path(imessage.source_db).expanduser()
        rows.append(("imessage source_db", db.is_file(), str(db)))
    strict = settings.runtime.mode == "prod"
    has_tokens = bool(settings.security.control_api_key or settings.security.control_api_keys)
    rows.append(
        (
            "control-plane auth",
            has_tokens or not strict,
            "token pool configured" if has_tokens else "no tokens (mutating calls open in dev)",
        )
    )
    return rows


@app.command
def doctor(config: Path | None = None) -> None:
    """Validate the configuration and print a readiness table."""
    settings, path = _load(config)
    console = Console()
    table = Table(title=f"opencraw doctor ({path})")
    table.add_column("check")
    table.add_column("status")
    table.add_column("detail")
    rows = diagnose(settings)
    for check, ok, detail in rows:
        table.add_row(check, "[green]ok[/green]" if ok else "[red]fail[/red]", detail)
    console.print(table)
    if not all(ok for _, ok, _ in rows):
        raise SystemExit(1)


# ── send ─────────────────────────────────────────────────────────────────────


@app.command
def send(
    channel: str,
    recipient: str,
    message: str,
    config: Path | None = None,
) -> None:
    """Send a message through the running gateway's control plane."""
    settings, _ = _load(config)
    webchat = settings.channels.webchat
    headers = {"x-org-id": str(uuid.uuid4())}
    token = settings.security.control_api_key or next(
        (k.token for k in settings.security.control_api_keys), None
    )
    if token:
        headers["authorization"] = f"Bearer {token}"
    try:
        response = httpx.post(
            f"http://{webchat.host}:{webchat.port}/api/v1/os/messages/send",
            json={"channel": channel, "recipient": recipient, "message": message},
            headers=headers,
            timeout=30.0,
        )
    except httpx.HTTPError as e:
        print(f"error: gateway unreachable: {e}", file=sys.stderr)
        raise SystemExit(1) from e
    if not response.is_success:
        try:
            detail = response.json().get("error", response.text)
        except ValueError:
            detail = response.text
        print(f"error: {detail}", file=sys.stderr)
        raise SystemExit(1)
    print("sent")


def main() -> None:
    """Entry point for the opencraw CLI."""
    app()


if __name__ == "__main__":
    main()
