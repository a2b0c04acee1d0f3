"""Process wiring for opencraw.

Builds the runtime graph from a validated ``Settings`` (LLM router, tools,
channels, gateway, skills, automation inbox) and runs the HTTP server and
the inbound consumer side by side until shutdown.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from opencraw.adapters.llm.client import LLMRouter
    from opencraw.api.state import AppState
    from opencraw.config.schema import Settings
    from opencraw.core.ports import ChannelPort
    from opencraw.core.registry import ToolRegistry
    from opencraw.core.security import SecurityGate

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_NOISY_LOGGERS = ("httpx", "openai", "anthropic", "discord", "telegram", "uvicorn.access")


def _setup_logging(level: str) -> None:
    """
    Configure loguru for gateway output.

    Removes the default loguru stderr handler and replaces it with one that
    uses a consistent timestamp+level format. Chatty third-party libraries
    are clamped to WARNING via the stdlib logging bridge.

    Args:
        level: Log level string (case-insensitive), e.g. "INFO", "DEBUG".

    Raises:
        SystemExit: If the level is not a valid log level name.
    """
    import logging
    import sys

    from loguru import logger

    normalised = level.upper()
    if normalised not in _VALID_LOG_LEVELS:
        valid = ", ".join(sorted(_VALID_LOG_LEVELS))
        print(f"error: invalid --log-level '{level}'. Valid values: {valid}", file=sys.stderr)
        raise SystemExit(1)

    logger.remove()  # remove loguru's built-in default handler
    logger.add(
        sys.stderr,
        level=normalised,
        format=("<green>{time:YYYY-MM-DD HH:mm:ss}</green> <level>{level:<8}</level> {message}"),
        colorize=True,
    )
    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _print_banner(settings: Settings, config_path: Path) -> None:
    """Print the startup banner to stderr, without log prefixes."""
    import sys
    from importlib.metadata import PackageNotFoundError, version

    try:
        ver = version("opencraw")
    except PackageNotFoundError:
        ver = "dev"
    webchat = settings.channels.webchat
    print(f"opencraw v{ver}", file=sys.stderr)
    print(f"   model:    {settings.general.model}", file=sys.stderr)
    print(f"   config:   {config_path}", file=sys.stderr)
    print(f"   listen:   http://{webchat.host}:{webchat.port}", file=sys.stderr)
    print(f"   channels: {', '.join(settings.channels.enabled_names()) or '-'}", file=sys.stderr)
    print(f"   {'─' * 40}", file=sys.stderr)
    print(file=sys.stderr)


# ── Builders ─────────────────────────────────────────────────────────────────


def build_llm(settings: Settings) -> LLMRouter:
    """Create provider adapters for every configured API key."""
    from opencraw.adapters.llm.anthropic import AnthropicAdapter  # noqa: PLC0415
    from opencraw.adapters.llm.client import LLMRouter  # noqa: PLC0415
    from opencraw.adapters.llm.openai import OpenAIAdapter  # noqa: PLC0415

    keys = settings.keys
    openai = (
        OpenAIAdapter(api_key=keys.openai_api_key, api_base=keys.openai_api_base or None)
        if keys.openai_api_key
        else None
    )
    anthropic = AnthropicAdapter(api_key=keys.anthropic_api_key) if keys.anthropic_api_key else None
    return LLMRouter(openai=openai, anthropic=anthropic)


def build_gate(settings: Settings) -> SecurityGate:
    from opencraw.core.security import SecurityGate  # noqa: PLC0415

    security = settings.security
    return SecurityGate(
        allow_all_senders=security.allow_all_senders,
        allowed_users=list(security.allowed_users),
        shell_approval=security.shell_approval,
        browser_approval=security.browser_approval,
        filesystem_write_approval=security.filesystem_write_approval,
    )


def build_registry(settings: Settings, gate: SecurityGate, workspace: Path) -> ToolRegistry:
    """Register the enabled built-in tools, all confined to ``workspace``."""
    from opencraw.adapters.tools.filesystem import FilesystemTool  # noqa: PLC0415
    from opencraw.adapters.tools.shell import ShellTool  # noqa: PLC0415
    from opencraw.core.registry import ToolRegistry  # noqa: PLC0415

    registry = ToolRegistry(gate)
    tools = settings.tools
    if tools.shell.enabled:
        registry.register(ShellTool(root=workspace, timeout=tools.shell.timeout_seconds))
    if tools.filesystem.enabled:
        registry.register(
            FilesystemTool(
                root=workspace,
                file_bytes_max=tools.filesystem.file_bytes_max,
                search_results_max=tools.filesystem.search_results_max,
                search_steps_max=tools.filesystem.search_steps_max,
            )
        )
    return registry


def build_channels(settings: Settings) -> dict[str, ChannelPort]:
    """Instantiate every enabled channel adapter, keyed by channel id."""
    from loguru import logger  # noqa: PLC0415

    channels: dict[str, ChannelPort] = {}
    config = settings.channels
    if config.webchat.enabled:
        from opencraw.adapters.channels.webchat import WebchatChannel  # noqa: PLC0415

        channels["webchat"] = WebchatChannel()
    if config.telegram.enabled:
        from opencraw.adapters.channels.telegram import TelegramChannel  # noqa: PLC0415

        channels["telegram"] = TelegramChannel(config.telegram)
    if config.discord.enabled:
        from opencraw.adapters.channels.discord import DiscordChannel  # noqa: PLC0415

        channels["discord"] = DiscordChannel(config.discord)
    if config.imessage.enabled:
        from opencraw.adapters.channels.imessage import ImessageChannel  # noqa: PLC0415

        channels["imessage"] = ImessageChannel(config.imessage)
    if config.slack.enabled:
        from opencraw.adapters.channels.slack import SlackChannel  # noqa: PLC0415

        channels["slack"] = SlackChannel(config.slack)
    if config.whatsapp.enabled:
        from opencraw.adapters.channels.whatsapp import WhatsAppChannel  # noqa: PLC0415

        channels["whatsapp"] = WhatsAppChannel(config.whatsapp)
    logger.info("channels: {}", ", ".join(channels) or "none")
    return channels


async def build_state(settings: Settings, config_path: Path) -> AppState:
    """Wire the full runtime graph for one process."""
    from opencraw.adapters.channels.webchat import WebchatChannel  # noqa: PLC0415
    from opencraw.api.state import AppState  # noqa: PLC0415
    from opencraw.config.control import ConfigControl  # noqa: PLC0415
    from opencraw.core.agent import AgentLoop, AgentSettings  # noqa: PLC0415
    from opencraw.core.automation import AutomationInbox  # noqa: PLC0415
    from opencraw.core.commands import CommandContext  # noqa: PLC0415
    from opencraw.core.gateway import Gateway  # noqa: PLC0415
    from opencraw.core.session import SessionStore  # noqa: PLC0415
    from opencraw.core.skills import SkillPolicy, SkillRegistry  # noqa: PLC0415

    started_at = time.monotonic()
    workspace = settings.resolve_path(settings.tools.workspace, config_path)
    workspace.mkdir(parents=True, exist_ok=True)
    data_dir = settings.resolve_path(settings.runtime.data_dir, config_path)

    gate = build_gate(settings)
    agent = AgentLoop(
        llm=build_llm(settings),
        registry=build_registry(settings, gate, workspace),
        settings=AgentSettings(
            system_prompt=settings.general.system_prompt,
            default_model=settings.general.model,
            max_iterations=settings.agent.max_iterations,
            max_prompt_tokens=settings.agent.max_prompt_tokens,
            min_recent_messages=settings.agent.min_recent_messages,
            max_tool_chars=settings.agent.max_tool_chars,
        ),
    )
    channels = build_channels(settings)
    models = settings.configured_models()
    sessions = SessionStore()
    gateway = Gateway(
        sessions=sessions,
        agent=agent,
        gate=gate,
        channels=channels,
        commands=CommandContext(
            default_model=settings.general.model,
            available_models=models,
            channels=sorted(channels),
            started_at=started_at,
        ),
        queue_capacity=settings.agent.inbound_queue_capacity,
    )
    skills_policy = SkillPolicy(**settings.skills.model_dump())
    webchat = channels.get("webchat")
    return AppState(
        config=ConfigControl(config_path, settings),
        sessions=sessions,
        gateway=gateway,
        skills=await SkillRegistry.load(data_dir / "skills.json", skills_policy),
        automation=AutomationInbox(
            webhook_secret=settings.automation.webhook_secret,
            source_secrets=settings.automation.source_secrets,
        ),
        webchat=webchat if isinstance(webchat, WebchatChannel) else None,
        available_models=models,
        started_at=started_at,
    )


# ── Runner ───────────────────────────────────────────────────────────────────


async def _run_gateway(settings: Settings, config_path: Path) -> None:
    """Serve the control plane and consume inbound traffic until interrupted."""
    import uvicorn  # noqa: PLC0415
    from loguru import logger  # noqa: PLC0415

    from opencraw.api.app import create_app  # noqa: PLC0415

    _print_banner(settings, config_path)
    state = await build_state(settings, config_path)
    webchat = settings.channels.webchat
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(state),
            host=webchat.host,
            port=webchat.port,
            log_config=None,
            access_log=False,
        )
    )

    logger.info("gateway starting")
    try:
        await state.gateway.start_channels()
        async with asyncio.TaskGroup() as tg:
            consumer = tg.create_task(state.gateway.run(), name="gateway-consumer")
            await server.serve()
            consumer.cancel()
    finally:
        await state.gateway.stop_channels()
        logger.info("gateway stopped")
