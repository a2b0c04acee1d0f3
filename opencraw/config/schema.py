"""
Configuration schema for opencraw.

Settings are loaded from a JSON file (default: ~/.opencraw/config.json).
A handful of environment variables override file values after loading;
``Settings.ensure_valid()`` then runs the semantic checks that a type-only
validation cannot express.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

from opencraw.core.models import ApprovalMode


class ConfigError(ValueError):
    """The configuration is unreadable or semantically invalid."""


def default_config_path() -> Path:
    """Return ``$HOME/.opencraw/config.json``, resolved at call time."""
    home = os.environ.get("HOME") or str(Path.home())
    return Path(home) / ".opencraw" / "config.json"


class GeneralConfig(BaseModel):
    model: str = "gpt-4o-mini"
    fallback_models: list[str] = Field(default_factory=list)
    system_prompt: str = "You are opencraw, a helpful personal assistant."


class KeysConfig(BaseModel):
    """Provider credentials. Either may be empty when the provider is unused."""

    openai_api_key: str = ""
    openai_api_base: str = ""
    anthropic_api_key: str = ""


class WebchatConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 3000


class TelegramConfig(BaseModel):
    enabled: bool = False
    bot_token: str = ""


class DiscordConfig(BaseModel):
    enabled: bool = False
    bot_token: str = ""


class ImessageConfig(BaseModel):
    """Configuration for the iMessage adapter (macOS only)."""

    enabled: bool = False
    source_db: str = ""  # usually ~/Library/Messages/chat.db
    poll_interval_ms: int = 1500
    start_from_latest: bool = True
    group_prefixes: list[str] = Field(default_factory=lambda: ["@opencraw", "opencraw"])


class SlackConfig(BaseModel):
    enabled: bool = False
    bot_token: str = ""
    poll_interval_ms: int = 3000
    channel_ids: list[str] = Field(default_factory=list)
    start_from_latest: bool = True
    history_limit: int = 100


class WhatsAppConfig(BaseModel):
    """WhatsApp Cloud API credentials (send-only)."""

    enabled: bool = False
    access_token: str = ""
    phone_number_id: str = ""


class ChannelsConfig(BaseModel):
    webchat: WebchatConfig = Field(default_factory=WebchatConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    imessage: ImessageConfig = Field(default_factory=ImessageConfig)
    slack: SlackConfig = Field(default_factory=SlackConfig)
    whatsapp: WhatsAppConfig = Field(default_factory=WhatsAppConfig)

    def enabled_names(self) -> list[str]:
        """Names of enabled channels, in declaration order."""
        return [name for name in type(self).model_fields if getattr(self, name).enabled]


class ControlApiKeyConfig(BaseModel):
    """A control-plane bearer token, optionally limited to some scopes."""

    token: str
    scopes: list[str] = Field(default_factory=list)  # [] = all scopes
    description: str | None = None


class SecurityConfig(BaseModel):
    allow_all_senders: bool = False
    allowed_users: list[str] = Field(default_factory=list)
    shell_approval: ApprovalMode = ApprovalMode.AUTO
    browser_approval: ApprovalMode = ApprovalMode.AI
    filesystem_write_approval: ApprovalMode = ApprovalMode.AI
    control_api_key: str | None = None
    control_api_keys: list[ControlApiKeyConfig] = Field(default_factory=list)
    mutating_auth_exempt_prefixes: list[str] = Field(
        default_factory=lambda: [
            "/api/v1/os/automation/webhook/",
            "/api/v1/os/automation/poll/",
        ]
    )


class RuntimeConfig(BaseModel):
    mode: Literal["dev", "prod"] = "dev"
    data_dir: str = "data"  # relative paths resolve under ~/.opencraw/


class ShellToolConfig(BaseModel):
    enabled: bool = True
    timeout_seconds: float = 30.0


class FilesystemToolConfig(BaseModel):
    enabled: bool = True
    file_bytes_max: int = 1_000_000
    search_results_max: int = 200
    search_steps_max: int = 50_000


class ToolsConfig(BaseModel):
    workspace: str = "workspace"  # relative paths resolve under ~/.opencraw/
    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)
    filesystem: FilesystemToolConfig = Field(default_factory=FilesystemToolConfig)


class AgentConfig(BaseModel):
    """Configuration for the assistant loop and the inbound queue."""

    max_iterations: int = 6
    max_prompt_tokens: int = 8000
    min_recent_messages: int = 8
    max_tool_chars: int = 4000
    inbound_queue_capacity: int = 1024


class SkillsConfig(BaseModel):
    """Install policy for the skills registry."""

    require_source_provenance: bool = False
    require_https_source: bool = True
    require_trusted_source: bool = False
    trusted_source_prefixes: list[str] = Field(default_factory=list)
    require_sha256_signature: bool = False


class AutomationConfig(BaseModel):
    webhook_secret: str | None = None
    source_secrets: dict[str, str] = Field(default_factory=dict)


class Settings(BaseModel):
    """Root configuration object for opencraw."""

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    keys: KeysConfig = Field(default_factory=KeysConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    skills: SkillsConfig = Field(default_factory=SkillsConfig)
    automation: AutomationConfig = Field(default_factory=AutomationConfig)

    @classmethod
    def load(cls, path: Path | None = None) -> Settings:
        """
        Load settings from a JSON file.

        Missing keys use their default values. The file is optional: if it
        doesn't exist, all defaults apply.

        Raises:
            ConfigError: The file cannot be read, parsed or type-checked.
        """
        path = path or default_config_path()
        if not path.exists():
            return cls()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return cls.model_validate(data)
        except OSError as e:
            raise ConfigError(f"read config {path}: {e}") from e
        except (json.JSONDecodeError, ValidationError) as e:
            raise ConfigError(f"parse config {path}: {e}") from e

    def apply_env_overrides(self, environ: Mapping[str, str] | None = None) -> None:
        """
        Apply environment overrides in place. Empty values are ignored.

        Channel tokens (and the iMessage database path) also enable their
        channel.
        """
        env = os.environ if environ is None else environ

        def value(name: str) -> str | None:
            raw = env.get(name, "").strip()
            return raw or None

        if v := value("OPENSHELL_MODEL"):
            self.general.model = v
        if v := value("OPENAI_API_KEY"):
            self.keys.openai_api_key = v
        if v := value("ANTHROPIC_API_KEY"):
            self.keys.anthropic_api_key = v
        if v := value("TELEGRAM_BOT_TOKEN"):
            self.channels.telegram.bot_token = v
            self.channels.telegram.enabled = True
        if v := value("DISCORD_BOT_TOKEN"):
            self.channels.discord.bot_token = v
            self.channels.discord.enabled = True
        if v := value("SLACK_BOT_TOKEN"):
            self.channels.slack.bot_token = v
            self.channels.slack.enabled = True
        if v := value("WHATSAPP_ACCESS_TOKEN"):
            self.channels.whatsapp.access_token = v
            self.channels.whatsapp.enabled = True
        if v := value("WHATSAPP_PHONE_NUMBER_ID"):
            self.channels.whatsapp.phone_number_id = v
        if v := value("IMESSAGE_SOURCE_DB"):
            self.channels.imessage.source_db = v
            self.channels.imessage.enabled = True

    def ensure_valid(self) -> None:
        """
        Run semantic checks.

        Raises:
            ConfigError: On the first violated rule.
        """
        if not self.general.model.strip():
            raise ConfigError("general.model is required")
        if any(not m.strip() for m in self.general.fallback_models):
            raise ConfigError("general.fallback_models must not contain empty entries")
        if not self.runtime.data_dir.strip():
            raise ConfigError("runtime.data_dir is required")

        agent = self.agent
        for name in (
            "max_iterations",
            "max_prompt_tokens",
            "min_recent_messages",
            "max_tool_chars",
            "inbound_queue_capacity",
        ):
            if getattr(agent, name) <= 0:
                raise ConfigError(f"agent.{name} must be > 0")

        if self.tools.shell.timeout_seconds <= 0:
            raise ConfigError("tools.shell.timeout_seconds must be > 0")
        fs = self.tools.filesystem
        for name in ("file_bytes_max", "search_results_max", "search_steps_max"):
            if getattr(fs, name) <= 0:
                raise ConfigError(f"tools.filesystem.{name} must be > 0")

        for entry in self.security.control_api_keys:
            if not entry.token.strip():
                raise ConfigError("security.control_api_keys entries require a non-empty token")

        self._check_channels()

    def _check_channels(self) -> None:
        ch = self.channels
        if ch.webchat.enabled and not (0 < ch.webchat.port < 65536):
            raise ConfigError("channels.webchat.port must be > 0")
        if ch.telegram.enabled and not ch.telegram.bot_token.strip():
            raise ConfigError(
                "channels.telegram.bot_token is required when channels.telegram.enabled=true"
            )
        if ch.discord.enabled and not ch.discord.bot_token.strip():
            raise ConfigError(
                "channels.discord.bot_token is required when channels.discord.enabled=true"
            )
        if ch.slack.enabled:
            if not ch.slack.bot_token.strip():
                raise ConfigError(
                    "channels.slack.bot_token is required when channels.slack.enabled=true"
                )
            if ch.slack.poll_interval_ms <= 0:
                raise ConfigError("channels.slack.poll_interval_ms must be > 0")
            if not ch.slack.channel_ids:
                raise ConfigError(
                    "channels.slack.channel_ids must contain at least one channel id "
                    "when channels.slack.enabled=true"
                )
            if any(not c.strip() for c in ch.slack.channel_ids):
                raise ConfigError("channels.slack.channel_ids must not contain empty entries")
        if ch.imessage.enabled:
            if ch.imessage.poll_interval_ms <= 0:
                raise ConfigError("channels.imessage.poll_interval_ms must be > 0")
            if not ch.imessage.source_db.strip():
                raise ConfigError(
                    "channels.imessage.source_db is required when channels.imessage.enabled=true"
                )
        if ch.whatsapp.enabled:
            if not ch.whatsapp.access_token.strip():
                raise ConfigError(
                    "channels.whatsapp.access_token is required when channels.whatsapp.enabled=true"
                )
            if not ch.whatsapp.phone_number_id.strip():
                raise ConfigError(
                    "channels.whatsapp.phone_number_id is required "
                    "when channels.whatsapp.enabled=true"
                )

    def configured_models(self) -> list[str]:
        """The default model followed by the fallbacks, de-duplicated case-insensitively."""
        seen: set[str] = set()
        out: list[str] = []
        for model in [self.general.model, *self.general.fallback_models]:
            model = model.strip()
            if model and model.lower() not in seen:
                seen.add(model.lower())
                out.append(model)
        return out

    def resolve_path(self, value: str, config_path: Path | None = None) -> Path:
        """Resolve a configured path; relative paths live next to the config file."""
        path = Path(value).expanduser()
        if path.is_absolute():
            return path
        base = (config_path or default_config_path()).parent
        return base / path


def load_settings(path: Path | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    """Load, apply env overrides and validate: the full boot sequence."""
    settings = Settings.load(path)
    settings.apply_env_overrides(environ)
    settings.ensure_valid()
    return settings
