from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from core.errors import ConfigurationError
from utils.security import is_valid_webhook_url

LOGGER = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    pass


@dataclass(slots=True)
class DiscordConfig:
    token: str
    prefix: str = "!"
    application_id: int | None = None
    sync_commands_on_start: bool = True
    status_text: str = "DM me for help"
    activity_type: str = "watching"
    allowed_mentions_everyone: bool = False


@dataclass(slots=True)
class DatabaseConfig:
    url: str = "sqlite:///./data/modmail.db"
    pool_min_size: int = 2
    pool_max_size: int = 10
    timeout_seconds: int = 30


@dataclass(slots=True)
class RedisConfig:
    enabled: bool = False
    url: str = "redis://localhost:6379/0"
    default_ttl: int = 120


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    directory: str = "logs"
    file_name: str = "modmail.log"
    max_bytes: int = 10_000_000
    backup_count: int = 10
    json_console: bool = False


@dataclass(slots=True)
class StorageConfig:
    data_directory: str = "data"
    tickets_file: str = "active-tickets.json"
    backup_file: str = "active-tickets-backup.json"
    autosave_interval_seconds: int = 300
    save_retries: int = 3

    @property
    def tickets_path(self) -> Path:
        return Path(self.data_directory) / self.tickets_file

    @property
    def backup_path(self) -> Path:
        return Path(self.data_directory) / self.backup_file


def _default_cooldowns() -> dict[str, int]:
    return {
        "default": 3,
        "dashboard": 30,
        "analytics": 60,
        "report": 120,
        "search": 10,
        "open": 15,
        "priority": 5,
    }


@dataclass(slots=True)
class LimitsConfig:
    tickets_per_hour: int = 3
    messages_per_minute: int = 30
    commands_per_minute: int = 20
    command_cooldowns: dict[str, int] = field(default_factory=_default_cooldowns)

    def cooldown_for(self, command_name: str) -> int:
        return self.command_cooldowns.get(command_name, self.command_cooldowns.get("default", 3))


@dataclass(slots=True)
class SurveyConfig:
    enabled: bool = True
    ttl_days: int = 7


@dataclass(slots=True)
class PlatformConfig:
    timeout_seconds: float = 15.0
    history_page_size: int = 100


@dataclass(slots=True)
class TranscriptConfig:
    directory: str = "artifacts/transcripts"
    markdown_enabled: bool = True
    html_enabled: bool = True


@dataclass(slots=True)
class MetricsConfig:
    export_directory: str = "artifacts/exports"
    enable_graphs: bool = True
    leaderboard_size: int = 5


@dataclass(slots=True)
class ApiConfig:
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    api_key: str = ""


@dataclass(slots=True)
class GuildModmailConfig:
    guild_id: int
    modmail_channel_id: int
    log_channel_id: int
    staff_role_id: int
    use_threads: bool = True
    webhook_url: str | None = None
    admin_channel_ids: list[int] = field(default_factory=list)


@dataclass(slots=True)
class AppConfig:
    discord: DiscordConfig
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    surveys: SurveyConfig = field(default_factory=SurveyConfig)
    platform: PlatformConfig = field(default_factory=PlatformConfig)
    transcripts: TranscriptConfig = field(default_factory=TranscriptConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    enabled_extensions: list[str] = field(
        default_factory=lambda: [
            "cogs.events",
            "cogs.tickets",
            "cogs.analytics",
            "cogs.admin",
        ]
    )
    guilds: list[GuildModmailConfig] = field(default_factory=list)


class ConfigStore:
    """Read-only view of the per-guild modmail setup, in configuration order."""

    def __init__(self, guilds: Iterable[GuildModmailConfig]) -> None:
        self._guilds: dict[int, GuildModmailConfig] = {}
        for guild in guilds:
            if guild.guild_id in self._guilds:
                LOGGER.warning("Duplicate modmail config for guild %s ignored", guild.guild_id)
                continue
            self._guilds[guild.guild_id] = guild

    def get(self, guild_id: int | None) -> GuildModmailConfig | None:
        if guild_id is None:
            return None
        return self._guilds.get(guild_id)

    def require(self, guild_id: int | None) -> GuildModmailConfig:
        config = self.get(guild_id)
        if config is None:
            raise ConfigurationError()
        return config

    def guild_ids(self) -> list[int]:
        return list(self._guilds)

    def default_guild_id(self) -> int | None:
        return next(iter(self._guilds), None)

    def __len__(self) -> int:
        return len(self._guilds)

    def __contains__(self, guild_id: object) -> bool:
        return guild_id in self._guilds


def _get_env_str(key: str, fallback: str | None = None) -> str | None:
    value = os.getenv(key)
    if value is None:
        return fallback
    cleaned = value.strip()
    return cleaned if cleaned else fallback


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: Any, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _deep_get(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    node: Any = data
    for key in keys:
        if not isinstance(node, dict):
            return default
        node = node.get(key)
        if node is None:
            return default
    return node


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Missing config file: {path}")
    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")
    return raw


def _load_guild_configs(raw_guilds: list[dict[str, Any]]) -> list[GuildModmailConfig]:
    guilds: list[GuildModmailConfig] = []
    for row in raw_guilds:
        try:
            guild_id = int(row["guild_id"])
            modmail_channel_id = int(row["modmail_channel_id"])
            log_channel_id = int(row["log_channel_id"])
            staff_role_id = int(row["staff_role_id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid guild modmail config: {row!r}") from exc

        webhook_url = row.get("webhook_url") or None
        if webhook_url and not is_valid_webhook_url(str(webhook_url)):
            LOGGER.warning("Ignoring invalid webhook URL for guild %s", guild_id)
            webhook_url = None

        guilds.append(
            GuildModmailConfig(
                guild_id=guild_id,
                modmail_channel_id=modmail_channel_id,
                log_channel_id=log_channel_id,
                staff_role_id=staff_role_id,
                use_threads=_as_bool(row.get("use_threads"), True),
                webhook_url=str(webhook_url) if webhook_url else None,
                admin_channel_ids=[int(x) for x in list(row.get("admin_channel_ids", []) or [])],
            )
        )
    return guilds


def load_config(config_path: Path) -> AppConfig:
    env_path = config_path.parent.parent / ".env"
    load_dotenv(env_path)
    raw = _load_yaml(config_path)

    discord_token = _get_env_str("DISCORD_TOKEN", _deep_get(raw, "discord", "token"))
    if not discord_token or "${" in discord_token:
        raise ConfigError("DISCORD_TOKEN is required")

    discord_cfg = DiscordConfig(
        token=discord_token,
        prefix=str(_get_env_str("BOT_PREFIX", _deep_get(raw, "discord", "prefix", default="!"))),
        application_id=(
            int(_get_env_str("DISCORD_APPLICATION_ID"))
            if _get_env_str("DISCORD_APPLICATION_ID")
            else _deep_get(raw, "discord", "application_id")
        ),
        sync_commands_on_start=_as_bool(
            _get_env_str("SYNC_COMMANDS"),
            _as_bool(_deep_get(raw, "discord", "sync_commands_on_start"), True),
        ),
        status_text=str(_deep_get(raw, "discord", "status_text", default="DM me for help")),
        activity_type=str(_deep_get(raw, "discord", "activity_type", default="watching")),
        allowed_mentions_everyone=_as_bool(
            _deep_get(raw, "discord", "allowed_mentions_everyone"), False
        ),
    )

    database_cfg = DatabaseConfig(
        url=str(_get_env_str("DATABASE_URL", _deep_get(raw, "database", "url", default="sqlite:///./data/modmail.db"))),
        pool_min_size=_as_int(
            _get_env_str("DB_POOL_MIN", None),
            _as_int(_deep_get(raw, "database", "pool_min_size"), 2),
        ),
        pool_max_size=_as_int(
            _get_env_str("DB_POOL_MAX", None),
            _as_int(_deep_get(raw, "database", "pool_max_size"), 10),
        ),
        timeout_seconds=_as_int(
            _get_env_str("DB_TIMEOUT_SECONDS", None),
            _as_int(_deep_get(raw, "database", "timeout_seconds"), 30),
        ),
    )

    redis_cfg = RedisConfig(
        enabled=_as_bool(_get_env_str("REDIS_ENABLED"), _as_bool(_deep_get(raw, "redis", "enabled"), False)),
        url=str(_get_env_str("REDIS_URL", _deep_get(raw, "redis", "url", default="redis://localhost:6379/0"))),
        default_ttl=_as_int(_deep_get(raw, "redis", "default_ttl"), 120),
    )

    logging_cfg = LoggingConfig(
        level=str(_get_env_str("LOG_LEVEL", _deep_get(raw, "logging", "level", default="INFO"))),
        directory=str(_deep_get(raw, "logging", "directory", default="logs")),
        file_name=str(_deep_get(raw, "logging", "file_name", default="modmail.log")),
        max_bytes=_as_int(_deep_get(raw, "logging", "max_bytes"), 10_000_000),
        backup_count=_as_int(_deep_get(raw, "logging", "backup_count"), 10),
        json_console=_as_bool(_deep_get(raw, "logging", "json_console"), False),
    )

    storage_cfg = StorageConfig(
        data_directory=str(_get_env_str("DATA_DIRECTORY", _deep_get(raw, "storage", "data_directory", default="data"))),
        tickets_file=str(_deep_get(raw, "storage", "tickets_file", default="active-tickets.json")),
        backup_file=str(_deep_get(raw, "storage", "backup_file", default="active-tickets-backup.json")),
        autosave_interval_seconds=max(
            30, _as_int(_deep_get(raw, "storage", "autosave_interval_seconds"), 300)
        ),
        save_retries=max(1, _as_int(_deep_get(raw, "storage", "save_retries"), 3)),
    )

    cooldowns = _default_cooldowns()
    for name, seconds in dict(_deep_get(raw, "limits", "command_cooldowns", default={})).items():
        cooldowns[str(name)] = _as_int(seconds, cooldowns.get(str(name), 3))
    limits_cfg = LimitsConfig(
        tickets_per_hour=_as_int(_deep_get(raw, "limits", "tickets_per_hour"), 3),
        messages_per_minute=_as_int(_deep_get(raw, "limits", "messages_per_minute"), 30),
        commands_per_minute=_as_int(_deep_get(raw, "limits", "commands_per_minute"), 20),
        command_cooldowns=cooldowns,
    )

    survey_cfg = SurveyConfig(
        enabled=_as_bool(_deep_get(raw, "surveys", "enabled"), True),
        ttl_days=_as_int(_deep_get(raw, "surveys", "ttl_days"), 7),
    )

    platform_cfg = PlatformConfig(
        timeout_seconds=_as_float(_deep_get(raw, "platform", "timeout_seconds"), 15.0),
        history_page_size=min(100, _as_int(_deep_get(raw, "platform", "history_page_size"), 100)),
    )

    transcript_cfg = TranscriptConfig(
        directory=str(_deep_get(raw, "transcripts", "directory", default="artifacts/transcripts")),
        markdown_enabled=_as_bool(_deep_get(raw, "transcripts", "markdown_enabled"), True),
        html_enabled=_as_bool(_deep_get(raw, "transcripts", "html_enabled"), True),
    )

    metrics_cfg = MetricsConfig(
        export_directory=str(_deep_get(raw, "metrics", "export_directory", default="artifacts/exports")),
        enable_graphs=_as_bool(_deep_get(raw, "metrics", "enable_graphs"), True),
        leaderboard_size=_as_int(_deep_get(raw, "metrics", "leaderboard_size"), 5),
    )

    api_cfg = ApiConfig(
        enabled=_as_bool(_deep_get(raw, "api", "enabled"), False),
        host=str(_deep_get(raw, "api", "host", default="0.0.0.0")),
        port=_as_int(_deep_get(raw, "api", "port"), 8000),
        api_key=str(_get_env_str("API_KEY", _deep_get(raw, "api", "api_key", default=""))),
    )

    enabled_extensions = [
        str(ext)
        for ext in list(
            _deep_get(
                raw,
                "enabled_extensions",
                default=["cogs.events", "cogs.tickets", "cogs.analytics", "cogs.admin"],
            )
        )
    ]

    guild_rows = list(_deep_get(raw, "guilds", default=[]))
    guild_cfgs = _load_guild_configs(guild_rows)

    return AppConfig(
        discord=discord_cfg,
        database=database_cfg,
        redis=redis_cfg,
        logging=logging_cfg,
        storage=storage_cfg,
        limits=limits_cfg,
        surveys=survey_cfg,
        platform=platform_cfg,
        transcripts=transcript_cfg,
        metrics=metrics_cfg,
        api=api_cfg,
        enabled_extensions=enabled_extensions,
        guilds=guild_cfgs,
    )
