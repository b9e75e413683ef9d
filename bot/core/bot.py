from __future__ import annotations

import logging
from pathlib import Path

import discord
from discord.ext import commands

from core.config import AppConfig, ConfigStore
from core.errors import handle_app_command_error, handle_prefix_command_error
from database.base import Database
from database.migrations.runner import run_migrations
from database.repositories import (
    BlacklistRepository,
    CounterRepository,
    HistoryRepository,
    SnippetRepository,
    TagRepository,
)
from services.analytics_service import AnalyticsService
from services.cache import CacheBackend, build_cache
from services.discord_platform import DiscordPlatform
from services.notification_service import WebhookNotifier
from services.snippet_service import SnippetService
from services.survey_service import SurveyService
from services.tag_service import TagService
from services.ticket_registry import TicketRegistry
from services.ticket_service import TicketService, TicketServiceDeps
from services.ticket_store import TicketStore
from services.transcript_service import TranscriptService
from utils.rate_limit import ModmailRateLimiter

LOGGER = logging.getLogger(__name__)


class ModmailBot(commands.Bot):
    def __init__(self, config: AppConfig) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True
        intents.messages = True
        intents.dm_messages = True
        intents.message_content = True
        intents.reactions = True

        super().__init__(
            command_prefix=config.discord.prefix,
            intents=intents,
            application_id=config.discord.application_id,
            allowed_mentions=discord.AllowedMentions(
                everyone=config.discord.allowed_mentions_everyone,
                roles=True,
                users=True,
                replied_user=False,
            ),
            help_command=None,
        )
        self.config = config
        self.root_dir = Path(__file__).resolve().parent.parent
        self.database = Database(
            url=config.database.url,
            timeout_seconds=config.database.timeout_seconds,
            pool_min_size=config.database.pool_min_size,
            pool_max_size=config.database.pool_max_size,
        )
        self.cache: CacheBackend | None = None
        self.configs = ConfigStore(config.guilds)
        self.registry = TicketRegistry()
        self.store = TicketStore(
            config.storage.tickets_path,
            config.storage.backup_path,
            retries=config.storage.save_retries,
        )
        self.platform = DiscordPlatform(self, self.configs, config.platform.history_page_size)
        self.notifier = WebhookNotifier()

        # Repositories and services are initialized during setup_hook.
        self.counter_repo: CounterRepository
        self.tag_repo: TagRepository
        self.snippet_repo: SnippetRepository
        self.blacklist_repo: BlacklistRepository
        self.history_repo: HistoryRepository

        self.rate_limiter: ModmailRateLimiter
        self.tag_service: TagService
        self.snippet_service: SnippetService
        self.survey_service: SurveyService | None = None
        self.transcript_service: TranscriptService
        self.ticket_service: TicketService
        self.analytics_service: AnalyticsService
        self._snapshot_saved = False

    async def setup_hook(self) -> None:
        await self.database.connect()
        await run_migrations(self.database, self.root_dir / "database" / "migrations")
        self.cache = await build_cache(self.config.redis)

        self.counter_repo = CounterRepository(self.database)
        self.tag_repo = TagRepository(self.database)
        self.snippet_repo = SnippetRepository(self.database)
        self.blacklist_repo = BlacklistRepository(self.database)
        self.history_repo = HistoryRepository(self.database)

        self.rate_limiter = ModmailRateLimiter(self.cache, self.config.limits)
        self.tag_service = TagService(self.tag_repo)
        self.snippet_service = SnippetService(self.snippet_repo)
        if self.config.surveys.enabled:
            self.survey_service = SurveyService(
                self.platform,
                self.history_repo,
                ttl_days=self.config.surveys.ttl_days,
                timeout_seconds=self.config.platform.timeout_seconds,
            )
        self.transcript_service = TranscriptService(self.config.transcripts)

        deps = TicketServiceDeps(
            registry=self.registry,
            store=self.store,
            configs=self.configs,
            platform=self.platform,
            counter_repo=self.counter_repo,
            blacklist_repo=self.blacklist_repo,
            history_repo=self.history_repo,
            tags=self.tag_service,
            rate_limiter=self.rate_limiter,
            surveys=self.survey_service,
            transcripts=self.transcript_service,
            notifier=self.notifier,
            platform_timeout=self.config.platform.timeout_seconds,
        )
        self.ticket_service = TicketService(deps)
        self.analytics_service = AnalyticsService(self.config.metrics, self.history_repo)

        if not self.configs:
            LOGGER.warning("No guilds are configured for modmail; direct messages will be refused")
        await self.ticket_service.restore()
        await self._load_extensions()

        if self.config.discord.sync_commands_on_start:
            synced = await self.tree.sync()
            LOGGER.info("Synced %s application commands", len(synced))

        self.tree.on_error = handle_app_command_error  # type: ignore[assignment]

    async def _load_extensions(self) -> None:
        for ext in self.config.enabled_extensions:
            try:
                await self.load_extension(ext)
                LOGGER.info("Loaded extension: %s", ext)
            except commands.ExtensionAlreadyLoaded:
                LOGGER.warning("Extension already loaded: %s", ext)
            except commands.ExtensionError:
                LOGGER.exception("Failed to load extension: %s", ext)

    async def on_ready(self) -> None:
        LOGGER.info("Bot ready as %s (%s)", self.user, self.user.id if self.user else "n/a")
        for guild_id in self.configs.guild_ids():
            if self.get_guild(guild_id) is None:
                LOGGER.warning("Configured guild %s is not visible to the bot", guild_id)
        activity_type = self.config.discord.activity_type.lower()
        if activity_type == "playing":
            activity = discord.Game(name=self.config.discord.status_text)
        elif activity_type == "listening":
            activity = discord.Activity(
                type=discord.ActivityType.listening, name=self.config.discord.status_text
            )
        else:
            activity = discord.Activity(
                type=discord.ActivityType.watching, name=self.config.discord.status_text
            )
        await self.change_presence(status=discord.Status.online, activity=activity)

    async def on_command_error(self, ctx: commands.Context[commands.Bot], error: commands.CommandError) -> None:
        if ctx.command and ctx.command.has_error_handler():
            return
        await handle_prefix_command_error(ctx, error)

    async def close(self) -> None:
        if not self._snapshot_saved and hasattr(self, "ticket_service"):
            LOGGER.info("Shutting down; saving %s open tickets", len(self.registry))
            await self.ticket_service.save_snapshot()
            self._snapshot_saved = True
        await super().close()
        await self.notifier.close()
        await self.database.close()
        if self.cache:
            await self.cache.close()
