from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path

import uvicorn

from core.api import create_api_app
from core.bot import ModmailBot
from core.config import AppConfig, load_config
from core.logging import configure_logging

LOGGER = logging.getLogger(__name__)


def _install_signal_handlers(bot: ModmailBot) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(_shutdown(bot, s)))
        except NotImplementedError:
            LOGGER.debug("Signal handlers are not supported on this platform")
            return


async def _shutdown(bot: ModmailBot, sig: signal.Signals) -> None:
    LOGGER.info("Received %s; closing bot", sig.name)
    await bot.close()


async def _run_bot(config: AppConfig) -> None:
    bot = ModmailBot(config=config)
    async with bot:
        _install_signal_handlers(bot)
        api_task: asyncio.Task[None] | None = None
        if config.api.enabled:
            api = create_api_app(bot)
            server = uvicorn.Server(
                uvicorn.Config(
                    app=api,
                    host=config.api.host,
                    port=config.api.port,
                    log_level=config.logging.level.lower(),
                )
            )
            api_task = asyncio.create_task(server.serve())
        try:
            await bot.start(config.discord.token)
        finally:
            if api_task:
                api_task.cancel()


def main() -> None:
    root = Path(__file__).resolve().parent
    config = load_config(root / "config" / "config.yaml")
    configure_logging(config.logging)
    asyncio.run(_run_bot(config))


if __name__ == "__main__":
    main()
