from __future__ import annotations

import logging
from dataclasses import dataclass

import discord
from discord import app_commands
from discord.ext import commands

from utils.security import redact_sensitive

LOGGER = logging.getLogger(__name__)


class BotError(RuntimeError):
    user_message: str = "An unexpected error occurred."


@dataclass(slots=True)
class ConfigurationError(BotError):
    user_message: str = "Modmail is not set up for this server."


@dataclass(slots=True)
class PermissionDeniedError(BotError):
    user_message: str = "You do not have permission to run this action."


@dataclass(slots=True)
class BlacklistedError(PermissionDeniedError):
    user_message: str = "You are blacklisted from using modmail."


@dataclass(slots=True)
class RateLimitError(BotError):
    user_message: str = "You are doing that too often."
    retry_after: float = 0.0


@dataclass(slots=True)
class NotFoundError(BotError):
    user_message: str = "The requested item could not be found."


@dataclass(slots=True)
class TicketNotFoundError(NotFoundError):
    user_message: str = "This is not an active modmail ticket."


@dataclass(slots=True)
class TagNotFoundError(NotFoundError):
    user_message: str = "That tag does not exist."


@dataclass(slots=True)
class HistoryRecordNotFoundError(NotFoundError):
    user_message: str = "No closed ticket with that id was found."


@dataclass(slots=True)
class DeliveryError(BotError):
    user_message: str = "The message could not be delivered."


@dataclass(slots=True)
class PersistenceError(BotError):
    user_message: str = "Ticket data could not be saved. Nothing was changed."


@dataclass(slots=True)
class TicketStateError(BotError):
    user_message: str = "The ticket is not in a valid state for this action."


@dataclass(slots=True)
class ValidationError(BotError):
    user_message: str = "The provided input is not valid."


@dataclass(slots=True)
class StaleSurveyError(BotError):
    user_message: str = "This survey has expired or was already answered."


def describe_error(error: BaseException) -> str:
    if isinstance(error, RateLimitError) and error.retry_after > 0:
        return f"{error.user_message} Try again in {error.retry_after:.0f} seconds."
    if isinstance(error, BotError):
        return error.user_message
    return "An unexpected error occurred."


async def send_error_response(
    target: commands.Context[commands.Bot] | discord.Interaction[commands.Bot], message: str
) -> None:
    embed = discord.Embed(title="Error", description=message, color=discord.Color.red())
    if isinstance(target, commands.Context):
        await target.reply(embed=embed, mention_author=False, ephemeral=True)
        return
    if target.response.is_done():
        await target.followup.send(embed=embed, ephemeral=True)
    else:
        await target.response.send_message(embed=embed, ephemeral=True)


def _humanize_command_error(error: Exception) -> str:
    if isinstance(error, commands.HybridCommandError | commands.CommandInvokeError):
        original = getattr(error, "original", None)
        if isinstance(original, Exception):
            return _humanize_command_error(original)
    if isinstance(error, app_commands.CommandInvokeError):
        return _humanize_command_error(error.original)
    if isinstance(error, BotError):
        return describe_error(error)
    if isinstance(error, commands.CommandOnCooldown):
        return f"Cooldown active. Retry in {error.retry_after:.1f} seconds."
    if isinstance(error, commands.MissingPermissions):
        return "You are missing required Discord permissions."
    if isinstance(error, commands.CheckFailure):
        return "You are not authorized for this command."
    if isinstance(error, commands.BadArgument):
        return "Command argument was invalid."
    return "An unexpected command error occurred."


def _is_expected(error: Exception) -> bool:
    original = getattr(error, "original", error)
    if isinstance(original, commands.CommandInvokeError | app_commands.CommandInvokeError):
        original = original.original
    return isinstance(original, BotError | commands.CheckFailure | commands.CommandOnCooldown)


async def handle_prefix_command_error(
    ctx: commands.Context[commands.Bot], error: commands.CommandError
) -> None:
    if isinstance(error, commands.CommandNotFound):
        return
    message = _humanize_command_error(error)
    if _is_expected(error):
        LOGGER.info(
            "Command rejected. command=%s guild=%s user=%s reason=%s",
            getattr(ctx.command, "qualified_name", None),
            getattr(ctx.guild, "id", None),
            ctx.author.id,
            message,
        )
    else:
        LOGGER.exception(
            "Command failed. command=%s guild=%s user=%s error=%s",
            getattr(ctx.command, "qualified_name", None),
            getattr(ctx.guild, "id", None),
            ctx.author.id,
            redact_sensitive(str(error)),
            exc_info=error,
        )
    await send_error_response(ctx, message)


async def handle_app_command_error(
    interaction: discord.Interaction[commands.Bot], error: app_commands.AppCommandError
) -> None:
    message = _humanize_command_error(error)
    if isinstance(error, app_commands.CheckFailure):
        message = "You are not authorized for this command."
    elif isinstance(error, app_commands.CommandOnCooldown):
        message = f"Cooldown active. Retry in {error.retry_after:.1f} seconds."

    if _is_expected(error):
        LOGGER.info(
            "Slash command rejected. command=%s guild=%s user=%s reason=%s",
            getattr(interaction.command, "qualified_name", None),
            getattr(interaction.guild, "id", None),
            interaction.user.id if interaction.user else None,
            message,
        )
    else:
        LOGGER.exception(
            "Slash command failed. command=%s guild=%s user=%s",
            getattr(interaction.command, "qualified_name", None),
            getattr(interaction.guild, "id", None),
            interaction.user.id if interaction.user else None,
            exc_info=error,
        )
    await send_error_response(interaction, message)
