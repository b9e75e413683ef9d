from __future__ import annotations

import logging

import discord
from discord.ext import commands

from core.bot import ModmailBot
from core.errors import NotFoundError, PersistenceError, ValidationError
from utils.constants import ACTION_COMMANDS
from utils.embeds import make_embed, success_embed
from utils.security import sanitize_content
from utils.time import parse_relative_duration, to_iso, utc_now

LOGGER = logging.getLogger(__name__)


class AdminCog(commands.Cog):
    def __init__(self, bot: ModmailBot) -> None:
        self.bot = bot

    async def _assert_admin(self, ctx: commands.Context[ModmailBot]) -> int:
        if ctx.guild is None:
            raise ValidationError("This command can only be used in a server.")
        await self.bot.rate_limiter.check_or_raise(ctx.author.id, ACTION_COMMANDS)
        await self.bot.ticket_service.require_admin(ctx.guild.id, ctx.author.id)
        return ctx.guild.id

    @commands.hybrid_group(name="admin", with_app_command=True, description="Modmail administration.")
    async def admin(self, ctx: commands.Context[ModmailBot]) -> None:
        if ctx.invoked_subcommand is None:
            await ctx.reply(
                embed=make_embed(
                    "Admin Commands",
                    "`/admin blacklist_add <user> [duration] [reason]`\n"
                    "`/admin blacklist_remove <user>`\n"
                    "`/admin blacklist_list`\n"
                    "`/admin save`",
                ),
                mention_author=False,
            )

    @admin.command(name="blacklist_add", description="Block a user from opening tickets.")
    async def blacklist_add(
        self,
        ctx: commands.Context[ModmailBot],
        user: discord.User,
        duration: str | None = None,
        *,
        reason: str = "No reason provided",
    ) -> None:
        guild_id = await self._assert_admin(ctx)
        until_at = None
        if duration and duration.lower() not in {"perm", "permanent", "forever"}:
            try:
                until_at = to_iso(utc_now() + parse_relative_duration(duration))
            except ValueError:
                reason = f"{duration} {reason}" if reason != "No reason provided" else duration
        await self.bot.blacklist_repo.add(guild_id, user.id, sanitize_content(reason, 500), ctx.author.id, until_at)
        LOGGER.info("User %s blacklisted in guild %s by %s until %s", user.id, guild_id, ctx.author.id, until_at)
        suffix = f" until {until_at}" if until_at else " permanently"
        await ctx.reply(embed=success_embed(f"{user.mention} is blacklisted{suffix}."), mention_author=False)

    @admin.command(name="blacklist_remove", description="Allow a blacklisted user to open tickets again.")
    async def blacklist_remove(self, ctx: commands.Context[ModmailBot], user: discord.User) -> None:
        guild_id = await self._assert_admin(ctx)
        removed = await self.bot.blacklist_repo.remove(guild_id, user.id)
        if not removed:
            raise NotFoundError(f"{user} is not blacklisted.")
        LOGGER.info("User %s removed from blacklist in guild %s by %s", user.id, guild_id, ctx.author.id)
        await ctx.reply(embed=success_embed(f"{user.mention} was removed from the blacklist."), mention_author=False)

    @admin.command(name="blacklist_list", description="List blacklisted users.")
    async def blacklist_list(self, ctx: commands.Context[ModmailBot]) -> None:
        guild_id = await self._assert_admin(ctx)
        rows = await self.bot.blacklist_repo.list_by_guild(guild_id)
        if not rows:
            await ctx.reply(embed=success_embed("Nobody is blacklisted."), mention_author=False)
            return
        lines = [
            f"<@{row['user_id']}> - {row.get('reason') or 'No reason'} "
            f"({'until ' + row['until_at'] if row.get('until_at') else 'permanent'})"
            for row in rows[:25]
        ]
        await ctx.reply(embed=make_embed("🚫 Blacklist", "\n".join(lines)), mention_author=False)

    @admin.command(name="save", description="Save open tickets to disk now.")
    async def admin_save(self, ctx: commands.Context[ModmailBot]) -> None:
        await self._assert_admin(ctx)
        if not await self.bot.ticket_service.save_snapshot():
            raise PersistenceError("The open ticket snapshot could not be written. Check the logs.")
        await ctx.reply(
            embed=success_embed(f"Saved {len(self.bot.registry)} open tickets."),
            mention_author=False,
        )


async def setup(bot: ModmailBot) -> None:
    await bot.add_cog(AdminCog(bot))
