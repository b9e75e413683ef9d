from __future__ import annotations

import logging

import discord
from discord.ext import commands, tasks

from core.bot import ModmailBot
from core.errors import HistoryRecordNotFoundError, ValidationError
from database.models import Ticket
from utils.constants import ACTION_COMMANDS, PRIORITY_LEVELS, TICKET_CATEGORIES
from utils.embeds import make_embed, success_embed

LOGGER = logging.getLogger(__name__)


class TicketsCog(commands.Cog):
    def __init__(self, bot: ModmailBot) -> None:
        self.bot = bot
        self.autosave.change_interval(seconds=bot.config.storage.autosave_interval_seconds)
        self.autosave.start()
        self.survey_sweeper.start()

    def cog_unload(self) -> None:
        self.autosave.cancel()
        self.survey_sweeper.cancel()

    @tasks.loop(seconds=300)
    async def autosave(self) -> None:
        await self.bot.ticket_service.save_snapshot()

    @autosave.before_loop
    async def before_autosave(self) -> None:
        await self.bot.wait_until_ready()

    @tasks.loop(hours=1)
    async def survey_sweeper(self) -> None:
        if self.bot.survey_service is None:
            return
        purged = self.bot.survey_service.purge_expired()
        if purged:
            LOGGER.info("Purged %s expired surveys", purged)

    async def _staff_context(self, ctx: commands.Context[ModmailBot], command_name: str) -> int:
        if ctx.guild is None:
            raise ValidationError("This command can only be used in a server.")
        await self.bot.rate_limiter.check_or_raise(ctx.author.id, ACTION_COMMANDS)
        await self.bot.ticket_service.require_staff(ctx.guild.id, ctx.author.id)
        await self.bot.rate_limiter.cooldown_or_raise(ctx.author.id, command_name)
        return ctx.guild.id

    async def _current_ticket(
        self, ctx: commands.Context[ModmailBot], command_name: str, ticket_ref: str | None = None
    ) -> Ticket:
        guild_id = await self._staff_context(ctx, command_name)
        return self.bot.ticket_service.resolve_ticket(guild_id, ctx.channel.id, ticket_ref)

    async def _ack(self, ctx: commands.Context[ModmailBot], message: str) -> None:
        try:
            await ctx.send(embed=success_embed(message), ephemeral=True)
        except discord.HTTPException:
            LOGGER.debug("Acknowledgement for %s could not be sent", ctx.command)

    @commands.hybrid_group(name="modmail", with_app_command=True, description="Manage the current modmail ticket.")
    async def modmail(self, ctx: commands.Context[ModmailBot]) -> None:
        if ctx.invoked_subcommand is None:
            await ctx.reply(
                embed=make_embed(
                    "Modmail Commands",
                    "`/modmail claim` claim the ticket\n"
                    "`/modmail close [reason]` close and archive\n"
                    "`/modmail category <category>`\n"
                    "`/modmail priority <level> [reason]`\n"
                    "`/modmail tag add|remove <name>`\n"
                    "`/modmail anon <message>` reply as Staff Team\n"
                    "`/modmail snippet <name>` send a saved reply\n"
                    "`/modmail open <user> [category] [priority] <message>` start a ticket with a user\n"
                    "`/modmail transcript <ticket>`\n\n"
                    "Messages in a ticket thread are sent to the user. Start with `#` for a staff-only note.",
                ),
                mention_author=False,
            )

    @modmail.command(name="claim", description="Claim the current ticket.")
    async def modmail_claim(self, ctx: commands.Context[ModmailBot], ticket: str | None = None) -> None:
        current = await self._current_ticket(ctx, "claim", ticket)
        claimed = await self.bot.ticket_service.claim_ticket(current, ctx.author.id, str(ctx.author))
        if not claimed:
            owner = f"<@{current.assigned_to}>" if current.assigned_to else "another staff member"
            raise ValidationError(f"This ticket has already been claimed by {owner}.")
        await ctx.reply(
            embed=success_embed(f"✅ {ctx.author.mention} has claimed ticket #{current.numeric_id}."),
            mention_author=False,
        )

    @modmail.command(name="close", description="Close the current ticket.")
    async def modmail_close(self, ctx: commands.Context[ModmailBot], *, reason: str | None = None) -> None:
        current = await self._current_ticket(ctx, "close")
        await ctx.defer(ephemeral=True)
        record = await self.bot.ticket_service.close_ticket(current, ctx.author.id, str(ctx.author), reason)
        await self._ack(ctx, f"Ticket #{record.ticket.numeric_id} closed with {record.message_count} archived messages.")

    @modmail.command(name="category", description="Set the category of the current ticket.")
    async def modmail_category(self, ctx: commands.Context[ModmailBot], category: str) -> None:
        current = await self._current_ticket(ctx, "category")
        if category.strip().lower() not in TICKET_CATEGORIES:
            raise ValidationError(f"Unknown category. Use: {', '.join(TICKET_CATEGORIES)}")
        await self.bot.ticket_service.set_category(current, category, ctx.author.id)
        await self._ack(ctx, f"Category updated to `{category.strip().lower()}`.")

    @modmail.command(name="priority", description="Set the priority of the current ticket.")
    async def modmail_priority(
        self, ctx: commands.Context[ModmailBot], level: str, *, reason: str | None = None
    ) -> None:
        current = await self._current_ticket(ctx, "priority")
        if level.strip().lower() not in PRIORITY_LEVELS:
            raise ValidationError(f"Invalid priority value. Use: {', '.join(PRIORITY_LEVELS)}")
        await self.bot.ticket_service.set_priority(current, level, ctx.author.id, reason)
        await self._ack(ctx, f"Priority updated to `{level.strip().lower()}`.")

    @modmail.group(name="tag", description="Add or remove tags on the current ticket.")
    async def modmail_tag(self, ctx: commands.Context[ModmailBot]) -> None:
        if ctx.invoked_subcommand is None:
            await ctx.reply("Use `tag add <name>` or `tag remove <name>`.", mention_author=False)

    @modmail_tag.command(name="add", description="Add a tag to the current ticket.")
    async def modmail_tag_add(self, ctx: commands.Context[ModmailBot], name: str) -> None:
        current = await self._current_ticket(ctx, "tag")
        await self.bot.ticket_service.add_tag(current, name, ctx.author.id)
        await self._ack(ctx, f"Added tag `{name.strip().lower()}` to ticket #{current.numeric_id}.")

    @modmail_tag.command(name="remove", description="Remove a tag from the current ticket.")
    async def modmail_tag_remove(self, ctx: commands.Context[ModmailBot], name: str) -> None:
        current = await self._current_ticket(ctx, "tag")
        await self.bot.ticket_service.remove_tag(current, name, ctx.author.id)
        await self._ack(ctx, f"Removed tag `{name.strip().lower()}` from ticket #{current.numeric_id}.")

    @modmail.command(name="anon", description="Reply to the ticket user as Staff Team.")
    async def modmail_anon(self, ctx: commands.Context[ModmailBot], *, message: str) -> None:
        current = await self._current_ticket(ctx, "anon")
        attachments = [attachment.url for attachment in ctx.message.attachments] if ctx.interaction is None else []
        await self.bot.ticket_service.reply(
            current, ctx.author.id, str(ctx.author), message, attachments, anonymous=True
        )
        if ctx.interaction is None:
            try:
                await ctx.message.delete()
            except discord.HTTPException:
                LOGGER.debug("Could not delete anonymous reply command message %s", ctx.message.id)
            return
        await self._ack(ctx, "Anonymous reply sent.")

    @modmail.command(name="snippet", description="Send a saved snippet to the ticket user.")
    async def modmail_snippet(self, ctx: commands.Context[ModmailBot], name: str) -> None:
        current = await self._current_ticket(ctx, "snippet")
        snippet = await self.bot.snippet_service.require(current.guild_id, name)
        await self.bot.ticket_service.reply(current, ctx.author.id, str(ctx.author), snippet.content)
        await self._ack(ctx, f"Snippet `{snippet.name}` sent.")

    @modmail.command(name="transcript", description="Regenerate the transcript of a closed ticket.")
    async def modmail_transcript(self, ctx: commands.Context[ModmailBot], ticket: str) -> None:
        guild_id = await self._staff_context(ctx, "transcript")
        ref = ticket.strip().lstrip("#")
        record = await self.bot.history_repo.get(ref)
        if record is None and ref.isdigit():
            record = await self.bot.history_repo.get(f"{guild_id}-{int(ref):04d}")
        if record is None or record.ticket.guild_id != guild_id:
            raise HistoryRecordNotFoundError()
        artifacts = await self.bot.transcript_service.generate(record)
        files = [discord.File(path) for path in artifacts.paths if path.exists()]
        await ctx.reply(
            content=f"📑 Transcript for ticket #{record.ticket.numeric_id}",
            files=files,
            mention_author=False,
        )

    @modmail.command(name="open", description="Open a ticket with a user and send them a first message.")
    async def modmail_open(
        self,
        ctx: commands.Context[ModmailBot],
        user: discord.User,
        category: str | None = None,
        priority: str | None = None,
        *,
        message: str,
    ) -> None:
        guild_id = await self._staff_context(ctx, "open")
        if user.bot:
            raise ValidationError("Tickets cannot be opened with bots.")
        await ctx.defer(ephemeral=True)
        ticket = await self.bot.ticket_service.open_staff_ticket(
            guild_id, user.id, str(user), ctx.author.id, str(ctx.author), message, category, priority
        )
        await self._ack(ctx, f"Opened ticket #{ticket.numeric_id} with {user.mention} in <#{ticket.surface_id}>.")

    @commands.hybrid_group(name="tags", with_app_command=True, description="Manage ticket tags.")
    async def tags(self, ctx: commands.Context[ModmailBot]) -> None:
        if ctx.invoked_subcommand is None:
            await ctx.reply("Use `tags create|update|delete|list`.", mention_author=False)

    @tags.command(name="create", description="Create a tag.")
    async def tags_create(
        self, ctx: commands.Context[ModmailBot], name: str, color: str | None = None, *, description: str = ""
    ) -> None:
        guild_id = await self._staff_context(ctx, "tags")
        if color and not color.startswith("#"):
            description = f"{color} {description}".strip()
            color = None
        tag = await self.bot.tag_service.create(guild_id, name, description, ctx.author.id, color)
        await ctx.reply(embed=success_embed(f"Tag `{tag.name}` created ({tag.color})."), mention_author=False)

    @tags.command(name="update", description="Update a tag's description or color.")
    async def tags_update(
        self,
        ctx: commands.Context[ModmailBot],
        name: str,
        color: str | None = None,
        *,
        description: str | None = None,
    ) -> None:
        guild_id = await self._staff_context(ctx, "tags")
        if color and not color.startswith("#"):
            description = f"{color} {description or ''}".strip()
            color = None
        if color is None and description is None:
            raise ValidationError("Provide a new color or description.")
        tag = await self.bot.tag_service.update(guild_id, name, description=description, color=color)
        await ctx.reply(embed=success_embed(f"Tag `{tag.name}` updated."), mention_author=False)

    @tags.command(name="delete", description="Delete a tag.")
    async def tags_delete(self, ctx: commands.Context[ModmailBot], name: str) -> None:
        guild_id = await self._staff_context(ctx, "tags")
        tag = await self.bot.tag_service.delete(guild_id, name)
        await ctx.reply(embed=success_embed(f"Tag `{tag.name}` deleted."), mention_author=False)

    @tags.command(name="list", description="List the tags of this server.")
    async def tags_list(self, ctx: commands.Context[ModmailBot]) -> None:
        guild_id = await self._staff_context(ctx, "tags")
        rows = await self.bot.tag_service.list_for_guild(guild_id)
        if not rows:
            await ctx.reply(embed=success_embed("No tags have been created yet."), mention_author=False)
            return
        lines = [f"`{tag.name}` {tag.color} - {tag.description}" for tag in rows]
        await ctx.reply(embed=make_embed("🏷️ Ticket Tags", "\n".join(lines)[:4000]), mention_author=False)

    @commands.hybrid_group(name="snippets", with_app_command=True, description="Manage saved replies.")
    async def snippets(self, ctx: commands.Context[ModmailBot]) -> None:
        if ctx.invoked_subcommand is None:
            await ctx.reply("Use `snippets create|delete|list`.", mention_author=False)

    @snippets.command(name="create", description="Create or replace a snippet.")
    async def snippets_create(self, ctx: commands.Context[ModmailBot], name: str, *, content: str) -> None:
        guild_id = await self._staff_context(ctx, "snippets")
        snippet = await self.bot.snippet_service.save(guild_id, name, content, ctx.author.id)
        await ctx.reply(embed=success_embed(f"Snippet `{snippet.name}` saved."), mention_author=False)

    @snippets.command(name="delete", description="Delete a snippet.")
    async def snippets_delete(self, ctx: commands.Context[ModmailBot], name: str) -> None:
        guild_id = await self._staff_context(ctx, "snippets")
        await self.bot.snippet_service.delete(guild_id, name)
        await ctx.reply(embed=success_embed(f"Snippet `{name}` deleted."), mention_author=False)

    @snippets.command(name="list", description="List saved snippets.")
    async def snippets_list(self, ctx: commands.Context[ModmailBot]) -> None:
        guild_id = await self._staff_context(ctx, "snippets")
        names = await self.bot.snippet_service.names(guild_id)
        description = ", ".join(f"`{name}`" for name in names) if names else "No snippets saved."
        await ctx.reply(embed=make_embed("📋 Snippets", description), mention_author=False)


async def setup(bot: ModmailBot) -> None:
    await bot.add_cog(TicketsCog(bot))
