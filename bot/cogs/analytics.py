from __future__ import annotations

from datetime import timedelta

import discord
from discord.ext import commands

from core.bot import ModmailBot
from core.errors import ValidationError
from database.models import SearchCriteria, TicketHistoryRecord
from database.repositories import SCOPE_SERVER_USER
from services.analytics_service import (
    BasicStats,
    ReportOptions,
    format_hours,
    format_minutes,
    format_percent,
    format_rating,
    summarize_open_tickets,
)
from utils.constants import ACTION_COMMANDS, REPORT_METRICS, format_category, format_priority
from utils.embeds import make_embed, success_embed
from utils.time import parse_iso, utc_now


def _split_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip().lower() for item in value.split(",") if item.strip()]


def _counts_field(counts: dict[str, int], limit: int = 8) -> str:
    rows = sorted(counts.items(), key=lambda item: item[1], reverse=True)[:limit]
    return "\n".join(f"`{key}`: {value}" for key, value in rows) or "No data"


def _record_line(record: TicketHistoryRecord) -> str:
    ticket = record.ticket
    closed = parse_iso(ticket.closed_at)
    closed_text = discord.utils.format_dt(closed, "d") if closed else "N/A"
    rating = f" | {record.satisfaction_rating}⭐" if record.satisfaction_rating else ""
    return (
        f"`#{ticket.numeric_id}` {ticket.user_tag} | {format_category(ticket.category)} | "
        f"{format_priority(ticket.priority)} | closed {closed_text}{rating}"
    )


def _stats_embed(stats: BasicStats, guild_name: str) -> discord.Embed:
    embed = make_embed(
        f"📊 Modmail Analytics - Last {stats.days} days",
        f"Server: **{guild_name}**",
        color=discord.Color.blurple(),
    )
    embed.add_field(name="🎫 Total Tickets", value=str(stats.total_tickets), inline=True)
    embed.add_field(name="🔒 Closed", value=str(stats.closed_tickets), inline=True)
    embed.add_field(name="📈 Close Rate", value=format_percent(stats.close_rate), inline=True)
    embed.add_field(name="⏱️ Avg First Response", value=format_minutes(stats.average_response_minutes), inline=True)
    embed.add_field(name="✅ Avg Resolution", value=format_hours(stats.average_resolution_hours), inline=True)
    embed.add_field(
        name="⭐ Satisfaction",
        value=(
            f"{format_rating(stats.satisfaction.average_rating)} "
            f"({format_percent(stats.satisfaction.response_rate)} responded)"
        ),
        inline=True,
    )
    embed.add_field(name="📂 Categories", value=_counts_field(stats.category_counts), inline=True)
    embed.add_field(name="🚦 Priorities", value=_counts_field(stats.priority_counts), inline=True)
    embed.add_field(name="🏷️ Tags", value=_counts_field(stats.tag_counts), inline=True)
    users = "\n".join(f"<@{entry.subject_id}>: {entry.count}" for entry in stats.top_users) or "No data"
    staff = "\n".join(
        f"<@{entry.subject_id}>: {entry.count} ({format_rating(entry.average_rating)})" for entry in stats.top_staff
    ) or "No data"
    embed.add_field(name="👤 Top Users", value=users, inline=True)
    embed.add_field(name="👮 Top Staff", value=staff, inline=True)
    return embed


class AnalyticsCog(commands.Cog):
    def __init__(self, bot: ModmailBot) -> None:
        self.bot = bot

    async def _staff_context(self, ctx: commands.Context[ModmailBot], command_name: str) -> discord.Guild:
        if ctx.guild is None:
            raise ValidationError("This command can only be used in a server.")
        await self.bot.rate_limiter.check_or_raise(ctx.author.id, ACTION_COMMANDS)
        await self.bot.ticket_service.require_staff(ctx.guild.id, ctx.author.id)
        await self.bot.rate_limiter.cooldown_or_raise(ctx.author.id, command_name)
        return ctx.guild

    @commands.hybrid_group(name="stats", with_app_command=True, description="Modmail analytics and history.")
    async def stats(self, ctx: commands.Context[ModmailBot]) -> None:
        if ctx.invoked_subcommand is None:
            await ctx.reply(
                embed=make_embed(
                    "Stats Commands",
                    "`/stats dashboard`\n"
                    "`/stats analytics [days]`\n"
                    "`/stats performance [days]`\n"
                    "`/stats report [days] [staff] [category] [tags] [metrics]`\n"
                    "`/stats search ...`\n"
                    "`/stats history <user>`\n"
                    "`/stats ratings [staff] [days]`\n"
                    "`/stats export [days]`\n"
                    "`/stats graph [days]`",
                ),
                mention_author=False,
            )

    @stats.command(name="dashboard", description="Overview of the open ticket queue.")
    async def stats_dashboard(self, ctx: commands.Context[ModmailBot]) -> None:
        if ctx.guild is None:
            raise ValidationError("This command can only be used in a server.")
        service = self.bot.ticket_service
        config = self.bot.configs.require(ctx.guild.id)
        await self.bot.rate_limiter.check_or_raise(ctx.author.id, ACTION_COMMANDS)
        await service.require_staff(ctx.guild.id, ctx.author.id)
        if config.admin_channel_ids and ctx.channel.id not in config.admin_channel_ids:
            raise ValidationError("The dashboard can only be used in the designated admin channels.")
        # Admins skip the dashboard cooldown.
        if not await self.bot.platform.is_admin(ctx.guild.id, ctx.author.id):
            await self.bot.rate_limiter.cooldown_or_raise(ctx.author.id, "dashboard")

        summary = summarize_open_tickets(service.registry.for_guild(ctx.guild.id), utc_now())
        week = await self.bot.analytics_service.basic_stats(ctx.guild.id, 7)
        oldest = summary.oldest_pending_hours
        embed = make_embed("📋 Modmail Dashboard", f"Server: **{ctx.guild.name}**", color=discord.Color.blurple())
        embed.add_field(name="🎫 Open", value=str(summary.total), inline=True)
        embed.add_field(name="⏳ Pending", value=str(summary.pending), inline=True)
        embed.add_field(name="🛠️ In Progress", value=str(summary.in_progress), inline=True)
        embed.add_field(
            name="🚦 Open by Priority",
            value="\n".join(f"{format_priority(level)}: {count}" for level, count in summary.priority_counts.items()),
            inline=True,
        )
        embed.add_field(
            name="⌛ Oldest Pending", value=format_hours(oldest) if oldest is not None else "None", inline=True
        )
        embed.add_field(
            name="📅 Last 7 Days",
            value=(
                f"Tickets: {week.total_tickets}\n"
                f"Closed: {week.closed_tickets}\n"
                f"Avg response: {format_minutes(week.average_response_minutes)}\n"
                f"Rating: {format_rating(week.satisfaction.average_rating)}"
            ),
            inline=True,
        )
        await ctx.reply(embed=embed, mention_author=False)

    @stats.command(name="analytics", description="Show ticket analytics for a time range.")
    async def stats_analytics(self, ctx: commands.Context[ModmailBot], days: int = 30) -> None:
        guild = await self._staff_context(ctx, "analytics")
        data = await self.bot.analytics_service.basic_stats(guild.id, days)
        await ctx.reply(embed=_stats_embed(data, guild.name), mention_author=False)

    @stats.command(name="performance", description="Show per-staff performance.")
    async def stats_performance(self, ctx: commands.Context[ModmailBot], days: int = 30) -> None:
        guild = await self._staff_context(ctx, "analytics")
        rows = await self.bot.analytics_service.staff_performance(guild.id, days)
        if not rows:
            await ctx.reply(embed=success_embed(f"No staff activity in the last {days} days."), mention_author=False)
            return
        embed = make_embed(f"👮 Staff Performance - Last {days} days", None, color=discord.Color.blurple())
        for row in rows[:10]:
            embed.add_field(
                name=row.staff_tag,
                value=(
                    f"Handled: **{row.tickets_handled}** | Closed: **{row.tickets_closed}** "
                    f"({format_percent(row.close_rate)})\n"
                    f"Rating: {format_rating(row.average_rating)}\n"
                    f"First response: {format_minutes(row.average_response_minutes)} | "
                    f"Resolution: {format_hours(row.average_resolution_hours)}"
                ),
                inline=False,
            )
        await ctx.reply(embed=embed, mention_author=False)

    @stats.command(name="report", description="Build a custom report.")
    async def stats_report(
        self,
        ctx: commands.Context[ModmailBot],
        days: int = 30,
        staff: discord.Member | None = None,
        category: str | None = None,
        tags: str | None = None,
        metrics: str | None = None,
    ) -> None:
        guild = await self._staff_context(ctx, "report")
        if days < 1 or days > 365:
            raise ValidationError("The time range must be between 1 and 365 days.")
        options = ReportOptions(
            time_range_days=days,
            staff_id=staff.id if staff else None,
            category=category.strip().lower() if category else None,
            tags=_split_list(tags),
            metrics=_split_list(metrics) or REPORT_METRICS,
        )
        report = await self.bot.analytics_service.custom_report(guild.id, options)
        data = report["data"]
        embed = make_embed(report["title"], f"Time range: {report['time_range']}", color=discord.Color.blurple())
        filters = report["filters"]
        embed.add_field(
            name="Filters",
            value=f"Staff: {filters['staff_id']}\nCategory: {filters['category']}\nTags: {filters['tags']}",
            inline=False,
        )
        if "tickets" in data:
            embed.add_field(
                name="🎫 Tickets",
                value=f"Total: {data['tickets']['total']}\nClosed: {data['tickets']['closed']}",
                inline=True,
            )
        for key, label in (("response_times", "⏱️ First Response"), ("resolution_times", "✅ Resolution")):
            if key in data:
                summary = data[key]
                embed.add_field(
                    name=label,
                    value=f"Avg: {summary['average']}\nMin: {summary['min']}\nMax: {summary['max']}",
                    inline=True,
                )
        if "satisfaction" in data:
            embed.add_field(
                name="⭐ Satisfaction",
                value=f"Avg: {data['satisfaction']['average']}\nResponded: {data['satisfaction']['percentage']}",
                inline=True,
            )
        embed.add_field(name="📂 Categories", value=_counts_field(data["categories"]), inline=True)
        embed.add_field(name="🏷️ Tags", value=_counts_field(data["tags"]), inline=True)
        await ctx.reply(embed=embed, mention_author=False)

    @stats.command(name="search", description="Search closed tickets.")
    async def stats_search(
        self,
        ctx: commands.Context[ModmailBot],
        user: discord.User | None = None,
        username: str | None = None,
        ticket: str | None = None,
        category: str | None = None,
        tag: str | None = None,
        content: str | None = None,
        staff: discord.Member | None = None,
        days: int | None = None,
        min_rating: int | None = None,
    ) -> None:
        guild = await self._staff_context(ctx, "search")
        criteria = SearchCriteria(
            guild_id=guild.id,
            user_id=user.id if user else None,
            username=username,
            ticket_id=ticket.strip().lstrip("#") if ticket else None,
            category=category.strip().lower() if category else None,
            tags=_split_list(tag),
            content=content,
            staff_id=staff.id if staff else None,
            start_date=utc_now() - timedelta(days=days) if days else None,
            min_rating=min_rating,
        )
        results = await self.bot.history_repo.search(criteria)
        if not results:
            await ctx.reply(embed=success_embed("No tickets matched your search."), mention_author=False)
            return
        results.sort(key=lambda record: record.ticket.created_at, reverse=True)
        lines = [_record_line(record) for record in results[:15]]
        embed = make_embed(
            "🔎 Ticket Search",
            "\n".join(lines),
            footer=f"Showing {len(lines)} of {len(results)} results",
        )
        await ctx.reply(embed=embed, mention_author=False)

    @stats.command(name="history", description="Show closed tickets of a user.")
    async def stats_history(self, ctx: commands.Context[ModmailBot], user: discord.User) -> None:
        guild = await self._staff_context(ctx, "search")
        records = await self.bot.history_repo.list_for_user(user.id, guild.id, limit=10)
        if not records:
            await ctx.reply(embed=success_embed(f"{user} has no ticket history."), mention_author=False)
            return
        rollup = await self.bot.history_repo.rollup(SCOPE_SERVER_USER, guild.id, user.id)
        total = rollup.total_tickets if rollup else len(records)
        everywhere = await self.bot.history_repo.user_stats(user.id)
        description = f"{user.mention} has {total} ticket(s) in the history."
        if everywhere is not None and everywhere.total_tickets > total:
            description += f" ({everywhere.total_tickets} across all servers)"
        embed = make_embed(
            f"Ticket History for {user}",
            description,
            footer=f"Showing {len(records)} of {total} tickets",
        )
        for record in records:
            ticket = record.ticket
            embed.add_field(
                name=f"Ticket #{ticket.numeric_id}",
                value=(
                    f"**Created:** {ticket.created_at}\n"
                    f"**Closed:** {ticket.closed_at or 'N/A'}\n"
                    f"**Category:** {format_category(ticket.category)}\n"
                    f"**Priority:** {format_priority(ticket.priority)}\n"
                    f"**Messages:** {record.message_count}"
                ),
                inline=False,
            )
        await ctx.reply(embed=embed, mention_author=False)

    @stats.command(name="ratings", description="Show satisfaction ratings for staff.")
    async def stats_ratings(
        self, ctx: commands.Context[ModmailBot], staff: discord.Member | None = None, days: int = 30
    ) -> None:
        guild = await self._staff_context(ctx, "analytics")
        rows = await self.bot.analytics_service.staff_performance(guild.id, days)
        if staff is not None:
            rows = [row for row in rows if row.staff_id == staff.id]
        rated = [row for row in rows if row.average_rating is not None]
        if not rated:
            await ctx.reply(
                embed=success_embed(f"No ratings data available for the last {days} days."), mention_author=False
            )
            return
        rated.sort(key=lambda row: row.average_rating or 0, reverse=True)
        lines = [
            f"`{idx + 1:02}` <@{row.staff_id}> {format_rating(row.average_rating)} over {row.tickets_closed} tickets"
            for idx, row in enumerate(rated)
        ]
        server = await self.bot.history_repo.server_stats(guild.id)
        footer = None
        if server is not None and server.average_rating is not None:
            footer = f"All-time server average: {format_rating(server.average_rating)} ({server.rating_count} ratings)"
        embed = make_embed(f"⭐ Staff Ratings - Last {days} days", "\n".join(lines), footer=footer)
        await ctx.reply(embed=embed, mention_author=False)

    @stats.command(name="export", description="Export closed tickets to CSV.")
    async def stats_export(self, ctx: commands.Context[ModmailBot], days: int = 30) -> None:
        guild = await self._staff_context(ctx, "report")
        csv_file = await self.bot.analytics_service.export_csv(guild.id, days)
        await ctx.reply(content="Ticket export generated.", file=discord.File(csv_file), mention_author=False)

    @stats.command(name="graph", description="Generate a ticket volume graph.")
    async def stats_graph(self, ctx: commands.Context[ModmailBot], days: int = 30) -> None:
        guild = await self._staff_context(ctx, "analytics")
        output = await self.bot.analytics_service.generate_graph(guild.id, days)
        if not output:
            await ctx.reply("Graph generation unavailable.", mention_author=False)
            return
        await ctx.reply(content="Ticket volume graph:", file=discord.File(output), mention_author=False)


async def setup(bot: ModmailBot) -> None:
    await bot.add_cog(AnalyticsCog(bot))
