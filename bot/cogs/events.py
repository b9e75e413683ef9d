from __future__ import annotations

import logging

import discord
from discord.ext import commands

from core.bot import ModmailBot
from core.errors import BotError, StaleSurveyError, describe_error
from services.platform import InboundMessage
from utils.embeds import error_embed, make_embed
from views.survey_view import parse_rating_custom_id

LOGGER = logging.getLogger(__name__)


def to_inbound(message: discord.Message) -> InboundMessage:
    channel = message.channel
    return InboundMessage(
        id=message.id,
        author_id=message.author.id,
        author_tag=str(message.author),
        content=message.content,
        channel_id=channel.id,
        guild_id=message.guild.id if message.guild else None,
        parent_channel_id=channel.parent_id if isinstance(channel, discord.Thread) else None,
        reference_message_id=message.reference.message_id if message.reference else None,
        attachments=[attachment.url for attachment in message.attachments],
        author_is_bot=message.author.bot,
    )


class EventsCog(commands.Cog):
    def __init__(self, bot: ModmailBot) -> None:
        self.bot = bot

    def _is_command(self, content: str) -> bool:
        return content.startswith(self.bot.config.discord.prefix)

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot:
            return
        inbound = to_inbound(message)
        if inbound.is_direct:
            if self._is_command(message.content):
                return
            await self._handle_direct(message, inbound)
            return
        try:
            await self.bot.ticket_service.handle_staff_message(inbound)
        except BotError as exc:
            LOGGER.info(
                "Staff message rejected. channel=%s user=%s reason=%s",
                inbound.channel_id,
                inbound.author_id,
                exc.user_message,
            )
            await self._reply_error(message, describe_error(exc))
        except Exception:
            LOGGER.exception("Unhandled error while routing staff message %s", message.id)

    async def _handle_direct(self, message: discord.Message, inbound: InboundMessage) -> None:
        try:
            await self.bot.ticket_service.handle_direct_message(inbound)
        except BotError as exc:
            LOGGER.info("Direct message rejected. user=%s reason=%s", inbound.author_id, exc.user_message)
            await self._reply_error(message, describe_error(exc))
        except Exception:
            LOGGER.exception("Unhandled error while routing direct message from %s", inbound.author_id)
            await self._reply_error(message, "Something went wrong while sending your message. Please try again.")

    async def _reply_error(self, message: discord.Message, text: str) -> None:
        try:
            await message.reply(embed=error_embed(text), mention_author=False)
        except discord.HTTPException:
            LOGGER.warning("Could not send error reply in channel %s", message.channel.id)

    @commands.Cog.listener()
    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent) -> None:
        if payload.guild_id is None or (self.bot.user and payload.user_id == self.bot.user.id):
            return
        if payload.member is not None and payload.member.bot:
            return
        user_tag = str(payload.member) if payload.member is not None else str(payload.user_id)
        try:
            await self.bot.ticket_service.handle_claim_reaction(
                payload.channel_id, payload.message_id, payload.user_id, user_tag, str(payload.emoji)
            )
        except BotError as exc:
            LOGGER.info(
                "Claim reaction rejected. message=%s user=%s reason=%s",
                payload.message_id,
                payload.user_id,
                exc.user_message,
            )
        except Exception:
            LOGGER.exception("Unhandled error while processing reaction on %s", payload.message_id)

    @commands.Cog.listener()
    async def on_interaction(self, interaction: discord.Interaction) -> None:
        if interaction.type != discord.InteractionType.component or not interaction.data:
            return
        parsed = parse_rating_custom_id(interaction.data.get("custom_id"))
        if parsed is None:
            return
        rating, ticket_id = parsed
        surveys = self.bot.survey_service
        try:
            if surveys is None:
                raise StaleSurveyError()
            await surveys.record_response(ticket_id, interaction.user.id, rating)
        except BotError as exc:
            await interaction.response.send_message(embed=error_embed(exc.user_message), ephemeral=True)
            return
        except Exception:
            LOGGER.exception("Failed to record survey response for ticket %s", ticket_id)
            await interaction.response.send_message(
                embed=error_embed("Your rating could not be saved. Please try again."), ephemeral=True
            )
            return
        thanks = make_embed(
            title="⭐ Thank You for Your Feedback!",
            description=f"You rated your experience {rating}/5 stars. We appreciate your input!",
            color=0x00FF00,
        )
        await interaction.response.edit_message(embed=thanks, view=None)


async def setup(bot: ModmailBot) -> None:
    await bot.add_cog(EventsCog(bot))
