from __future__ import annotations

import discord

from utils.constants import RATING_CUSTOM_ID_PREFIX


def rating_custom_id(rating: int, ticket_id: str) -> str:
    return f"{RATING_CUSTOM_ID_PREFIX}{rating}:{ticket_id}"


def parse_rating_custom_id(custom_id: str | None) -> tuple[int, str] | None:
    if not custom_id or not custom_id.startswith(RATING_CUSTOM_ID_PREFIX):
        return None
    rating_text, _, ticket_id = custom_id[len(RATING_CUSTOM_ID_PREFIX):].partition(":")
    if not rating_text.isdigit() or not ticket_id:
        return None
    return int(rating_text), ticket_id


class SurveyView(discord.ui.View):
    """Rating buttons; clicks are handled by the interaction listener in the events cog."""

    def __init__(self, ticket_id: str) -> None:
        super().__init__(timeout=None)
        for rating in range(1, 6):
            self.add_item(
                discord.ui.Button(
                    label=f"{rating} ⭐",
                    style=discord.ButtonStyle.secondary,
                    custom_id=rating_custom_id(rating, ticket_id),
                )
            )
