"""Discord helper utilities.

These are intentionally small to keep them unit-testable with stub channels.
"""

from __future__ import annotations

import logging
from typing import Any

import discord

from .formatter import DISCORD_MESSAGE_LIMIT, chunk_message


logger = logging.getLogger("redeembot.discord_utils")


class ChannelGone(Exception):
    """The channel can no longer be written to (deleted or access revoked)."""


async def send_chunks(channel: Any, text: str, limit: int = DISCORD_MESSAGE_LIMIT) -> int:
    """Send text split into Discord-sized parts. Returns the number of parts sent.

    Raises ChannelGone when Discord reports the channel missing or forbidden;
    other HTTP errors are logged and the remaining parts are still attempted.
    """
    sent = 0
    for part in chunk_message(text, limit=limit):
        try:
            await channel.send(part)
            sent += 1
        except (discord.NotFound, discord.Forbidden) as e:
            raise ChannelGone(str(e)) from e
        except discord.HTTPException:
            logger.exception("Failed to send message part (%d chars)", len(part))
    return sent
