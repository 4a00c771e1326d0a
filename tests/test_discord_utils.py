import asyncio
from types import SimpleNamespace

import discord
import pytest

from redeembot.discord_utils import ChannelGone, send_chunks


def _response(status: int, reason: str):
    return SimpleNamespace(status=status, reason=reason)


class StubChannel:
    def __init__(self, fail_with=None, fail_at=None):
        self.sent = []
        self.fail_with = fail_with
        self.fail_at = fail_at

    async def send(self, content):
        if self.fail_with is not None and len(self.sent) == (self.fail_at or 0):
            self.fail_at = -1
            raise self.fail_with
        self.sent.append(content)


def test_long_text_is_sent_in_parts():
    channel = StubChannel()
    text = "\n".join(f"line {i:04d}" for i in range(400))

    sent = asyncio.run(send_chunks(channel, text, limit=500))

    assert sent == len(channel.sent) > 1
    assert all(len(p) <= 500 for p in channel.sent)
    assert "\n".join(channel.sent) == text


def test_missing_channel_raises_channel_gone():
    channel = StubChannel(fail_with=discord.NotFound(_response(404, "Not Found"), "Unknown Channel"))
    with pytest.raises(ChannelGone):
        asyncio.run(send_chunks(channel, "hello"))


def test_other_http_errors_skip_the_part():
    channel = StubChannel(fail_with=discord.HTTPException(_response(500, "Server Error"), "boom"), fail_at=0)
    text = "a" * 10 + "\n" + "b" * 10

    sent = asyncio.run(send_chunks(channel, text, limit=11))

    assert sent == 1
    assert channel.sent == ["b" * 10]
