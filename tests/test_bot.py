import asyncio

import discord

from redeembot import bot as bot_module
from redeembot.bot import RedeemBot
from redeembot.commands import RedeemCommands
from redeembot.config import Settings
from redeembot.orchestrator import RedemptionOrchestrator
from redeembot.roster_store import JsonRosterStore

from tests.fakes import PoolFactory, ScriptedAttempt


class FakeKeepalive:
    def __init__(self):
        self.started = 0
        self.stopped = 0

    async def start(self):
        self.started += 1

    async def stop(self):
        self.stopped += 1


def _bot(tmp_path, keepalive):
    commands = RedeemCommands(
        JsonRosterStore(str(tmp_path / "roster.json")),
        RedemptionOrchestrator(PoolFactory(), ScriptedAttempt({})),
    )
    return RedeemBot(Settings(), commands, keepalive)


def test_keepalive_follows_client_lifecycle(tmp_path, monkeypatch):
    closed = []

    async def client_close(self):
        closed.append(True)

    monkeypatch.setattr(discord.Client, "close", client_close)
    keepalive = FakeKeepalive()
    client = _bot(tmp_path, keepalive)

    async def go():
        await client.setup_hook()
        await client.close()

    asyncio.run(go())

    assert keepalive.started == 1
    assert keepalive.stopped == 1
    assert closed == [True]


def test_duplicate_message_delivery_is_detected():
    bot_module._COMMAND_DEDUP_CACHE.clear()
    assert bot_module._command_seen_recently(42) is False
    assert bot_module._command_seen_recently(42) is True
    assert bot_module._command_seen_recently(43) is False
