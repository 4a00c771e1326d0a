import logging
import time
from collections import OrderedDict
from typing import Optional

import discord

from .commands import RedeemCommands
from .config import Settings, env_int, load_settings
from .discord_utils import ChannelGone, send_chunks
from .health import KeepaliveServer
from .logging_setup import setup_logging, set_trace_id, reset_trace_id, new_trace_id
from .orchestrator import RedemptionOrchestrator
from .roster_store import RosterStoreError, create_store

logger = logging.getLogger("redeembot")


# ----------------------------
# Duplicate-delivery guard
# ----------------------------
#
# Discord may deliver the same message event more than once around
# reconnect/resume. Handled message ids are kept in a small per-process
# idempotency cache.
COMMAND_DEDUP_TTL_SEC = env_int("COMMAND_DEDUP_TTL_SEC", 120)
COMMAND_DEDUP_MAX = env_int("COMMAND_DEDUP_MAX", 5000)

# msg_id -> first_seen_ts (LRU)
_COMMAND_DEDUP_CACHE: "OrderedDict[int, float]" = OrderedDict()


def _command_seen_recently(msg_id: int) -> bool:
    """Return True if msg_id was processed recently (idempotency guard)."""
    now = time.time()

    # purge old
    if COMMAND_DEDUP_TTL_SEC > 0:
        cutoff = now - float(COMMAND_DEDUP_TTL_SEC)
        while _COMMAND_DEDUP_CACHE:
            _k0, ts0 = next(iter(_COMMAND_DEDUP_CACHE.items()))
            if ts0 >= cutoff:
                break
            _COMMAND_DEDUP_CACHE.popitem(last=False)

    if msg_id in _COMMAND_DEDUP_CACHE:
        _COMMAND_DEDUP_CACHE.move_to_end(msg_id)
        return True

    _COMMAND_DEDUP_CACHE[msg_id] = now
    # cap
    while len(_COMMAND_DEDUP_CACHE) > max(1, int(COMMAND_DEDUP_MAX)):
        _COMMAND_DEDUP_CACHE.popitem(last=False)
    return False


class RedeemBot(discord.Client):
    def __init__(self, settings: Settings, commands: RedeemCommands, keepalive: Optional[KeepaliveServer] = None):
        intents = discord.Intents.default()
        intents.message_content = True
        super().__init__(intents=intents)
        self.settings = settings
        self.commands = commands
        self.keepalive = keepalive

    async def _ensure_scope(self, guild: discord.Guild) -> None:
        try:
            await self.commands.store.ensure_scope(str(guild.id), guild.name)
        except RosterStoreError:
            logger.error("Could not prepare roster for %s (%s)", guild.name, guild.id)

    async def setup_hook(self) -> None:
        # Runs once per login, unlike on_ready which repeats on reconnect.
        if self.keepalive is not None:
            await self.keepalive.start()

    async def close(self) -> None:
        if self.keepalive is not None:
            await self.keepalive.stop()
        await super().close()

    async def on_ready(self):
        logger.info("Logged in as %s", self.user)
        for guild in self.guilds:
            await self._ensure_scope(guild)

    async def on_guild_join(self, guild: discord.Guild):
        logger.info("Joined new server: %s (%s)", guild.name, guild.id)
        await self._ensure_scope(guild)

    async def on_message(self, message: discord.Message):
        if message.author.bot or message.guild is None:
            return
        content = message.content or ""
        if not self.commands.is_command(content):
            return
        if _command_seen_recently(int(message.id)):
            logger.info("Duplicate command delivery detected -> skip: msg_id=%s", message.id)
            return

        scope = str(message.guild.id)
        token = set_trace_id(new_trace_id(f"g{scope}"))
        logger.info(
            "===== START command msg_id=%s guild=%s author=%s: %s =====",
            message.id, scope, message.author.id, content.strip()[:100],
        )
        try:
            async for reply in self.commands.handle(scope, content):
                try:
                    await send_chunks(message.channel, reply, limit=self.settings.message_limit)
                except ChannelGone:
                    logger.warning("Channel %s unavailable; cancelling work for scope %s", message.channel.id, scope)
                    self.commands.cancel(scope)
        except Exception:
            logger.exception("Command failed: %s", content.strip()[:100])
            try:
                await message.channel.send("❌ Something went wrong, check the bot logs.")
            except discord.HTTPException:
                logger.warning("Could not report failure to channel %s", message.channel.id)
        finally:
            logger.info("===== END command msg_id=%s =====", message.id)
            reset_trace_id(token)


def main():
    settings = load_settings()
    setup_logging(settings)
    if not settings.discord_token:
        raise SystemExit("Missing DISCORD_TOKEN in .env / env vars")

    store = create_store(settings)
    orchestrator = RedemptionOrchestrator.from_settings(settings)
    commands = RedeemCommands(store, orchestrator, settings)
    keepalive = KeepaliveServer(commands.active_runs, port=settings.port) if settings.keepalive_enabled else None

    client = RedeemBot(settings, commands, keepalive)
    client.run(settings.discord_token, log_handler=None)


if __name__ == "__main__":
    main()
