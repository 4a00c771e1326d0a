"""Chat commands: one entry point per command, replies as plain strings.

Nothing here knows about Discord; the bot sends whatever these yield.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

from . import formatter
from .config import Settings
from .orchestrator import RedemptionOrchestrator, RedemptionRun
from .roster_store import RosterStore, RosterStoreError
from .schemas import RedemptionRequest

logger = logging.getLogger("redeembot.commands")


REDEEM_HELP_MESSAGE = "⚠️ `!redeem <code>` - redeem a gift code for every registered user. Example: `!redeem ABC123`"
ADD_HELP_MESSAGE = "⚠️ `!add <user id> <name>` - register a player. Example: `!add 123456789 JohnDoe`"
DELETE_HELP_MESSAGE = "⚠️ `!delete <user id>` - remove a player. Example: `!delete 123456789`"
LIST_HELP_MESSAGE = "⚠️ `!list` - show every registered player"
CANCEL_HELP_MESSAGE = "⚠️ `!cancel` - stop the redemption running in this server"
HELP_MESSAGE = "⚠️ `!help` - show all commands"


@dataclass
class ActiveRun:
    code: str
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    run: Optional[RedemptionRun] = None

    def progress(self) -> Dict[str, object]:
        done = self.run.done if self.run else 0
        total = self.run.total if self.run else 0
        return {"code": self.code, "done": done, "total": total, "cancelling": self.cancel.is_set()}


class RedeemCommands:
    def __init__(self, store: RosterStore, orchestrator: RedemptionOrchestrator, settings: Optional[Settings] = None):
        self.store = store
        self.orchestrator = orchestrator
        self.prefix = settings.command_prefix if settings else "!"
        self._active: Dict[str, ActiveRun] = {}

    # ----------------------------
    # Command entry points
    # ----------------------------

    async def redeem(self, scope: str, code: str) -> AsyncIterator[str]:
        if scope in self._active:
            yield f"⚠️ Code **{self._active[scope].code}** is still being redeemed here. Use `{self.prefix}cancel` to stop it."
            return

        active = ActiveRun(code=code)
        self._active[scope] = active
        try:
            try:
                roster = await self.store.list(scope)
            except RosterStoreError:
                logger.warning("Roster fetch failed for scope %s; not starting run", scope)
                yield formatter.ROSTER_UNAVAILABLE_MESSAGE
                return

            if not roster:
                yield formatter.NO_USERS_MESSAGE
                return

            yield formatter.format_start(code, len(roster))
            request = RedemptionRequest(code=code, scope=scope, roster=tuple(roster))
            run = self.orchestrator.start(request, cancel=active.cancel)
            active.run = run
            async with aclosing(run.stream()) as stream:
                async for _player, result in stream:
                    yield formatter.format_result(result)
            yield run.summary or formatter.FINISHED_MESSAGE
        finally:
            self._active.pop(scope, None)

    async def list_users(self, scope: str) -> str:
        try:
            players = await self.store.list(scope)
        except RosterStoreError:
            return formatter.ROSTER_UNAVAILABLE_MESSAGE
        return formatter.format_user_list(players)

    async def add_user(self, scope: str, player_id: str, name: str) -> str:
        try:
            added = await self.store.add(scope, player_id, name)
        except RosterStoreError:
            return f"❌ Failed to add User ID **{player_id}**."
        if not added:
            return f"⚠️ User ID **{player_id}** is already in the list!"
        logger.info("Added %s:%s to scope %s", name, player_id, scope)
        return f"✅ User ID **{player_id}** (Name: **{name}**) has been added!"

    async def delete_user(self, scope: str, player_id: str) -> str:
        try:
            removed = await self.store.remove(scope, player_id)
        except RosterStoreError:
            return f"❌ Failed to delete User ID **{player_id}**."
        if not removed:
            return f"❌ User ID **{player_id}** not found."
        logger.info("Deleted %s from scope %s", player_id, scope)
        return f"✅ User ID **{player_id}** has been deleted."

    def cancel(self, scope: str) -> str:
        active = self._active.get(scope)
        if active is None:
            return "⚠️ Nothing is being redeemed right now."
        active.cancel.set()
        logger.info("Cancel requested for scope %s (code %s)", scope, active.code)
        return f"🛑 Stopping redemption of **{active.code}**..."

    def help_text(self) -> str:
        return "\n".join([
            LIST_HELP_MESSAGE,
            ADD_HELP_MESSAGE,
            DELETE_HELP_MESSAGE,
            REDEEM_HELP_MESSAGE,
            CANCEL_HELP_MESSAGE,
        ])

    def active_runs(self) -> Dict[str, Dict[str, object]]:
        return {scope: a.progress() for scope, a in self._active.items()}

    # ----------------------------
    # Dispatch
    # ----------------------------

    def is_command(self, content: str) -> bool:
        text = (content or "").strip()
        if not text.startswith(self.prefix):
            return False
        name = text.split()[0][len(self.prefix):].lower()
        return name in {"redeem", "add", "delete", "list", "cancel", "help"}

    async def handle(self, scope: str, content: str) -> AsyncIterator[str]:
        """Run one command line and yield the replies in order."""
        if not self.is_command(content):
            return
        args: List[str] = content.strip().split()
        name = args[0][len(self.prefix):].lower()

        if name == "redeem":
            if len(args) != 2:
                yield REDEEM_HELP_MESSAGE
                return
            async with aclosing(self.redeem(scope, args[1])) as replies:
                async for reply in replies:
                    yield reply
        elif name == "add":
            if len(args) != 3 or not args[1].isdigit():
                yield ADD_HELP_MESSAGE
                return
            yield await self.add_user(scope, args[1], args[2])
        elif name == "delete":
            if len(args) != 2:
                yield DELETE_HELP_MESSAGE
                return
            yield await self.delete_user(scope, args[1])
        elif name == "list":
            if len(args) != 1:
                yield LIST_HELP_MESSAGE
                return
            yield await self.list_users(scope)
        elif name == "cancel":
            if len(args) != 1:
                yield CANCEL_HELP_MESSAGE
                return
            yield self.cancel(scope)
        elif name == "help":
            if len(args) != 1:
                yield HELP_MESSAGE
                return
            yield self.help_text()
