from __future__ import annotations
from typing import List, Sequence
from .schemas import PlayerIdentity, RunResult, RunStatus

DISCORD_MESSAGE_LIMIT = 2000

FINISHED_MESSAGE = "✅ Finished redeeming codes"
NO_USERS_MESSAGE = "❌ No users found!"
ROSTER_UNAVAILABLE_MESSAGE = "❌ Could not load the user list, nothing was redeemed. Try again later."
ENGINE_FAILED_MESSAGE = "❌ Could not start the browser, nothing was redeemed. Try again later."


def format_start(code: str, total: int) -> str:
    return f"🔄 Redeeming code **{code}** for all users ({total})..."


def format_result(result: RunResult) -> str:
    p = result.player
    detail = result.outcome.detail if result.outcome else ""
    if result.status is RunStatus.SUCCESS:
        return f"✅ {p.label} - {detail}"
    if result.status is RunStatus.TERMINAL:
        return f"❌ {p.label} - {detail}"
    if result.status is RunStatus.EXHAUSTED:
        return f"❌ Failed to redeem for {p.label} after multiple attempts. Check the user ID."
    if result.status is RunStatus.SKIPPED:
        return f"⏭️ {p.label} - skipped, the code is no longer valid"
    return f"🛑 {p.label} - stopped while retrying, the code is no longer valid"


def format_dead_code(code: str, skipped: int) -> str:
    msg = f"❌ Gift code **{code}** is expired or not found, stopped redeeming."
    if skipped:
        msg += f" ({skipped} users skipped)"
    return msg


def format_cancelled(code: str, done: int, total: int) -> str:
    return f"🛑 Redemption of **{code}** was cancelled ({done}/{total} users done)"


def format_user_list(players: Sequence[PlayerIdentity]) -> str:
    if not players:
        return NO_USERS_MESSAGE
    return "\n".join(p.label for p in players)


def chunk_message(msg: str, limit: int = DISCORD_MESSAGE_LIMIT) -> List[str]:
    """Split msg into parts of at most `limit` chars, preferring newline breaks."""
    chunks = []
    msg = msg.strip()
    while len(msg) > limit:
        cut = msg.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(msg[:cut])
        msg = msg[cut:].lstrip("\n")
    if msg:
        chunks.append(msg)
    return chunks
