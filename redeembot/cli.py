import asyncio
import sys

from .config import load_settings
from .logging_setup import setup_logging
from .orchestrator import RedemptionOrchestrator
from .schemas import PlayerIdentity, RedemptionRequest
from .formatter import format_result


def parse_player(arg: str) -> PlayerIdentity:
    """'123456' or '123456:Name'."""
    pid, _, name = arg.partition(":")
    return PlayerIdentity(player_id=pid.strip(), display_name=name.strip() or pid.strip())


async def run(code: str, players, settings=None) -> int:
    orchestrator = RedemptionOrchestrator.from_settings(settings or load_settings())
    redemption = orchestrator.start(RedemptionRequest(code=code, scope="cli", roster=tuple(players)))
    async for _player, result in redemption:
        print(format_result(result))
    print(redemption.summary)
    return 0 if redemption.status == "finished" else 1


def main():
    if len(sys.argv) < 3:
        print("Usage: python -m redeembot.cli <code> <player_id[:name]> [...]")
        raise SystemExit(2)

    settings = load_settings()
    setup_logging(settings)
    code = sys.argv[1]
    players = [parse_player(a) for a in sys.argv[2:]]
    raise SystemExit(asyncio.run(run(code, players, settings)))

if __name__ == "__main__":
    main()
