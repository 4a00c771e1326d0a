from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .schemas import AttemptOutcome, OutcomeKind, PlayerIdentity, RunResult, RunStatus

logger = logging.getLogger("redeembot.retry")

AttemptFn = Callable[[PlayerIdentity, str], Awaitable[AttemptOutcome]]
SleepFn = Callable[[float], Awaitable[None]]


class AttemptSkipped(Exception):
    """Raised by an attempt function that decided not to run (run halted)."""


class RetryPolicy:
    """Bounded exponential backoff around one player's attempts.

    Delays double after every retryable outcome: 1s, 2s, 4s, 8s with the
    defaults. Attempts for one player are strictly sequential.
    """

    def __init__(self, max_attempts: int = 5, initial_delay: float = 1.0, sleep: Optional[SleepFn] = None):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self._sleep: SleepFn = sleep or asyncio.sleep

    async def run(
        self,
        player: PlayerIdentity,
        code: str,
        attempt_fn: AttemptFn,
        stop: Optional[asyncio.Event] = None,
    ) -> RunResult:
        delay = self.initial_delay
        last: Optional[AttemptOutcome] = None
        attempts = 0

        while attempts < self.max_attempts:
            if stop is not None and stop.is_set():
                status = RunStatus.SKIPPED if attempts == 0 else RunStatus.CANCELLED
                return RunResult(player=player, status=status, outcome=last, attempts=attempts)

            try:
                last = await attempt_fn(player, code)
            except AttemptSkipped:
                status = RunStatus.SKIPPED if attempts == 0 else RunStatus.CANCELLED
                return RunResult(player=player, status=status, outcome=last, attempts=attempts)
            attempts += 1

            if last.kind is OutcomeKind.SUCCESS:
                return RunResult(player=player, status=RunStatus.SUCCESS, outcome=last, attempts=attempts)
            if last.kind is OutcomeKind.TERMINAL:
                return RunResult(player=player, status=RunStatus.TERMINAL, outcome=last, attempts=attempts)

            if attempts >= self.max_attempts:
                break

            logger.info(
                "%s: %s on attempt %d/%d, retrying in %.1fs",
                player.label, _reason(last), attempts, self.max_attempts, delay,
            )
            if await self._backoff(delay, stop):
                return RunResult(player=player, status=RunStatus.CANCELLED, outcome=last, attempts=attempts)
            delay *= 2

        logger.warning("%s: giving up after %d attempts (%s)", player.label, attempts, _reason(last))
        return RunResult(player=player, status=RunStatus.EXHAUSTED, outcome=last, attempts=attempts)

    async def _backoff(self, delay: float, stop: Optional[asyncio.Event]) -> bool:
        """Sleep for delay. Returns True if stop fired first."""
        if stop is None:
            await self._sleep(delay)
            return False
        if stop.is_set():
            return True

        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in (sleeper, waiter):
                if not t.done():
                    t.cancel()
        return stop.is_set()


def _reason(outcome: Optional[AttemptOutcome]) -> str:
    if outcome is None or outcome.reason is None:
        return "-"
    return outcome.reason.value
