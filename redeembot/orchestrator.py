"""Redemption run: fan a gift code out over a roster.

Parallelism is bounded by the session pool's capacity alone. An optional
batch size adds barriers: batch k+1 starts only after every player in batch k
has a final result.

With abort_on_terminal the first terminal outcome halts the run. Players
that never started come back as skipped and players caught in backoff as
cancelled; both are still yielded.

Typical use::

    run = orchestrator.start(request, cancel=event)
    async with aclosing(run.stream()) as stream:
        async for player, result in stream:
            ...
    print(run.summary)
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from . import formatter
from .classifier import OutcomeClassifier
from .config import Settings
from .logging_setup import context_with_trace_id, run_trace_id
from .redemption import RedemptionAttempt
from .retry import AttemptSkipped, RetryPolicy
from .schemas import (
    AttemptOutcome,
    PlayerIdentity,
    RedemptionRequest,
    RetryReason,
    RunResult,
    RunStatus,
)
from .session_pool import ExecutionContext, PlaywrightEngine, PoolInitError, SessionPool

logger = logging.getLogger("redeembot.orchestrator")

PoolFactory = Callable[[], SessionPool]
AttemptCallable = Callable[[PlayerIdentity, str, ExecutionContext], Awaitable[AttemptOutcome]]

_UNFINISHED = (RunStatus.SKIPPED, RunStatus.CANCELLED)


class RedemptionOrchestrator:
    def __init__(
        self,
        pool_factory: PoolFactory,
        attempt: AttemptCallable,
        policy: Optional[RetryPolicy] = None,
        *,
        batch_size: int = 0,
        abort_on_terminal: bool = False,
    ):
        self.pool_factory = pool_factory
        self.attempt = attempt
        self.policy = policy or RetryPolicy()
        self.batch_size = max(0, int(batch_size))
        self.abort_on_terminal = abort_on_terminal

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedemptionOrchestrator":
        classifier = OutcomeClassifier.with_extra_terminal(settings.extra_terminal_phrases)
        attempt = RedemptionAttempt(
            classifier,
            url=settings.redeem_url,
            login_timeout_ms=settings.login_timeout_ms,
        )

        def pool_factory() -> SessionPool:
            engine = PlaywrightEngine(
                headless=settings.headless,
                navigation_timeout_ms=settings.navigation_timeout_ms,
            )
            return SessionPool(engine, capacity=settings.pool_capacity)

        return cls(
            pool_factory,
            attempt,
            RetryPolicy(settings.max_attempts, settings.initial_delay_sec),
            batch_size=settings.batch_size,
            abort_on_terminal=settings.abort_on_terminal,
        )

    def start(self, request: RedemptionRequest, cancel: Optional[asyncio.Event] = None) -> "RedemptionRun":
        return RedemptionRun(self, request, cancel)

    def batches(self, roster: Sequence[PlayerIdentity]) -> Iterator[Sequence[PlayerIdentity]]:
        if self.batch_size <= 0:
            yield roster
            return
        for i in range(0, len(roster), self.batch_size):
            yield roster[i:i + self.batch_size]


class RedemptionRun:
    """One `!redeem` run. Iterate once; then read `summary`."""

    def __init__(self, orchestrator: RedemptionOrchestrator, request: RedemptionRequest, cancel: Optional[asyncio.Event]):
        self.orchestrator = orchestrator
        self.request = request
        self.cancel = cancel
        self.status = "pending"
        self.summary: Optional[str] = None
        self.pool: Optional[SessionPool] = None
        self.dead_code: Optional[RunResult] = None
        self.trace_id = run_trace_id(request.scope, request.code)

        self._results: Dict[str, RunResult] = {}
        self._queue: "asyncio.Queue[RunResult]" = asyncio.Queue()
        self._halt = asyncio.Event()
        self._consumed = False

    @property
    def total(self) -> int:
        return len(self.request.roster)

    @property
    def done(self) -> int:
        """Players with a final result (skipped and cancelled ones excluded)."""
        return sum(1 for r in self._results.values() if r.status not in _UNFINISHED)

    def results(self) -> List[RunResult]:
        """Final results resolved so far, in roster order."""
        return [self._results[p.player_id] for p in self.request.roster if p.player_id in self._results]

    def __aiter__(self) -> AsyncIterator[Tuple[PlayerIdentity, RunResult]]:
        return self.stream()

    def stream(self) -> AsyncIterator[Tuple[PlayerIdentity, RunResult]]:
        if self._consumed:
            raise RuntimeError("redemption run can only be iterated once")
        self._consumed = True
        return self._iterate()

    def _cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    async def _iterate(self) -> AsyncIterator[Tuple[PlayerIdentity, RunResult]]:
        req = self.request
        if not req.roster:
            self.status = "empty"
            self.summary = formatter.NO_USERS_MESSAGE
            return

        self.status = "running"
        pool = self.orchestrator.pool_factory()
        self.pool = pool
        try:
            await pool.start()
        except PoolInitError as e:
            logger.error("Run for code %s aborted: %s", req.code, e)
            self.status = "failed"
            self.summary = formatter.ENGINE_FAILED_MESSAGE
            return

        logger.info("Redeeming %s for %d players in scope %s (trace %s)", req.code, len(req.roster), req.scope, self.trace_id)
        completed = False
        try:
            for batch in self.orchestrator.batches(req.roster):
                if self._cancelled():
                    break
                if self._halt.is_set():
                    # Later batches never start once the code is dead.
                    for p in batch:
                        skipped = RunResult(player=p, status=RunStatus.SKIPPED)
                        self._record(skipped)
                        yield p, skipped
                    continue
                tasks = [
                    asyncio.create_task(
                        self._run_player(pool, p),
                        name=f"redeem-{p.player_id}",
                        context=context_with_trace_id(self.trace_id),
                    )
                    for p in batch
                ]
                try:
                    for _ in range(len(tasks)):
                        result = await self._next_result()
                        if result is None:
                            break
                        self._record(result)
                        yield result.player, result
                finally:
                    await _stop_tasks(tasks)
            completed = True
        finally:
            await pool.drain()
            self._finish(completed)

    def _record(self, result: RunResult) -> None:
        self._results[result.player.player_id] = result
        if (
            result.status is RunStatus.TERMINAL
            and self.orchestrator.abort_on_terminal
            and self.dead_code is None
        ):
            logger.warning("Code %s is dead (%s); halting run", self.request.code, result.outcome.detail if result.outcome else "")
            self.dead_code = result
            self._halt.set()

    async def _next_result(self) -> Optional[RunResult]:
        """Next finished player, or None when the run was cancelled."""
        if self.cancel is None:
            return await self._queue.get()
        if self.cancel.is_set():
            self._halt.set()
            return None

        getter = asyncio.ensure_future(self._queue.get())
        waiter = asyncio.ensure_future(self.cancel.wait())
        try:
            await asyncio.wait({getter, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in (getter, waiter):
                if not t.done():
                    t.cancel()
        if getter.done() and not getter.cancelled():
            return getter.result()
        self._halt.set()
        return None

    async def _run_player(self, pool: SessionPool, player: PlayerIdentity) -> None:
        attempt = self.orchestrator.attempt

        async def attempt_once(p: PlayerIdentity, code: str) -> AttemptOutcome:
            try:
                async with pool.lease() as ctx:
                    # The run may have halted while we waited for a slot.
                    if self._halt.is_set():
                        raise AttemptSkipped()
                    return await attempt(p, code, ctx)
            except AttemptSkipped:
                raise
            except Exception as e:
                logger.exception("Could not run attempt for %s", p.label)
                return AttemptOutcome.retryable(RetryReason.UNCLASSIFIED, str(e) or e.__class__.__name__)

        try:
            result = await self.orchestrator.policy.run(player, self.request.code, attempt_once, stop=self._halt)
        except Exception:
            logger.exception("Retry loop failed for %s", player.label)
            result = RunResult(player=player, status=RunStatus.EXHAUSTED)
        if result.status is RunStatus.TERMINAL and self.orchestrator.abort_on_terminal:
            # Stop players still waiting for a slot before they start.
            self._halt.set()
        self._queue.put_nowait(result)

    def _finish(self, completed: bool) -> None:
        req = self.request
        if self._cancelled() or not completed:
            self.status = "cancelled"
            self.summary = formatter.format_cancelled(req.code, self.done, self.total)
        elif self.dead_code is not None and self.done < self.total:
            skipped = self.total - self.done
            self.status = "dead_code"
            self.summary = formatter.format_dead_code(req.code, skipped)
        else:
            self.status = "finished"
            self.summary = formatter.FINISHED_MESSAGE
        logger.info("Run for code %s %s: %d/%d players resolved", req.code, self.status, self.done, self.total)


async def _stop_tasks(tasks: List["asyncio.Task[None]"]) -> None:
    for t in tasks:
        if not t.done():
            t.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
