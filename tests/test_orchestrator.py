import asyncio
from contextlib import aclosing

import pytest

from redeembot import formatter
from redeembot.orchestrator import RedemptionOrchestrator
from redeembot.retry import RetryPolicy
from redeembot.schemas import (
    AttemptOutcome,
    RedemptionRequest,
    RetryReason,
    RunStatus,
    TerminalReason,
)

from tests.fakes import PoolFactory, RecordingSleep, ScriptedAttempt, players

EXPIRED = AttemptOutcome.terminal(TerminalReason.CODE_EXPIRED, "Expired, unable to claim.")
CLAIMED = AttemptOutcome.success("Claimed successfully")
LOGIN_TIMEOUT = AttemptOutcome.retryable(RetryReason.LOGIN_TIMEOUT, "check UserID, timed out logging in.")


def _orchestrator(attempt, factory=None, **kwargs):
    factory = factory or PoolFactory()
    policy = RetryPolicy(sleep=RecordingSleep())
    return RedemptionOrchestrator(factory, attempt, policy, **kwargs), factory


def _collect(orchestrator, request, cancel=None):
    async def go():
        run = orchestrator.start(request, cancel=cancel)
        seen = [(p.player_id, r) async for p, r in run]
        return run, seen

    return asyncio.run(go())


def test_empty_roster_never_touches_the_pool():
    attempt = ScriptedAttempt({})
    orch, factory = _orchestrator(attempt)

    run, seen = _collect(orch, RedemptionRequest(code="ABC123", scope="1", roster=()))

    assert seen == []
    assert run.summary == formatter.NO_USERS_MESSAGE
    assert factory.pools == []
    assert attempt.calls == []


def test_mixed_outcomes_scenario():
    attempt = ScriptedAttempt({"100": [EXPIRED], "200": [CLAIMED]})
    orch, factory = _orchestrator(attempt)
    roster = players(("100", "Alice"), ("200", "Bob"))

    run, seen = _collect(orch, RedemptionRequest(code="ABC123", scope="1", roster=roster))

    by_id = dict(seen)
    assert by_id["100"].status is RunStatus.TERMINAL
    assert by_id["100"].outcome.reason is TerminalReason.CODE_EXPIRED
    assert by_id["200"].status is RunStatus.SUCCESS
    assert by_id["200"].outcome.detail == "Claimed successfully"
    assert run.summary == "✅ Finished redeeming codes"
    assert [r.player.player_id for r in run.results()] == ["100", "200"]

    pool = factory.pools[0]
    assert pool.engine.started == 1
    assert pool.engine.closed == 1


def test_parallelism_never_exceeds_pool_capacity():
    roster = players(*[(str(1000 + i), f"P{i}") for i in range(23)])
    attempt = ScriptedAttempt({}, ticks=5)
    orch, factory = _orchestrator(attempt, PoolFactory(capacity=3))

    run, seen = _collect(orch, RedemptionRequest(code="ABC123", scope="1", roster=roster))

    assert len(seen) == 23
    assert attempt.max_in_flight == 3
    pool = factory.pools[0]
    assert pool.peak_in_use == 3
    assert pool.acquired_total == pool.released_total == 23
    assert pool.in_use == 0


def test_batch_barrier_when_batch_size_set():
    roster = players(("1", "a"), ("2", "b"), ("3", "c"), ("4", "d"), ("5", "e"))
    attempt = ScriptedAttempt({"1": [CLAIMED]}, ticks=3)
    orch, _ = _orchestrator(attempt, PoolFactory(capacity=5), batch_size=2)

    _collect(orch, RedemptionRequest(code="X", scope="1", roster=roster))

    events = attempt.events
    start_3 = events.index(("start", "3"))
    assert events.index(("end", "1")) < start_3
    assert events.index(("end", "2")) < start_3
    start_5 = events.index(("start", "5"))
    assert events.index(("end", "4")) < start_5


def test_every_lent_context_released_once_even_when_attempts_raise():
    roster = players(("1", "a"), ("2", "b"), ("3", "c"))
    attempt = ScriptedAttempt({"2": [RuntimeError("browser crashed"), CLAIMED]})
    orch, factory = _orchestrator(attempt, PoolFactory(capacity=2))

    run, seen = _collect(orch, RedemptionRequest(code="X", scope="1", roster=roster))

    assert dict(seen)["2"].status is RunStatus.SUCCESS
    assert attempt.attempts_for("2") == 2
    pool = factory.pools[0]
    assert pool.acquired_total == pool.released_total == 4
    assert all(c.closed == 1 for c in pool.engine.contexts)


def test_unknown_player_is_retried_then_reported_not_fatal():
    roster = players(("999", "Ghost"), ("200", "Bob"))
    attempt = ScriptedAttempt({"999": [LOGIN_TIMEOUT], "200": [CLAIMED]})
    orch, _ = _orchestrator(attempt)

    run, seen = _collect(orch, RedemptionRequest(code="X", scope="1", roster=roster))

    ghost = dict(seen)["999"]
    assert ghost.status is RunStatus.EXHAUSTED
    assert ghost.attempts == 5
    assert attempt.attempts_for("999") == 5
    assert "Check the user ID" in formatter.format_result(ghost)
    assert run.summary == formatter.FINISHED_MESSAGE


def test_mixed_outcomes_scenario_runs_everyone_even_one_at_a_time():
    attempt = ScriptedAttempt({"100": [EXPIRED], "200": [CLAIMED]})
    orch, _ = _orchestrator(attempt, PoolFactory(capacity=1))
    roster = players(("100", "Alice"), ("200", "Bob"))

    run, seen = _collect(orch, RedemptionRequest(code="ABC123", scope="1", roster=roster))

    assert attempt.calls == ["100", "200"]
    assert [(pid, r.status) for pid, r in seen] == [("100", RunStatus.TERMINAL), ("200", RunStatus.SUCCESS)]
    assert run.summary == "✅ Finished redeeming codes"


def test_dead_code_halts_players_not_yet_started():
    roster = players(("1", "a"), ("2", "b"), ("3", "c"), ("4", "d"))
    attempt = ScriptedAttempt({"1": [EXPIRED]})
    orch, factory = _orchestrator(attempt, PoolFactory(capacity=1), abort_on_terminal=True)

    run, seen = _collect(orch, RedemptionRequest(code="DEAD", scope="1", roster=roster))

    assert attempt.calls == ["1"]
    # halted players still get a line
    assert [pid for pid, _ in seen] == ["1", "2", "3", "4"]
    assert all(r.status is RunStatus.SKIPPED for _, r in seen[1:])
    assert formatter.format_result(seen[1][1]).startswith("⏭️ b:2")
    assert run.status == "dead_code"
    assert run.summary == formatter.format_dead_code("DEAD", 3)
    assert [r.status for r in run.results()] == [RunStatus.TERMINAL] + [RunStatus.SKIPPED] * 3
    assert factory.pools[0].engine.closed == 1


def test_dead_code_keeps_going_when_abort_disabled():
    roster = players(("1", "a"), ("2", "b"), ("3", "c"))
    attempt = ScriptedAttempt({"1": [EXPIRED], "2": [EXPIRED], "3": [EXPIRED]})
    orch, _ = _orchestrator(attempt, PoolFactory(capacity=1), abort_on_terminal=False)

    run, seen = _collect(orch, RedemptionRequest(code="DEAD", scope="1", roster=roster))

    assert attempt.calls == ["1", "2", "3"]
    assert len(seen) == 3
    assert run.summary == formatter.FINISHED_MESSAGE


def test_engine_failure_processes_nobody():
    attempt = ScriptedAttempt({})
    orch, factory = _orchestrator(attempt, PoolFactory(fail_start=True))

    run, seen = _collect(orch, RedemptionRequest(code="X", scope="1", roster=players(("1", "a"))))

    assert seen == []
    assert attempt.calls == []
    assert run.status == "failed"
    assert run.summary == formatter.ENGINE_FAILED_MESSAGE
    assert factory.pools[0].engine.contexts == []


def test_cancel_stops_in_flight_work_and_drains_pool():
    roster = players(("1", "a"), ("2", "b"), ("3", "c"))
    attempt = ScriptedAttempt({}, block=["2", "3"])
    orch, factory = _orchestrator(attempt, PoolFactory(capacity=2))

    async def go():
        cancel = asyncio.Event()
        run = orch.start(RedemptionRequest(code="X", scope="1", roster=roster), cancel=cancel)
        seen = []
        async for pid, result in run:
            seen.append(pid.player_id)
            cancel.set()
        return run, seen

    run, seen = asyncio.run(asyncio.wait_for(go(), timeout=5))

    assert seen == ["1"]
    assert run.status == "cancelled"
    assert run.summary == formatter.format_cancelled("X", 1, 3)
    pool = factory.pools[0]
    assert pool.acquired_total == pool.released_total
    assert pool.in_use == 0
    assert pool.engine.closed == 1


def test_closing_the_stream_early_releases_everything():
    roster = players(("1", "a"), ("2", "b"))
    attempt = ScriptedAttempt({}, block=["2"])
    orch, factory = _orchestrator(attempt)

    async def go():
        run = orch.start(RedemptionRequest(code="X", scope="1", roster=roster))
        async with aclosing(run.stream()) as stream:
            async for _ in stream:
                break
        return run

    run = asyncio.run(asyncio.wait_for(go(), timeout=5))

    pool = factory.pools[0]
    assert pool.acquired_total == pool.released_total == 2
    assert pool.engine.closed == 1
    assert run.status == "cancelled"


def test_run_is_not_restartable():
    orch, _ = _orchestrator(ScriptedAttempt({}))

    async def go():
        run = orch.start(RedemptionRequest(code="X", scope="1", roster=players(("1", "a"))))
        async for _ in run:
            pass
        with pytest.raises(RuntimeError):
            run.stream()

    asyncio.run(go())


def test_dead_code_stops_player_waiting_in_backoff():
    roster = players(("1", "a"), ("2", "b"))
    attempt = ScriptedAttempt({"1": [LOGIN_TIMEOUT], "2": [EXPIRED]})

    async def never_wakes(delay):
        await asyncio.Event().wait()

    orch = RedemptionOrchestrator(
        PoolFactory(capacity=2), attempt, RetryPolicy(sleep=never_wakes), abort_on_terminal=True,
    )

    run, seen = _collect(orch, RedemptionRequest(code="DEAD", scope="1", roster=roster))

    by_id = dict(seen)
    assert by_id["1"].status is RunStatus.CANCELLED
    assert by_id["1"].attempts == 1
    assert by_id["2"].status is RunStatus.TERMINAL
    assert "stopped while retrying" in formatter.format_result(by_id["1"])
    assert run.status == "dead_code"
    assert run.summary == formatter.format_dead_code("DEAD", 1)


def test_dead_code_skips_later_batches():
    roster = players(("1", "a"), ("2", "b"), ("3", "c"))
    attempt = ScriptedAttempt({"1": [EXPIRED]})
    orch, _ = _orchestrator(attempt, PoolFactory(capacity=1), batch_size=1, abort_on_terminal=True)

    run, seen = _collect(orch, RedemptionRequest(code="DEAD", scope="1", roster=roster))

    assert attempt.calls == ["1"]
    assert [(pid, r.status) for pid, r in seen] == [
        ("1", RunStatus.TERMINAL),
        ("2", RunStatus.SKIPPED),
        ("3", RunStatus.SKIPPED),
    ]
    assert run.summary == formatter.format_dead_code("DEAD", 2)
