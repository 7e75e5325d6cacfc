"""
Unit tests for the sweep worker.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from burstguard.services.engine import DecisionEngine
from burstguard.services.ledger import InMemoryLedger
from burstguard.services.notifier import EscalationNotifier
from burstguard.worker import SweepWorker

from conftest import at, make_event


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def engine(ledger, clock, policy):
    return DecisionEngine(ledger=ledger, notifier=EscalationNotifier(), policy=policy, clock=clock)


async def seed_muted_burst(ledger, policy, fingerprint="fp"):
    await ledger.observe(fingerprint, make_event(0), policy, at(0))
    await ledger.observe(fingerprint, make_event(2), policy, at(2))


@pytest.mark.asyncio
async def test_run_once_escalates_due_records(engine, ledger, clock, policy):
    """Test that one pass commits every due escalation."""
    await seed_muted_burst(ledger, policy, "fp-1")
    await seed_muted_burst(ledger, policy, "fp-2")
    clock.set(40)

    worker = SweepWorker(engine=engine, interval_seconds=0.01)

    assert await worker.run_once() == 2
    assert await worker.run_once() == 0
    assert worker.passes == 2


@pytest.mark.asyncio
async def test_two_workers_share_one_ledger(ledger, clock, policy):
    """Test that concurrent workers never double-escalate."""
    await seed_muted_burst(ledger, policy)
    clock.set(40)

    workers = [
        SweepWorker(
            engine=DecisionEngine(ledger=ledger, policy=policy, clock=clock),
            interval_seconds=0.01,
        )
        for _ in range(3)
    ]

    counts = await asyncio.gather(*[worker.run_once() for worker in workers])

    assert sum(counts) == 1


@pytest.mark.asyncio
async def test_loop_runs_until_stopped(engine, ledger, clock, policy):
    """Test the sweep loop and graceful stop."""
    worker = SweepWorker(engine=engine, interval_seconds=0.01)
    worker.running = True

    loop_task = asyncio.create_task(worker._run_loop())
    await asyncio.sleep(0.05)
    await worker.stop()
    await asyncio.wait_for(loop_task, timeout=1)

    assert worker.passes >= 1
    assert worker.running is False


@pytest.mark.asyncio
async def test_loop_survives_failed_pass(engine):
    """Test that an unexpected error does not kill the loop."""
    worker = SweepWorker(engine=engine, interval_seconds=0.01)
    calls = []

    async def flaky_sweep(now=None):
        calls.append(now)
        if len(calls) == 1:
            raise RuntimeError("unexpected")
        return []

    engine.sweep = flaky_sweep
    worker.running = True

    loop_task = asyncio.create_task(worker._run_loop())
    await asyncio.sleep(0.05)
    await worker.stop()
    await asyncio.wait_for(loop_task, timeout=1)

    assert len(calls) >= 2
    assert worker.passes == len(calls) - 1


@pytest.mark.asyncio
async def test_stop_closes_ledger_and_notifier(engine):
    """Test that stop releases resources exactly once."""
    engine.ledger.close = AsyncMock()
    engine.notifier.close = AsyncMock()
    worker = SweepWorker(engine=engine, interval_seconds=0.01)

    await worker.stop()
    await worker.stop()

    engine.ledger.close.assert_awaited_once()
    engine.notifier.close.assert_awaited_once()
