from __future__ import annotations

import asyncio

import pytest

from collector.frontier import Frontier
from collector.ledger import CrawlLedger
from collector.models import QueuedReference


@pytest.fixture
def ledger(tmp_path):
    led = CrawlLedger(tmp_path / "frontier.sqlite3", "f")
    yield led
    led.close()


async def _drain(frontier):
    out = []
    while True:
        item = await frontier.pop()
        if item is None:
            return out
        out.append(item.identity)
        await frontier.done(item)


@pytest.mark.asyncio
async def test_fifo_and_admit_once(ledger):
    fr = Frontier(ledger)
    assert await fr.push(QueuedReference("a")) is True
    assert await fr.push(QueuedReference("b")) is True
    assert await fr.push(QueuedReference("a")) is False
    assert fr.pending() == 2

    assert await _drain(fr) == ["a", "b"]
    # already seen this session, even once done
    assert await fr.push(QueuedReference("a")) is False
    assert await ledger.frontier_size() == 0


@pytest.mark.asyncio
async def test_overflow_spills_to_disk_and_keeps_order(ledger):
    fr = Frontier(ledger, capacity=2)
    names = [f"n{i}" for i in range(7)]
    for n in names:
        await fr.push(QueuedReference(n))

    assert fr.buffered() == 2
    assert fr.pending() == 7
    assert await ledger.frontier_size() == 7
    assert await _drain(fr) == names


@pytest.mark.asyncio
async def test_dequeue_limit(ledger):
    fr = Frontier(ledger, max_dequeues=2)
    for n in "abcd":
        await fr.push(QueuedReference(n))

    assert await _drain(fr) == ["a", "b"]
    assert fr.limit_reached is True
    assert fr.dequeued == 2
    assert await ledger.frontier_size() == 2


@pytest.mark.asyncio
async def test_limit_not_reached_when_exhausted(ledger):
    fr = Frontier(ledger, max_dequeues=2)
    await fr.push(QueuedReference("a"))
    await fr.push(QueuedReference("b"))
    assert await _drain(fr) == ["a", "b"]
    assert fr.limit_reached is False


@pytest.mark.asyncio
async def test_close_refuses_new_work_and_wakes_waiters(ledger):
    fr = Frontier(ledger)
    await fr.push(QueuedReference("a"))
    first = await fr.pop()

    waiter = asyncio.create_task(fr.pop())
    await asyncio.sleep(0.01)
    assert not waiter.done()

    await fr.close()
    assert await waiter is None
    assert await fr.push(QueuedReference("b")) is False
    await fr.release(first)
    # released entry is still persisted for a later session
    assert await ledger.frontier_size() == 1


@pytest.mark.asyncio
async def test_pop_waits_for_in_flight_discoveries(ledger):
    fr = Frontier(ledger)
    await fr.push(QueuedReference("root"))
    root = await fr.pop()

    waiter = asyncio.create_task(fr.pop())
    await asyncio.sleep(0.01)
    assert not waiter.done()

    await fr.push(QueuedReference("child", depth=1, parent_identity="root"))
    child = await waiter
    assert child.identity == "child" and child.depth == 1

    await fr.done(root)
    await fr.done(child)
    assert await fr.pop() is None


@pytest.mark.asyncio
async def test_restore_requeues_and_skips_processed(ledger):
    fr = Frontier(ledger, capacity=1)
    for n in "abc":
        await fr.push(QueuedReference(n))
    first = await fr.pop()
    await fr.done(first)

    resumed = Frontier(ledger, capacity=1)
    assert await resumed.restore(processed=["a"]) == 2
    assert resumed.is_known("a") and resumed.is_known("b")
    assert await resumed.push(QueuedReference("a")) is False
    assert await resumed.push(QueuedReference("b")) is False
    assert await resumed.push(QueuedReference("d")) is True
    assert await _drain(resumed) == ["b", "c", "d"]


def test_capacity_must_be_positive(ledger):
    with pytest.raises(ValueError):
        Frontier(ledger, capacity=0)
