from __future__ import annotations

import pytest
import pytest_asyncio

from collector.events import ORPHANS_RESOLVED, REFERENCE_REMOVED, EventBus
from collector.ledger import CrawlLedger
from collector.models import CrawlRecord
from collector.orphans import OrphanResolver, normalize_orphans_strategy

from conftest import EventRecorder, RecordingCommitter


@pytest_asyncio.fixture
async def seeded(tmp_path):
    ledger = CrawlLedger(tmp_path / "o.sqlite3", "o")
    await ledger.upsert(CrawlRecord("seen", "UNCHANGED", processed_in_current_run=True))
    await ledger.upsert(CrawlRecord("stale", "NEW", depth=3, parent_identity="p"))
    await ledger.upsert(CrawlRecord("dead", "DELETED"))
    yield ledger
    ledger.close()


def _resolver(ledger, strategy, committer=None, recorder=None):
    bus = EventBus([recorder] if recorder else [])
    return OrphanResolver(ledger, committer or RecordingCommitter(), bus, "o", strategy)


@pytest.mark.asyncio
async def test_collect_only_unprocessed(seeded):
    found = await _resolver(seeded, "IGNORE").collect()
    assert [r.identity for r in found] == ["stale", "dead"]


@pytest.mark.asyncio
async def test_delete_removes_committed_orphans_only(seeded):
    committer = RecordingCommitter()
    recorder = EventRecorder()
    report = await _resolver(seeded, "DELETE", committer, recorder).resolve()

    assert report.found == 2 and report.deleted == 2 and report.failed == 0
    # DELETED record never reached the sink as live content
    assert committer.removed == ["stale"]
    assert set(await seeded.snapshot()) == {"seen"}
    assert recorder.for_reference("dead") == [REFERENCE_REMOVED]
    assert recorder.names()[-1] == ORPHANS_RESOLVED


@pytest.mark.asyncio
async def test_delete_keeps_record_when_committer_fails(seeded):
    committer = RecordingCommitter(fail_on=("stale",))
    report = await _resolver(seeded, "DELETE", committer).resolve()

    assert report.deleted == 1 and report.failed == 1
    assert set(await seeded.snapshot()) == {"seen", "stale"}


@pytest.mark.asyncio
async def test_ignore_leaves_everything(seeded):
    committer = RecordingCommitter()
    report = await _resolver(seeded, "IGNORE", committer).resolve()
    assert report.ignored == 2
    assert committer.removed == []
    assert len(await seeded.snapshot()) == 3


@pytest.mark.asyncio
async def test_process_submits_orphans(seeded):
    submitted = []

    async def submit(item):
        submitted.append(item)
        return item.identity != "dead"

    report = await _resolver(seeded, "PROCESS").resolve(submit=submit)
    assert [q.identity for q in submitted] == ["stale", "dead"]
    assert all(q.orphan for q in submitted)
    assert submitted[0].depth == 3 and submitted[0].parent_identity == "p"
    assert report.processed == 1
    assert report.to_dict()["strategy"] == "PROCESS"


@pytest.mark.asyncio
async def test_process_needs_a_frontier(seeded):
    with pytest.raises(RuntimeError):
        await _resolver(seeded, "PROCESS").resolve()


def test_strategy_names():
    assert normalize_orphans_strategy(" delete ") == "DELETE"
    with pytest.raises(ValueError):
        normalize_orphans_strategy("purge")
