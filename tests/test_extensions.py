from __future__ import annotations

import json
import logging

from collector.events import (
    CRAWLER_FINISHED,
    CRAWLER_STARTED,
    DOCUMENT_COMMITTED_ADD,
    REJECTED_ERROR,
    CrawlerEvent,
)
from extensions.checkpoint import CrawlCheckpoint
from extensions.logging import LoggingExtension, current_crawler_id
from extensions.output_paths import crawler_root, ensure_crawler_dirs, ledger_path, sanitize_crawler_id


def test_sanitize_crawler_id():
    assert sanitize_crawler_id("docs-site_1") == "docs-site_1"
    a = sanitize_crawler_id("docs/site")
    b = sanitize_crawler_id("docs site")
    assert a.startswith("docs_site-") and b.startswith("docs_site-")
    assert a != b
    assert sanitize_crawler_id("") == "default-da39a3ee"


def test_crawler_dirs_layout(tmp_path):
    dirs = ensure_crawler_dirs(tmp_path, "c1")
    assert set(dirs) == {"ledger", "logs", "checkpoints", "committer"}
    assert all(d.is_dir() and d.parent == crawler_root(tmp_path, "c1") for d in dirs.values())
    assert ledger_path(tmp_path, "c1") == dirs["ledger"] / "ledger.sqlite3"


def test_checkpoint_tracks_events(tmp_path):
    cp = CrawlCheckpoint("c1", tmp_path, flush_every=100)
    cp(CrawlerEvent(CRAWLER_STARTED, "c1", payload={"session_id": 4}))
    assert cp.path.exists()

    cp(CrawlerEvent(DOCUMENT_COMMITTED_ADD, "c1", "a", "NEW"))
    cp(CrawlerEvent(REJECTED_ERROR, "c1", "b", "ERROR", payload={"stage": "fetch", "error": "timeout"}))
    # below the flush threshold: still the state written at start
    on_disk = json.loads(cp.path.read_text())
    assert on_disk["counts"]["committed"] == 0

    cp(CrawlerEvent(CRAWLER_FINISHED, "c1", payload={"processed": 2}))
    on_disk = json.loads(cp.path.read_text())
    assert on_disk["session_id"] == 4
    assert on_disk["state"] == "FINISHED"
    assert on_disk["counts"]["committed"] == 1
    assert on_disk["counts"]["errors"] == 1
    assert on_disk["errors"] == [{"reference": "b", "stage": "fetch", "error": "timeout"}]
    assert on_disk["processed"] == 2

    again = CrawlCheckpoint("c1", tmp_path)
    again.load()
    assert again.is_finished()
    assert again.last_reference() == "b"
    assert again.counts()["committed"] == 1


def test_checkpoint_flushes_on_interval(tmp_path, monkeypatch):
    import extensions.checkpoint as checkpoint_mod

    writes = []
    real_write = checkpoint_mod.atomic_write_json
    monkeypatch.setattr(
        checkpoint_mod, "atomic_write_json", lambda path, data: (writes.append(path), real_write(path, data))
    )

    assert CrawlCheckpoint("c3", tmp_path).flush_every == 500
    cp = CrawlCheckpoint("c3", tmp_path, flush_every=3)
    cp(CrawlerEvent(CRAWLER_STARTED, "c3", payload={"session_id": 1}))
    assert len(writes) == 1

    for i in range(5):
        cp(CrawlerEvent(DOCUMENT_COMMITTED_ADD, "c3", f"r{i}", "NEW"))
    # one interval flush after the third document event
    assert len(writes) == 2
    assert json.loads(cp.path.read_text())["counts"]["committed"] == 3


def test_checkpoint_load_ignores_corrupt_file(tmp_path):
    cp = CrawlCheckpoint("c2", tmp_path)
    cp.path.write_text("{not json")
    cp.load()
    assert cp.data["state"] is None


def test_logging_extension_routes_crawler_records(tmp_path):
    ext = LoggingExtension(tmp_path, global_level=logging.INFO, console=False)
    try:
        log = ext.get_crawler_logger("c1")
        token = ext.set_crawler_context("c1")
        try:
            assert current_crawler_id() == "c1"
            log.info("hello from c1")
            logging.getLogger("collector.crawler").info("module record in context")
        finally:
            ext.reset_crawler_context(token)
        logging.getLogger("collector.crawler").info("outside any crawler")
    finally:
        ext.close()

    text = ext.log_path("c1").read_text(encoding="utf-8")
    assert "hello from c1" in text
    assert "module record in context" in text
    assert "outside any crawler" not in text
    assert current_crawler_id() is None
