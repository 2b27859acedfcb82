from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from collector.config import CrawlerConfig
from collector.crawler import Crawler, SessionResult
from collector.ledger import CrawlLedger
from collector.models import CrawlRecord, Document, FetchedDocument
from collector.utils import CommitterError, ReferenceNotFound


# ---------- stub collaborators ----------

@dataclass
class StubPage:
    content: bytes = b""
    metadata: Dict[str, Any] = field(default_factory=dict)
    children: List[str] = field(default_factory=list)
    error: Optional[BaseException] = None          # raised by fetch_document
    metadata_error: Optional[BaseException] = None  # raised by fetch_metadata
    content_type: str = "text/plain"


class StubFetcher:
    """In-memory site: reference -> StubPage. Missing references are not found."""

    def __init__(self, site: Dict[str, StubPage], *, on_fetch: Optional[Callable[[str], Any]] = None):
        self.site = site
        self.on_fetch = on_fetch
        self.metadata_calls: List[str] = []
        self.document_calls: List[str] = []

    async def fetch_metadata(self, reference: str) -> Dict[str, Any]:
        self.metadata_calls.append(reference)
        if self.on_fetch is not None:
            self.on_fetch(reference)
        await asyncio.sleep(0)
        page = self.site.get(reference)
        if page is None:
            raise ReferenceNotFound(f"missing: {reference}")
        if page.metadata_error is not None:
            raise page.metadata_error
        return dict(page.metadata)

    async def fetch_document(self, reference: str, metadata) -> FetchedDocument:
        self.document_calls.append(reference)
        await asyncio.sleep(0)
        page = self.site.get(reference)
        if page is None:
            raise ReferenceNotFound(f"missing: {reference}")
        if page.error is not None:
            raise page.error
        return FetchedDocument(
            reference=reference,
            content=page.content,
            metadata=dict(metadata),
            content_type=page.content_type,
            children=list(page.children),
        )


class PlainImporter:
    async def import_document(self, fetched: FetchedDocument) -> Document:
        return Document(
            reference=fetched.reference,
            content=fetched.text(),
            metadata=dict(fetched.metadata),
            content_type=fetched.content_type,
        )


class RecordingCommitter:
    def __init__(self, *, fail_on: Tuple[str, ...] = ()):
        self.fail_on = set(fail_on)
        self.added: List[Tuple[str, str, Document]] = []
        self.removed: List[str] = []

    async def add(self, document: Document, status: str) -> None:
        if document.reference in self.fail_on:
            raise CommitterError(f"sink refused {document.reference}")
        self.added.append((document.reference, status, document))

    async def remove(self, reference: str) -> None:
        if reference in self.fail_on:
            raise CommitterError(f"sink refused removal of {reference}")
        self.removed.append(reference)

    def added_refs(self) -> List[str]:
        return [ref for ref, _, _ in self.added]


class EventRecorder:
    def __init__(self):
        self.events = []

    def __call__(self, event) -> None:
        self.events.append(event)

    def names(self) -> List[str]:
        return [e.name for e in self.events]

    def for_reference(self, reference: str) -> List[str]:
        return [e.name for e in self.events if e.reference == reference]


def pages(*refs: str, content: bytes = b"v1", **kw: Any) -> Dict[str, StubPage]:
    return {r: StubPage(content=content + b" " + r.encode(), **kw) for r in refs}


# ---------- fixtures ----------

@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., CrawlerConfig]:
    def _make(**kw: Any) -> CrawlerConfig:
        kw.setdefault("crawler_id", "test")
        kw.setdefault("work_dir", tmp_path / "work")
        kw.setdefault("ledger_retry_initial_delay_ms", 1)
        kw.setdefault("ledger_retry_max_delay_ms", 2)
        kw.setdefault("ledger_retry_jitter_ms", 0)
        return CrawlerConfig(**kw)

    return _make


@pytest.fixture
def crawl():
    """Run one session and hand back (result, fetcher, committer)."""

    async def _crawl(
        cfg: CrawlerConfig,
        site: Dict[str, StubPage],
        seeds,
        *,
        committer: Optional[RecordingCommitter] = None,
        fetcher: Optional[StubFetcher] = None,
        ledger: Optional[CrawlLedger] = None,
    ) -> Tuple[SessionResult, StubFetcher, RecordingCommitter]:
        fetcher = fetcher or StubFetcher(site)
        committer = committer or RecordingCommitter()
        crawler = Crawler(cfg, fetcher, PlainImporter(), committer, ledger=ledger)
        result = await crawler.run(seeds)
        return result, fetcher, committer

    return _crawl


@pytest.fixture
def snapshot():
    async def _snapshot(cfg: CrawlerConfig) -> Dict[str, CrawlRecord]:
        ledger = CrawlLedger.for_config(cfg)
        try:
            return await ledger.snapshot()
        finally:
            ledger.close()

    return _snapshot
