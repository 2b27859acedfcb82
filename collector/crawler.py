from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, Literal, Mapping, Optional, Protocol, Tuple

from .checksum import DEFAULT_METADATA_TARGET_FIELD
from .config import CrawlerConfig
from .events import (
    CRAWLER_FINISHED,
    CRAWLER_RESUMED,
    CRAWLER_STARTED,
    CRAWLER_STOPPED,
    CRAWLER_STOPPING,
    DOCUMENT_COMMITTED_ADD,
    DOCUMENT_COMMITTED_REMOVE,
    DOCUMENT_FETCHED,
    DOCUMENT_UNMODIFIED,
    REFERENCE_REMOVED,
    REJECTED_ERROR,
    REJECTED_FILTER,
    REJECTED_NOTFOUND,
    EventBus,
    Listener,
)
from .filters import FilterChain, FilterResult
from .frontier import Frontier
from .ledger import CrawlLedger, SessionInfo, compute_status
from .models import (
    GONE_STATUSES,
    STAGE_CHECKSUM,
    STAGE_COMMIT,
    STAGE_DOCUMENT_FILTER,
    STAGE_FETCH,
    STAGE_IMPORT,
    STAGE_METADATA_FILTER,
    STAGE_REFERENCE_FILTER,
    STATUS_DELETED,
    STATUS_ERROR,
    STATUS_REJECTED,
    STATUS_UNCHANGED,
    CrawlRecord,
    CrawlStatus,
    Document,
    FetchedDocument,
    QueuedReference,
)
from .orphans import OrphanReport, OrphanResolver
from .spoiled import SPOILED_DELETE, SPOILED_IGNORE, SpoiledDecision, is_spoiled, normalize_decision
from .utils import EscalatedException, LedgerError, ReferenceNotFound, error_kind

logger = logging.getLogger(__name__)

SessionState = Literal["CREATED", "RUNNING", "STOPPING", "STOPPED", "FINISHED"]

STATE_CREATED: SessionState = "CREATED"
STATE_RUNNING: SessionState = "RUNNING"
STATE_STOPPING: SessionState = "STOPPING"
STATE_STOPPED: SessionState = "STOPPED"
STATE_FINISHED: SessionState = "FINISHED"

_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    STATE_CREATED: (STATE_RUNNING,),
    STATE_RUNNING: (STATE_STOPPING, STATE_FINISHED),
    STATE_STOPPING: (STATE_STOPPED,),
    STATE_STOPPED: (),
    STATE_FINISHED: (),
}


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class Fetcher(Protocol):
    async def fetch_metadata(self, reference: str) -> Mapping[str, Any]:  # pragma: no cover - interface
        ...

    async def fetch_document(self, reference: str, metadata: Mapping[str, Any]) -> FetchedDocument:  # pragma: no cover - interface
        ...


class Importer(Protocol):
    async def import_document(self, fetched: FetchedDocument) -> Document:  # pragma: no cover - interface
        ...


class Committer(Protocol):
    async def add(self, document: Document, status: CrawlStatus) -> None:  # pragma: no cover - interface
        ...

    async def remove(self, reference: str) -> None:  # pragma: no cover - interface
        ...


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class SessionResult:
    state: SessionState
    crawler_id: str
    session_id: int = 0
    resumed: bool = False
    processed: int = 0
    counts_by_status: Dict[str, int] = field(default_factory=dict)
    orphans: Optional[OrphanReport] = None
    spoiled: Dict[str, SpoiledDecision] = field(default_factory=dict)
    failure: Optional[BaseException] = None
    stop_reason: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.state == STATE_FINISHED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "crawler_id": self.crawler_id,
            "session_id": self.session_id,
            "resumed": self.resumed,
            "processed": self.processed,
            "counts_by_status": dict(self.counts_by_status),
            "orphans": self.orphans.to_dict() if self.orphans else None,
            "spoiled": dict(self.spoiled),
            "failure": f"{error_kind(self.failure)}: {self.failure}" if self.failure else None,
            "stop_reason": self.stop_reason,
        }


@dataclass
class _Work:
    """Per-reference scratch state, owned by the one worker that dequeued it."""

    item: QueuedReference
    prior: Optional[CrawlRecord]
    metadata_checksum: Optional[str] = None
    document_checksum: Optional[str] = None
    stage: str = STAGE_REFERENCE_FILTER

    @property
    def identity(self) -> str:
        return self.item.identity


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class Crawler:
    """
    Runs one crawl session: a fixed pool of worker tasks drains the frontier,
    each reference going through filter -> fetch -> checksum -> status ->
    commit -> ledger in that order. Once drained, orphans are resolved and the
    spoiled decisions recorded along the way are applied.

    A crawler runs a single session; build a new one for the next run.
    """

    def __init__(
        self,
        config: CrawlerConfig,
        fetcher: Fetcher,
        importer: Importer,
        committer: Committer,
        *,
        ledger: Optional[CrawlLedger] = None,
    ) -> None:
        self.config = config
        self.crawler_id = config.crawler_id
        self.fetcher = fetcher
        self.importer = importer
        self.committer = committer
        self.events = EventBus(config.listeners)

        self._reference_filters = FilterChain.for_references(config.reference_filters)
        self._metadata_filters = FilterChain.for_metadata(config.metadata_filters)
        self._document_filters = FilterChain.for_documents(config.document_filters)

        self._ledger = ledger
        self._owns_ledger = ledger is None
        self._frontier: Optional[Frontier] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._state: SessionState = STATE_CREATED
        self._session: Optional[SessionInfo] = None
        self._failure: Optional[BaseException] = None
        self._stop_reason: Optional[str] = None

        self._spoiled: Dict[str, Tuple[SpoiledDecision, Optional[str]]] = {}
        self._counts: Counter = Counter()
        self._processed = 0

    # ---------- state ----------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def ledger(self) -> Optional[CrawlLedger]:
        return self._ledger

    @property
    def frontier(self) -> Optional[Frontier]:
        return self._frontier

    def add_listener(self, listener: Listener) -> None:
        self.events.add_listener(listener)

    def _transition(self, new: SessionState) -> None:
        if new not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"illegal session transition {self._state} -> {new}")
        logger.debug("[%s] session %s -> %s", self.crawler_id, self._state, new)
        self._state = new

    def stop(self) -> None:
        """Ask a running session to stop; safe to call from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("[%s] stop() ignored: session is not running", self.crawler_id)
            return
        asyncio.run_coroutine_threadsafe(self._request_stop("stop requested"), loop)

    async def _request_stop(self, reason: str, failure: Optional[BaseException] = None) -> None:
        if failure is not None and self._failure is None:
            self._failure = failure
        if self._state != STATE_RUNNING:
            return
        self._transition(STATE_STOPPING)
        self._stop_reason = reason
        logger.warning("[%s] stopping: %s", self.crawler_id, reason)
        self.events.fire(CRAWLER_STOPPING, self.crawler_id, reason=reason)
        if self._frontier is not None:
            await self._frontier.close()

    # ---------- session ----------

    async def run(self, seeds: Iterable[str] = ()) -> SessionResult:
        self._transition(STATE_RUNNING)
        self._loop = asyncio.get_running_loop()
        self.events.freeze()

        orphans: Optional[OrphanReport] = None
        try:
            try:
                orphans = await self._run_session(seeds)
            except LedgerError as e:
                logger.error("[%s] ledger failure: %s", self.crawler_id, e)
                await self._request_stop("ledger failure", e)
            return await self._finish(orphans)
        finally:
            if self._owns_ledger and self._ledger is not None:
                self._ledger.close()

    async def _run_session(self, seeds: Iterable[str]) -> Optional[OrphanReport]:
        cfg = self.config
        if self._ledger is None:
            self._ledger = CrawlLedger.for_config(cfg)
        ledger = self._ledger

        self._session = await ledger.begin_session(resume=cfg.resume)
        self._frontier = Frontier(
            ledger, capacity=cfg.frontier_capacity, max_dequeues=cfg.max_documents
        )
        if self._state != STATE_RUNNING:
            await self._frontier.close()

        if self._session.resumed:
            pending = await self._frontier.restore(await ledger.processed_identities())
            logger.info(
                "[%s] resuming session %d (%d pending)",
                self.crawler_id,
                self._session.session_id,
                pending,
            )
            self.events.fire(
                CRAWLER_RESUMED, self.crawler_id, session_id=self._session.session_id, pending=pending
            )
        else:
            logger.info("[%s] starting session %d", self.crawler_id, self._session.session_id)
            self.events.fire(CRAWLER_STARTED, self.crawler_id, session_id=self._session.session_id)

        for ref in seeds:
            if ref:
                await self._frontier.push(QueuedReference(identity=str(ref)))

        await self._drain()
        if self._state != STATE_RUNNING:
            # unvisited is not orphaned
            return None
        return await self._resolve_orphans()

    async def _drain(self) -> None:
        assert self._frontier is not None
        workers = [
            asyncio.create_task(self._worker(), name=f"{self.crawler_id}-worker-{i}")
            for i in range(self.config.num_threads)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            for w in workers:
                w.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        if self._frontier.limit_reached:
            await self._request_stop(f"max documents reached ({self.config.max_documents})")

    async def _worker(self) -> None:
        frontier = self._frontier
        assert frontier is not None
        while True:
            item = await frontier.pop()
            if item is None:
                return
            try:
                await self._process(item)
                await frontier.done(item)
            except LedgerError as e:
                # entry stays in the persisted frontier for the next session
                await frontier.release(item)
                await self._request_stop("ledger failure", e)

    async def _resolve_orphans(self) -> OrphanReport:
        resolver = OrphanResolver(
            self._ledger,
            self.committer,
            self.events,
            self.crawler_id,
            self.config.orphans_strategy,
        )
        assert self._frontier is not None
        report = await resolver.resolve(submit=self._frontier.push)
        if report.processed:
            logger.info("[%s] re-processing %d orphan(s)", self.crawler_id, report.processed)
            await self._drain()
        return report

    async def _apply_spoiled(self) -> Dict[str, SpoiledDecision]:
        applied: Dict[str, SpoiledDecision] = {}
        for ref, (decision, prior_status) in self._spoiled.items():
            applied[ref] = decision
            if decision != SPOILED_DELETE:
                continue
            if prior_status is not None and prior_status not in GONE_STATUSES:
                try:
                    await self.committer.remove(ref)
                except Exception as e:
                    logger.error("[%s] spoiled %s: committer removal failed: %s", self.crawler_id, ref, e)
                    continue
                self.events.fire(DOCUMENT_COMMITTED_REMOVE, self.crawler_id, ref, prior_status, spoiled=True)
            await self._ledger.delete(ref)
            self.events.fire(REFERENCE_REMOVED, self.crawler_id, ref, prior_status, spoiled=True)
        return applied

    async def _finish(self, orphans: Optional[OrphanReport]) -> SessionResult:
        ledger_ok = self._ledger is not None and not isinstance(self._failure, LedgerError)

        spoiled: Dict[str, SpoiledDecision] = {}
        if ledger_ok:
            try:
                spoiled = await self._apply_spoiled()
            except LedgerError as e:
                ledger_ok = False
                await self._request_stop("ledger failure", e)

        final = STATE_STOPPED if self._state == STATE_STOPPING else STATE_FINISHED
        if ledger_ok and self._session is not None:
            try:
                await self._ledger.end_session(self._session.session_id, final, self._processed)
            except LedgerError as e:
                await self._request_stop("ledger failure", e)
                final = STATE_STOPPED
        self._transition(final)

        result = SessionResult(
            state=final,
            crawler_id=self.crawler_id,
            session_id=self._session.session_id if self._session else 0,
            resumed=self._session.resumed if self._session else False,
            processed=self._processed,
            counts_by_status=dict(self._counts),
            orphans=orphans,
            spoiled=spoiled,
            failure=self._failure,
            stop_reason=self._stop_reason,
        )
        self.events.fire(
            CRAWLER_FINISHED if final == STATE_FINISHED else CRAWLER_STOPPED,
            self.crawler_id,
            session_id=result.session_id,
            processed=result.processed,
            counts=result.counts_by_status,
        )
        logger.info(
            "[%s] session %d %s: processed=%d %s",
            self.crawler_id,
            result.session_id,
            final,
            result.processed,
            dict(sorted(result.counts_by_status.items())),
        )
        return result

    # ---------- per reference ----------

    async def _process(self, item: QueuedReference) -> None:
        assert self._ledger is not None
        prior = await self._ledger.get(item.identity)
        work = _Work(
            item=item,
            prior=prior,
            metadata_checksum=prior.metadata_checksum if prior else None,
            document_checksum=prior.document_checksum if prior else None,
        )
        try:
            await self._pipeline(work)
        except LedgerError:
            raise
        except Exception as e:
            await self._on_error(work, e)

    async def _pipeline(self, work: _Work) -> None:
        cfg = self.config
        ref = work.identity

        work.stage = STAGE_REFERENCE_FILTER
        res = self._reference_filters.evaluate(ref)
        if res.rejected:
            return await self._on_rejected(work, res)

        work.stage = STAGE_FETCH
        try:
            metadata = dict(await self.fetcher.fetch_metadata(ref) or {})
        except ReferenceNotFound as e:
            return await self._on_not_found(work, e)

        work.stage = STAGE_METADATA_FILTER
        res = self._metadata_filters.evaluate(ref, metadata)
        if res.rejected:
            return await self._on_rejected(work, res)

        work.stage = STAGE_CHECKSUM
        m = None
        if cfg.metadata_checksummer is not None:
            m = cfg.metadata_checksummer.create_metadata_checksum(metadata)
        work.metadata_checksum = m
        if cfg.metadata_fast_path and compute_status(work.prior, m, None) == STATUS_UNCHANGED:
            return await self._on_unchanged(work)

        work.stage = STAGE_FETCH
        try:
            fetched = await self.fetcher.fetch_document(ref, metadata)
        except ReferenceNotFound as e:
            return await self._on_not_found(work, e)
        self.events.fire(DOCUMENT_FETCHED, self.crawler_id, ref, content_type=fetched.content_type)
        await self._enqueue_children(work.item, fetched.children)

        work.stage = STAGE_CHECKSUM
        d = None
        if cfg.document_checksummer is not None:
            d = cfg.document_checksummer.create_document_checksum(fetched.content)
        work.document_checksum = d
        status = compute_status(work.prior, m, d, metadata_fast_path=cfg.metadata_fast_path)
        if status == STATUS_UNCHANGED:
            return await self._on_unchanged(work)

        work.stage = STAGE_DOCUMENT_FILTER
        res = self._document_filters.evaluate(ref, fetched)
        if res.rejected:
            return await self._on_rejected(work, res)

        work.stage = STAGE_IMPORT
        meta_out = dict(fetched.metadata or metadata)
        mc = cfg.metadata_checksummer
        if mc is not None and getattr(mc, "keep", False) and m is not None:
            meta_out[getattr(mc, "target_field", None) or DEFAULT_METADATA_TARGET_FIELD] = m
        document = await self.importer.import_document(replace(fetched, metadata=meta_out))

        work.stage = STAGE_COMMIT
        await self.committer.add(document, status)
        self.events.fire(DOCUMENT_COMMITTED_ADD, self.crawler_id, ref, status)
        await self._write(work, status)

    async def _enqueue_children(self, parent: QueuedReference, children: Iterable[str]) -> None:
        children = [c for c in (children or ()) if c and c != parent.identity]
        if not children:
            return
        depth = parent.depth + 1
        if self.config.has_max_depth and depth > self.config.max_depth:
            logger.debug(
                "[%s] %s: %d child reference(s) beyond max depth %d",
                self.crawler_id,
                parent.identity,
                len(children),
                self.config.max_depth,
            )
            return
        assert self._frontier is not None
        for child in children:
            await self._frontier.push(
                QueuedReference(identity=child, depth=depth, parent_identity=parent.identity)
            )

    async def _on_unchanged(self, work: _Work) -> None:
        self.events.fire(DOCUMENT_UNMODIFIED, self.crawler_id, work.identity, STATUS_UNCHANGED)
        await self._write(work, STATUS_UNCHANGED)

    async def _on_not_found(self, work: _Work, exc: BaseException) -> None:
        ref = work.identity
        self.events.fire(REJECTED_NOTFOUND, self.crawler_id, ref, STATUS_DELETED, reason=str(exc))
        prior = work.prior
        if prior is not None and prior.status not in GONE_STATUSES:
            work.stage = STAGE_COMMIT
            await self.committer.remove(ref)
            self.events.fire(DOCUMENT_COMMITTED_REMOVE, self.crawler_id, ref, STATUS_DELETED)
        await self._write(
            work,
            STATUS_DELETED,
            metadata_checksum=None,
            document_checksum=None,
            last_error=str(exc) or None,
            error_stage=STAGE_FETCH,
        )

    async def _on_rejected(self, work: _Work, res: FilterResult) -> None:
        self.events.fire(
            REJECTED_FILTER,
            self.crawler_id,
            work.identity,
            STATUS_REJECTED,
            stage=work.stage,
            filter=res.filter_name,
            reason=res.reason,
        )
        await self._write(work, STATUS_REJECTED, last_error=res.reason, error_stage=work.stage)
        self._note_spoiled(work, STATUS_REJECTED)

    async def _on_error(self, work: _Work, exc: BaseException) -> None:
        ref = work.identity
        kind = error_kind(exc)
        fatal = self._is_fatal(exc)
        logger.warning("[%s] %s failed at %s: %s: %s", self.crawler_id, ref, work.stage, kind, exc)
        prior = work.prior
        # previous checksums are kept so the next run compares against committed content
        await self._write(
            work,
            STATUS_ERROR,
            metadata_checksum=prior.metadata_checksum if prior else None,
            document_checksum=prior.document_checksum if prior else None,
            last_error=f"{kind}: {exc}",
            error_stage=work.stage,
        )
        self.events.fire(
            REJECTED_ERROR, self.crawler_id, ref, STATUS_ERROR, stage=work.stage, kind=kind, error=str(exc)
        )
        self._note_spoiled(work, STATUS_ERROR)
        if fatal:
            await self._request_stop(f"{kind} on {ref}", EscalatedException(ref, exc))

    def _is_fatal(self, exc: BaseException) -> bool:
        stop_on = self.config.stop_on
        if stop_on and (error_kind(exc) in stop_on or type(exc).__name__ in stop_on):
            return True
        predicate = self.config.is_fatal
        if predicate is None:
            return False
        try:
            return bool(predicate(exc))
        except Exception:
            logger.exception("[%s] is_fatal predicate raised; treating as not fatal", self.crawler_id)
            return False

    def _note_spoiled(self, work: _Work, outcome: CrawlStatus) -> None:
        prior_status = work.prior.status if work.prior else None
        if work.item.orphan:
            decision: SpoiledDecision = SPOILED_DELETE
        elif is_spoiled(prior_status, outcome):
            strategizer = self.config.spoiled_strategizer
            try:
                decision = normalize_decision(strategizer.decide(prior_status, outcome))
            except Exception:
                fallback = getattr(strategizer, "fallback", None)
                try:
                    decision = normalize_decision(fallback) if fallback else SPOILED_IGNORE
                except ValueError:
                    decision = SPOILED_IGNORE
                logger.exception(
                    "[%s] spoiled strategizer failed for %s (%s -> %s); using %s",
                    self.crawler_id, work.identity, prior_status, outcome, decision,
                )
        else:
            return
        logger.debug("[%s] spoiled %s (%s -> %s): %s", self.crawler_id, work.identity, prior_status, outcome, decision)
        self._spoiled[work.identity] = (decision, prior_status)

    async def _write(self, work: _Work, status: CrawlStatus, **overrides: Any) -> CrawlRecord:
        assert self._ledger is not None and self._session is not None
        prior = work.prior
        rec = CrawlRecord(
            identity=work.identity,
            status=status,
            crawler_id=self.crawler_id,
            metadata_checksum=work.metadata_checksum,
            document_checksum=work.document_checksum,
            depth=work.item.depth,
            parent_identity=work.item.parent_identity or (prior.parent_identity if prior else None),
            processed_in_current_run=True,
            last_session=self._session.session_id,
            created_at=prior.created_at if prior else None,
        )
        if overrides:
            rec = rec.evolve(**overrides)
        rec = await self._ledger.upsert(rec)
        self._counts[status] += 1
        self._processed += 1
        return rec


__all__ = [
    "Crawler",
    "SessionResult",
    "SessionState",
    "Fetcher",
    "Importer",
    "Committer",
    "STATE_CREATED",
    "STATE_RUNNING",
    "STATE_STOPPING",
    "STATE_STOPPED",
    "STATE_FINISHED",
]
