from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional

from .events import DOCUMENT_COMMITTED_REMOVE, ORPHANS_RESOLVED, REFERENCE_REMOVED, EventBus
from .models import GONE_STATUSES, CrawlRecord, QueuedReference

logger = logging.getLogger(__name__)

OrphansStrategy = Literal["PROCESS", "DELETE", "IGNORE"]

ORPHANS_PROCESS: OrphansStrategy = "PROCESS"
ORPHANS_DELETE: OrphansStrategy = "DELETE"
ORPHANS_IGNORE: OrphansStrategy = "IGNORE"

_STRATEGIES = (ORPHANS_PROCESS, ORPHANS_DELETE, ORPHANS_IGNORE)


def normalize_orphans_strategy(v: Optional[str]) -> OrphansStrategy:
    s = (v or "").strip().upper()
    if s in _STRATEGIES:
        return s  # type: ignore[return-value]
    raise ValueError(f"unknown orphans strategy: {v!r} (expected PROCESS, DELETE or IGNORE)")


@dataclass
class OrphanReport:
    strategy: OrphansStrategy
    found: int = 0
    processed: int = 0      # re-submitted to the frontier
    deleted: int = 0
    ignored: int = 0
    failed: int = 0         # committer removal failed; record kept for next run
    identities: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "found": self.found,
            "processed": self.processed,
            "deleted": self.deleted,
            "ignored": self.ignored,
            "failed": self.failed,
        }


Submit = Callable[[QueuedReference], Awaitable[bool]]


class OrphanResolver:
    """
    Reconciles ledger records the current session never touched.

    Must only run once the frontier is drained and no worker is in flight;
    the scan is completed before any record is acted upon.
    """

    def __init__(
        self,
        ledger: Any,
        committer: Any,
        events: EventBus,
        crawler_id: str,
        strategy: str = ORPHANS_PROCESS,
    ) -> None:
        self.ledger = ledger
        self.committer = committer
        self.events = events
        self.crawler_id = crawler_id
        self.strategy = normalize_orphans_strategy(strategy)

    async def collect(self) -> List[CrawlRecord]:
        return [rec async for rec in self.ledger.for_each(unprocessed_only=True)]

    async def resolve(self, submit: Optional[Submit] = None) -> OrphanReport:
        orphans = await self.collect()
        report = OrphanReport(
            strategy=self.strategy,
            found=len(orphans),
            identities=[o.identity for o in orphans],
        )
        if orphans:
            logger.info("%d orphan(s) found, strategy=%s", len(orphans), self.strategy)

        if self.strategy == ORPHANS_PROCESS:
            if submit is None:
                raise RuntimeError("PROCESS orphans strategy needs a frontier to submit to")
            for rec in orphans:
                item = QueuedReference(
                    identity=rec.identity,
                    depth=rec.depth,
                    parent_identity=rec.parent_identity,
                    orphan=True,
                )
                if await submit(item):
                    report.processed += 1
        elif self.strategy == ORPHANS_DELETE:
            for rec in orphans:
                if await self._delete(rec):
                    report.deleted += 1
                else:
                    report.failed += 1
        else:
            report.ignored = len(orphans)

        self.events.fire(ORPHANS_RESOLVED, self.crawler_id, **report.to_dict())
        return report

    async def _delete(self, rec: CrawlRecord) -> bool:
        if rec.status not in GONE_STATUSES:
            try:
                await self.committer.remove(rec.identity)
            except Exception as e:
                logger.error("orphan %s: committer removal failed: %s", rec.identity, e)
                return False
            self.events.fire(DOCUMENT_COMMITTED_REMOVE, self.crawler_id, rec.identity, rec.status, orphan=True)
        await self.ledger.delete(rec.identity)
        self.events.fire(REFERENCE_REMOVED, self.crawler_id, rec.identity, rec.status, orphan=True)
        return True
