from __future__ import annotations
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from collector.events import (
    CRAWLER_FINISHED,
    CRAWLER_RESUMED,
    CRAWLER_STARTED,
    CRAWLER_STOPPED,
    CRAWLER_STOPPING,
    DOCUMENT_COMMITTED_ADD,
    DOCUMENT_COMMITTED_REMOVE,
    DOCUMENT_UNMODIFIED,
    ORPHANS_RESOLVED,
    REFERENCE_REMOVED,
    REJECTED_ERROR,
    REJECTED_FILTER,
    REJECTED_NOTFOUND,
    CrawlerEvent,
)
from collector.utils import atomic_write_json, now_iso

from .output_paths import DEFAULT_WORK_DIR, PROGRESS_FILENAME, ensure_crawler_dirs

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Checkpoint schema and helpers
# ---------------------------------------------------------------------------

_COUNTERS = {
    DOCUMENT_COMMITTED_ADD: "committed",
    DOCUMENT_COMMITTED_REMOVE: "removed",
    DOCUMENT_UNMODIFIED: "unmodified",
    REJECTED_FILTER: "rejected",
    REJECTED_NOTFOUND: "not_found",
    REJECTED_ERROR: "errors",
    REFERENCE_REMOVED: "ledger_removed",
}

_LIFECYCLE = {CRAWLER_STARTED, CRAWLER_RESUMED, CRAWLER_STOPPING, CRAWLER_STOPPED, CRAWLER_FINISHED, ORPHANS_RESOLVED}

_MAX_ERRORS = 50


class CrawlCheckpoint:
    """
    Progress of one logical crawl, as an event listener.
    Stored at <work_dir>/<crawler_id>/checkpoints/progress.json

    Informational only: the ledger is what a resumed session relies on.

    Listeners run synchronously on the event loop, so every flush (atomic write
    plus fsync) stalls all workers for its duration. Lifecycle events always
    flush; other events flush once every ``flush_every``.
    """

    def __init__(self, crawler_id: str, work_dir: Path = DEFAULT_WORK_DIR, *, flush_every: int = 500):
        self.crawler_id = str(crawler_id)
        dirs = ensure_crawler_dirs(work_dir, crawler_id)
        self.path = dirs["checkpoints"] / PROGRESS_FILENAME
        self.flush_every = max(1, int(flush_every))
        self.data: Dict[str, Any] = {
            "crawler_id": self.crawler_id,
            "session_id": None,
            "state": None,
            "started_at": None,
            "finished_at": None,
            "resumed": False,
            "last_reference": None,
            "counts": {name: 0 for name in _COUNTERS.values()},
            "orphans": None,
            "errors": [],
        }
        self._pending = 0
        self._lock = threading.Lock()

    # ---------------------- Core methods ----------------------

    def load(self) -> None:
        """Load existing checkpoint if exists."""
        with self._lock:
            if not self.path.exists():
                return
            try:
                self.data.update(json.loads(self.path.read_text(encoding="utf-8")))
                logger.info("[checkpoint] Loaded checkpoint for %s", self.crawler_id)
            except (OSError, ValueError) as e:
                logger.warning("[checkpoint] Failed to load %s: %s", self.path, e)

    def save(self) -> None:
        """Persist current checkpoint to disk."""
        with self._lock:
            self._save_locked()

    def _save_locked(self) -> None:
        try:
            atomic_write_json(self.path, self.data)
        except OSError as e:
            logger.error("[checkpoint] Save failed for %s: %s", self.crawler_id, e)
        self._pending = 0

    def __call__(self, event: CrawlerEvent) -> None:
        with self._lock:
            self._apply(event)
            self._pending += 1
            if event.name in _LIFECYCLE or self._pending >= self.flush_every:
                self._save_locked()

    def _apply(self, event: CrawlerEvent) -> None:
        name = event.name
        if event.reference:
            self.data["last_reference"] = event.reference

        counter = _COUNTERS.get(name)
        if counter:
            self.data["counts"][counter] = self.data["counts"].get(counter, 0) + 1

        if name in (CRAWLER_STARTED, CRAWLER_RESUMED):
            self.data.update({
                "session_id": event.payload.get("session_id"),
                "state": "RUNNING",
                "resumed": name == CRAWLER_RESUMED,
                "finished_at": None,
            })
            if name == CRAWLER_STARTED or not self.data.get("started_at"):
                self.data["started_at"] = now_iso()
            if name == CRAWLER_STARTED:
                self.data["counts"] = {k: 0 for k in _COUNTERS.values()}
                self.data["errors"] = []
        elif name == CRAWLER_STOPPING:
            self.data["state"] = "STOPPING"
            self.data["stop_reason"] = event.payload.get("reason")
        elif name in (CRAWLER_STOPPED, CRAWLER_FINISHED):
            self.data["state"] = "FINISHED" if name == CRAWLER_FINISHED else "STOPPED"
            self.data["finished_at"] = now_iso()
            self.data["processed"] = event.payload.get("processed")
        elif name == ORPHANS_RESOLVED:
            self.data["orphans"] = dict(event.payload)
        elif name == REJECTED_ERROR:
            errors = self.data.setdefault("errors", [])
            errors.append({
                "reference": event.reference,
                "stage": event.payload.get("stage"),
                "error": event.payload.get("error"),
            })
            del errors[:-_MAX_ERRORS]

    # ---------------------- Convenience accessors ----------------------

    def is_finished(self) -> bool:
        return self.data.get("state") == "FINISHED"

    def counts(self) -> Dict[str, int]:
        return dict(self.data.get("counts") or {})

    def last_reference(self) -> Optional[str]:
        return self.data.get("last_reference")
