from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional, TypeVar

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from extensions.output_paths import ledger_path

from .models import (
    GONE_STATUSES,
    STATUS_DELETED,
    STATUS_ERROR,
    STATUS_MODIFIED,
    STATUS_NEW,
    STATUS_UNCHANGED,
    CrawlRecord,
    CrawlStatus,
    QueuedReference,
)
from .utils import LedgerError, now_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")

SESSION_RUNNING = "RUNNING"
SESSION_STOPPED = "STOPPED"
SESSION_FINISHED = "FINISHED"

FRONTIER_QUEUED = "queued"      # on disk only
FRONTIER_BUFFERED = "buffered"  # also held in the in-memory buffer

_RECORD_COLUMNS = (
    "identity",
    "status",
    "metadata_checksum",
    "document_checksum",
    "depth",
    "parent_identity",
    "processed",
    "last_session",
    "last_error",
    "error_stage",
    "created_at",
    "updated_at",
)
_SELECT_RECORD = ", ".join(_RECORD_COLUMNS)


# ---------------------------------------------------------------------------
# Status computation
# ---------------------------------------------------------------------------


def compute_status(
    prior: Optional[CrawlRecord],
    metadata_checksum: Optional[str],
    document_checksum: Optional[str],
    *,
    failed: bool = False,
    deleted: bool = False,
    metadata_fast_path: bool = True,
) -> CrawlStatus:
    """
    Status of a reference given its previous persisted record and this run's
    checksums.

    A fetcher-reported deletion wins over everything, then a failure. A prior
    record that is DELETED or REJECTED never reached the sink, so the
    reference counts as NEW again.
    """
    if deleted:
        return STATUS_DELETED
    if failed:
        return STATUS_ERROR
    if prior is None or prior.status in GONE_STATUSES:
        return STATUS_NEW
    if (
        metadata_fast_path
        and metadata_checksum is not None
        and metadata_checksum == prior.metadata_checksum
    ):
        return STATUS_UNCHANGED
    if document_checksum is not None and document_checksum == prior.document_checksum:
        return STATUS_UNCHANGED
    return STATUS_MODIFIED


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionInfo:
    session_id: int
    resumed: bool = False


@contextmanager
def _transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        with suppress(sqlite3.Error):
            conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


class CrawlLedger:
    """
    Persistent crawl records of one crawler id, backed by sqlite.

    One connection per ledger, opened for the whole session. Every public
    call runs on a worker thread and holds the connection lock for a single
    statement (or one short transaction), so scans and writes from several
    workers interleave safely. Busy/locked errors are retried with backoff;
    when retries run out a ``LedgerError`` is raised.
    """

    def __init__(
        self,
        db_path: Path,
        crawler_id: str = "default",
        *,
        retry_attempts: int = 5,
        retry_initial_delay_ms: int = 50,
        retry_max_delay_ms: int = 2000,
        retry_jitter_ms: int = 50,
    ) -> None:
        self.db_path = Path(db_path).resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.crawler_id = crawler_id
        self.retry_attempts = max(1, int(retry_attempts))
        self._wait = wait_exponential_jitter(
            initial=retry_initial_delay_ms / 1000.0,
            max=retry_max_delay_ms / 1000.0,
            jitter=retry_jitter_ms / 1000.0,
        )

        self._lock = threading.Lock()
        self._closed = False
        try:
            self._conn = self._connect(self.db_path)
            self._init_schema()
        except sqlite3.Error as e:
            raise LedgerError(f"cannot open ledger {self.db_path}: {e}") from e

    @classmethod
    def for_config(cls, cfg: Any) -> "CrawlLedger":
        return cls(
            ledger_path(cfg.work_dir, cfg.crawler_id),
            cfg.crawler_id,
            retry_attempts=cfg.ledger_retry_attempts,
            retry_initial_delay_ms=cfg.ledger_retry_initial_delay_ms,
            retry_max_delay_ms=cfg.ledger_retry_max_delay_ms,
            retry_jitter_ms=cfg.ledger_retry_jitter_ms,
        )

    def _connect(self, path: Path) -> sqlite3.Connection:
        conn = sqlite3.connect(
            path,
            check_same_thread=False,
            isolation_level=None,
            timeout=5.0,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=FULL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                    crawler_id TEXT NOT NULL,
                    identity TEXT NOT NULL,
                    status TEXT NOT NULL,

                    metadata_checksum TEXT,
                    document_checksum TEXT,

                    depth INTEGER DEFAULT 0,
                    parent_identity TEXT,

                    processed INTEGER DEFAULT 0,
                    last_session INTEGER DEFAULT 0,

                    last_error TEXT,
                    error_stage TEXT,

                    created_at TEXT,
                    updated_at TEXT,
                    PRIMARY KEY (crawler_id, identity)
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_records_processed ON records (crawler_id, processed)"
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS frontier (
                    crawler_id TEXT NOT NULL,
                    identity TEXT NOT NULL,
                    depth INTEGER DEFAULT 0,
                    parent_identity TEXT,
                    orphan INTEGER DEFAULT 0,
                    state TEXT NOT NULL,
                    PRIMARY KEY (crawler_id, identity)
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    crawler_id TEXT PRIMARY KEY,
                    session_id INTEGER NOT NULL,
                    state TEXT NOT NULL,
                    started_at TEXT,
                    ended_at TEXT,
                    processed INTEGER DEFAULT 0
                )
                """
            )

    def close(self) -> None:
        with suppress(Exception):
            with self._lock:
                self._closed = True
                self._conn.close()

    # ---------- plumbing ----------

    def _retrying(self) -> Retrying:
        return Retrying(
            reraise=True,
            stop=stop_after_attempt(self.retry_attempts),
            wait=self._wait,
            retry=retry_if_exception_type(sqlite3.OperationalError),
            before_sleep=self._log_retry,
        )

    def _log_retry(self, retry_state: Any) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "ledger %s busy (attempt %d/%d): %s",
            self.db_path.name,
            retry_state.attempt_number,
            self.retry_attempts,
            exc,
        )

    def _call(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        try:
            for attempt in self._retrying():
                with attempt:
                    with self._lock:
                        if self._closed:
                            raise LedgerError(f"ledger {self.db_path} is closed")
                        return fn(self._conn)
        except sqlite3.Error as e:
            raise LedgerError(f"ledger {self.db_path.name}: {e}") from e
        raise LedgerError("unreachable")  # pragma: no cover

    async def _run(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        return await asyncio.to_thread(self._call, fn)

    def _row_to_record(self, row: sqlite3.Row) -> CrawlRecord:
        d = dict(row)
        d["crawler_id"] = self.crawler_id
        d["processed_in_current_run"] = d.pop("processed", 0)
        return CrawlRecord.from_dict(d)

    # ---------- records ----------

    async def get(self, identity: str) -> Optional[CrawlRecord]:
        row = await self._run(
            lambda c: c.execute(
                f"SELECT {_SELECT_RECORD} FROM records WHERE crawler_id=? AND identity=?",
                (self.crawler_id, identity),
            ).fetchone()
        )
        return self._row_to_record(row) if row is not None else None

    async def upsert(self, record: CrawlRecord) -> CrawlRecord:
        rec = record.normalized().evolve(crawler_id=self.crawler_id)
        now = now_iso()
        rec = rec.evolve(created_at=rec.created_at or now, updated_at=now)
        args = (
            self.crawler_id,
            rec.identity,
            rec.status,
            rec.metadata_checksum,
            rec.document_checksum,
            int(rec.depth),
            rec.parent_identity,
            1 if rec.processed_in_current_run else 0,
            int(rec.last_session),
            rec.last_error,
            rec.error_stage,
            rec.created_at,
            rec.updated_at,
        )
        await self._run(
            lambda c: c.execute(
                """
                INSERT INTO records (
                    crawler_id, identity, status,
                    metadata_checksum, document_checksum,
                    depth, parent_identity,
                    processed, last_session,
                    last_error, error_stage,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(crawler_id, identity) DO UPDATE SET
                    status=excluded.status,
                    metadata_checksum=excluded.metadata_checksum,
                    document_checksum=excluded.document_checksum,
                    depth=excluded.depth,
                    parent_identity=excluded.parent_identity,
                    processed=excluded.processed,
                    last_session=excluded.last_session,
                    last_error=excluded.last_error,
                    error_stage=excluded.error_stage,
                    created_at=COALESCE(records.created_at, excluded.created_at),
                    updated_at=excluded.updated_at
                """,
                args,
            )
        )
        return rec

    async def delete(self, identity: str) -> bool:
        cur = await self._run(
            lambda c: c.execute(
                "DELETE FROM records WHERE crawler_id=? AND identity=?",
                (self.crawler_id, identity),
            )
        )
        return (cur.rowcount or 0) > 0

    async def for_each(
        self, unprocessed_only: bool = False, *, page_size: int = 500
    ) -> AsyncIterator[CrawlRecord]:
        """
        Lazily yield this crawler's records in insertion order, one page per
        lock acquisition. Records written during the scan may or may not be
        seen; call again for a fresh pass.
        """
        where = "crawler_id=? AND rowid>?"
        if unprocessed_only:
            where += " AND processed=0"
        sql = f"SELECT rowid AS rid, {_SELECT_RECORD} FROM records WHERE {where} ORDER BY rowid LIMIT ?"

        def _page(after: int) -> List[sqlite3.Row]:
            return self._call(
                lambda c: c.execute(sql, (self.crawler_id, after, page_size)).fetchall()
            )

        last = 0
        while True:
            rows = await asyncio.to_thread(_page, last)
            if not rows:
                return
            for row in rows:
                yield self._row_to_record(row)
            last = int(rows[-1]["rid"])

    async def count(self, status: Optional[str] = None) -> int:
        if status is None:
            row = await self._run(
                lambda c: c.execute(
                    "SELECT COUNT(*) AS c FROM records WHERE crawler_id=?",
                    (self.crawler_id,),
                ).fetchone()
            )
        else:
            row = await self._run(
                lambda c: c.execute(
                    "SELECT COUNT(*) AS c FROM records WHERE crawler_id=? AND status=?",
                    (self.crawler_id, status),
                ).fetchone()
            )
        return int(row["c"] or 0) if row is not None else 0

    async def snapshot(self) -> Dict[str, CrawlRecord]:
        out: Dict[str, CrawlRecord] = {}
        async for rec in self.for_each():
            out[rec.identity] = rec
        return out

    async def processed_identities(self) -> List[str]:
        rows = await self._run(
            lambda c: c.execute(
                "SELECT identity FROM records WHERE crawler_id=? AND processed=1",
                (self.crawler_id,),
            ).fetchall()
        )
        return [r["identity"] for r in rows]

    # ---------- sessions ----------

    async def begin_session(self, resume: bool = True) -> SessionInfo:
        """
        Resume the previous session when it did not finish and left work in
        the frontier; otherwise start a new one (counter + 1, processed flags
        reset, frontier cleared).
        """
        cid = self.crawler_id
        now = now_iso()

        def _begin(c: sqlite3.Connection) -> SessionInfo:
            with _transaction(c):
                prev = c.execute(
                    "SELECT session_id, state FROM sessions WHERE crawler_id=?", (cid,)
                ).fetchone()
                pending = c.execute(
                    "SELECT COUNT(*) AS c FROM frontier WHERE crawler_id=?", (cid,)
                ).fetchone()["c"]

                if resume and prev is not None and prev["state"] != SESSION_FINISHED and pending:
                    c.execute(
                        "UPDATE sessions SET state=?, ended_at=NULL WHERE crawler_id=?",
                        (SESSION_RUNNING, cid),
                    )
                    return SessionInfo(int(prev["session_id"]), resumed=True)

                sid = (int(prev["session_id"]) if prev is not None else 0) + 1
                c.execute("UPDATE records SET processed=0 WHERE crawler_id=?", (cid,))
                c.execute("DELETE FROM frontier WHERE crawler_id=?", (cid,))
                c.execute(
                    """
                    INSERT INTO sessions (crawler_id, session_id, state, started_at, ended_at, processed)
                    VALUES (?, ?, ?, ?, NULL, 0)
                    ON CONFLICT(crawler_id) DO UPDATE SET
                        session_id=excluded.session_id,
                        state=excluded.state,
                        started_at=excluded.started_at,
                        ended_at=NULL,
                        processed=0
                    """,
                    (cid, sid, SESSION_RUNNING, now),
                )
                return SessionInfo(sid, resumed=False)

        info = await self._run(_begin)
        logger.info(
            "ledger %s: %s session %d",
            cid,
            "resumed" if info.resumed else "started",
            info.session_id,
        )
        return info

    async def end_session(self, session_id: int, state: str, processed: int) -> None:
        await self._run(
            lambda c: c.execute(
                """
                UPDATE sessions SET state=?, ended_at=?, processed=processed+?
                 WHERE crawler_id=? AND session_id=?
                """,
                (state, now_iso(), int(processed), self.crawler_id, int(session_id)),
            )
        )

    async def last_session(self) -> Optional[Dict[str, Any]]:
        row = await self._run(
            lambda c: c.execute(
                "SELECT session_id, state, started_at, ended_at, processed FROM sessions WHERE crawler_id=?",
                (self.crawler_id,),
            ).fetchone()
        )
        return dict(row) if row is not None else None

    # ---------- persisted frontier ----------

    async def frontier_push(self, item: QueuedReference, *, buffered: bool) -> None:
        await self._run(
            lambda c: c.execute(
                """
                INSERT OR REPLACE INTO frontier (crawler_id, identity, depth, parent_identity, orphan, state)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    self.crawler_id,
                    item.identity,
                    int(item.depth),
                    item.parent_identity,
                    1 if item.orphan else 0,
                    FRONTIER_BUFFERED if buffered else FRONTIER_QUEUED,
                ),
            )
        )

    async def frontier_take(self, limit: int) -> List[QueuedReference]:
        """Move up to ``limit`` on-disk entries into the buffered state, oldest first."""
        cid = self.crawler_id

        def _take(c: sqlite3.Connection) -> List[sqlite3.Row]:
            with _transaction(c):
                rows = c.execute(
                    """
                    SELECT rowid AS rid, identity, depth, parent_identity, orphan
                      FROM frontier
                     WHERE crawler_id=? AND state=?
                     ORDER BY rowid
                     LIMIT ?
                    """,
                    (cid, FRONTIER_QUEUED, int(limit)),
                ).fetchall()
                c.executemany(
                    "UPDATE frontier SET state=? WHERE rowid=?",
                    [(FRONTIER_BUFFERED, r["rid"]) for r in rows],
                )
                return rows

        rows = await self._run(_take)
        return [
            QueuedReference(
                identity=r["identity"],
                depth=int(r["depth"] or 0),
                parent_identity=r["parent_identity"],
                orphan=bool(r["orphan"]),
            )
            for r in rows
        ]

    async def frontier_done(self, identity: str) -> None:
        await self._run(
            lambda c: c.execute(
                "DELETE FROM frontier WHERE crawler_id=? AND identity=?",
                (self.crawler_id, identity),
            )
        )

    async def frontier_size(self) -> int:
        row = await self._run(
            lambda c: c.execute(
                "SELECT COUNT(*) AS c FROM frontier WHERE crawler_id=?",
                (self.crawler_id,),
            ).fetchone()
        )
        return int(row["c"] or 0) if row is not None else 0

    async def frontier_requeue(self) -> List[str]:
        """Put every entry back on disk (after a crash or stop); returns their identities."""
        cid = self.crawler_id

        def _requeue(c: sqlite3.Connection) -> List[str]:
            with _transaction(c):
                c.execute("UPDATE frontier SET state=? WHERE crawler_id=?", (FRONTIER_QUEUED, cid))
                rows = c.execute(
                    "SELECT identity FROM frontier WHERE crawler_id=? ORDER BY rowid", (cid,)
                ).fetchall()
                return [r["identity"] for r in rows]

        return await self._run(_requeue)

    async def frontier_clear(self) -> None:
        await self._run(
            lambda c: c.execute("DELETE FROM frontier WHERE crawler_id=?", (self.crawler_id,))
        )


__all__ = [
    "CrawlLedger",
    "SessionInfo",
    "compute_status",
    "SESSION_RUNNING",
    "SESSION_STOPPED",
    "SESSION_FINISHED",
]
