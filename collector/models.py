from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple


# ---------------------------------------------------------------------------
# Crawl status
# ---------------------------------------------------------------------------

CrawlStatus = Literal[
    "NEW",
    "MODIFIED",
    "UNCHANGED",
    "DELETED",
    "ERROR",
    "REJECTED",
]

STATUS_NEW: CrawlStatus = "NEW"
STATUS_MODIFIED: CrawlStatus = "MODIFIED"
STATUS_UNCHANGED: CrawlStatus = "UNCHANGED"
STATUS_DELETED: CrawlStatus = "DELETED"
STATUS_ERROR: CrawlStatus = "ERROR"
STATUS_REJECTED: CrawlStatus = "REJECTED"

ALL_STATUSES: Tuple[CrawlStatus, ...] = (
    STATUS_NEW,
    STATUS_MODIFIED,
    STATUS_UNCHANGED,
    STATUS_DELETED,
    STATUS_ERROR,
    STATUS_REJECTED,
)

# "good" states: the content made it to the committer at some point
VALID_STATUSES: frozenset = frozenset({STATUS_NEW, STATUS_MODIFIED, STATUS_UNCHANGED})

# a prior record in one of these states does not hold committed content
GONE_STATUSES: frozenset = frozenset({STATUS_DELETED, STATUS_REJECTED})


def normalize_status(st: Optional[str]) -> CrawlStatus:
    s = (st or "").strip().upper()
    if s in ALL_STATUSES:
        return s  # type: ignore[return-value]
    raise ValueError(f"unknown crawl status: {st!r}")


def is_valid_status(st: Optional[str]) -> bool:
    return (st or "").strip().upper() in VALID_STATUSES


# ---------------------------------------------------------------------------
# Pipeline stages (used for diagnostics on ERROR / REJECTED records)
# ---------------------------------------------------------------------------

STAGE_REFERENCE_FILTER = "reference-filter"
STAGE_METADATA_FILTER = "metadata-filter"
STAGE_DOCUMENT_FILTER = "document-filter"
STAGE_FETCH = "fetch"
STAGE_CHECKSUM = "checksum"
STAGE_IMPORT = "import"
STAGE_COMMIT = "commit"


def _to_int_or_none(v: Any) -> Optional[int]:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        return int(v)
    s = str(v).strip()
    if not s:
        return None
    return int(float(s))


def _to_str_or_none(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v)
    return s if s.strip() else None


def _to_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if v is None:
        return False
    if isinstance(v, int):
        return bool(v)
    return str(v).strip().lower() in ("1", "true", "yes", "y", "t")


# ---------------------------------------------------------------------------
# Ledger record
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class CrawlRecord:
    """
    Last-known crawl state of one reference, as persisted in the ledger.

    ``processed_in_current_run`` is the only signal the orphan resolver
    looks at; the coordinator sets it when it is done with the reference.
    """

    identity: str
    status: CrawlStatus
    crawler_id: str = "default"

    metadata_checksum: Optional[str] = None
    document_checksum: Optional[str] = None

    depth: int = 0
    parent_identity: Optional[str] = None

    processed_in_current_run: bool = False
    last_session: int = 0

    last_error: Optional[str] = None
    error_stage: Optional[str] = None

    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def normalized(self) -> "CrawlRecord":
        return CrawlRecord(
            identity=str(self.identity),
            status=normalize_status(self.status),
            crawler_id=(self.crawler_id or "default").strip() or "default",
            metadata_checksum=_to_str_or_none(self.metadata_checksum),
            document_checksum=_to_str_or_none(self.document_checksum),
            depth=max(0, _to_int_or_none(self.depth) or 0),
            parent_identity=_to_str_or_none(self.parent_identity),
            processed_in_current_run=_to_bool(self.processed_in_current_run),
            last_session=_to_int_or_none(self.last_session) or 0,
            last_error=_to_str_or_none(self.last_error),
            error_stage=_to_str_or_none(self.error_stage),
            created_at=_to_str_or_none(self.created_at),
            updated_at=_to_str_or_none(self.updated_at),
        )

    def evolve(self, **changes: Any) -> "CrawlRecord":
        return replace(self, **changes)

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "CrawlRecord":
        src = dict(d) if isinstance(d, Mapping) else {}
        rec = CrawlRecord(
            identity=str(src.get("identity") or ""),
            status=src.get("status") or STATUS_NEW,
            crawler_id=_to_str_or_none(src.get("crawler_id")) or "default",
            metadata_checksum=src.get("metadata_checksum"),
            document_checksum=src.get("document_checksum"),
            depth=src.get("depth") or 0,
            parent_identity=src.get("parent_identity"),
            processed_in_current_run=src.get("processed_in_current_run", False),
            last_session=src.get("last_session") or 0,
            last_error=src.get("last_error"),
            error_stage=src.get("error_stage"),
            created_at=src.get("created_at"),
            updated_at=src.get("updated_at"),
        )
        return rec.normalized()

    def to_dict(self) -> Dict[str, Any]:
        base = {
            "identity": self.identity,
            "status": self.status,
            "crawler_id": self.crawler_id,
            "metadata_checksum": self.metadata_checksum,
            "document_checksum": self.document_checksum,
            "depth": int(self.depth),
            "parent_identity": self.parent_identity,
            "processed_in_current_run": bool(self.processed_in_current_run),
            "last_session": int(self.last_session),
            "last_error": self.last_error,
            "error_stage": self.error_stage,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        return {k: v for k, v in base.items() if v is not None}


# ---------------------------------------------------------------------------
# Frontier / collaborator payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QueuedReference:
    """A reference waiting in the frontier."""

    identity: str
    depth: int = 0
    parent_identity: Optional[str] = None
    # re-submitted by the orphan resolver rather than discovered this run
    orphan: bool = False


@dataclass
class FetchedDocument:
    reference: str
    content: Optional[bytes]
    metadata: Dict[str, Any] = field(default_factory=dict)
    content_type: Optional[str] = None
    # references discovered while fetching (e.g. directory entries)
    children: List[str] = field(default_factory=list)

    def text(self, encoding: str = "utf-8") -> str:
        if self.content is None:
            return ""
        return self.content.decode(encoding, errors="replace")


@dataclass
class Document:
    """Output of the importer, input of the committer."""

    reference: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    title: Optional[str] = None
    content_type: Optional[str] = None
