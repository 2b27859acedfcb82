from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Optional, Tuple

from .checksum import (
    DocumentChecksummer,
    LastModifiedMetadataChecksummer,
    MD5DocumentChecksummer,
    MetadataChecksummer,
)
from .orphans import ORPHANS_PROCESS, OrphansStrategy, normalize_orphans_strategy
from .spoiled import GenericSpoiledReferenceStrategizer, SpoiledReferenceStrategizer
from .utils import getenv_bool, getenv_csv, getenv_int, getenv_str

# ---------- Project Paths ----------
DEFAULT_WORK_DIR: Path = Path("work")


# ---------- Config dataclass ----------
@dataclass(frozen=True)
class CrawlerConfig:
    # Identity / storage
    crawler_id: str = "default"
    work_dir: Path = DEFAULT_WORK_DIR

    # Concurrency & limits
    num_threads: int = 2
    max_documents: int = -1                     # -1 = unlimited
    max_depth: int = -1                         # -1 = unlimited
    frontier_capacity: int = 1000               # in-memory frontier buffer; overflow stays on disk

    # Run policies
    orphans_strategy: OrphansStrategy = ORPHANS_PROCESS
    stop_on: Tuple[str, ...] = ()               # error kinds that stop the whole session
    metadata_fast_path: bool = True             # metadata checksum match skips the document fetch
    resume: bool = True                         # continue an unfinished session's frontier

    # Ledger retry / backoff
    ledger_retry_attempts: int = 5
    ledger_retry_initial_delay_ms: int = 50
    ledger_retry_max_delay_ms: int = 2000
    ledger_retry_jitter_ms: int = 50

    # Logging
    log_level: str = "INFO"

    # ---------- Pluggable pieces (never from env) ----------
    reference_filters: Tuple[Any, ...] = ()
    metadata_filters: Tuple[Any, ...] = ()
    document_filters: Tuple[Any, ...] = ()
    metadata_checksummer: Optional[MetadataChecksummer] = field(
        default_factory=LastModifiedMetadataChecksummer
    )
    document_checksummer: Optional[DocumentChecksummer] = field(
        default_factory=MD5DocumentChecksummer
    )
    spoiled_strategizer: SpoiledReferenceStrategizer = field(
        default_factory=GenericSpoiledReferenceStrategizer
    )
    listeners: Tuple[Callable[..., Any], ...] = ()
    # extra "is this exception fatal to the session" predicate, besides stop_on kinds
    is_fatal: Optional[Callable[[BaseException], bool]] = None

    def __post_init__(self) -> None:
        if not str(self.crawler_id or "").strip():
            raise ValueError("crawler_id must not be blank")
        if self.num_threads < 1:
            raise ValueError("num_threads must be >= 1")
        if self.frontier_capacity < 1:
            raise ValueError("frontier_capacity must be >= 1")
        object.__setattr__(self, "work_dir", Path(self.work_dir))
        object.__setattr__(
            self, "orphans_strategy", normalize_orphans_strategy(self.orphans_strategy)
        )
        for name in ("stop_on", "reference_filters", "metadata_filters", "document_filters", "listeners"):
            object.__setattr__(self, name, tuple(getattr(self, name) or ()))

    @property
    def has_max_documents(self) -> bool:
        return self.max_documents >= 0

    @property
    def has_max_depth(self) -> bool:
        return self.max_depth >= 0


# ---------- Loader ----------
def load_config(**overrides: Any) -> CrawlerConfig:
    """
    Build a config from COLLECTOR_* environment variables (clamped), then apply
    keyword overrides. The result is immutable for the session's lifetime.
    """
    cfg = CrawlerConfig(
        crawler_id=getenv_str("COLLECTOR_CRAWLER_ID", "default"),
        work_dir=Path(getenv_str("COLLECTOR_WORK_DIR", str(DEFAULT_WORK_DIR))),

        num_threads=getenv_int("COLLECTOR_NUM_THREADS", 2, 1, 256),
        max_documents=getenv_int("COLLECTOR_MAX_DOCUMENTS", -1, -1, None),
        max_depth=getenv_int("COLLECTOR_MAX_DEPTH", -1, -1, None),
        frontier_capacity=getenv_int("COLLECTOR_FRONTIER_CAPACITY", 1000, 1, 1_000_000),

        orphans_strategy=getenv_str("COLLECTOR_ORPHANS_STRATEGY", ORPHANS_PROCESS),
        stop_on=getenv_csv("COLLECTOR_STOP_ON", ""),
        metadata_fast_path=getenv_bool("COLLECTOR_METADATA_FAST_PATH", True),
        resume=getenv_bool("COLLECTOR_RESUME", True),

        ledger_retry_attempts=getenv_int("COLLECTOR_LEDGER_RETRY_ATTEMPTS", 5, 1, 20),
        ledger_retry_initial_delay_ms=getenv_int("COLLECTOR_LEDGER_RETRY_INITIAL_DELAY_MS", 50, 1, 10_000),
        ledger_retry_max_delay_ms=getenv_int("COLLECTOR_LEDGER_RETRY_MAX_DELAY_MS", 2000, 1, 60_000),
        ledger_retry_jitter_ms=getenv_int("COLLECTOR_LEDGER_RETRY_JITTER_MS", 50, 0, 5_000),

        log_level=getenv_str("COLLECTOR_LOG_LEVEL", "INFO").upper(),
    )
    if overrides:
        cfg = replace(cfg, **overrides)
    return cfg
