from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential_jitter

logger = logging.getLogger(__name__)

# ========== Environment & Logging helpers ==========

def getenv_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() else default

def getenv_int(name: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = int(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


# parse CSV-ish envs into tuples (trim blanks)
def getenv_csv(name: str, default_csv: str) -> Tuple[str, ...]:
    raw = getenv_str(name, default_csv)
    parts = [x.strip() for x in raw.split(",")]
    return tuple(p for p in parts if p)

def init_logging(log_path: Path, level: int = logging.INFO) -> List[logging.Handler]:
    """
    Simple file+console logger. Call once early (e.g., in run_crawl.py) when the
    per-crawler LoggingExtension is not wanted. Replaces any root handlers and
    returns the installed ones so the caller can close them.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    fmt = "%(levelname)s %(asctime)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    handlers = [
        logging.FileHandler(log_path, encoding="utf-8"),
        logging.StreamHandler()
    ]
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt, handlers=handlers, force=True)
    return handlers

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

# ========== Exceptions ==========

class CollectorError(Exception):
    """Base class of every error the collector raises on purpose.

    ``kind`` is the tag matched against ``CrawlerConfig.stop_on``.
    """
    kind = "collector"

class ChecksumError(CollectorError):
    """Malformed input handed to a checksummer. Fatal to that reference only."""
    kind = "checksum"

class FetchError(CollectorError):
    """Network or file level failure while fetching a reference."""
    kind = "fetch"

class ReferenceNotFound(FetchError):
    """The fetch layer reports the reference is gone (HTTP 404/410, missing file)."""
    kind = "not-found"

class NonRetryableFetchError(FetchError):
    """Permanent fetch failure (e.g. HTTP 401/403); asking again will not help."""

class FilterError(CollectorError):
    """A filter predicate itself failed. Treated as a rejection."""
    kind = "filter"

class ImporterError(CollectorError):
    kind = "import"

class CommitterError(CollectorError):
    kind = "commit"

class LedgerError(CollectorError):
    """Storage failure after retries are exhausted. Always stops the session."""
    kind = "ledger"

class EscalatedException(CollectorError):
    """Wraps an exception whose kind is in the stop-on set."""
    kind = "escalated"

    def __init__(self, reference: str, cause: BaseException):
        super().__init__(f"{error_kind(cause)} while processing {reference}: {cause}")
        self.reference = reference
        self.cause = cause


def error_kind(exc: BaseException) -> str:
    kind = getattr(exc, "kind", None)
    if isinstance(kind, str) and kind:
        return kind
    return type(exc).__name__


# ========== Retry decorators ==========

_RETRYABLE = (FetchError, IOError, TimeoutError)


def _is_retryable(exc: BaseException) -> bool:
    # gone or forbidden references do not come back by asking again
    return isinstance(exc, _RETRYABLE) and not isinstance(exc, (ReferenceNotFound, NonRetryableFetchError))


def retry_sync(max_attempts: int, initial_delay_ms: int, max_delay_ms: int, jitter_ms: int):
    return retry(
        reraise=True,
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential_jitter(
            initial=initial_delay_ms / 1000.0,
            max=max_delay_ms / 1000.0,
            jitter=jitter_ms / 1000.0,
        ),
        retry=retry_if_exception(_is_retryable),
    )

def retry_async(max_attempts: int, initial_delay_ms: int, max_delay_ms: int, jitter_ms: int):
    def _decorator(fn: Callable[..., Awaitable]):
        @retry(
            reraise=True,
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential_jitter(
                initial=initial_delay_ms / 1000.0,
                max=max_delay_ms / 1000.0,
                jitter=jitter_ms / 1000.0,
            ),
            retry=retry_if_exception(_is_retryable),
        )
        async def wrapper(*args, **kwargs):
            return await fn(*args, **kwargs)
        return wrapper
    return _decorator

# ========== File I/O ==========

def atomic_write_text(path: Path, data: str, encoding: str = "utf-8") -> None:
    """
    Write text atomically using a NamedTemporaryFile and os.replace on the same filesystem.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding=encoding, dir=str(path.parent), delete=False) as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)

def atomic_write_json(path: Path, obj: Any, *, pretty: bool = True) -> None:
    if pretty:
        data = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        data = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    atomic_write_text(path, data)

def append_jsonl(path: Path, json_line: str, encoding: str = "utf-8") -> None:
    """
    Fast single-line append using O_APPEND.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    b = (json_line.rstrip() + "\n").encode(encoding)
    fd = os.open(path, os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o644)
    try:
        os.write(fd, b)
    finally:
        os.close(fd)

def safe_json_loads(s: str) -> Optional[dict]:
    try:
        obj = json.loads(s)
    except (TypeError, ValueError):
        return None
    return obj if isinstance(obj, dict) else None
