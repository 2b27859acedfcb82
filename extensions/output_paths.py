from __future__ import annotations
import re
from hashlib import sha1
from pathlib import Path
from typing import Union

# Base directory
DEFAULT_WORK_DIR = Path("work")

LEDGER_FILENAME = "ledger.sqlite3"
PROGRESS_FILENAME = "progress.json"
COMMITTER_FILENAME = "committed.jsonl"

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_crawler_id(crawler_id: str) -> str:
    """
    Make a crawler id safe as a single directory name. Ids that had to be
    changed get a short hash suffix so two different ids never collide.
    """
    raw = str(crawler_id or "").strip()
    safe = _UNSAFE.sub("_", raw).strip("._") or "default"
    if safe != raw:
        safe = f"{safe}-{sha1(raw.encode('utf-8')).hexdigest()[:8]}"
    return safe


def crawler_root(work_dir: Union[str, Path], crawler_id: str) -> Path:
    return Path(work_dir) / sanitize_crawler_id(crawler_id)


def ensure_crawler_dirs(work_dir: Union[str, Path], crawler_id: str) -> dict[str, Path]:
    """
    Ensure the work folders of one logical crawl exist.
    Returns a mapping for ledger, logs, checkpoints and committer subfolders.
    """
    base = crawler_root(work_dir, crawler_id)
    dirs = {
        "ledger": base / "ledger",
        "logs": base / "logs",
        "checkpoints": base / "checkpoints",
        "committer": base / "committer",
    }
    for d in dirs.values():
        d.mkdir(parents=True, exist_ok=True)
    return dirs


def ledger_path(work_dir: Union[str, Path], crawler_id: str) -> Path:
    """Stable ledger location: <work_dir>/<crawler_id>/ledger/ledger.sqlite3"""
    return ensure_crawler_dirs(work_dir, crawler_id)["ledger"] / LEDGER_FILENAME
