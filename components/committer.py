from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator

from collector.models import CrawlStatus, Document
from collector.utils import CommitterError, append_jsonl, now_iso, retry_sync, safe_json_loads

logger = logging.getLogger(__name__)

OP_ADD = "add"
OP_REMOVE = "remove"


class JsonlCommitter:
    """
    Append-only sink: one JSON line per add/remove, written with O_APPEND so
    lines from concurrent workers never interleave.
    """

    def __init__(self, path: Path, *, include_content: bool = True, retry_attempts: int = 3) -> None:
        self.path = Path(path)
        self.include_content = include_content
        self.added = 0
        self.removed = 0
        self._append = retry_sync(retry_attempts, 50, 1000, 50)(append_jsonl)

    async def add(self, document: Document, status: CrawlStatus) -> None:
        line: Dict[str, Any] = {
            "op": OP_ADD,
            "reference": document.reference,
            "status": status,
            "title": document.title,
            "content_type": document.content_type,
            "metadata": document.metadata,
            "committed_at": now_iso(),
        }
        if self.include_content:
            line["content"] = document.content
        await self._write(line)
        self.added += 1

    async def remove(self, reference: str) -> None:
        await self._write({"op": OP_REMOVE, "reference": reference, "committed_at": now_iso()})
        self.removed += 1

    async def _write(self, line: Dict[str, Any]) -> None:
        try:
            data = json.dumps(line, ensure_ascii=False, default=str)
            await asyncio.to_thread(self._append, self.path, data)
        except (OSError, TypeError, ValueError) as e:
            raise CommitterError(f"{line['op']} {line['reference']}: {e}") from e

    def operations(self) -> Iterator[Dict[str, Any]]:
        """Replay the committed operations in order, skipping unreadable lines."""
        if not self.path.exists():
            return
        with open(self.path, "r", encoding="utf-8") as f:
            for raw in f:
                obj = safe_json_loads(raw)
                if obj is None:
                    logger.warning("skipping unreadable line in %s", self.path)
                    continue
                yield obj
