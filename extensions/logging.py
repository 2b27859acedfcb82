from __future__ import annotations
import logging
from contextvars import ContextVar, Token
from pathlib import Path
from typing import Dict, Optional

from .output_paths import DEFAULT_WORK_DIR, ensure_crawler_dirs, sanitize_crawler_id

# Per-task context: which crawler id are we running right now?
_CURRENT_CRAWLER_ID: ContextVar[Optional[str]] = ContextVar("_CURRENT_CRAWLER_ID", default=None)


def set_crawler_context(crawler_id: str) -> Token:
    """
    Activate the crawler context for the current task (and the tasks it
    creates afterwards). Returns a token for ``reset_crawler_context``.
    """
    return _CURRENT_CRAWLER_ID.set(str(crawler_id))


def reset_crawler_context(token: Token) -> None:
    try:
        _CURRENT_CRAWLER_ID.reset(token)
    except ValueError:
        # token created in another context; nothing to undo here
        pass


def current_crawler_id() -> Optional[str]:
    return _CURRENT_CRAWLER_ID.get()


class _CrawlerFilter(logging.Filter):
    """
    Allow records if they belong to the current crawler context OR
    if their logger name starts with crawler.<crawler_id>.
    This lets us attach the handler high (root) and still isolate per crawler.
    """
    def __init__(self, crawler_id: str) -> None:
        super().__init__()
        self.crawler_id = str(crawler_id)

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        if _CURRENT_CRAWLER_ID.get() == self.crawler_id:
            return True
        name = getattr(record, "name", "") or ""
        return name.startswith(f"crawler.{self.crawler_id}")


class LoggingExtension:
    def __init__(
        self,
        work_dir: Path = DEFAULT_WORK_DIR,
        *,
        global_level: int = logging.INFO,
        per_crawler_level: Optional[int] = None,  # default to global_level if None
        console: bool = True,
    ) -> None:
        self.work_dir = Path(work_dir)
        self.global_level = global_level
        self.per_crawler_level = per_crawler_level if per_crawler_level is not None else global_level
        self._crawler_handlers: Dict[str, logging.Handler] = {}
        self._console: Optional[logging.Handler] = None

        if console:
            self._install_console(self.global_level)

        # Make root permissive; rely on handler levels to filter.
        logging.getLogger().setLevel(logging.DEBUG)

    # ---------------- Console ----------------

    def _install_console(self, level: int) -> None:
        root = logging.getLogger()
        # Remove any default handlers (e.g., from basicConfig)
        for h in list(root.handlers):
            root.removeHandler(h)

        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        root.addHandler(ch)
        self._console = ch

    # ---------------- Crawler logger ----------------

    def log_path(self, crawler_id: str) -> Path:
        dirs = ensure_crawler_dirs(self.work_dir, crawler_id)
        return dirs["logs"] / f"{sanitize_crawler_id(crawler_id)}.log"

    def get_crawler_logger(self, crawler_id: str) -> logging.Logger:
        """
        Return a crawler-scoped logger. Also ensures a per-crawler file
        handler is attached at root with a filter that routes only the
        current crawler's records into <work_dir>/<crawler_id>/logs/.
        """
        if crawler_id not in self._crawler_handlers:
            fh = logging.FileHandler(self.log_path(crawler_id), mode="a", encoding="utf-8")
            fh.setLevel(self.per_crawler_level)
            fh.addFilter(_CrawlerFilter(crawler_id))
            fh.setFormatter(logging.Formatter(
                fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))
            logging.getLogger().addHandler(fh)
            self._crawler_handlers[crawler_id] = fh

        logger = logging.getLogger(f"crawler.{crawler_id}")
        logger.setLevel(logging.DEBUG)
        logger.propagate = True
        return logger

    # ---------------- Context helpers ----------------

    def set_crawler_context(self, crawler_id: str) -> Token:
        return set_crawler_context(crawler_id)

    def reset_crawler_context(self, token: Token) -> None:
        reset_crawler_context(token)

    # ---------------- Cleanup ----------------

    def close(self) -> None:
        root = logging.getLogger()
        handlers = list(self._crawler_handlers.values())
        if self._console is not None:
            handlers.append(self._console)
        for h in handlers:
            root.removeHandler(h)
            h.flush()
            h.close()
        self._crawler_handlers.clear()
        self._console = None
