from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

# session lifecycle
CRAWLER_STARTED = "CRAWLER_STARTED"
CRAWLER_RESUMED = "CRAWLER_RESUMED"
CRAWLER_STOPPING = "CRAWLER_STOPPING"
CRAWLER_STOPPED = "CRAWLER_STOPPED"
CRAWLER_FINISHED = "CRAWLER_FINISHED"

# per reference
DOCUMENT_FETCHED = "DOCUMENT_FETCHED"
DOCUMENT_COMMITTED_ADD = "DOCUMENT_COMMITTED_ADD"
DOCUMENT_COMMITTED_REMOVE = "DOCUMENT_COMMITTED_REMOVE"
DOCUMENT_UNMODIFIED = "DOCUMENT_UNMODIFIED"
REJECTED_FILTER = "REJECTED_FILTER"
REJECTED_NOTFOUND = "REJECTED_NOTFOUND"
REJECTED_ERROR = "REJECTED_ERROR"
REFERENCE_REMOVED = "REFERENCE_REMOVED"

# post-run
ORPHANS_RESOLVED = "ORPHANS_RESOLVED"


@dataclass(frozen=True)
class CrawlerEvent:
    name: str
    crawler_id: str
    reference: Optional[str] = None
    status: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def __str__(self) -> str:
        ref = f" {self.reference}" if self.reference else ""
        st = f" [{self.status}]" if self.status else ""
        return f"{self.name}{ref}{st}"


Listener = Callable[[CrawlerEvent], Any]


class EventBus:
    """
    Synchronous fan-out of crawler events.

    Listeners are called in registration order, once per event. A listener
    that raises is logged and skipped; it never stops delivery to the
    listeners after it nor the crawl itself. The listener list is frozen when
    the session starts.
    """

    def __init__(self, listeners: Iterable[Listener] = ()) -> None:
        self._listeners: List[Listener] = []
        self._frozen = False
        self._lock = threading.Lock()
        for lst in listeners:
            self.add_listener(lst)

    @property
    def listeners(self) -> tuple:
        return tuple(self._listeners)

    def add_listener(self, listener: Listener) -> None:
        if not callable(listener):
            raise TypeError(f"listener must be callable, got {type(listener).__name__}")
        with self._lock:
            if self._frozen:
                raise RuntimeError("cannot add listeners once the session has started")
            self._listeners.append(listener)

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    def notify(self, event: CrawlerEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Listener %r failed on %s", listener, event)

    # convenience used by the coordinator
    def fire(
        self,
        name: str,
        crawler_id: str,
        reference: Optional[str] = None,
        status: Optional[str] = None,
        **payload: Any,
    ) -> CrawlerEvent:
        ev = CrawlerEvent(
            name=name,
            crawler_id=crawler_id,
            reference=reference,
            status=status,
            payload=payload,
        )
        logger.debug("event %s", ev)
        self.notify(ev)
        return ev
