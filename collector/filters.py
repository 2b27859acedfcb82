from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Literal, Mapping, Optional, Protocol, Sequence, Tuple
from urllib.parse import urlsplit

import tldextract

from .models import FetchedDocument
from .utils import FilterError

__all__ = [
    "FilterOutcome",
    "FilterResult",
    "FilterChain",
    "ReferenceFilter",
    "MetadataFilter",
    "DocumentFilter",
    "RegexReferenceFilter",
    "ExtensionReferenceFilter",
    "DomainReferenceFilter",
    "RegexMetadataFilter",
    "RegexDocumentFilter",
    "MaxSizeDocumentFilter",
]

logger = logging.getLogger(__name__)

FilterOutcome = Literal["ACCEPT", "REJECT"]
ACCEPT: FilterOutcome = "ACCEPT"
REJECT: FilterOutcome = "REJECT"

OnMatch = Literal["INCLUDE", "EXCLUDE"]
INCLUDE: OnMatch = "INCLUDE"
EXCLUDE: OnMatch = "EXCLUDE"


def _normalize_on_match(v: str) -> OnMatch:
    s = (v or "").strip().upper()
    if s not in (INCLUDE, EXCLUDE):
        raise ValueError(f"on_match must be INCLUDE or EXCLUDE, got {v!r}")
    return s  # type: ignore[return-value]


def _accepts(matched: bool, on_match: OnMatch) -> bool:
    # INCLUDE keeps what matches, EXCLUDE drops it
    return matched if on_match == INCLUDE else not matched


# =============================================================================
# Interfaces
# =============================================================================


class ReferenceFilter(Protocol):
    def accept_reference(self, reference: str) -> bool:  # pragma: no cover - interface
        ...


class MetadataFilter(Protocol):
    def accept_metadata(self, reference: str, metadata: Mapping[str, Any]) -> bool:  # pragma: no cover - interface
        ...


class DocumentFilter(Protocol):
    def accept_document(self, reference: str, document: FetchedDocument) -> bool:  # pragma: no cover - interface
        ...


@dataclass(frozen=True)
class FilterResult:
    outcome: FilterOutcome
    filter_name: Optional[str] = None
    reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.outcome == ACCEPT

    @property
    def rejected(self) -> bool:
        return self.outcome == REJECT


_ACCEPTED = FilterResult(ACCEPT)


def _filter_name(f: Any) -> str:
    return getattr(f, "name", None) or type(f).__name__


class FilterChain:
    """
    Ordered filters of one stage (reference, metadata or document).

    The first filter that says no wins; an empty chain accepts. A filter that
    raises is reported as a rejection carrying the FilterError text instead of
    propagating.
    """

    def __init__(self, stage: str, filters: Iterable[Any] = (), *, method: Optional[str] = None) -> None:
        self.stage = stage
        self.filters: Tuple[Any, ...] = tuple(filters or ())
        self.method = method or f"accept_{stage}"
        for f in self.filters:
            if not callable(getattr(f, self.method, None)):
                raise TypeError(f"{_filter_name(f)} has no {self.method}()")

    def __len__(self) -> int:
        return len(self.filters)

    def evaluate(self, *args: Any) -> FilterResult:
        for f in self.filters:
            name = _filter_name(f)
            try:
                ok = bool(getattr(f, self.method)(*args))
            except Exception as e:
                err = FilterError(f"{name} failed: {e}")
                logger.warning("%s filter %s raised on %s: %s", self.stage, name, args[0] if args else "?", e)
                return FilterResult(REJECT, name, str(err))
            if not ok:
                return FilterResult(REJECT, name, f"rejected by {self.stage} filter {name}")
        return _ACCEPTED

    @classmethod
    def for_references(cls, filters: Iterable[Any]) -> "FilterChain":
        return cls("reference", filters)

    @classmethod
    def for_metadata(cls, filters: Iterable[Any]) -> "FilterChain":
        chain = cls("metadata", filters)
        return _ReadOnlyMetadataChain(chain)

    @classmethod
    def for_documents(cls, filters: Iterable[Any]) -> "FilterChain":
        return cls("document", filters)


class _ReadOnlyMetadataChain(FilterChain):
    """Hands metadata to filters as a read-only view."""

    def __init__(self, chain: FilterChain) -> None:
        super().__init__(chain.stage, chain.filters, method=chain.method)

    def evaluate(self, reference: str, metadata: Mapping[str, Any]) -> FilterResult:  # type: ignore[override]
        view = MappingProxyType(dict(metadata or {}))
        return super().evaluate(reference, view)


# =============================================================================
# Reference filters
# =============================================================================


class RegexReferenceFilter:
    def __init__(self, pattern: str, on_match: str = INCLUDE, *, case_sensitive: bool = False) -> None:
        self.pattern = pattern
        self.on_match = _normalize_on_match(on_match)
        self._re = re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
        self.name = f"RegexReferenceFilter({pattern!r}, {self.on_match})"

    def accept_reference(self, reference: str) -> bool:
        return _accepts(bool(self._re.search(reference or "")), self.on_match)


def _path_of(reference: str) -> str:
    ref = reference or ""
    if "://" in ref:
        return urlsplit(ref).path or ""
    return ref


class ExtensionReferenceFilter:
    """Matches on the path extension, e.g. ``("pdf", "docx")``; case-insensitive."""

    def __init__(self, extensions: Sequence[str], on_match: str = EXCLUDE) -> None:
        exts = {e.strip().lower().lstrip(".") for e in extensions if e and e.strip()}
        if not exts:
            raise ValueError("ExtensionReferenceFilter needs at least one extension")
        self.extensions = frozenset(exts)
        self.on_match = _normalize_on_match(on_match)
        self.name = f"ExtensionReferenceFilter({','.join(sorted(self.extensions))}, {self.on_match})"

    def accept_reference(self, reference: str) -> bool:
        ext = os.path.splitext(_path_of(reference))[1].lower().lstrip(".")
        return _accepts(bool(ext) and ext in self.extensions, self.on_match)


# bundled public suffix snapshot only, no network fetch
_TLD_EXTRACT = tldextract.TLDExtract(suffix_list_urls=())


def get_base_domain(host: str) -> str:
    """
    Return registrable domain (eTLD+1); fall back to host if unknown.
    """
    host = (host or "").strip().lower().strip(".")
    if not host:
        return ""
    if host.startswith("www."):
        host = host[4:]
    ext = _TLD_EXTRACT(host)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}"
    return host


class DomainReferenceFilter:
    """Matches references whose registrable domain is one of ``domains``."""

    def __init__(self, domains: Sequence[str], on_match: str = INCLUDE) -> None:
        doms = {get_base_domain(d) for d in domains if d and d.strip()}
        if not doms:
            raise ValueError("DomainReferenceFilter needs at least one domain")
        self.domains = frozenset(doms)
        self.on_match = _normalize_on_match(on_match)
        self.name = f"DomainReferenceFilter({','.join(sorted(self.domains))}, {self.on_match})"

    def accept_reference(self, reference: str) -> bool:
        host = urlsplit(reference or "").hostname or ""
        matched = bool(host) and get_base_domain(host) in self.domains
        return _accepts(matched, self.on_match)


# =============================================================================
# Metadata filters
# =============================================================================


class RegexMetadataFilter:
    """Matches when any value of ``field`` (case-insensitive key) matches ``pattern``."""

    def __init__(self, field: str, pattern: str, on_match: str = INCLUDE) -> None:
        self.field = field
        self.pattern = pattern
        self.on_match = _normalize_on_match(on_match)
        self._re = re.compile(pattern, re.IGNORECASE)
        self.name = f"RegexMetadataFilter({field}~{pattern!r}, {self.on_match})"

    def accept_metadata(self, reference: str, metadata: Mapping[str, Any]) -> bool:
        wanted = self.field.lower()
        values: Tuple[Any, ...] = ()
        for k, v in metadata.items():
            if str(k).lower() == wanted:
                values = tuple(v) if isinstance(v, (list, tuple)) else (v,)
                break
        matched = any(self._re.search(str(v)) for v in values if v is not None)
        return _accepts(matched, self.on_match)


# =============================================================================
# Document filters
# =============================================================================


class RegexDocumentFilter:
    def __init__(self, pattern: str, on_match: str = INCLUDE, *, encoding: str = "utf-8") -> None:
        self.pattern = pattern
        self.on_match = _normalize_on_match(on_match)
        self.encoding = encoding
        self._re = re.compile(pattern, re.IGNORECASE | re.MULTILINE)
        self.name = f"RegexDocumentFilter({pattern!r}, {self.on_match})"

    def accept_document(self, reference: str, document: FetchedDocument) -> bool:
        return _accepts(bool(self._re.search(document.text(self.encoding))), self.on_match)


class MaxSizeDocumentFilter:
    def __init__(self, max_bytes: int) -> None:
        if max_bytes < 0:
            raise ValueError("max_bytes must be >= 0")
        self.max_bytes = int(max_bytes)
        self.name = f"MaxSizeDocumentFilter({self.max_bytes})"

    def accept_document(self, reference: str, document: FetchedDocument) -> bool:
        return len(document.content or b"") <= self.max_bytes
