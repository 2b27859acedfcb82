"""
Checksummers: cheap digests used to tell whether a reference changed since the
previous run without comparing full content.

Two different references may legitimately produce the same checksum (e.g. two
URLs serving the same file); a checksum is an equivalence class, not an id.

"No data available" is never an error: a checksummer returns ``None`` and the
caller falls back to the next stage. ``ChecksumError`` is reserved for input
that is malformed (wrong type).
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Protocol, Tuple

from .utils import ChecksumError

DEFAULT_METADATA_TARGET_FIELD = "collector.metadata-checksum"

# file system fetcher metadata keys
FILE_SIZE_FIELD = "collector.file-size"
FILE_MODIFIED_FIELD = "collector.file-modified"


class MetadataChecksummer(Protocol):
    keep: bool
    target_field: str

    def create_metadata_checksum(self, metadata: Mapping[str, Any]) -> Optional[str]:  # pragma: no cover - interface
        ...


class DocumentChecksummer(Protocol):
    def create_document_checksum(self, content: Any) -> Optional[str]:  # pragma: no cover - interface
        ...


# ---------------------------------------------------------------------------
# Document checksummers
# ---------------------------------------------------------------------------


class HashDocumentChecksummer:
    """Hex digest of the whole content using any hashlib algorithm."""

    def __init__(self, algorithm: str = "md5") -> None:
        algo = (algorithm or "").strip().lower()
        if algo not in hashlib.algorithms_available:
            raise ValueError(f"unsupported hash algorithm: {algorithm!r}")
        self.algorithm = algo

    def create_document_checksum(self, content: Any) -> Optional[str]:
        if content is None:
            return None
        if isinstance(content, str):
            data = content.encode("utf-8")
        elif isinstance(content, (bytes, bytearray, memoryview)):
            data = bytes(content)
        else:
            raise ChecksumError(
                f"cannot checksum content of type {type(content).__name__}"
            )
        h = hashlib.new(self.algorithm)
        h.update(data)
        return h.hexdigest()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.algorithm!r})"


class MD5DocumentChecksummer(HashDocumentChecksummer):
    def __init__(self) -> None:
        super().__init__("md5")


# ---------------------------------------------------------------------------
# Metadata checksummers
# ---------------------------------------------------------------------------


def _values_of(v: Any) -> Tuple[str, ...]:
    if v is None:
        return ()
    if isinstance(v, (list, tuple, set, frozenset)):
        return tuple(str(x) for x in v if x is not None)
    return (str(v),)


@dataclass(frozen=True)
class FieldsMetadataChecksummer:
    """
    Digest over a selection of metadata fields (e.g. HTTP ``Last-Modified`` /
    ``ETag`` or file size + mtime). Field lookup is case-insensitive unless
    ``case_sensitive`` is set; field order never matters.

    ``keep``/``target_field``: when ``keep`` is true the coordinator stores the
    checksum in the document metadata it hands to the committer.
    """

    fields: Tuple[str, ...]
    case_sensitive: bool = False
    keep: bool = False
    target_field: str = DEFAULT_METADATA_TARGET_FIELD

    def _select(self, metadata: Mapping[str, Any]) -> Iterable[Tuple[str, Tuple[str, ...]]]:
        if self.case_sensitive:
            lookup = dict(metadata)
            wanted = {f: f for f in self.fields}
        else:
            lookup = {str(k).lower(): v for k, v in metadata.items()}
            wanted = {f.lower(): f for f in self.fields}
        for key in sorted(wanted):
            if key in lookup:
                vals = _values_of(lookup[key])
                if vals:
                    yield key, vals

    def create_metadata_checksum(self, metadata: Mapping[str, Any]) -> Optional[str]:
        if metadata is None:
            return None
        if not isinstance(metadata, Mapping):
            raise ChecksumError(
                f"metadata must be a mapping, got {type(metadata).__name__}"
            )
        parts = [f"{k}={'|'.join(vals)}" for k, vals in self._select(metadata)]
        if not parts:
            return None
        return hashlib.md5("\n".join(parts).encode("utf-8")).hexdigest()


def LastModifiedMetadataChecksummer(*, keep: bool = False) -> FieldsMetadataChecksummer:
    """Default metadata checksummer covering the HTTP and file system fetchers."""
    return FieldsMetadataChecksummer(
        fields=(
            "Last-Modified",
            "ETag",
            "Content-Length",
            FILE_MODIFIED_FIELD,
            FILE_SIZE_FIELD,
        ),
        keep=keep,
    )
