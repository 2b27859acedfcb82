from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

import httpx

from collector.checksum import FILE_MODIFIED_FIELD, FILE_SIZE_FIELD
from collector.models import FetchedDocument
from collector.utils import (
    FetchError,
    NonRetryableFetchError,
    ReferenceNotFound,
    retry_async,
)

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "collector/0.1 (+incremental crawler)"

STATUS_CODE_FIELD = "collector.status-code"
IS_DIRECTORY_FIELD = "collector.is-directory"

_GONE = (404, 410)
_NO_HEAD = (405, 501)


def _content_type(headers: Mapping[str, Any]) -> Optional[str]:
    raw = headers.get("content-type") or headers.get("Content-Type")
    if not raw:
        return None
    return str(raw).split(";", 1)[0].strip().lower() or None


# ========== HTTP ==========


class HttpFetcher:
    """
    HEAD for metadata, GET for the document, over a shared httpx.AsyncClient.

    404/410 mean the reference is gone. 429/5xx and transport errors are
    retried; other 4xx are permanent failures.
    """

    def __init__(
        self,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 20.0,
        user_agent: str = DEFAULT_USER_AGENT,
        retry_attempts: int = 3,
        retry_initial_delay_ms: int = 200,
        retry_max_delay_ms: int = 5000,
        retry_jitter_ms: int = 200,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self.timeout_s = timeout_s
        self.user_agent = user_agent

        retry = retry_async(retry_attempts, retry_initial_delay_ms, retry_max_delay_ms, retry_jitter_ms)
        self._head_with_retry = retry(self._head)
        self._get_with_retry = retry(self._get)

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_s),
                limits=httpx.Limits(max_keepalive_connections=16, max_connections=64),
                headers={
                    "User-Agent": self.user_agent,
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                },
                follow_redirects=True,
            )
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "HttpFetcher":
        self._ensure_client()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    # ---------- collaborator API ----------

    async def fetch_metadata(self, reference: str) -> Dict[str, Any]:
        return await self._head_with_retry(reference)

    async def fetch_document(self, reference: str, metadata: Mapping[str, Any]) -> FetchedDocument:
        return await self._get_with_retry(reference, metadata)

    # ---------- internals ----------

    async def _request(self, method: str, reference: str) -> httpx.Response:
        client = self._ensure_client()
        try:
            return await client.request(method, reference)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            # transient network: retry allowed by decorator
            raise FetchError(f"{method} {reference}: {e}") from e
        except httpx.HTTPError as e:
            raise FetchError(f"{method} {reference}: {e}") from e

    @staticmethod
    def _check_status(method: str, reference: str, status: int) -> None:
        if status in _GONE:
            raise ReferenceNotFound(f"HTTP {status} for {reference}")
        if status == 429 or 500 <= status <= 599:
            raise FetchError(f"HTTP {status} on {method} {reference}")
        if status >= 400:
            raise NonRetryableFetchError(f"HTTP {status} on {method} {reference}")

    @staticmethod
    def _metadata(response: httpx.Response) -> Dict[str, Any]:
        meta: Dict[str, Any] = {k: v for k, v in response.headers.items()}
        meta[STATUS_CODE_FIELD] = response.status_code
        return meta

    async def _head(self, reference: str) -> Dict[str, Any]:
        r = await self._request("HEAD", reference)
        if r.status_code in _NO_HEAD:
            logger.debug("HEAD not supported for %s (HTTP %d)", reference, r.status_code)
            return {}
        self._check_status("HEAD", reference, r.status_code)
        return self._metadata(r)

    async def _get(self, reference: str, metadata: Mapping[str, Any]) -> FetchedDocument:
        r = await self._request("GET", reference)
        self._check_status("GET", reference, r.status_code)
        meta = dict(metadata or {})
        meta.update(self._metadata(r))
        return FetchedDocument(
            reference=reference,
            content=r.content,
            metadata=meta,
            content_type=_content_type(r.headers),
        )


# ========== File system ==========


def reference_to_path(reference: str) -> Path:
    """Accept plain paths and file:// URIs."""
    if reference.startswith("file:"):
        parsed = urlparse(reference)
        return Path(url2pathname(unquote(parsed.path)))
    return Path(reference)


class FileSystemFetcher:
    """
    Local files and directories. Metadata is size + modification time; a
    directory's content is its sorted entry listing and its entries are
    reported as children.
    """

    def __init__(self, *, include_hidden: bool = False) -> None:
        self.include_hidden = include_hidden

    async def fetch_metadata(self, reference: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self._stat, reference)

    async def fetch_document(self, reference: str, metadata: Mapping[str, Any]) -> FetchedDocument:
        return await asyncio.to_thread(self._read, reference, dict(metadata or {}))

    def _stat(self, reference: str) -> Dict[str, Any]:
        path = reference_to_path(reference)
        try:
            st = path.stat()
        except FileNotFoundError as e:
            raise ReferenceNotFound(f"no such file: {path}") from e
        except OSError as e:
            raise FetchError(f"cannot stat {path}: {e}") from e
        is_dir = path.is_dir()
        return {
            FILE_SIZE_FIELD: 0 if is_dir else st.st_size,
            FILE_MODIFIED_FIELD: st.st_mtime_ns,
            IS_DIRECTORY_FIELD: is_dir,
        }

    def _child_reference(self, reference: str, child: Path) -> str:
        if reference.startswith("file:"):
            return child.resolve().as_uri()
        return str(child)

    def _read(self, reference: str, metadata: Dict[str, Any]) -> FetchedDocument:
        path = reference_to_path(reference)
        try:
            if path.is_dir():
                names = sorted(
                    n for n in os.listdir(path) if self.include_hidden or not n.startswith(".")
                )
                children: List[str] = [self._child_reference(reference, path / n) for n in names]
                return FetchedDocument(
                    reference=reference,
                    content="\n".join(names).encode("utf-8"),
                    metadata=metadata,
                    content_type="inode/directory",
                    children=children,
                )
            data = path.read_bytes()
        except FileNotFoundError as e:
            raise ReferenceNotFound(f"no such file: {path}") from e
        except OSError as e:
            raise FetchError(f"cannot read {path}: {e}") from e

        ctype, _ = mimetypes.guess_type(path.name)
        return FetchedDocument(
            reference=reference,
            content=data,
            metadata=metadata,
            content_type=ctype or "application/octet-stream",
        )
