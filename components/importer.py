from __future__ import annotations

import asyncio
import logging
import mimetypes
import re
from typing import Optional, Tuple

from bs4 import BeautifulSoup
from markdownify import markdownify

from collector.models import Document, FetchedDocument
from collector.utils import ImporterError

logger = logging.getLogger(__name__)

CONTENT_TYPE_FIELD = "collector.content-type"
TITLE_FIELD = "collector.title"

_HTML_TYPES = ("text/html", "application/xhtml+xml")
_DROP_TAGS = ("script", "style", "noscript", "template")


def _guess_content_type(fetched: FetchedDocument) -> str:
    if fetched.content_type:
        return fetched.content_type.split(";", 1)[0].strip().lower()
    ctype, _ = mimetypes.guess_type(fetched.reference)
    return (ctype or "application/octet-stream").lower()


def html_to_markdown(html: str, *, heading_style: str = "ATX") -> Tuple[Optional[str], str]:
    """Return (title, markdown body) of an HTML page."""
    soup = BeautifulSoup(html, "lxml")
    title = None
    if soup.title and soup.title.string:
        title = soup.title.string.strip() or None
    for tag in soup(_DROP_TAGS):
        tag.decompose()
    body = soup.body if soup.body is not None else soup
    md = markdownify(str(body), heading_style=heading_style.lower())
    md = re.sub(r"\n{3,}", "\n\n", md).strip()
    return title, md


class HtmlImporter:
    """
    HTML becomes Markdown (title kept apart), other ``text/*`` passes through
    decoded, anything else keeps its metadata with an empty body.
    """

    def __init__(self, *, heading_style: str = "ATX", encoding: str = "utf-8") -> None:
        self.heading_style = heading_style
        self.encoding = encoding

    async def import_document(self, fetched: FetchedDocument) -> Document:
        return await asyncio.to_thread(self._import, fetched)

    def _import(self, fetched: FetchedDocument) -> Document:
        ctype = _guess_content_type(fetched)
        title: Optional[str] = None
        try:
            if ctype in _HTML_TYPES:
                title, body = html_to_markdown(fetched.text(self.encoding), heading_style=self.heading_style)
            elif ctype.startswith("text/"):
                body = fetched.text(self.encoding)
            else:
                body = ""
        except Exception as e:
            raise ImporterError(f"cannot import {fetched.reference} ({ctype}): {e}") from e

        metadata = dict(fetched.metadata or {})
        metadata[CONTENT_TYPE_FIELD] = ctype
        if title:
            metadata[TITLE_FIELD] = title
        return Document(
            reference=fetched.reference,
            content=body,
            metadata=metadata,
            title=title,
            content_type=ctype,
        )
