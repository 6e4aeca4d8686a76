import asyncio
import logging
import os
from dataclasses import dataclass
from io import BytesIO
from typing import Dict, Optional

import httpx
import PyPDF2

from .. import config
from .errors import DocumentError, PageExtractionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageContent:
    page_number: int
    text: str
    image: Optional[str] = None


class PdfDocument:
    """Page-addressable view over a PDF held in memory."""

    def __init__(self, content: bytes, name: str = "document.pdf"):
        try:
            self._reader = PyPDF2.PdfReader(BytesIO(content))
            self.page_count = len(self._reader.pages)
        except Exception as e:
            logger.error(f"Failed to open PDF {name}: {e}")
            raise DocumentError("Document could not be opened", str(e))
        self.name = name
        self._cache: Dict[int, str] = {}

    def page(self, page_number: int) -> PageContent:
        """Return the text of a 1-based page."""
        if page_number < 1 or page_number > self.page_count:
            raise PageExtractionError(
                page_number, f"Page out of range (document has {self.page_count} pages)"
            )
        if page_number not in self._cache:
            try:
                text = self._reader.pages[page_number - 1].extract_text() or ""
            except Exception as e:
                logger.warning(f"Failed to extract text from page {page_number}: {e}")
                raise PageExtractionError(page_number, f"Text extraction failed: {e}")
            self._cache[page_number] = text
        return PageContent(page_number=page_number, text=self._cache[page_number])


class DocumentStore:
    """Resolves a document reference (URL or stored path) to a PdfDocument."""

    def __init__(self, root: str = config.DOCUMENT_ROOT, timeout: float = config.DOCUMENT_DOWNLOAD_TIMEOUT, transport=None):
        self.root = root
        self.timeout = timeout
        self.transport = transport

    async def open(self, document_ref: str) -> PdfDocument:
        if document_ref.startswith(("http://", "https://")):
            content = await self._download(document_ref)
        else:
            content = await asyncio.to_thread(self._read_local, document_ref)

        if not content.startswith(b"%PDF"):
            raise DocumentError("Document is not a PDF", document_ref)
        return await asyncio.to_thread(PdfDocument, content, os.path.basename(document_ref))

    async def _download(self, url: str) -> bytes:
        try:
            logger.info(f"Downloading document from: {url}")
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self.transport) as client:
                response = await client.get(url, follow_redirects=True)
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            logger.error(f"Failed to download document: {e}")
            raise DocumentError("Document could not be downloaded", str(e))

    def _read_local(self, path: str) -> bytes:
        root = os.path.realpath(self.root)
        full_path = os.path.realpath(os.path.join(root, path))
        if not full_path.startswith(root + os.sep):
            raise DocumentError("Document path escapes the document root", path)
        try:
            with open(full_path, "rb") as f:
                return f.read()
        except OSError as e:
            logger.error(f"Failed to read document {full_path}: {e}")
            raise DocumentError("Document could not be read", str(e))
