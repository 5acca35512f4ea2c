"""Local parsers that need no remote service.

- :class:`PyMuPDFParser` extracts text page-by-page with PyMuPDF.
- :class:`TextFileParser` reads Markdown / plain-text files as-is.

Both run their blocking file I/O in a worker thread.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import fitz  # PyMuPDF
import structlog

from townplanner.interfaces.document_parser import IDocumentParser
from townplanner.models.documents import PageText, ParsedDocument
from townplanner.utils.errors import ParseError

logger = structlog.get_logger(logger_name=__name__)


class PyMuPDFParser(IDocumentParser):
    """Extracts plain text from each PDF page (no layout-to-Markdown conversion)."""

    async def parse(self, path: Path) -> ParsedDocument:
        pages = await asyncio.to_thread(self._extract_pages, path)
        if not pages:
            raise ParseError(message=f"No extractable text in {path.name}", provider_name=self.get_provider_name())
        text = "\n\n".join(page.text for page in pages)
        logger.info("pdf_parsed", file=path.name, pages=len(pages), chars=len(text))
        return ParsedDocument(text=text, pages=pages, parser_name=self.get_provider_name())

    @staticmethod
    def _extract_pages(path: Path) -> list[PageText]:
        """Return 1-based page texts; pages with no extractable text are skipped."""
        try:
            doc = fitz.open(str(path))
        except Exception as exc:
            raise ParseError(message=f"Cannot open PDF {path.name}: {exc}", provider_name="pymupdf") from exc

        pages: list[PageText] = []
        try:
            for page_num in range(len(doc)):
                text = doc[page_num].get_text("text").strip()
                if text:
                    pages.append(PageText(page_number=page_num + 1, text=text))
        finally:
            doc.close()
        return pages

    def supports(self, path: Path) -> bool:
        return path.suffix.lower() == ".pdf"

    def get_provider_name(self) -> str:
        return "pymupdf"


class TextFileParser(IDocumentParser):
    """Reads ``.md`` / ``.markdown`` / ``.txt`` files.

    Form-feed characters, when present, are treated as page breaks.
    """

    _SUFFIXES = {".md", ".markdown", ".txt"}

    async def parse(self, path: Path) -> ParsedDocument:
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ParseError(message=f"Cannot read {path.name}: {exc}", provider_name=self.get_provider_name()) from exc
        if not text.strip():
            raise ParseError(message=f"{path.name} is empty", provider_name=self.get_provider_name())

        raw_pages = text.split("\f")
        pages = [
            PageText(page_number=index + 1, text=page)
            for index, page in enumerate(raw_pages)
            if page.strip()
        ]
        return ParsedDocument(text=text.replace("\f", "\n\n"), pages=pages, parser_name=self.get_provider_name())

    def supports(self, path: Path) -> bool:
        return path.suffix.lower() in self._SUFFIXES

    def get_provider_name(self) -> str:
        return "text"
