"""Abstract base class for document parsers (PDF or text -> Markdown)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from townplanner.models.documents import ParsedDocument


# Concrete implementations: LlamaCloudParser, PyMuPDFParser, TextFileParser
# Located in: townplanner/providers/parser/
class IDocumentParser(ABC):
    """Contract for turning an uploaded file into Markdown text."""

    @abstractmethod
    async def parse(self, path: Path) -> ParsedDocument:
        """Parse the file at *path*.

        Long-running remote parses poll with a bounded attempt budget.

        Raises
        ------
        townplanner.utils.errors.ParseError
            If the file cannot be parsed (``ParseTimeoutError`` when the
            polling budget is exhausted).
        """

    @abstractmethod
    def supports(self, path: Path) -> bool:
        """Return ``True`` if this parser can handle *path*."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier such as ``"llamacloud"``."""
