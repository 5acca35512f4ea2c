"""Pick a parser for a file by extension, in preference order."""

from __future__ import annotations

from pathlib import Path

from townplanner.interfaces.document_parser import IDocumentParser
from townplanner.models.documents import ParsedDocument
from townplanner.utils.errors import ParseError


class ParserRouter(IDocumentParser):
    """Delegates to the first parser whose :meth:`supports` accepts the path.

    Typical order: LlamaCloud (when a key is configured), then PyMuPDF for
    PDFs, then the plain-text reader.
    """

    def __init__(self, parsers: list[IDocumentParser]) -> None:
        self._parsers = parsers

    def select(self, path: Path) -> IDocumentParser:
        for parser in self._parsers:
            if parser.supports(path):
                return parser
        raise ParseError(message=f"No parser available for '{path.suffix or path.name}' files")

    async def parse(self, path: Path) -> ParsedDocument:
        return await self.select(path).parse(path)

    def supports(self, path: Path) -> bool:
        return any(parser.supports(path) for parser in self._parsers)

    def get_provider_name(self) -> str:
        return "router"
