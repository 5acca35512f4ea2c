"""Boundary-aware semantic chunking of parsed Markdown.

Splits a parsed document into ordered :class:`~townplanner.models.documents.TextChunk`
units.  The strategy:

1. **Headings (levels 1-3) are hard boundaries.**  A heading seals the
   current chunk and updates the section lineage.  The outermost open
   heading becomes ``section_title``; the innermost one below it becomes
   ``subsection_title``.

2. **Tables are atomic.**  Two or more consecutive table-like lines
   (pipe-delimited rows, ``+---+`` grid borders or tab-separated columns)
   are emitted as one ``table`` chunk regardless of size, and are exempt
   from the minimum-length filter.

3. **Prose is packed greedily.**  Blank-line paragraphs are appended to the
   current chunk while ``len(current) + 2 + len(paragraph) <= max_chunk_size``
   (paragraphs are joined by a blank line).  A paragraph that is longer than
   the limit on its own is emitted whole as an oversized chunk; content is
   never truncated.

4. **Noise filter.**  Paragraphs shorter than ``min_paragraph_length``
   characters (page numbers, stray footers) are dropped.

Chunking is a pure function of ``(text, max_chunk_size)``: the same input
always yields the same boundaries, in document order.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

from townplanner.models.documents import ChunkType, TextChunk

logger = structlog.get_logger(logger_name=__name__)

_HEADING_RE = re.compile(r"^\s{0,3}(#{1,3})\s+(.+?)\s*#*\s*$")
_PIPE_ROW_RE = re.compile(r"^\s*\|.*\|")
_GRID_BORDER_RE = re.compile(r"^\s*\+[-=:+ ]+\+\s*$")

PARAGRAPH_SEPARATOR = "\n\n"


@dataclass(frozen=True)
class _Block:
    kind: str  # "heading" | "paragraph" | "table"
    text: str
    level: int = 0


def _is_table_line(line: str) -> bool:
    if _PIPE_ROW_RE.match(line) or _GRID_BORDER_RE.match(line):
        return True
    return line.count("\t") >= 2


def split_blocks(text: str) -> list[_Block]:
    """Scan *text* line by line into heading, table and paragraph blocks."""
    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    blocks: list[_Block] = []
    paragraph: list[str] = []

    def flush() -> None:
        if paragraph:
            joined = "\n".join(paragraph).strip()
            if joined:
                blocks.append(_Block("paragraph", joined))
            paragraph.clear()

    i = 0
    while i < len(lines):
        line = lines[i]

        if _is_table_line(line):
            end = i
            while end < len(lines) and _is_table_line(lines[end]):
                end += 1
            if end - i >= 2:
                flush()
                table = "\n".join(row.rstrip() for row in lines[i:end]).strip("\n")
                blocks.append(_Block("table", table))
                i = end
                continue

        heading = _HEADING_RE.match(line)
        if heading:
            flush()
            blocks.append(_Block("heading", heading.group(2).strip(), len(heading.group(1))))
        elif not line.strip():
            flush()
        else:
            paragraph.append(line.rstrip())
        i += 1

    flush()
    return blocks


class SemanticChunker:
    """Heading-aware, table-preserving paragraph packer."""

    def __init__(self, max_chunk_size: int = 1500, min_paragraph_length: int = 20) -> None:
        if max_chunk_size <= 0:
            raise ValueError("max_chunk_size must be positive")
        self._max_chunk_size = max_chunk_size
        self._min_paragraph_length = max(0, min_paragraph_length)

    def chunk(self, text: str, max_chunk_size: int | None = None) -> list[TextChunk]:
        """Split *text* into ordered chunks.

        Parameters
        ----------
        text:
            Parsed Markdown of the whole document.
        max_chunk_size:
            Per-call override of the character budget for prose chunks.

        Returns
        -------
        list[TextChunk]
            Chunks with ``sequence_index`` 0..n-1 in document order.
        """
        limit = self._max_chunk_size if max_chunk_size is None else max_chunk_size
        if limit <= 0:
            raise ValueError("max_chunk_size must be positive")

        chunks: list[TextChunk] = []
        headings: list[tuple[int, str]] = []
        parts: list[str] = []
        parts_len = 0
        discarded = 0

        def lineage() -> tuple[str | None, str | None, int]:
            if not headings:
                return None, None, 0
            section = headings[0][1]
            subsection = headings[-1][1] if len(headings) > 1 else None
            return section, subsection, headings[-1][0]

        def emit(content: str, chunk_type: ChunkType, paragraphs: int, oversized: bool = False) -> None:
            section, subsection, level = lineage()
            chunks.append(
                TextChunk(
                    sequence_index=len(chunks),
                    content=content,
                    chunk_type=chunk_type,
                    section_title=section,
                    subsection_title=subsection,
                    hierarchy_level=level,
                    word_count=len(content.split()),
                    char_count=len(content),
                    paragraph_count=paragraphs,
                    oversized=oversized,
                )
            )

        def seal() -> None:
            nonlocal parts_len
            if parts:
                emit(PARAGRAPH_SEPARATOR.join(parts), ChunkType.TEXT, len(parts))
                parts.clear()
                parts_len = 0

        for block in split_blocks(text):
            if block.kind == "heading":
                seal()
                while headings and headings[-1][0] >= block.level:
                    headings.pop()
                headings.append((block.level, block.text))
                continue

            if block.kind == "table":
                seal()
                emit(block.text, ChunkType.TABLE, 1)
                continue

            paragraph = block.text
            if len(paragraph) < self._min_paragraph_length:
                discarded += 1
                continue

            if len(paragraph) > limit:
                seal()
                emit(paragraph, ChunkType.TEXT, 1, oversized=True)
                continue

            projected = parts_len + len(PARAGRAPH_SEPARATOR) + len(paragraph) if parts else len(paragraph)
            if projected > limit:
                seal()
                projected = len(paragraph)
            parts.append(paragraph)
            parts_len = projected

        seal()

        logger.info(
            "document_chunked",
            chunks=len(chunks),
            tables=sum(1 for c in chunks if c.chunk_type is ChunkType.TABLE),
            oversized=sum(1 for c in chunks if c.oversized),
            discarded_paragraphs=discarded,
            max_chunk_size=limit,
        )
        return chunks
