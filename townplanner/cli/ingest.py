"""Document commands: ``ingest``, ``search`` and ``ask``.

Usage::

    python -m townplanner.cli ingest --collection smith-st docs/heritage.pdf docs/see.pdf
    python -m townplanner.cli ingest --collection smith-st docs/   # every supported file
    python -m townplanner.cli search --collection smith-st "heritage listing" "setbacks"
    python -m townplanner.cli ask --collection smith-st "What is the site zoned?"
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import TYPE_CHECKING

from townplanner.models.retrieval import SearchScope
from townplanner.utils.errors import IngestionError

if TYPE_CHECKING:
    from townplanner.main import Components


def register(subparsers: argparse._SubParsersAction) -> None:
    ingest_parser = subparsers.add_parser("ingest", help="Register and ingest documents")
    ingest_parser.add_argument("paths", nargs="+", help="Files or directories to ingest")
    ingest_parser.add_argument("--collection", required=True, help="Collection id")
    ingest_parser.add_argument("--title", help="Document title (single file only)")
    ingest_parser.add_argument(
        "--no-embed",
        action="store_true",
        dest="no_embed",
        help="Skip dispatching events, so chunks are not embedded yet",
    )
    ingest_parser.set_defaults(handler=handle_ingest)

    search_parser = subparsers.add_parser("search", help="Semantic search over a collection")
    search_parser.add_argument("queries", nargs="+", help="One or more query strings")
    search_parser.add_argument("--collection", required=True, help="Collection id")
    search_parser.add_argument("--document", action="append", dest="documents", help="Restrict to document id")
    search_parser.add_argument("--top-k", type=int, dest="top_k", help="Results per query")
    search_parser.add_argument("--threshold", type=float, help="Minimum cosine similarity")
    search_parser.set_defaults(handler=handle_search)

    ask_parser = subparsers.add_parser("ask", help="Answer a question from a collection")
    ask_parser.add_argument("question", help="Question text")
    ask_parser.add_argument("--collection", required=True, help="Collection id")
    ask_parser.add_argument("--document", action="append", dest="documents", help="Restrict to document id")
    ask_parser.add_argument("--top-k", type=int, dest="top_k", help="Context chunks to use")
    ask_parser.set_defaults(handler=handle_ask)


def _expand_paths(raw_paths: list[str], components: Components) -> list[Path]:
    files: list[Path] = []
    for raw in raw_paths:
        path = Path(raw)
        if path.is_dir():
            files.extend(
                sorted(p for p in path.iterdir() if p.is_file() and components.ingestion.supports(p))
            )
        else:
            files.append(path)
    return files


async def handle_ingest(args: argparse.Namespace, components: Components) -> int:
    files = _expand_paths(args.paths, components)
    if not files:
        print("No supported files found.")
        return 1
    if args.title and len(files) > 1:
        print("--title can only be used with a single file.")
        return 1

    failures = 0
    for path in files:
        document = await components.ingestion.register_document(args.collection, path, title=args.title)
        print(f"Ingesting {path.name} ({document.id})")
        try:
            document = await components.ingestion.ingest(document.id)
        except IngestionError as exc:
            failures += 1
            print(f"  FAILED: {exc.__cause__ or exc}")
            continue
        print(f"  Chunks:   {document.chunk_count}")
        print(f"  Metadata: {len(document.metadata_summary)} fields")
        for name, value in sorted(document.metadata_summary.items()):
            print(f"    {name}: {value}")

    if not args.no_embed:
        counts = await components.dispatch_events()
        print(f"\nEvents delivered: {counts['delivered']}, retrying: {counts['retrying']}, failed: {counts['failed']}")

    print(f"\n{len(files) - failures} of {len(files)} documents ingested.")
    return 1 if failures else 0


async def handle_search(args: argparse.Namespace, components: Components) -> int:
    scope = SearchScope(collection_id=args.collection, document_ids=args.documents)
    results = await components.retrieval.search(
        args.queries,
        scope,
        top_k=args.top_k,
        similarity_threshold=args.threshold,
    )
    for result in results:
        print(f"\n=== {result.query}")
        if not result.ok:
            print(f"  error [{result.error_code}]: {result.error}")
            continue
        if not result.results:
            print("  (no matches)")
        for rank, chunk in enumerate(result.results, start=1):
            heading = " / ".join(t for t in (chunk.section_title, chunk.subsection_title) if t)
            preview = " ".join(chunk.content.split())[:160]
            print(f"  {rank}. {chunk.similarity:.3f}  {heading or '(no section)'}  #{chunk.sequence_index}")
            print(f"     {preview}")
            if chunk.metadata_fields:
                print(f"     fields: {', '.join(chunk.metadata_fields)}")
    return 0 if all(r.ok for r in results) else 1


async def handle_ask(args: argparse.Namespace, components: Components) -> int:
    scope = SearchScope(collection_id=args.collection, document_ids=args.documents)
    answer = await components.qa.answer(args.question, scope, top_k=args.top_k)
    print(answer.answer)
    if answer.citations:
        print("\nSources:")
        for citation in answer.citations:
            section = citation.section_title or "(no section)"
            print(f"  [{citation.number}] {section}  document={citation.document_id}  chunk={citation.chunk_id}")
    return 0
