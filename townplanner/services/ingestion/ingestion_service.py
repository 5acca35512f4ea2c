"""Document ingestion: parse, extract metadata, chunk, persist.

Flow for one document::

    pending|failed|completed -> processing
        parse (timeout, transient retry; remote parsers poll internally)
        delete chunks / metadata / embeddings from any previous run
        metadata extraction  ||  chunking          (concurrently)
        chunk <-> metadata field association
        persist chunks (one batch) + DocumentMetadata
    processing -> completed, emit ``document.chunked``

Any failure is fatal for the document: partial rows are removed, the
document is marked ``failed`` with a stable error code and message, a
``document.failed`` event is emitted and :class:`IngestionError` is raised.
Re-running ``ingest`` on the same document never duplicates rows because
previous output is deleted first and chunk ids are deterministic.
"""

from __future__ import annotations

import asyncio
import hashlib
from datetime import datetime, timezone
from pathlib import Path

import structlog

from townplanner.interfaces.document_parser import IDocumentParser
from townplanner.interfaces.store_provider import Collection, IStoreProvider
from townplanner.models.documents import Chunk, Document, DocumentStatus, ParsedDocument
from townplanner.models.events import DOCUMENT_CHUNKED, DOCUMENT_FAILED
from townplanner.models.metadata import DocumentMetadata, MetadataValueRecord, coerce_value
from townplanner.pipeline.state_tracker import JobStateTracker
from townplanner.services.ingestion.chunker import SemanticChunker
from townplanner.services.ingestion.field_associator import FieldAssociator
from townplanner.services.ingestion.metadata_extractor import MetadataExtractor
from townplanner.services.outbox import EventOutbox
from townplanner.utils.concurrency import with_timeout
from townplanner.utils.confidence import mean_confidence
from townplanner.utils.errors import (
    IngestionError,
    RecordNotFoundError,
    RequestValidationError,
    error_payload,
)
from townplanner.utils.logging import log_context
from townplanner.utils.retry import RetryPolicy

logger = structlog.get_logger(logger_name=__name__)


class IngestionService:
    """Drives documents through the ingestion pipeline."""

    def __init__(
        self,
        store: IStoreProvider,
        parser: IDocumentParser,
        chunker: SemanticChunker,
        extractor: MetadataExtractor,
        tracker: JobStateTracker,
        outbox: EventOutbox,
        associator: FieldAssociator | None = None,
        retry_policy: RetryPolicy | None = None,
        parse_timeout_seconds: float | None = None,
        max_chunk_size: int | None = None,
    ) -> None:
        self._store = store
        self._parser = parser
        self._chunker = chunker
        self._extractor = extractor
        self._tracker = tracker
        self._outbox = outbox
        self._associator = associator or FieldAssociator()
        self._retry = retry_policy or RetryPolicy(max_attempts=1)
        self._parse_timeout = parse_timeout_seconds
        self._max_chunk_size = max_chunk_size

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register_document(
        self,
        collection_id: str,
        file_path: str | Path,
        title: str | None = None,
    ) -> Document:
        """Create a ``pending`` document for an uploaded file.

        Raises
        ------
        RequestValidationError
            Empty collection id, missing file or unsupported file type.
        """
        if not collection_id or not collection_id.strip():
            raise RequestValidationError(message="collection_id is required")
        path = Path(file_path)
        if not path.is_file():
            raise RequestValidationError(message=f"File not found: {path}")
        if not self._parser.supports(path):
            raise RequestValidationError(message=f"Unsupported file type: {path.suffix or path.name}")

        document = Document(
            collection_id=collection_id.strip(),
            file_path=str(path),
            title=(title or path.stem).strip(),
        )
        await self._store.upsert(Collection.DOCUMENTS, document.model_dump(mode="json"))
        logger.info(
            "document_registered",
            document_id=document.id,
            collection_id=document.collection_id,
            file=path.name,
        )
        return document

    def supports(self, path: Path) -> bool:
        return self._parser.supports(path)

    async def list_documents(self, collection_id: str | None = None) -> list[Document]:
        filters = {"collection_id": collection_id} if collection_id else None
        rows = await self._store.query(Collection.DOCUMENTS, filters, order_by="created_at")
        return [Document.model_validate(r) for r in rows]

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(self, document_id: str) -> Document:
        """Run the full pipeline for one registered document.

        Raises
        ------
        RecordNotFoundError
            Unknown document id.
        InvalidTransitionError
            The document is already being processed.
        IngestionError
            Any pipeline failure; the document is left ``failed``.
        """
        with log_context(document_id=document_id):
            document = await self._tracker.transition_document(
                document_id,
                DocumentStatus.PROCESSING,
                error_code=None,
                error_message=None,
            )
            try:
                return await self._run(document)
            except Exception as exc:
                await self._fail(document, exc)
                raise IngestionError(
                    message=f"Ingestion of document '{document_id}' failed: {exc}"
                ) from exc

    async def _run(self, document: Document) -> Document:
        path = Path(document.file_path)
        parsed: ParsedDocument = await self._retry.run(
            lambda: with_timeout(
                self._parser.parse(path),
                self._parse_timeout,
                provider_name=self._parser.get_provider_name(),
                operation="document parse",
            ),
            name="document_parse",
        )
        content_hash = hashlib.sha256(parsed.text.encode("utf-8")).hexdigest()
        await self._clear(document.id)

        metadata, text_chunks = await asyncio.gather(
            self._extractor.extract(document.id, document.collection_id, parsed),
            asyncio.to_thread(self._chunker.chunk, parsed.text, self._max_chunk_size),
        )
        if not text_chunks:
            raise IngestionError(message="Document produced no content chunks")

        definitions = {f.id: f for f in await self._extractor.registry.snapshot()}
        chunks = [
            Chunk.from_text_chunk(
                text_chunk,
                document_id=document.id,
                collection_id=document.collection_id,
                metadata_fields=self._associator.associate(text_chunk.content, metadata.values, definitions),
            )
            for text_chunk in text_chunks
        ]
        await self._store.upsert_many(Collection.CHUNKS, [c.model_dump(mode="json") for c in chunks])
        await self._store.upsert(Collection.DOCUMENT_METADATA, metadata.model_dump(mode="json"))

        completed = await self._tracker.transition_document(
            document.id,
            DocumentStatus.COMPLETED,
            chunk_count=len(chunks),
            metadata_summary=metadata.summary(),
            content_hash=content_hash,
            parser_name=parsed.parser_name or None,
            processed_at=datetime.now(tz=timezone.utc),  # noqa: UP017
        )
        await self._outbox.emit(
            DOCUMENT_CHUNKED,
            {
                "document_id": document.id,
                "collection_id": document.collection_id,
                "chunk_count": len(chunks),
            },
        )
        logger.info(
            "document_ingested",
            document_id=document.id,
            chunks=len(chunks),
            metadata_fields=len(metadata.values),
            linked_chunks=sum(1 for c in chunks if c.metadata_fields),
        )
        return completed

    async def _fail(self, document: Document, exc: BaseException) -> None:
        payload = error_payload(exc)
        logger.error(
            "document_ingestion_failed",
            document_id=document.id,
            error_code=payload["code"],
            error=str(exc),
            exc_info=exc,
        )
        try:
            await self._clear(document.id)
        except Exception as cleanup_exc:
            logger.warning("document_cleanup_failed", document_id=document.id, error=str(cleanup_exc))
        try:
            await self._tracker.transition_document(
                document.id,
                DocumentStatus.FAILED,
                error_code=payload["code"],
                error_message=payload["message"],
            )
        except Exception as mark_exc:
            logger.warning("document_mark_failed_error", document_id=document.id, error=str(mark_exc))
        await self._outbox.emit(
            DOCUMENT_FAILED,
            {"document_id": document.id, "collection_id": document.collection_id, **payload},
        )

    async def _clear(self, document_id: str) -> None:
        removed = 0
        for collection in (Collection.EMBEDDINGS, Collection.CHUNKS, Collection.DOCUMENT_METADATA):
            removed += await self._store.delete(collection, {"document_id": document_id})
        if removed:
            logger.debug("document_rows_cleared", document_id=document_id, removed=removed)

    # ------------------------------------------------------------------
    # Metadata access
    # ------------------------------------------------------------------

    async def get_metadata(self, document_id: str) -> DocumentMetadata:
        row = await self._store.get(Collection.DOCUMENT_METADATA, document_id)
        if row is None:
            raise RecordNotFoundError(message=f"No metadata for document '{document_id}'")
        return DocumentMetadata.model_validate(row)

    async def override_metadata_value(
        self,
        document_id: str,
        field_id: str,
        raw_value: str,
        validated_by: str | None = None,
    ) -> DocumentMetadata:
        """Replace one extracted value with a manually validated one."""
        metadata = await self.get_metadata(document_id)
        definition = await self._extractor.registry.get(field_id)
        if definition is None:
            raise RecordNotFoundError(message=f"Unknown metadata field '{field_id}'")

        previous = metadata.get(field_id)
        record = MetadataValueRecord(
            field_id=field_id,
            raw_value=raw_value,
            value=coerce_value(raw_value, definition.field_type),
            confidence=1.0,
            source_page=previous.source_page if previous else None,
            extraction_context=previous.extraction_context if previous else "",
            extraction_method="manual",
            validated=True,
            validated_by=validated_by,
        )
        values = [r for r in metadata.values if r.field_id != field_id] + [record]
        metadata = metadata.model_copy(
            update={
                "values": values,
                "overall_confidence": mean_confidence([r.confidence for r in values]),
                "updated_at": datetime.now(tz=timezone.utc),  # noqa: UP017
            }
        )
        await self._store.upsert(Collection.DOCUMENT_METADATA, metadata.model_dump(mode="json"))
        await self._store.update(
            Collection.DOCUMENTS, document_id, {"metadata_summary": metadata.summary()}
        )
        logger.info("metadata_value_validated", document_id=document_id, field=field_id)
        return metadata
