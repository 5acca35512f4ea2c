"""Composition root for the town-planner pipeline.

Wires providers, services and the report orchestrator together via
dependency injection.  Nothing here runs at import time; the CLI calls
:func:`build_components` with loaded settings and then
:meth:`Components.initialize` before use.

Provider selection:
    LLM        configured ``llm_provider`` if available, then
               Anthropic -> OpenAI -> Ollama.
    Embedding  configured ``embedding_provider``, then OpenAI -> Ollama
               (nomic-embed-text).
    Parser     LlamaCloud (when a key is set) -> PyMuPDF -> plain text.
    Events     ``document.chunked`` -> chunk embedding, in process; every
               event is also forwarded to ``webhook_url`` when set.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from townplanner.config.settings import Settings
from townplanner.interfaces.document_parser import IDocumentParser
from townplanner.interfaces.embedding_provider import IEmbeddingProvider
from townplanner.interfaces.llm_provider import ILLMProvider
from townplanner.interfaces.store_provider import IStoreProvider
from townplanner.models.events import DOCUMENT_CHUNKED, DOCUMENT_FAILED, REPORT_COMPLETED, REPORT_FAILED
from townplanner.models.reports import GenerationConfig
from townplanner.pipeline.orchestrator import ReportOrchestrator
from townplanner.pipeline.state_tracker import JobStateTracker
from townplanner.providers.notifier.local_dispatcher import LocalEventDispatcher
from townplanner.providers.notifier.webhook_notifier import WebhookNotifier
from townplanner.providers.parser.local_parsers import PyMuPDFParser, TextFileParser
from townplanner.providers.parser.llamacloud_parser import LlamaCloudParser
from townplanner.providers.parser.router import ParserRouter
from townplanner.providers.store.sqlite_store import SQLiteStoreProvider
from townplanner.services.embedding_service import EmbeddingService
from townplanner.services.ingestion.chunker import SemanticChunker
from townplanner.services.ingestion.ingestion_service import IngestionService
from townplanner.services.ingestion.metadata_extractor import MetadataExtractor
from townplanner.services.ingestion.schema_registry import MetadataSchemaRegistry
from townplanner.services.outbox import EventOutbox
from townplanner.services.qa_service import QAService
from townplanner.services.reports.templates import ReportTemplateCatalog
from townplanner.services.retrieval_service import RetrievalService
from townplanner.utils.confidence import build_confidence_scorer
from townplanner.utils.errors import ConfigurationError
from townplanner.utils.retry import RetryPolicy

logger = structlog.get_logger(logger_name=__name__)

_ALL_EVENTS = (DOCUMENT_CHUNKED, DOCUMENT_FAILED, REPORT_COMPLETED, REPORT_FAILED)


# ---------------------------------------------------------------------------
# Provider selection
# ---------------------------------------------------------------------------


def _build_llm_provider(app_settings: Settings) -> ILLMProvider:
    """Select the LLM provider: configured preference, then first available."""
    from townplanner.providers.llm.anthropic_provider import AnthropicLLMProvider
    from townplanner.providers.llm.ollama_provider import OllamaLLMProvider
    from townplanner.providers.llm.openai_provider import OpenAILLMProvider

    factories = {
        "anthropic": AnthropicLLMProvider,
        "openai": OpenAILLMProvider,
        "ollama": OllamaLLMProvider,
    }
    preferred = app_settings.llm_provider.strip().lower()
    if preferred and preferred not in factories:
        raise ConfigurationError(f"Unknown llm_provider '{app_settings.llm_provider}'")

    order = [preferred] if preferred else []
    order += [name for name in ("anthropic", "openai", "ollama") if name not in order]
    for name in order:
        provider = factories[name](settings=app_settings)
        if provider.is_available():
            if preferred and name != preferred:
                logger.warning("llm_preference_unavailable", preferred=preferred, using=name)
            return provider
    raise ConfigurationError("No LLM provider is configured")


def _build_embedding_provider(app_settings: Settings) -> IEmbeddingProvider:
    """Select the embedding provider: configured preference, then OpenAI -> Ollama."""
    from townplanner.providers.embedding.nomic_embedding_provider import NomicEmbeddingProvider
    from townplanner.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider

    factories = {"openai": OpenAIEmbeddingProvider, "ollama": NomicEmbeddingProvider}
    preferred = app_settings.embedding_provider.strip().lower()
    if preferred and preferred not in factories:
        raise ConfigurationError(f"Unknown embedding_provider '{app_settings.embedding_provider}'")

    order = [preferred] if preferred else []
    order += [name for name in ("openai", "ollama") if name not in order]
    for name in order:
        provider: IEmbeddingProvider = factories[name](settings=app_settings)
        if provider.is_available():
            return provider
    raise ConfigurationError("No embedding provider is configured")


def _build_parser(app_settings: Settings) -> IDocumentParser:
    parsers: list[IDocumentParser] = []
    if app_settings.llamacloud_api_key:
        parsers.append(LlamaCloudParser(settings=app_settings))
    parsers.extend([PyMuPDFParser(), TextFileParser()])
    return ParserRouter(parsers)


def _build_retry_policy(app_settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=app_settings.retry_max_attempts,
        interval_seconds=app_settings.retry_interval_seconds,
        backoff_factor=app_settings.retry_backoff_factor,
    )


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


@dataclass
class Components:
    """Everything the CLI (or an embedding application) needs."""

    settings: Settings
    store: IStoreProvider
    llm: ILLMProvider
    embedder: IEmbeddingProvider
    tracker: JobStateTracker
    outbox: EventOutbox
    registry: MetadataSchemaRegistry
    ingestion: IngestionService
    embeddings: EmbeddingService
    retrieval: RetrievalService
    qa: QAService
    catalog: ReportTemplateCatalog
    orchestrator: ReportOrchestrator
    dispatcher: LocalEventDispatcher

    async def initialize(self) -> None:
        """Create storage tables and seed the default metadata fields."""
        await self.store.initialize()
        await self.registry.seed_defaults()

    async def dispatch_events(self) -> dict[str, int]:
        """Deliver pending outbox events (e.g. run chunk embedding)."""
        return await self.outbox.dispatch(self.dispatcher)


def build_components(
    app_settings: Settings,
    store: IStoreProvider | None = None,
    llm: ILLMProvider | None = None,
    embedder: IEmbeddingProvider | None = None,
    parser: IDocumentParser | None = None,
    catalog: ReportTemplateCatalog | None = None,
) -> Components:
    """Assemble the pipeline.  Any collaborator can be injected (tests)."""
    store = store or SQLiteStoreProvider(app_settings.database_path)
    llm = llm or _build_llm_provider(app_settings)
    embedder = embedder or _build_embedding_provider(app_settings)
    parser = parser or _build_parser(app_settings)
    catalog = catalog or ReportTemplateCatalog.from_yaml(app_settings.report_templates_path)
    retry = _build_retry_policy(app_settings)

    tracker = JobStateTracker(store)
    outbox = EventOutbox(store, max_attempts=app_settings.outbox_max_attempts)
    registry = MetadataSchemaRegistry(store, fuzzy_threshold=app_settings.metadata_fuzzy_threshold)
    extractor = MetadataExtractor(
        llm=llm,
        registry=registry,
        scorer=build_confidence_scorer(app_settings.metadata_confidence_strategy),
        max_chars=app_settings.metadata_max_chars,
        timeout_seconds=app_settings.generation_timeout_seconds,
        retry_policy=retry,
        temperature=app_settings.metadata_temperature,
    )
    ingestion = IngestionService(
        store=store,
        parser=parser,
        chunker=SemanticChunker(
            max_chunk_size=app_settings.chunk_max_size,
            min_paragraph_length=app_settings.chunk_min_paragraph_length,
        ),
        extractor=extractor,
        tracker=tracker,
        outbox=outbox,
        retry_policy=retry,
        parse_timeout_seconds=app_settings.parse_timeout_seconds,
    )
    embeddings = EmbeddingService(
        store=store,
        provider=embedder,
        batch_size=app_settings.embedding_batch_size,
        timeout_seconds=app_settings.embedding_timeout_seconds,
        retry_policy=retry,
    )
    retrieval = RetrievalService(
        store=store,
        embedding_provider=embedder,
        top_k=app_settings.retrieval_top_k,
        similarity_threshold=app_settings.retrieval_similarity_threshold,
        max_concurrency=app_settings.retrieval_max_concurrency,
        timeout_seconds=app_settings.embedding_timeout_seconds,
        retry_policy=retry,
    )
    qa = QAService(
        retrieval=retrieval,
        llm=llm,
        timeout_seconds=app_settings.generation_timeout_seconds,
        retry_policy=retry,
    )
    orchestrator = ReportOrchestrator(
        catalog=catalog,
        retrieval=retrieval,
        llm=llm,
        tracker=tracker,
        outbox=outbox,
        top_k=app_settings.retrieval_top_k,
        similarity_threshold=app_settings.retrieval_similarity_threshold,
        section_concurrency=app_settings.report_section_concurrency,
        completion_threshold=app_settings.report_completion_threshold,
        generation_timeout_seconds=app_settings.generation_timeout_seconds,
        retry_policy=retry,
        output_dir=app_settings.report_output_dir,
        default_generation=GenerationConfig(
            temperature=app_settings.report_temperature,
            max_tokens=app_settings.report_max_tokens,
        ),
    )

    dispatcher = LocalEventDispatcher()
    dispatcher.subscribe(DOCUMENT_CHUNKED, embeddings.handle_event)
    if app_settings.webhook_url:
        webhook = WebhookNotifier(app_settings.webhook_url)
        for event in _ALL_EVENTS:
            dispatcher.subscribe(event, lambda payload, event=event: webhook.notify(event, payload))

    logger.info(
        "components_built",
        llm=llm.get_provider_name(),
        embedding=embedder.get_provider_name(),
        embedding_model=embedder.get_model_name(),
        store=store.get_provider_name(),
        templates=len(catalog.list_templates()),
    )
    return Components(
        settings=app_settings,
        store=store,
        llm=llm,
        embedder=embedder,
        tracker=tracker,
        outbox=outbox,
        registry=registry,
        ingestion=ingestion,
        embeddings=embeddings,
        retrieval=retrieval,
        qa=qa,
        catalog=catalog,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
    )
