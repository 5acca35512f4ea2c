"""Public interface definitions for all external collaborators.

Every external service is accessed through the abstract base classes in
this package.  Concrete adapters implement them and are wired together in
``townplanner/main.py``; tests inject fakes instead.

    Interface            ->  Concrete implementations (townplanner/providers/)
    ---------------------------------------------------------------------
    ILLMProvider         ->  OpenAILLMProvider, AnthropicLLMProvider,
                             OllamaLLMProvider
    IEmbeddingProvider   ->  OpenAIEmbeddingProvider, NomicEmbeddingProvider
    IDocumentParser      ->  LlamaCloudParser, PyMuPDFParser, TextFileParser
    IStoreProvider       ->  SQLiteStoreProvider, MemoryStoreProvider
    INotifier            ->  WebhookNotifier, LocalEventDispatcher
"""

from townplanner.interfaces.document_parser import IDocumentParser
from townplanner.interfaces.embedding_provider import IEmbeddingProvider
from townplanner.interfaces.llm_provider import ILLMProvider
from townplanner.interfaces.notifier import INotifier
from townplanner.interfaces.store_provider import Collection, IStoreProvider

__all__ = [
    "Collection",
    "IDocumentParser",
    "IEmbeddingProvider",
    "ILLMProvider",
    "INotifier",
    "IStoreProvider",
]
