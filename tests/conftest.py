"""Shared pytest fixtures for the townplanner test suite."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from townplanner.interfaces.embedding_provider import IEmbeddingProvider
from townplanner.interfaces.llm_provider import ILLMProvider
from townplanner.interfaces.store_provider import Collection
from townplanner.models.documents import Chunk, TextChunk
from townplanner.models.reports import ReportTemplate, TemplateSection, TemplateSubsection
from townplanner.providers.store.memory_store import MemoryStoreProvider
from townplanner.services.reports.templates import ReportTemplateCatalog
from townplanner.utils.errors import EmbeddingError

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

KEYWORDS = (
    "heritage",
    "zoning",
    "setback",
    "height",
    "parking",
    "site",
    "tree",
    "drainage",
)


class FakeLLM(ILLMProvider):
    """Scripted LLM: ``responder(system_prompt, user_prompt)`` returns the text.

    A responder may also raise to simulate a provider failure.  Every call is
    recorded in ``calls``.
    """

    def __init__(self, responder: Callable[[str, str], str] | str = "Generated text.") -> None:
        self._responder = responder
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.3,
        max_tokens: int = 4000,
        model: str | None = None,
    ) -> str:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "model": model,
            }
        )
        if callable(self._responder):
            return self._responder(system_prompt, user_prompt)
        return self._responder

    def get_provider_name(self) -> str:
        return "fake-llm"

    def is_available(self) -> bool:
        return True

    async def validate_credentials(self) -> bool:
        return True


class KeywordEmbedder(IEmbeddingProvider):
    """Deterministic bag-of-keywords embedding over :data:`KEYWORDS`.

    Texts listed in ``fail_on`` raise :class:`EmbeddingError`.
    """

    def __init__(self, fail_on: set[str] | None = None, model: str = "keyword-v1") -> None:
        self.fail_on = fail_on or set()
        self._model = model
        self.embedded: list[str] = []

    @staticmethod
    def vector(text: str) -> list[float]:
        lowered = text.lower()
        return [float(lowered.count(word)) for word in KEYWORDS]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        vectors = []
        for text in texts:
            if text in self.fail_on:
                raise EmbeddingError(message=f"cannot embed {text!r}", provider_name="keyword")
            self.embedded.append(text)
            vectors.append(self.vector(text))
        return vectors

    async def embed_single(self, text: str) -> list[float]:
        [vector] = await self.embed([text])
        return vector

    def get_dimension(self) -> int:
        return len(KEYWORDS)

    def get_model_name(self) -> str:
        return self._model

    def get_provider_name(self) -> str:
        return "keyword"

    def is_available(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def store() -> MemoryStoreProvider:
    return MemoryStoreProvider()


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def embedder() -> KeywordEmbedder:
    return KeywordEmbedder()


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested from :func:`fake_sleep`."""
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]) -> Callable[[float], Any]:
    """A sleep coroutine that records the delay and returns immediately."""

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def mock_llm_provider() -> ILLMProvider:
    """MagicMock ILLMProvider; override ``complete.return_value`` per test."""
    mock = MagicMock(spec=ILLMProvider)
    mock.get_provider_name.return_value = "mock-llm"
    mock.is_available.return_value = True
    mock.validate_credentials = AsyncMock(return_value=True)
    mock.complete = AsyncMock(return_value="Mock section text.")
    return mock


@pytest.fixture
def small_template() -> ReportTemplate:
    """One section with two subsections."""
    return ReportTemplate(
        name="site_brief",
        display_name="Site Brief",
        sections=[
            TemplateSection(
                name="site",
                title="Site Analysis",
                subsections=[
                    TemplateSubsection(name="heritage", title="Heritage Context"),
                    TemplateSubsection(name="zoning", title="Zoning Controls"),
                ],
            )
        ],
    )


@pytest.fixture
def catalog(small_template: ReportTemplate) -> ReportTemplateCatalog:
    return ReportTemplateCatalog([small_template])


PLANNING_DOCUMENT = """\
# Heritage Impact Statement

Prepared for: Smith Family Trust
Prepared by: Harbour Heritage Consultants
Site Address: 12 Smith Street, Paddington
Date of issue: 14 March 2024

## Introduction

This heritage impact statement accompanies a development application for a rear addition at the site.

The site is a two storey terrace within a heritage conservation area and is zoned R2 Low Density Residential.

## Heritage Context

The terrace is listed as a contributory item and the heritage significance of the streetscape is high.

Original joinery and the front setback of the terrace are to be retained as part of the heritage works.

## Height and Parking

The proposed height of the addition is below the ridge line and no change to on-site parking is proposed.

| Control | Required | Proposed |
| --- | --- | --- |
| Height | 9.5m | 8.1m |
| Parking | 1 space | 1 space |
"""


@pytest.fixture
def planning_text() -> str:
    return PLANNING_DOCUMENT


@pytest.fixture
def planning_file(tmp_path: Path) -> Path:
    path = tmp_path / "heritage_statement.md"
    path.write_text(PLANNING_DOCUMENT, encoding="utf-8")
    return path


async def add_chunks(
    store: MemoryStoreProvider,
    document_id: str,
    contents: list[str],
    collection_id: str = "c1",
    section_title: str | None = None,
) -> list[Chunk]:
    """Persist *contents* as consecutive chunks of *document_id*."""
    chunks = [
        Chunk.from_text_chunk(
            TextChunk(sequence_index=i, content=text, section_title=section_title),
            document_id=document_id,
            collection_id=collection_id,
        )
        for i, text in enumerate(contents)
    ]
    await store.upsert_many(Collection.CHUNKS, [c.model_dump(mode="json") for c in chunks])
    return chunks
