"""Retrieval-augmented question answering over a document collection.

Data flow:
  1. RETRIEVE -- one-query batch search in the requested scope.
  2. NO CONTEXT -- if nothing clears the similarity threshold, return the
     fixed "not found in the documents" answer without calling the model.
  3. SYNTHESIS -- numbered context blocks plus the question go to the LLM,
     which answers in prose citing blocks as ``[n]``.
  4. CITATIONS -- blocks referenced in the answer become citations; if the
     model cited nothing, every supplied block is listed.
"""

from __future__ import annotations

import re

import structlog

from townplanner.interfaces.llm_provider import ILLMProvider
from townplanner.models.retrieval import Answer, Citation, RetrievedChunk, SearchScope
from townplanner.services.retrieval_service import RetrievalService
from townplanner.utils.concurrency import with_timeout
from townplanner.utils.errors import RequestValidationError
from townplanner.utils.retry import RetryPolicy

logger = structlog.get_logger(logger_name=__name__)

NOT_FOUND_ANSWER = "The answer to this question was not found in the documents."

_CITATION_RE = re.compile(r"\[(\d+)\]")


class QAService:
    """Answers questions from retrieved planning-document chunks.

    Parameters
    ----------
    retrieval:
        Batch search service.
    llm:
        Provider used to write the answer.
    """

    _SYSTEM_PROMPT = (
        "You are a town-planning assistant answering questions about planning documents "
        "(development applications, heritage reports, planning assessments).\n\n"
        "Guidelines:\n"
        "- Answer only from the numbered context blocks provided\n"
        "- Cite the blocks you rely on as [1], [2], ...\n"
        "- If the context does not contain the answer, say so plainly\n"
        "- Be concise and factual; quote figures and controls exactly"
    )

    def __init__(
        self,
        retrieval: RetrievalService,
        llm: ILLMProvider,
        temperature: float = 0.2,
        max_tokens: int = 1200,
        timeout_seconds: float | None = 120.0,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._retrieval = retrieval
        self._llm = llm
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout_seconds
        self._retry = retry_policy or RetryPolicy(max_attempts=1)

    async def answer(
        self,
        question: str,
        scope: SearchScope,
        top_k: int | None = None,
    ) -> Answer:
        if not question or not question.strip():
            raise RequestValidationError(message="question must not be empty")

        [result] = await self._retrieval.search([question], scope, top_k=top_k)
        if not result.ok:
            logger.warning("qa_retrieval_failed", error_code=result.error_code, error=result.error)
        if not result.results:
            logger.info("qa_no_context", collection_id=scope.collection_id)
            return Answer(question=question, answer=NOT_FOUND_ANSWER, context_found=False)

        user_prompt = self._build_user_prompt(question, result.results)
        text = await self._retry.run(
            lambda: with_timeout(
                self._llm.complete(
                    system_prompt=self._SYSTEM_PROMPT,
                    user_prompt=user_prompt,
                    temperature=self._temperature,
                    max_tokens=self._max_tokens,
                ),
                self._timeout,
                provider_name=self._llm.get_provider_name(),
                operation="question answering",
            ),
            name="qa_answer",
        )

        citations = self._citations(text, result.results)
        logger.info(
            "qa_answered",
            collection_id=scope.collection_id,
            context_chunks=len(result.results),
            citations=len(citations),
        )
        return Answer(question=question, answer=text.strip(), citations=citations)

    @staticmethod
    def _build_user_prompt(question: str, chunks: list[RetrievedChunk]) -> str:
        blocks = []
        for number, chunk in enumerate(chunks, start=1):
            heading = " / ".join(t for t in (chunk.section_title, chunk.subsection_title) if t)
            label = f"[{number}]" + (f" {heading}" if heading else "")
            blocks.append(f"{label}\n{chunk.content}")
        context = "\n\n---\n\n".join(blocks)
        return f"Context:\n\n{context}\n\nQuestion: {question}\n\nAnswer:"

    @staticmethod
    def _citations(text: str, chunks: list[RetrievedChunk]) -> list[Citation]:
        referenced = sorted(
            {int(n) for n in _CITATION_RE.findall(text) if 1 <= int(n) <= len(chunks)}
        )
        numbers = referenced or list(range(1, len(chunks) + 1))
        return [
            Citation(
                number=n,
                chunk_id=chunks[n - 1].chunk_id,
                document_id=chunks[n - 1].document_id,
                section_title=chunks[n - 1].section_title,
                similarity=chunks[n - 1].similarity,
            )
            for n in numbers
        ]
