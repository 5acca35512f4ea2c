"""LlamaCloud (LlamaParse) document parser.

Parsing is an asynchronous remote job:

1. ``POST /api/v1/parsing/upload`` with the file -> job id
2. ``GET /api/v1/parsing/job/{id}`` until status is ``SUCCESS``
   (bounded by :class:`~townplanner.utils.retry.PollingPolicy`)
3. ``GET /api/v1/parsing/job/{id}/result/json`` -> per-page Markdown

Every HTTP request carries the ``parse_timeout_seconds`` deadline.  An
``ERROR``/``CANCELED`` job status is a terminal :class:`ParseError`; running
out of polls raises :class:`ParseTimeoutError`.
"""

from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Any

import httpx
import structlog

from townplanner.config.settings import Settings
from townplanner.interfaces.document_parser import IDocumentParser
from townplanner.models.documents import PageText, ParsedDocument
from townplanner.utils.errors import (
    ParseError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitError,
)
from townplanner.utils.retry import PollingPolicy

logger = structlog.get_logger(logger_name=__name__)

_SUPPORTED_SUFFIXES = {".pdf", ".docx", ".doc", ".pptx", ".rtf", ".html"}
_FAILED_STATUSES = {"ERROR", "CANCELED", "CANCELLED"}


class LlamaCloudParser(IDocumentParser):
    """Parses documents to Markdown through the LlamaCloud parsing API."""

    def __init__(
        self,
        settings: Settings,
        polling: PollingPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = settings.llamacloud_api_key
        self._base_url = settings.llamacloud_base_url.rstrip("/")
        self._timeout = settings.parse_timeout_seconds
        self._polling = polling or PollingPolicy(
            max_attempts=settings.parse_poll_max_attempts,
            interval_seconds=settings.parse_poll_interval_seconds,
        )
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {self._api_key}", "Accept": "application/json"},
            timeout=self._timeout,
            transport=self._transport,
        )

    async def parse(self, path: Path) -> ParsedDocument:
        if not path.exists():
            raise ParseError(message=f"File not found: {path}", provider_name=self.get_provider_name())

        async with self._client() as client:
            job_id = await self._upload(client, path)
            logger.info("llamacloud_job_started", job_id=job_id, file=path.name)

            async def _check() -> str | None:
                body = await self._request(client, "GET", f"/api/v1/parsing/job/{job_id}")
                status = str(body.get("status", "")).upper()
                if status == "SUCCESS":
                    return status
                if status in _FAILED_STATUSES:
                    raise ParseError(
                        message=f"Parse job {job_id} ended with status {status}",
                        provider_name=self.get_provider_name(),
                    )
                return None

            await self._polling.poll(_check, provider_name=self.get_provider_name())
            result = await self._request(
                client, "GET", f"/api/v1/parsing/job/{job_id}/result/json"
            )

        pages = [
            PageText(page_number=int(page.get("page", index + 1)), text=page.get("md") or page.get("text") or "")
            for index, page in enumerate(result.get("pages", []))
        ]
        text = "\n\n".join(page.text for page in pages if page.text.strip())
        if not text.strip():
            raise ParseError(
                message=f"Parse job {job_id} returned no text",
                provider_name=self.get_provider_name(),
            )
        logger.info("llamacloud_job_completed", job_id=job_id, pages=len(pages), chars=len(text))
        return ParsedDocument(text=text, pages=pages, parser_name=self.get_provider_name())

    async def _upload(self, client: httpx.AsyncClient, path: Path) -> str:
        mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        files = {"file": (path.name, path.read_bytes(), mime)}
        body = await self._request(client, "POST", "/api/v1/parsing/upload", files=files)
        job_id = body.get("id")
        if not job_id:
            raise ParseError(message="Upload response has no job id", provider_name=self.get_provider_name())
        return str(job_id)

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        provider = self.get_provider_name()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(message=f"{method} {url} timed out", provider_name=provider) from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(message=f"{method} {url} failed: {exc}", provider_name=provider) from exc

        if response.status_code == 429:
            raise RateLimitError(message="LlamaCloud rate limit exceeded", provider_name=provider)
        if response.status_code >= 500:
            raise ProviderUnavailableError(
                message=f"{method} {url} returned {response.status_code}", provider_name=provider
            )
        if response.status_code >= 400:
            raise ParseError(
                message=f"{method} {url} returned {response.status_code}: {response.text[:200]}",
                provider_name=provider,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ParseError(message=f"{method} {url} returned invalid JSON", provider_name=provider) from exc

    def supports(self, path: Path) -> bool:
        return bool(self._api_key) and path.suffix.lower() in _SUPPORTED_SUFFIXES

    def get_provider_name(self) -> str:
        return "llamacloud"
