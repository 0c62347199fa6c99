from __future__ import annotations

"""Enrichment collaborator client.

The enrichment service (an LLM-backed extractor living outside this repo)
accepts `{raw_content, extracted_fields, source_url}` and answers with
`{structured_data, confidence}`. Every non-success, including timeouts,
is raised as `EnrichmentError`; the pipeline treats it as retryable.
"""

import asyncio
import logging
from typing import Any, Optional, Protocol

import httpx
from bs4 import BeautifulSoup
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from readability import Document

from app.core.settings import PipelineSettings
from ingestion.core.errors import EnrichmentError

logger = logging.getLogger("lcl.ingestion.enrichment")

MAX_CONTENT_CHARS = 12_000


class EnrichmentRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    raw_content: str
    extracted_fields: dict[str, Any] = Field(default_factory=dict)
    source_url: Optional[str] = None


class EnrichmentResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    structured_data: dict[str, Any]
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class EnrichmentClient(Protocol):
    async def enrich(self, request: EnrichmentRequest) -> EnrichmentResult:
        ...


def readable_text(raw: Optional[str]) -> str:
    """Readable text from a raw capture. Uses readability with a BeautifulSoup fallback; plain text passes through."""
    if not raw:
        return ""
    if "<" not in raw[:2000]:
        return raw[:MAX_CONTENT_CHARS]
    try:
        summary_html = Document(raw).summary()
        text = BeautifulSoup(summary_html, "html.parser").get_text(separator="\n").strip()
    except Exception:  # noqa: BLE001
        text = ""
    if len(text) < 40:
        # readability drops short listing cards; the card's own text is better than nothing
        soup = BeautifulSoup(raw, "html.parser")
        main = soup.find("main") or soup.find("article") or soup
        text = main.get_text(separator="\n").strip()
    lines = [" ".join(line.split()) for line in text.splitlines()]
    return "\n".join(line for line in lines if line)[:MAX_CONTENT_CHARS]


class HttpEnrichmentClient:
    """POSTs enrichment requests to `LCL_ENRICHMENT_URL` with a hard deadline."""

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings or PipelineSettings()
        if not self._settings.enrichment_url:
            raise ValueError("LCL_ENRICHMENT_URL is not configured")
        headers = {"Accept": "application/json"}
        if self._settings.enrichment_api_key:
            headers["Authorization"] = f"Bearer {self._settings.enrichment_api_key}"
        self._client = client or httpx.AsyncClient(timeout=self._settings.enrichment_timeout_seconds)
        self._headers = headers

    async def enrich(self, request: EnrichmentRequest) -> EnrichmentResult:
        body = {
            "raw_content": readable_text(request.raw_content),
            "extracted_fields": request.extracted_fields,
            "source_url": request.source_url,
        }
        try:
            response = await asyncio.wait_for(
                self._client.post(self._settings.enrichment_url, json=body, headers=self._headers),
                timeout=self._settings.enrichment_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise EnrichmentError(f"Enrichment timed out after {self._settings.enrichment_timeout_seconds}s") from exc
        except httpx.HTTPError as exc:
            raise EnrichmentError(f"Enrichment request failed: {type(exc).__name__}: {exc}") from exc

        if response.status_code >= 400:
            raise EnrichmentError(f"Enrichment service returned HTTP {response.status_code}")
        try:
            result = EnrichmentResult.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise EnrichmentError(f"Malformed enrichment response: {exc}") from exc
        if not result.structured_data:
            raise EnrichmentError("Enrichment returned empty structured data")
        return result

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpEnrichmentClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
