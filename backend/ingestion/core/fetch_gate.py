"""
Fetch gate: the only path for outbound page requests.

Responsibilities, in order, for every fetch:
1. Refuse disabled or quarantined sources without touching the network.
2. Pace requests per source using its `rate_limit_ms` (plus jitter).
3. Apply a sticky browser identity; route through a proxy when the source's
   fetcher type asks for one, falling back to a direct connection when the
   proxy itself is unreachable.
4. Enforce a hard deadline on the whole request.
5. Classify the response. 401/403/429 and bot-challenge pages are blocks even
   when the transport status is 200; they raise `FetchBlockedError`.

The gate never writes to the registry; the scrape runner turns its errors into
failure-log entries and the self-healing loop escalates rate limits from them.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict

from app.core.settings import PipelineSettings
from app.models.source import FetcherType
from ingestion.core.errors import FetchBlockedError, FetchError, SourceQuarantinedError
from ingestion.core.identity import ProfileManager
from ingestion.core.source_registry import SourceTarget

logger = logging.getLogger("lcl.ingestion.fetch")

JITTER_FACTOR = 0.2
SHORT_PAGE_CHARS = 5000

# Markers that only appear on challenge interstitials.
STRONG_CHALLENGE_MARKERS = (
    "cf-browser-verification",
    "challenge-platform",
    "_cf_chl_opt",
    "cf-chl-",
)

# Markers that can appear in real content; trusted only on short pages.
WEAK_CHALLENGE_MARKERS = (
    "captcha",
    "just a moment...",
    "checking your browser",
    "access denied",
    "please verify you are a human",
    "ddos protection by",
)


class FetchOutcome(str, Enum):
    SUCCESS = "success"
    SOFT_BLOCK = "soft_block"      # 429, challenge page
    HARD_BLOCK = "hard_block"      # 401/403
    TRANSIENT_ERROR = "transient"  # 5xx, empty body
    CLIENT_ERROR = "client_error"  # other 4xx


class FetchResult(BaseModel):
    url: str
    status_code: int
    content: str
    content_type: Optional[str] = None
    elapsed_ms: int = 0
    via_proxy: bool = False

    model_config = ConfigDict(frozen=True)


def classify_response(status_code: int, text: Optional[str]) -> FetchOutcome:
    """Heuristic classification of a response into a fetch outcome."""
    if status_code in (401, 403):
        return FetchOutcome.HARD_BLOCK
    if status_code == 429:
        return FetchOutcome.SOFT_BLOCK
    if status_code >= 500:
        return FetchOutcome.TRANSIENT_ERROR
    if status_code >= 400:
        return FetchOutcome.CLIENT_ERROR

    body = text or ""
    if not body.strip():
        return FetchOutcome.TRANSIENT_ERROR

    lowered = body.lower()
    if any(marker in lowered for marker in STRONG_CHALLENGE_MARKERS):
        return FetchOutcome.SOFT_BLOCK
    if len(body) < SHORT_PAGE_CHARS and any(marker in lowered for marker in WEAK_CHALLENGE_MARKERS):
        return FetchOutcome.SOFT_BLOCK
    return FetchOutcome.SUCCESS


ClientFactory = Callable[[Optional[str]], httpx.AsyncClient]


class FetchGate:
    """Managed async HTTP access for crawl sources."""

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        *,
        profile_manager: Optional[ProfileManager] = None,
        client_factory: Optional[ClientFactory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or PipelineSettings()
        self._profiles = profile_manager or ProfileManager(proxy_urls=self._settings.proxy_urls)
        self._client_factory = client_factory or self._default_client
        self._sleep = sleep
        self._clients: Dict[Optional[str], httpx.AsyncClient] = {}
        self._last_request: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def fetch(self, target: SourceTarget, url: Optional[str] = None) -> FetchResult:
        """Fetch `url` (default: the source URL) on behalf of `target`.

        Raises:
            SourceQuarantinedError: the source is disabled or quarantined.
            FetchBlockedError: 401/403/429 or a bot-challenge page.
            FetchError: timeout, network failure, other HTTP error or empty body.
        """
        if not target.enabled or target.quarantined:
            raise SourceQuarantinedError(
                f"Source {target.name} is disabled or quarantined; request refused",
                url=url or target.url,
            )

        url = url or target.url
        key = str(target.id)
        await self._pace(key, target.rate_limit_ms)

        headers = self._profiles.headers_for(key)
        proxy = None
        if target.fetcher_type == FetcherType.PROXY.value:
            proxy = self._profiles.next_proxy()
            if proxy is None:
                logger.debug(f"Source {target.name} wants a proxy but none are configured; fetching direct")

        started = time.monotonic()
        try:
            response, via_proxy = await self._get(url, headers, proxy, target.name)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise FetchError(f"Timeout after {self._settings.fetch_timeout_seconds}s", url=url) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Network error: {type(exc).__name__}: {exc}", url=url) from exc
        elapsed_ms = int((time.monotonic() - started) * 1000)

        status = response.status_code
        text = response.text
        outcome = classify_response(status, text)

        if outcome in (FetchOutcome.HARD_BLOCK, FetchOutcome.SOFT_BLOCK):
            self._profiles.report_block(key, hard=outcome == FetchOutcome.HARD_BLOCK)
            logger.warning(f"BLOCKED {target.name}: {outcome.value} (HTTP {status}) {url}")
            raise FetchBlockedError(f"Blocked ({outcome.value}, HTTP {status})", status_code=status, url=url)
        if outcome == FetchOutcome.TRANSIENT_ERROR:
            reason = "empty body" if status < 400 else f"HTTP {status}"
            raise FetchError(f"Transient failure: {reason}", status_code=status, url=url)
        if outcome == FetchOutcome.CLIENT_ERROR:
            raise FetchError(f"HTTP {status}", status_code=status, url=url)

        logger.debug(f"Fetched {url} for {target.name}: {status} in {elapsed_ms}ms ({len(text)} chars)")
        return FetchResult(
            url=str(response.url),
            status_code=status,
            content=text,
            content_type=response.headers.get("content-type"),
            elapsed_ms=elapsed_ms,
            via_proxy=via_proxy,
        )

    async def _get(
        self, url: str, headers: Dict[str, str], proxy: Optional[str], source_name: str
    ) -> tuple[httpx.Response, bool]:
        deadline = self._settings.fetch_timeout_seconds
        try:
            response = await asyncio.wait_for(self._client(proxy).get(url, headers=headers), timeout=deadline)
            return response, proxy is not None
        except (httpx.ProxyError, httpx.ConnectError, httpx.ConnectTimeout) as exc:
            if proxy is None:
                raise
            logger.warning(
                f"Proxy connection failed ({type(exc).__name__}). Falling back to direct connection for {source_name}."
            )
        response = await asyncio.wait_for(self._client(None).get(url, headers=headers), timeout=deadline)
        return response, False

    async def _pace(self, key: str, rate_limit_ms: int) -> None:
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            last = self._last_request.get(key)
            if last is not None:
                gap = (max(int(rate_limit_ms or 0), 0) / 1000.0) * (1.0 + random.uniform(0.0, JITTER_FACTOR))
                wait = last + gap - time.monotonic()
                if wait > 0:
                    await self._sleep(wait)
            self._last_request[key] = time.monotonic()

    def _client(self, proxy: Optional[str]) -> httpx.AsyncClient:
        client = self._clients.get(proxy)
        if client is None:
            client = self._client_factory(proxy)
            self._clients[proxy] = client
        return client

    def _default_client(self, proxy: Optional[str]) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._settings.fetch_timeout_seconds,
            follow_redirects=True,
            proxy=proxy,
        )

    async def close(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    async def __aenter__(self) -> "FetchGate":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
