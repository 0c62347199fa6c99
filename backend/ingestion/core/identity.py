"""
Request identities for the fetch gate.

Each source is served by one sticky browser identity (a complete, consistent
header set) until the identity has made `rotate_after` requests or the source
hard-blocks it; then the next header family takes over. Header sets are
copied from real browsers and never randomised field by field.

Proxies are assigned round-robin from the configured pool and only for
sources whose fetcher type asks for them.
"""

from __future__ import annotations

import itertools
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

# --- BROWSER FINGERPRINTS ---

HEADERS_CHROME_WIN = {
    "sec-ch-ua": '"Chromium";v="124", "Google Chrome";v="124", "Not-A.Brand";v="99"',
    "sec-ch-ua-mobile": "?0",
    "sec-ch-ua-platform": '"Windows"',
    "Upgrade-Insecure-Requests": "1",
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-User": "?1",
    "Sec-Fetch-Dest": "document",
    "Accept-Encoding": "gzip, deflate",
    "Accept-Language": "nl-NL,nl;q=0.9,en-US;q=0.8,en;q=0.7",
}

HEADERS_FIREFOX_MAC = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "nl,en-US;q=0.7,en;q=0.3",
    "Accept-Encoding": "gzip, deflate",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "DNT": "1",
}

BROWSER_PROFILES: tuple[tuple[str, Dict[str, str]], ...] = (
    ("chrome", HEADERS_CHROME_WIN),
    ("firefox", HEADERS_FIREFOX_MAC),
)


class ProfileStatus(str, Enum):
    ACTIVE = "active"
    RETIRED = "retired"


class IdentityProfile(BaseModel):
    """A consistent browser identity; the headers travel together."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    browser_family: str
    headers: Dict[str, str]
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: ProfileStatus = ProfileStatus.ACTIVE
    requests_made: int = 0

    model_config = ConfigDict(validate_assignment=True)


class ProfileManager:
    """Assigns, rotates and retires identities per source (in-process)."""

    def __init__(self, *, rotate_after: int = 25, proxy_urls: Sequence[str] = ()) -> None:
        self._rotate_after = rotate_after
        self._profiles: Dict[str, IdentityProfile] = {}
        self._families = itertools.cycle(range(len(BROWSER_PROFILES)))
        self._proxy_urls = tuple(proxy_urls)
        self._proxy_cycle = itertools.cycle(self._proxy_urls) if self._proxy_urls else None

    @property
    def has_proxies(self) -> bool:
        return bool(self._proxy_urls)

    def profile_for(self, source_key: str) -> IdentityProfile:
        profile = self._profiles.get(source_key)
        if profile is not None and profile.status == ProfileStatus.RETIRED:
            logger.info(f"Identity {profile.id} retired for {source_key}. Rotating.")
            profile = None
        elif profile is not None and profile.requests_made >= self._rotate_after:
            logger.debug(f"Identity {profile.id} used {profile.requests_made} times for {source_key}. Rotating.")
            profile = None

        if profile is None:
            profile = self._new_identity()
            self._profiles[source_key] = profile
        return profile

    def headers_for(self, source_key: str) -> Dict[str, str]:
        profile = self.profile_for(source_key)
        profile.requests_made += 1
        return dict(profile.headers)

    def next_proxy(self) -> Optional[str]:
        if self._proxy_cycle is None:
            return None
        return next(self._proxy_cycle)

    def report_block(self, source_key: str, *, hard: bool) -> None:
        """Retire the identity on a hard block; soft blocks are handled by pacing."""
        profile = self._profiles.get(source_key)
        if profile is None or not hard:
            return
        profile.status = ProfileStatus.RETIRED
        logger.warning(f"Retired identity {profile.id} ({profile.browser_family}) after hard block on {source_key}")

    def _new_identity(self) -> IdentityProfile:
        family, headers = BROWSER_PROFILES[next(self._families)]
        return IdentityProfile(browser_family=family, headers=dict(headers))
