from __future__ import annotations

"""Controlled pipeline errors.

Per-item failures are signals: workers catch them at the item seam, write a
FailureLogEntry and convert them into a job or staging-record transition.
Nothing here should ever take a worker process down.
"""

from typing import Optional


class IngestionError(RuntimeError):
    """Base error for the crawl pipeline; caught and logged, not propagated past a worker."""


class FetchError(IngestionError):
    """Raised when a source fetch fails (network, HTTP status, empty body, timeout)."""

    def __init__(
        self,
        message: str,
        *,
        error_type: str = "fetch_error",
        status_code: Optional[int] = None,
        blocked: bool = False,
        url: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.blocked = blocked
        self.url = url


class FetchBlockedError(FetchError):
    """Raised when the target refused us (401/403/429 or a bot-challenge page)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, url: Optional[str] = None) -> None:
        super().__init__(
            message,
            error_type="rate_limited" if status_code == 429 else "fetch_error",
            status_code=status_code,
            blocked=True,
            url=url,
        )


class SourceQuarantinedError(FetchError):
    """Raised instead of issuing a request for a disabled or quarantined source."""


class EnrichmentError(IngestionError):
    """Raised when the enrichment collaborator times out, errors or returns no data."""


class PublicationError(IngestionError):
    """Raised when the publication store rejects a record for non-dedupe reasons."""


class DuplicateEventError(PublicationError):
    """Raised when the publication store already holds the event (uniqueness violation)."""


class InvalidTransitionError(IngestionError):
    """Raised when a staging record transition is not allowed by the state machine."""
