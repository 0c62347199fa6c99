from __future__ import annotations

"""Publication store contract and its SQL implementation.

The indexing stage hands one normalized event at a time to a
`PublicationStore`. A uniqueness violation is not an error for the caller:
the store raises `DuplicateEventError` and the staging record is closed as a
dedupe no-op.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.models.published_event import PublishedEvent
from ingestion.core.errors import DuplicateEventError, PublicationError

logger = logging.getLogger("lcl.ingestion.publication")


@dataclass(frozen=True, slots=True)
class PublishableEvent:
    """Normalized event as handed to the publication store."""

    source_id: uuid.UUID
    content_hash: str
    event_fingerprint: str
    title: str
    event_date: str
    start_time: Optional[str] = None
    description: Optional[str] = None
    venue_name: Optional[str] = None
    location: Optional[str] = None
    category: Optional[str] = None
    image_url: Optional[str] = None
    ticket_url: Optional[str] = None
    source_url: Optional[str] = None
    attributes: dict[str, Any] = field(default_factory=dict)


class PublicationStore(Protocol):
    def exists(self, *, content_hash: str, source_id: uuid.UUID, event_fingerprint: str) -> bool:
        ...

    def publish(self, event: PublishableEvent) -> uuid.UUID:
        """Persist the event and return its id. Raises DuplicateEventError on a uniqueness violation."""
        ...


class SqlPublicationStore:
    """Writes to the `events` table inside the caller's transaction."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def exists(self, *, content_hash: str, source_id: uuid.UUID, event_fingerprint: str) -> bool:
        stmt = (
            select(PublishedEvent.id)
            .where(
                or_(
                    PublishedEvent.content_hash == content_hash,
                    (PublishedEvent.source_id == source_id) & (PublishedEvent.event_fingerprint == event_fingerprint),
                )
            )
            .limit(1)
        )
        return self._session.execute(stmt).first() is not None

    def publish(self, event: PublishableEvent) -> uuid.UUID:
        row = PublishedEvent(
            source_id=event.source_id,
            content_hash=event.content_hash,
            event_fingerprint=event.event_fingerprint,
            title=event.title,
            description=event.description,
            event_date=event.event_date,
            start_time=event.start_time,
            venue_name=event.venue_name,
            location=event.location,
            category=event.category,
            image_url=event.image_url,
            ticket_url=event.ticket_url,
            source_url=event.source_url,
            attributes=event.attributes or None,
            published_at=utcnow(),
        )
        # SAVEPOINT so a duplicate only rolls back this insert, not the caller's transaction.
        try:
            with self._session.begin_nested():
                self._session.add(row)
                self._session.flush()
        except IntegrityError as exc:
            if _is_unique_violation(exc):
                raise DuplicateEventError(f"Event {event.content_hash[:12]} already published") from exc
            raise PublicationError(f"Publication rejected: {exc.orig}") from exc
        logger.info(f"Published event {row.id} ({event.event_date}) hash={event.content_hash[:12]}")
        return row.id


def _is_unique_violation(exc: IntegrityError) -> bool:
    sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if sqlstate:
        return sqlstate == "23505"
    return "unique" in str(exc.orig).lower()
