"""Domain events with post-commit, fire-and-forget delivery.

Services queue events on the session while they work. Nothing leaves the
process until the surrounding transaction commits; a rollback discards the
queue. Delivery runs as a background task and sink failures are logged, never
raised, so a broken consumer cannot undo a committed ledger change.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import httpx
from pydantic import BaseModel, Field
from sqlalchemy import event as sa_event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from timeoff.common.audit import utcnow
from timeoff.common.constants import EventType

logger = logging.getLogger(__name__)

_PENDING_KEY = "timeoff.pending_events"


class DomainEvent(BaseModel):
    """Envelope delivered to every sink."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: EventType
    entity_type: str
    entity_id: uuid.UUID
    actor_id: Optional[uuid.UUID] = None
    occurred_at: datetime = Field(default_factory=utcnow)
    snapshot: dict[str, Any]


EventSink = Callable[[DomainEvent], Awaitable[None]]


# ── Dispatcher ──────────────────────────────────────────────────────

class EventDispatcher:
    """Fans committed events out to the registered async sinks."""

    def __init__(self) -> None:
        self._sinks: list[EventSink] = []
        self._tasks: set[asyncio.Task] = set()

    def register(self, sink: EventSink) -> None:
        if sink not in self._sinks:
            self._sinks.append(sink)

    def unregister(self, sink: EventSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    def clear(self) -> None:
        self._sinks.clear()

    def schedule(self, events: list[DomainEvent]) -> None:
        """Start background delivery of *events* on the running loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; dropping %d event(s)", len(events))
            return
        task = loop.create_task(self._deliver(events))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, events: list[DomainEvent]) -> None:
        for evt in events:
            for sink in list(self._sinks):
                try:
                    await sink(evt)
                except Exception:
                    logger.exception(
                        "Event sink %r failed for %s %s",
                        sink, evt.event_type.value, evt.entity_id,
                    )

    async def drain(self) -> None:
        """Wait until every scheduled delivery has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))


dispatcher = EventDispatcher()


# ── Session integration ─────────────────────────────────────────────

def queue_event(
    db: AsyncSession,
    event_type: EventType,
    *,
    entity_type: str,
    entity_id: uuid.UUID,
    snapshot: dict[str, Any],
    actor_id: Optional[uuid.UUID] = None,
) -> DomainEvent:
    """Attach an event to *db*; it is delivered only if the session commits."""
    evt = DomainEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_id=actor_id,
        snapshot=snapshot,
    )
    db.info.setdefault(_PENDING_KEY, []).append(evt)
    return evt


@sa_event.listens_for(Session, "after_commit")
def _dispatch_after_commit(session: Session) -> None:
    events = session.info.pop(_PENDING_KEY, None)
    if events:
        dispatcher.schedule(events)


@sa_event.listens_for(Session, "after_soft_rollback")
def _discard_after_rollback(session: Session, previous_transaction) -> None:
    # Savepoint rollbacks keep the outer transaction's events
    if previous_transaction.parent is None:
        session.info.pop(_PENDING_KEY, None)


# ── Built-in sinks ──────────────────────────────────────────────────

async def log_event_sink(evt: DomainEvent) -> None:
    logger.info(
        "event %s %s/%s actor=%s",
        evt.event_type.value, evt.entity_type, evt.entity_id, evt.actor_id,
    )


class WebhookEventSink:
    """POST each event as JSON to an external notification/audit endpoint."""

    def __init__(self, url: str, timeout: float = 5.0) -> None:
        self.url = url
        self.timeout = timeout

    async def __call__(self, evt: DomainEvent) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(self.url, json=evt.model_dump(mode="json"))
            resp.raise_for_status()

    def __repr__(self) -> str:
        return f"<WebhookEventSink {self.url}>"
