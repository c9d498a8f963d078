"""
In-process domain event bus.

The ledger publishes facts (transaction created, advance refilled, ...) after
the unit of work commits. Subscribers such as notifications, audit sinks or
chat bots are registered from outside; the engine never calls them directly.
"""

import inspect
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Union
from uuid import uuid4

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType:
    TRANSACTION_CREATED = "transaction.created"
    TRANSACTION_UPDATED = "transaction.updated"
    TRANSACTION_DELETED = "transaction.deleted"
    ADVANCE_REFILLED = "advance.refilled"
    ADVANCE_RETURNED = "advance.returned"
    MONEY_SOURCE_CREATED = "money_source.created"
    MONEY_SOURCE_UPDATED = "money_source.updated"


class DomainEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    company_id: str
    entity_id: str
    actor_id: str | None = None
    payload: Dict[str, Any] = {}
    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


Handler = Callable[[DomainEvent], Union[None, Awaitable[None]]]


class EventBus:
    """Publish point for domain events with injected subscribers."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: Handler) -> None:
        if handler in self._handlers.get(event_type, []):
            self._handlers[event_type].remove(handler)

    def handlers_for(self, event_type: str) -> List[Handler]:
        return list(self._handlers.get(event_type, []))

    async def publish(self, event: DomainEvent) -> None:
        """Deliver an event to every subscriber.

        The write that produced the event is already committed, so a failing
        subscriber is logged and the remaining subscribers still run.
        """
        for handler in self.handlers_for(event.event_type):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Event handler %s failed for %s (%s)",
                    getattr(handler, "__name__", repr(handler)),
                    event.event_type,
                    event.entity_id,
                )


def log_large_expense(threshold_cents: int) -> Handler:
    """Build a subscriber that logs EXPENSE rows above a threshold."""

    def _handler(event: DomainEvent) -> None:
        if event.payload.get("type") != "EXPENSE":
            return
        amount = event.payload.get("amount_cents", 0)
        if amount >= threshold_cents:
            logger.warning(
                "Large expense %s cents on source %s (company %s, tx %s)",
                amount,
                event.payload.get("money_source_id"),
                event.company_id,
                event.entity_id,
            )

    return _handler
