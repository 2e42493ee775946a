"""
Domain Event Bus - fans ledger lifecycle events out to subscribers

Events published:
- negotiation.proposed / negotiation.countered / negotiation.accepted / negotiation.rejected
- negotiation.expired
- payment.initiated / payment.completed / payment.failed / payment.refunded
- wallet.withdrawal_requested / wallet.withdrawal_completed / wallet.withdrawal_failed
- application.accepted / project.started / project.submitted / project.completed

Chat transport and notification delivery are subscribers. Events are only
published after the unit of work has committed, and a failing subscriber
never affects the financial transition that produced the event.
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Union

from utils.datetime_helpers import utc_now

logger = logging.getLogger(__name__)


@dataclass
class DomainEvent:
    name: str
    payload: Dict[str, Any]
    occurred_at: datetime = field(default_factory=utc_now)


EventHandler = Callable[[DomainEvent], Union[None, Awaitable[None]]]


class EventBus:
    """Fire-and-forget fan-out to registered handlers"""

    def __init__(self):
        self._handlers: List[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    async def publish(self, event_name: str, payload: Dict[str, Any]) -> int:
        """Deliver to every handler; returns the number of successful deliveries"""
        event = DomainEvent(name=event_name, payload=payload)
        delivered = 0

        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                # Subscribers are downstream consumers; their failures are logged only
                logger.error(
                    f"❌ EVENT_BUS: Subscriber {getattr(handler, '__name__', handler)!r} "
                    f"failed on {event_name}: {e}",
                    exc_info=True,
                )

        logger.debug(f"📣 EVENT_BUS: {event_name} delivered to {delivered}/{len(self._handlers)} subscribers")
        return delivered
