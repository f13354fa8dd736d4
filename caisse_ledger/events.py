"""
Event System Module

Domain events emitted after a ledger mutation has been committed, the
in-process dispatcher (observer pattern) and the notification sinks that
forward events to the outside world.

Emission is fire-and-forget: the Notifier bounds every sink call with a
timeout and logs failures; nothing here can undo a committed mutation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import asyncio
import json
import logging
import uuid

import httpx

from .errors import NotificationError
from .logging_config import log_action


class DomainEvent(Enum):
    """Domain events emitted by the ledger"""

    # Installment events
    INSTALLMENT_PAID = "installment.paid"
    INSTALLMENT_PARTIAL = "installment.partial"

    # Contract events
    CONTRACT_ACTIVATED = "contract.activated"
    CONTRACT_FULLY_PAID = "contract.fully_paid"
    CONTRACT_DEFAULTED = "contract.defaulted"
    CONTRACT_RESCHEDULED = "contract.rescheduled"

    # Penalty events
    PENALTIES_PAID = "penalties.paid"

    # Advance events
    ADVANCE_REQUESTED = "advance.requested"
    ADVANCE_REPAID = "advance.repaid"

    # Refund events
    REFUND_REQUESTED = "refund.requested"
    REFUND_APPROVED = "refund.approved"
    REFUND_PAID = "refund.paid"
    REFUND_ARCHIVED = "refund.archived"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    contract_id: str
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'contract_id': self.contract_id,
            'payload': json.loads(json.dumps(self.payload, default=str)),
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        return cls(
            event_type=DomainEvent(data['event_type']),
            contract_id=data['contract_id'],
            payload=data['payload'],
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


class EventDispatcher:
    """In-process publish/subscribe"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []  # catch-all handlers
        self.logger = logging.getLogger("caisse_ledger.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        self._handlers.setdefault(event_type, []).append(handler)
        self.logger.debug(f"Subscribed handler {getattr(handler, '__name__', repr(handler))} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        self._global_handlers.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        try:
            self._handlers.get(event_type, []).remove(handler)
        except ValueError:
            self.logger.warning(f"Handler {getattr(handler, '__name__', repr(handler))} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers; a failing handler never stops the others"""
        self.logger.debug(f"Publishing event {event.event_type.value} for contract:{event.contract_id}")

        for handler in [*self._handlers.get(event.event_type, []), *self._global_handlers]:
            try:
                handler(event)
            except Exception as e:
                # Log but don't break the main operation
                self.logger.error(f"Error in event handler {getattr(handler, '__name__', repr(handler))} for {event.event_type.value}: {e}")

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        if event_type:
            return len(self._handlers.get(event_type, []))
        return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)

    def clear(self) -> None:
        self._handlers.clear()
        self._global_handlers.clear()


class NotificationSink(ABC):
    """Notification collaborator"""

    @abstractmethod
    async def emit(self, event: EventPayload) -> None:
        """Deliver one event; raise NotificationError on failure"""
        pass


class DispatcherSink(NotificationSink):
    """Hands events to an in-process EventDispatcher"""

    def __init__(self, dispatcher: EventDispatcher):
        self.dispatcher = dispatcher

    async def emit(self, event: EventPayload) -> None:
        self.dispatcher.publish(event)


class HttpNotificationSink(NotificationSink):
    """Posts events as JSON to a webhook"""

    def __init__(
        self,
        url: str,
        timeout: float = 2.0,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.url = url
        self.timeout = timeout
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def emit(self, event: EventPayload) -> None:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = await self._client.post(self.url, json=event.to_dict(), headers=headers)
        except httpx.HTTPError as e:
            raise NotificationError(f"Webhook delivery failed: {e}",
                                    event_type=event.event_type.value, url=self.url) from e
        if response.status_code >= 300:
            raise NotificationError(
                f"Webhook returned {response.status_code}",
                event_type=event.event_type.value,
                status_code=response.status_code,
            )

    async def close(self) -> None:
        await self._client.aclose()


class Notifier:
    """
    Emits events through a sink with a bounded timeout. Timeouts and sink
    failures are logged and swallowed; emission is not retried inline.
    """

    def __init__(self, sink: Optional[NotificationSink] = None, timeout: float = 2.0):
        self.sink = sink
        self.timeout = timeout
        self.logger = logging.getLogger("caisse_ledger.notifications")

    async def emit(self, event_type: DomainEvent, contract_id: str,
                   payload: Optional[Dict[str, Any]] = None) -> Optional[EventPayload]:
        event = EventPayload(event_type=event_type, contract_id=contract_id,
                             payload=payload or {})
        if self.sink is None:
            return event
        try:
            await asyncio.wait_for(self.sink.emit(event), timeout=self.timeout)
        except asyncio.TimeoutError:
            log_action(self.logger, "warning",
                       f"Notification {event_type.value} timed out after {self.timeout}s",
                       action="notify", resource=f"contract:{contract_id}",
                       extra={"event_id": event.event_id})
        except Exception as e:
            log_action(self.logger, "error",
                       f"Notification {event_type.value} failed: {e}",
                       action="notify", resource=f"contract:{contract_id}",
                       extra={"event_id": event.event_id, "error_type": type(e).__name__})
        return event

    async def emit_all(self, events: List[tuple]) -> None:
        """Emit ``(event_type, contract_id, payload)`` triples in order"""
        for event_type, contract_id, payload in events:
            await self.emit(event_type, contract_id, payload)
