"""
Event System Module

Publish/subscribe dispatcher for lending domain events. Side effects that
must not block the critical path (audit rows, notifications) subscribe here
and are published only after the owning transaction commits.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock

from .storage import StorageInterface


class DomainEvent(Enum):
    """Domain events that can occur in the lending core"""

    # Marketplace events
    LOAN_REQUEST_CREATED = "loan_request.created"
    OFFER_SUBMITTED = "offer.submitted"
    DIRECT_REQUEST_CREATED = "direct_request.created"
    DIRECT_REQUEST_COUNTERED = "direct_request.countered"
    DIRECT_REQUEST_DECLINED = "direct_request.declined"

    # Loan events
    LOAN_ACCEPTED = "loan.accepted"
    LOAN_PROCESSING = "loan.processing"
    LOAN_FUNDED = "loan.funded"
    LOAN_FAILED = "loan.failed"
    LOAN_PAID_OFF = "loan.paid_off"

    # Repayment events
    REPAYMENT_SETTLED = "repayment.settled"

    # Account events
    USER_UPGRADED = "user.upgraded"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'user_id': self.user_id,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []  # catch-all handlers
        self._lock = RLock()
        self.logger = logging.getLogger("peerfund.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {getattr(handler, '__name__', repr(handler))} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {getattr(handler, '__name__', repr(handler))} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers; handler errors are logged, never raised"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Log but don't break the main operation
                self.logger.error(
                    f"Error in event handler {getattr(handler, '__name__', repr(handler))} "
                    f"for {event.event_type.value}: {e}"
                )

    def publish_on_commit(self, storage: StorageInterface, event: EventPayload) -> None:
        """Publish once the storage's current transaction commits"""
        storage.on_commit(lambda: self.publish(event))

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)
