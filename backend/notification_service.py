"""
Status Change Notifications

The engine emits one StatusChangeEvent per accepted transition. Delivery
(email, in-app inbox) belongs to whoever implements NotificationSink.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
import logging

from audit_service import utcnow

logger = logging.getLogger(__name__)


@dataclass
class StatusChangeEvent:
    cash_call_id: str
    old_status: str
    new_status: str
    affiliate_name: Optional[str]
    call_number: Optional[str] = None
    actor_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)


class NotificationSink(ABC):
    @abstractmethod
    def emit(self, event: StatusChangeEvent) -> None:
        """Deliver a status change event."""
        pass


class InMemoryNotificationSink(NotificationSink):
    """Collects events in order. Used for local runs and tests."""

    def __init__(self):
        self.events: List[StatusChangeEvent] = []

    def emit(self, event: StatusChangeEvent) -> None:
        self.events.append(event)


class LoggingNotificationSink(NotificationSink):
    def emit(self, event: StatusChangeEvent) -> None:
        logger.info(
            f"Cash call {event.call_number or event.cash_call_id} "
            f"({event.affiliate_name or 'unknown affiliate'}): "
            f"{event.old_status} -> {event.new_status} by {event.actor_id}"
        )
