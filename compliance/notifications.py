"""
Notification / alert sink

Stage transitions and gate decisions are published as fire-and-forget
event records ``{type, entity_id, timestamp, payload}``. Delivery is
at-least-once: a failed delivery is retried with backoff and, once the
retries are exhausted, parked in the operator queue for redelivery.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import requests

from compliance.errors import ExternalServiceError
from compliance.retry import BackoffPolicy, call_with_backoff
from database.models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class NotificationEvent:
    type: str
    entity_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "entity_id": self.entity_id,
            "timestamp": self.timestamp.isoformat() + "Z",
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationEvent":
        timestamp = datetime.fromisoformat(data["timestamp"].rstrip("Z"))
        return cls(type=data["type"], entity_id=data["entity_id"], payload=data.get("payload") or {}, timestamp=timestamp)


class LoggingNotificationSink:
    """Default sink: writes events to the log."""

    def emit(self, event: NotificationEvent) -> None:
        logger.info(f"[event] {event.type} {event.entity_id} {event.payload}")


class WebhookNotificationSink:
    """POSTs each event as JSON to a webhook endpoint."""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    def emit(self, event: NotificationEvent) -> None:
        try:
            response = requests.post(self.url, json=event.to_dict(), timeout=self.timeout)
        except requests.RequestException as e:
            raise ExternalServiceError(f"Notification webhook unreachable: {e}", entity_id=event.entity_id) from e

        if response.status_code >= 300:
            raise ExternalServiceError(
                f"Notification webhook returned {response.status_code}: {response.text[:200]}",
                entity_id=event.entity_id,
            )
        logger.debug(f"Delivered {event.type} for {event.entity_id}")


class Notifier:
    """
    Publishes events through a sink with bounded retry.

    Publishing never fails the caller: the state change the event describes
    is already committed. Undeliverable events are parked instead.
    """

    def __init__(self, sink, policy: BackoffPolicy, operator_queue=None, sleep: Optional[Callable[[float], None]] = None):
        self.sink = sink
        self.policy = policy
        self.operator_queue = operator_queue
        self.sleep = sleep

    def publish(self, event_type: str, entity_id: str, **payload) -> NotificationEvent:
        event = NotificationEvent(type=event_type, entity_id=entity_id, payload=payload)
        self.deliver(event)
        return event

    def deliver(self, event: NotificationEvent) -> bool:
        try:
            call_with_backoff(
                lambda: self.sink.emit(event),
                self.policy,
                label=f"notify {event.type}",
                sleep=self.sleep,
            )
            return True
        except ExternalServiceError as e:
            logger.error(f"Notification {event.type} for {event.entity_id} undeliverable: {e}", exc_info=True)
            if self.operator_queue is not None:
                self.operator_queue.park_quietly(
                    "notification",
                    event.entity_id,
                    event.to_dict(),
                    retry_count=self.policy.max_attempts,
                    error=str(e),
                )
            return False


def build_sink(settings):
    """Webhook sink when a URL is configured, logging sink otherwise."""
    if settings.notification_webhook_url:
        return WebhookNotificationSink(settings.notification_webhook_url, timeout=settings.notification_timeout_seconds)
    return LoggingNotificationSink()
