"""Outbox dispatch for milestone and escrow domain events.

Transitions only insert :class:`EscrowEvent` rows; this module hands them to a
publisher after commit. Delivery is at-least-once: a row is marked dispatched
only after the publisher returns, so consumers must tolerate duplicates.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from freelance_escrow.config import Settings, get_settings
from freelance_escrow.models import EscrowEvent
from freelance_escrow.utils.time import utcnow

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 10


class NotificationPublisher(Protocol):
    def publish(self, message: dict[str, Any]) -> None:
        ...


class LoggingPublisher:
    """Publisher used when no notification endpoint is configured."""

    def publish(self, message: dict[str, Any]) -> None:
        logger.info("Escrow event", extra={"event": message})


@dataclass
class WebhookPublisher:
    """POST each event as JSON to the notification service."""

    url: str
    timeout: float = 5.0
    transport: httpx.BaseTransport | None = None

    def publish(self, message: dict[str, Any]) -> None:
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.post(self.url, json=message)
            response.raise_for_status()


def publisher_from_settings(settings: Settings | None = None) -> NotificationPublisher:
    settings = settings or get_settings()
    if settings.NOTIFICATION_WEBHOOK_URL:
        return WebhookPublisher(settings.NOTIFICATION_WEBHOOK_URL, timeout=settings.NOTIFICATION_TIMEOUT_SECONDS)
    return LoggingPublisher()


def event_message(event: EscrowEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "milestone_id": event.milestone_id,
        "escrow_id": event.escrow_id,
        "kind": event.kind,
        "at": event.at.isoformat(),
        "data": event.data_json,
    }


def dispatch_outbox_once(
    db: Session,
    publisher: NotificationPublisher,
    *,
    batch_size: int = 100,
) -> int:
    """Publish up to ``batch_size`` pending events in insertion order.

    Returns the number of events marked dispatched. A failed publish bumps the
    attempt counter and stops the batch so ordering per milestone is preserved.
    """

    events = list(
        db.scalars(
            select(EscrowEvent)
            .where(EscrowEvent.dispatched_at.is_(None), EscrowEvent.attempts < MAX_ATTEMPTS)
            .order_by(EscrowEvent.id)
            .limit(batch_size)
        )
    )
    dispatched = 0
    for event in events:
        try:
            publisher.publish(event_message(event))
        except (httpx.HTTPError, OSError) as exc:
            event.attempts += 1
            event.last_error = str(exc)[:500]
            db.commit()
            logger.warning(
                "Outbox publish failed",
                extra={"event_id": event.id, "milestone_id": event.milestone_id, "attempts": event.attempts},
            )
            break
        event.dispatched_at = utcnow()
        event.attempts += 1
        event.last_error = None
        db.commit()
        dispatched += 1

    if events:
        logger.info("Outbox batch dispatched", extra={"dispatched": dispatched, "fetched": len(events)})
    return dispatched


__all__ = [
    "LoggingPublisher",
    "NotificationPublisher",
    "WebhookPublisher",
    "dispatch_outbox_once",
    "event_message",
    "publisher_from_settings",
]
