"""
Notification delivery backends.

LocalBackend: logs events (development, tests)
HttpSinkBackend: POSTs batches to the notification/audit sink (production)
"""

from abc import ABC, abstractmethod
from typing import Any

import httpx

from apps.core.logging import get_logger
from apps.events.schemas import EventEnvelope

logger = get_logger(__name__)


class EventBackend(ABC):
    """Abstract base class for notification delivery backends."""

    @abstractmethod
    def publish(self, events: list[EventEnvelope]) -> list[dict[str, Any]]:
        """
        Deliver a batch of events.

        Returns one result per event, in order:
        [{"event_id": "...", "status": "success"}, {"event_id": "...", "status": "error", "error": "..."}]
        """


class LocalBackend(EventBackend):
    """Logs each event with the same serialization the sink would receive."""

    def publish(self, events: list[EventEnvelope]) -> list[dict[str, Any]]:
        results = []
        for event in events:
            logger.info(
                "lifecycle_event_delivered",
                event_type=event.event_type,
                event_id=str(event.event_id),
                organization_id=event.organization_id,
                outcome=event.outcome,
                backend="local",
            )
            results.append({"event_id": str(event.event_id), "status": "success"})
        return results


class HttpSinkBackend(EventBackend):
    """
    Delivers events to the notification sink over HTTP.

    The sink accepts ``{"events": [...]}`` and answers 2xx for the whole batch;
    any other answer or transport error fails every event in the batch so the
    worker retries them with backoff.
    """

    BATCH_SIZE = 25

    def __init__(self, url: str, timeout: float = 10.0) -> None:
        self.url = url
        self.timeout = timeout

    def publish(self, events: list[EventEnvelope]) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        with httpx.Client(timeout=self.timeout) as client:
            for i in range(0, len(events), self.BATCH_SIZE):
                results.extend(self._publish_batch(client, events[i : i + self.BATCH_SIZE]))
        return results

    def _publish_batch(self, client: httpx.Client, events: list[EventEnvelope]) -> list[dict[str, Any]]:
        body = {"events": [event.model_dump(mode="json") for event in events]}
        try:
            response = client.post(self.url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("notification_sink_delivery_failed", error=str(e), batch_size=len(events))
            return [
                {"event_id": str(event.event_id), "status": "error", "error": str(e)}
                for event in events
            ]

        return [{"event_id": str(event.event_id), "status": "success"} for event in events]


def get_backend() -> EventBackend:
    """
    Get the configured delivery backend.

    Uses NOTIFICATION_SINK_URL: when set, events go to the HTTP sink.
    """
    from django.conf import settings

    sink_url = getattr(settings, "NOTIFICATION_SINK_URL", "")
    if sink_url:
        return HttpSinkBackend(
            url=sink_url,
            timeout=getattr(settings, "NOTIFICATION_SINK_TIMEOUT", 10.0),
        )
    return LocalBackend()
