from __future__ import annotations

import threading
from typing import Any, Callable, Optional

import requests

from .event_logging import StructuredLogEvent, log_structured_event
from .port_models import ExecutionEvent
from .ports import EventSink

WEBHOOK_TIMEOUT_SECONDS_DEFAULT = 10


def _normalize(value: Any) -> str:
    text = " ".join(str(value).split())
    return text if text else "-"


def event_to_payload(event: ExecutionEvent) -> dict[str, Any]:
    return {
        "entity_id": event.entity_id,
        "action": event.action,
        "timestamp": event.timestamp,
        "details": dict(event.details),
    }


class EventBus:
    """Fan-out of execution events to every subscriber, in subscription order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[EventSink] = []

    def subscribe(self, sink: EventSink) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(sink)

        def _unsubscribe() -> None:
            self.unsubscribe(sink)

        return _unsubscribe

    def unsubscribe(self, sink: EventSink) -> bool:
        with self._lock:
            if sink not in self._subscribers:
                return False
            self._subscribers.remove(sink)
            return True

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def emit(self, event: ExecutionEvent) -> int:
        with self._lock:
            subscribers = list(self._subscribers)
        delivered = 0
        for sink in subscribers:
            try:
                sink(event)
            except Exception as exc:
                log_structured_event(
                    StructuredLogEvent(
                        component="event_bus",
                        event="subscriber_failed",
                        entity_id=event.entity_id,
                        input_data=f"action={_normalize(event.action)}",
                        decision="isolate_subscriber_error",
                        result="skipped",
                        failure_reason=type(exc).__name__,
                    ),
                    error=repr(exc),
                )
                continue
            delivered += 1
        return delivered

    def __call__(self, event: ExecutionEvent) -> None:
        self.emit(event)


class WebhookEventSink:
    """Posts each execution event as JSON to a telemetry endpoint."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: int = WEBHOOK_TIMEOUT_SECONDS_DEFAULT,
        request_post: Callable[..., requests.Response] = requests.post,
    ) -> None:
        self._url = url
        self._timeout_seconds = max(1, int(timeout_seconds))
        self._request_post = request_post

    def __call__(self, event: ExecutionEvent) -> None:
        self.deliver(event)

    def deliver(self, event: ExecutionEvent) -> bool:
        failure_reason: Optional[str] = None
        status_code: object = "-"
        try:
            response = self._request_post(
                self._url,
                json=event_to_payload(event),
                timeout=self._timeout_seconds,
            )
            status_code = getattr(response, "status_code", "unknown")
            if not 200 <= int(getattr(response, "status_code", 0)) < 300:
                failure_reason = f"http_status_{status_code}"
        except requests.RequestException as exc:
            failure_reason = f"request_exception:{type(exc).__name__}"

        log_structured_event(
            StructuredLogEvent(
                component="event_webhook",
                event="deliver_event",
                entity_id=event.entity_id,
                input_data=f"action={_normalize(event.action)}",
                decision="post_event_payload",
                result="delivered" if failure_reason is None else "failed",
                failure_reason=failure_reason or "-",
            ),
            url=self._url,
            status_code=status_code,
        )
        return failure_reason is None
