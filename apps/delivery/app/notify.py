from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional

import redis

from . import config

_log = logging.getLogger("lastmile.delivery.notify")

# Events a seller is told about. Message wording and the delivery channel
# (LINE, SMS, ...) belong to the notification service consuming these.
ORDER_CREATED = "order_created"
ORDER_DISPATCHED = "order_dispatched"
ORDER_DELIVERED = "order_delivered"
ORDER_FAILED = "order_failed"
ORDER_CANCELLED = "order_cancelled"
DRIVER_ASSIGNED = "driver_assigned"
DELIVERY_FAILED = "delivery_failed"


class Notifier:
    """
    Fire-and-forget publisher for seller notifications.

    With NOTIFY_ENABLED=true each event is pushed as JSON to the redis
    channel `notifications:<event>`; otherwise (or when redis is down) it is
    written as a structured log line so nothing upstream breaks.
    """

    def __init__(self, url: Optional[str] = None, enabled: Optional[bool] = None) -> None:
        self._enabled = config.NOTIFY_ENABLED if enabled is None else enabled
        self._url = url or config.NOTIFY_REDIS_URL
        self._client = None
        if self._enabled:
            try:
                self._client = redis.from_url(self._url)
            except Exception as e:
                _log.warning("notify: failed to connect to redis '%s': %s", self._url, e)
                self._enabled = False

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        data = {"event": event, "ts_ms": int(time.time() * 1000), "payload": payload}
        if self._enabled and self._client is not None:
            try:
                self._client.publish(f"notifications:{event}", json.dumps(data, default=str))
                return
            except Exception as e:
                _log.warning("notify: redis publish failed: %s", e)
        _log.info("notification", extra={"notification": data})


class RecordingNotifier:
    """In-process notifier that keeps every event; used by tests and local runs."""

    def __init__(self) -> None:
        self.events: List[tuple[str, Dict[str, Any]]] = []

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((event, payload))

    def names(self) -> List[str]:
        return [e for e, _ in self.events]


_notifier: Optional[Any] = None


def get_notifier():
    global _notifier
    if _notifier is None:
        _notifier = Notifier()
    return _notifier


def set_notifier(n) -> None:
    global _notifier
    _notifier = n


def notify(event: str, payload: Dict[str, Any], notifier=None) -> None:
    """Best-effort: a failing notifier is logged and never reaches the caller."""
    try:
        (notifier or get_notifier()).publish(event, payload)
    except Exception:
        _log.warning("notify: %s dropped", event, exc_info=True)

