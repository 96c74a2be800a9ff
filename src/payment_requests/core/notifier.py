"""
Status notifications fanned out after every committed transition.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import requests

from .models import PaymentRequest, PaymentStatus, format_timestamp

__all__ = [
    "LoggingNotifier",
    "StatusEvent",
    "StatusNotifier",
    "WebhookNotifier",
]

Subscriber = Callable[["StatusEvent"], None]


@dataclass(frozen=True)
class StatusEvent:
    reference: str
    previous: Optional[PaymentStatus]
    current: PaymentStatus
    record: PaymentRequest
    occurred_at: datetime

    def to_payload(self) -> Dict[str, Any]:
        return {
            "event": "payment_request.status",
            "reference": self.reference,
            "previousStatus": self.previous.value if self.previous else None,
            "status": self.current.value,
            "occurredAt": format_timestamp(self.occurred_at),
            "paymentRequest": self.record.to_record(),
        }


class StatusNotifier:
    """
    Fan-out point for status events.

    ``previous`` is ``None`` for the event announcing a freshly created
    request. Subscribers are called synchronously in subscription order; an
    exception in one of them is logged and does not reach the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return unsubscribe

    def publish(self, event: StatusEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:  # noqa: BLE001
                logging.exception(
                    "Status subscriber %r failed for %s -> %s",
                    subscriber,
                    event.reference,
                    event.current.value,
                )


class LoggingNotifier:
    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    def __call__(self, event: StatusEvent) -> None:
        logging.log(
            self.level,
            "Payment %s: %s -> %s (merchant=%s amount=%s)",
            event.reference,
            event.previous.value if event.previous else "-",
            event.current.value,
            event.record.merchant_id,
            event.record.amount_token,
        )


class WebhookNotifier:
    """
    POST each status event to a merchant webhook.

    A given (reference, status) pair is delivered at most once per notifier.
    The key is claimed before the request goes out and released again if
    delivery fails, so a later event for the same pair can retry. Delivery
    history is kept for the most recent ``max_references`` references only.
    """

    def __init__(
        self,
        url: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        max_references: int = 10_000,
    ) -> None:
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_references = max_references
        self._delivered: OrderedDict[str, Set[str]] = OrderedDict()
        self._lock = threading.Lock()

    def _claim(self, key: Tuple[str, str]) -> bool:
        reference, status = key
        with self._lock:
            statuses = self._delivered.setdefault(reference, set())
            self._delivered.move_to_end(reference)
            if status in statuses:
                return False
            statuses.add(status)
            while len(self._delivered) > self.max_references:
                self._delivered.popitem(last=False)
            return True

    def _release(self, key: Tuple[str, str]) -> None:
        reference, status = key
        with self._lock:
            self._delivered.get(reference, set()).discard(status)

    def __call__(self, event: StatusEvent) -> None:
        key = (event.reference, event.current.value)
        if not self._claim(key):
            logging.debug("Webhook for %s/%s already delivered", *key)
            return

        try:
            response = self.session.post(self.url, json=event.to_payload(), timeout=self.timeout)
        except requests.RequestException as exc:
            self._release(key)
            logging.warning("Webhook delivery to %s failed for %s: %s", self.url, event.reference, exc)
            return

        if response.status_code >= 400:
            self._release(key)
            logging.warning(
                "Webhook %s responded with %s for %s: %s",
                self.url,
                response.status_code,
                event.reference,
                response.text,
            )
            return

        logging.info("Delivered %s webhook for %s", event.current.value, event.reference)
