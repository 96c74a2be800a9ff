"""
Client-side polling of a payment request until it stops changing.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .errors import PollTimeout
from .models import PaymentRequest, PaymentStatus
from .settlement import SettlementResult

__all__ = ["DEFAULT_POLL_INTERVAL", "poll_until_terminal", "verify_until_final"]

DEFAULT_POLL_INTERVAL = 5.0


def poll_until_terminal(
    get: Callable[[str], PaymentRequest],
    reference: str,
    *,
    interval: float = DEFAULT_POLL_INTERVAL,
    timeout: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    monotonic: Callable[[], float] = time.monotonic,
    on_update: Optional[Callable[[PaymentRequest], None]] = None,
) -> PaymentRequest:
    """
    Poll ``get`` until the request is Settled or Expired.

    A Superseded record is followed to its successor, so a payer holding a
    stale reference ends up watching the current one. ``on_update`` sees
    every snapshot whose status or reference differs from the last one.
    """
    deadline = None if timeout is None else monotonic() + timeout
    last = None
    while True:
        record = get(reference)
        if record.status is PaymentStatus.SUPERSEDED and record.superseded_by:
            logging.info("Payment %s was regenerated as %s", record.reference, record.superseded_by)
            reference = record.superseded_by
            continue

        key = (record.reference, record.status)
        if key != last:
            last = key
            if on_update is not None:
                on_update(record)

        if record.status in (PaymentStatus.SETTLED, PaymentStatus.EXPIRED):
            return record
        if deadline is not None and monotonic() >= deadline:
            raise PollTimeout(f"Payment {reference} still {record.status.value} after {timeout}s")
        sleep(interval)


def verify_until_final(
    verify: Callable[[str, str], SettlementResult],
    reference: str,
    transaction_id: str,
    *,
    interval: float = DEFAULT_POLL_INTERVAL,
    timeout: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    monotonic: Callable[[], float] = time.monotonic,
) -> SettlementResult:
    """
    Re-run ``verify`` while the outcome is retryable, e.g. the transaction is
    not mined or not confirmed yet. Returns the first success or
    non-retryable failure.
    """
    deadline = None if timeout is None else monotonic() + timeout
    while True:
        result = verify(reference, transaction_id)
        if result.success or not result.retryable:
            return result
        if deadline is not None and monotonic() >= deadline:
            raise PollTimeout(f"Transaction {transaction_id} for {reference} still {result.reason.value} after {timeout}s")
        logging.info("Payment %s: %s, checking again in %.0fs", reference, result.reason.value, interval)
        sleep(interval)
