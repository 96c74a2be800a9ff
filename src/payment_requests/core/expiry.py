"""
Background expiry of Pending requests whose deadline has passed.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import List, Optional

from .errors import IllegalTransition, UnknownReference
from .reconciler import IncomingTransferReconciler
from .store import LifecycleStore

__all__ = ["ExpiryMonitor"]


class ExpiryMonitor:
    def __init__(
        self,
        store: LifecycleStore,
        *,
        interval_seconds: float = 5.0,
        shutdown_timeout: float = 1.0,
        reconciler: Optional[IncomingTransferReconciler] = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be greater than zero")
        self.store = store
        self.interval_seconds = interval_seconds
        self._shutdown_timeout = shutdown_timeout
        self.reconciler = reconciler
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sweep(self, now: Optional[datetime] = None) -> List[str]:
        """
        Expire every Pending request past its deadline and return their
        references. Requests that another writer moved on in the meantime are
        skipped.
        """
        now = now or self.store.now()
        expired: List[str] = []
        for record in self.store.pending():
            if not record.is_past_deadline(now):
                continue
            try:
                self.store.expire(record.reference, now=now)
            except (IllegalTransition, UnknownReference) as exc:
                logging.debug("Skipped expiry of %s: %s", record.reference, exc)
                continue
            expired.append(record.reference)
        if expired:
            logging.info("Expiry sweep expired %d payment(s)", len(expired))
        return expired

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            # settle transfers that arrived in time before expiring anything
            if self.reconciler is not None:
                try:
                    self.reconciler.scan()
                except Exception:  # noqa: BLE001
                    logging.exception("Transfer scan failed; retrying in %.1fs", self.interval_seconds)
            try:
                self.sweep()
            except Exception:  # noqa: BLE001
                logging.exception("Expiry sweep failed; retrying in %.1fs", self.interval_seconds)

    def start(self) -> None:
        if self.running:
            raise RuntimeError("Expiry monitor already running")
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="payment-expiry", daemon=True)
        self._thread.start()
        logging.info("Expiry monitor sweeping every %.1fs", self.interval_seconds)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=self._shutdown_timeout)
        self._thread = None
        logging.info("Expiry monitor stopped")
