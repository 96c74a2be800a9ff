"""
The lifecycle store: sole writer of payment request state.

Every status change goes through :class:`LifecycleStore`, which checks it
against the transition table below and serializes writes per reference.

    Pending  --deadline reached-->     Expired
    Pending  --verified settlement-->  Settled
    Expired  --regenerated-->          Superseded

``Settled`` and ``Superseded`` are terminal.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import weakref
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Protocol, Tuple

from .errors import IllegalTransition, TransactionAlreadyUsed, UnknownReference
from .models import PaymentRequest, PaymentStatus, Settlement, utcnow
from .notifier import StatusEvent, StatusNotifier

__all__ = [
    "InMemoryRepository",
    "JsonFileRepository",
    "LifecycleStore",
    "RecordRepository",
    "TRANSITIONS",
]

TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.EXPIRED, PaymentStatus.SETTLED}),
    PaymentStatus.EXPIRED: frozenset({PaymentStatus.SUPERSEDED}),
    PaymentStatus.SETTLED: frozenset(),
    PaymentStatus.SUPERSEDED: frozenset(),
}


class RecordRepository(Protocol):
    def load(self, reference: str) -> Optional[PaymentRequest]:
        ...

    def save_many(self, records: Iterable[PaymentRequest]) -> None:
        ...

    def all(self) -> List[PaymentRequest]:
        ...


class InMemoryRepository:
    def __init__(self) -> None:
        self._records: Dict[str, PaymentRequest] = {}
        self._lock = threading.Lock()

    def load(self, reference: str) -> Optional[PaymentRequest]:
        with self._lock:
            return self._records.get(reference)

    def save_many(self, records: Iterable[PaymentRequest]) -> None:
        with self._lock:
            for record in records:
                self._records[record.reference] = record

    def all(self) -> List[PaymentRequest]:
        with self._lock:
            return list(self._records.values())


class JsonFileRepository:
    """
    Keeps every record in one JSON document keyed by reference.

    Writes go to a temporary file in the same directory which then replaces
    the document, so readers never observe a half-written file.
    """

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, dict]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        if not raw.strip():
            return {}
        document = json.loads(raw)
        return document.get("paymentRequests", {})

    def _write(self, records: Dict[str, dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=self.path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump({"paymentRequests": records}, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def load(self, reference: str) -> Optional[PaymentRequest]:
        with self._lock:
            payload = self._read().get(reference)
        return PaymentRequest.from_record(payload) if payload else None

    def save_many(self, records: Iterable[PaymentRequest]) -> None:
        with self._lock:
            current = self._read()
            for record in records:
                current[record.reference] = record.to_record()
            self._write(current)

    def all(self) -> List[PaymentRequest]:
        with self._lock:
            payloads = list(self._read().values())
        return [PaymentRequest.from_record(payload) for payload in payloads]


class _ReferenceLock:
    """A per-reference mutex, dropped once no caller holds it."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def __enter__(self) -> "_ReferenceLock":
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._lock.release()


class LifecycleStore:
    def __init__(
        self,
        repository: Optional[RecordRepository] = None,
        *,
        notifier: Optional[StatusNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository: RecordRepository = repository if repository is not None else InMemoryRepository()
        self.notifier = notifier or StatusNotifier()
        self._clock = clock
        self._locks: weakref.WeakValueDictionary[str, _ReferenceLock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()
        self._settle_guard = threading.Lock()

    def now(self) -> datetime:
        return self._clock()

    def _lock_for(self, reference: str) -> _ReferenceLock:
        with self._locks_guard:
            lock = self._locks.get(reference)
            if lock is None:
                lock = _ReferenceLock()
                self._locks[reference] = lock
            return lock

    def _load(self, reference: str) -> PaymentRequest:
        record = self.repository.load(reference)
        if record is None:
            raise UnknownReference(reference)
        return record

    def _reject(self, record: PaymentRequest, target: PaymentStatus, reason: Optional[str] = None) -> IllegalTransition:
        error = IllegalTransition(record.reference, record.status.value, target.value, reason)
        logging.warning("Rejected transition: %s", error)
        return error

    def _check(self, record: PaymentRequest, target: PaymentStatus) -> None:
        if target not in TRANSITIONS[record.status]:
            raise self._reject(record, target)

    def _event(self, previous: Optional[PaymentStatus], record: PaymentRequest) -> StatusEvent:
        return StatusEvent(
            reference=record.reference,
            previous=previous,
            current=record.status,
            record=record,
            occurred_at=self.now(),
        )

    def _publish(self, events: List[StatusEvent]) -> None:
        for event in events:
            self.notifier.publish(event)

    def _expire_locked(self, record: PaymentRequest) -> Tuple[PaymentRequest, StatusEvent]:
        expired = replace(record, status=PaymentStatus.EXPIRED)
        self.repository.save_many([expired])
        logging.info("Payment %s expired (deadline %s)", record.reference, record.expires_at.isoformat())
        return expired, self._event(record.status, expired)

    def insert(self, request: PaymentRequest) -> PaymentRequest:
        if request.status is not PaymentStatus.PENDING:
            raise ValueError(f"New payment requests must be Pending, got {request.status.value}")
        with self._lock_for(request.reference):
            if self.repository.load(request.reference) is not None:
                raise ValueError(f"Payment reference {request.reference} already exists")
            self.repository.save_many([request])
        logging.info(
            "Created payment %s for merchant %s: %s USD = %s tokens at %s USD/token",
            request.reference,
            request.merchant_id,
            request.amount_usd,
            request.amount_token,
            request.conversion_rate_snapshot,
        )
        self._publish([self._event(None, request)])
        return request

    def find(self, reference: str) -> Optional[PaymentRequest]:
        try:
            return self.get(reference)
        except UnknownReference:
            return None

    def get(self, reference: str) -> PaymentRequest:
        """
        Return a snapshot of ``reference``.

        A Pending record whose deadline has passed is expired before it is
        returned.
        """
        record = self._load(reference)
        if record.status is PaymentStatus.PENDING and record.is_past_deadline(self.now()):
            try:
                return self.expire(reference)
            except IllegalTransition:
                return self._load(reference)
        return record

    def pending(self) -> List[PaymentRequest]:
        return [r for r in self.repository.all() if r.status is PaymentStatus.PENDING]

    def find_by_transaction(self, transaction_id: str) -> Optional[PaymentRequest]:
        wanted = transaction_id.lower()
        for record in self.repository.all():
            if record.settlement and record.settlement.transaction_id.lower() == wanted:
                return record
        return None

    def expire(self, reference: str, now: Optional[datetime] = None) -> PaymentRequest:
        now = now or self.now()
        with self._lock_for(reference):
            record = self._load(reference)
            self._check(record, PaymentStatus.EXPIRED)
            if not record.is_past_deadline(now):
                raise self._reject(record, PaymentStatus.EXPIRED, f"deadline {record.expires_at.isoformat()} not reached")
            expired, event = self._expire_locked(record)
        self._publish([event])
        return expired

    def settle(self, reference: str, settlement: Settlement) -> PaymentRequest:
        """
        Move a Pending record to Settled.

        Settling again with the transaction that already settled the record
        returns the stored record unchanged. A record found past its deadline
        is expired instead and the settlement is rejected.
        """
        events: List[StatusEvent] = []
        try:
            with self._lock_for(reference):
                record = self._load(reference)
                if (
                    record.status is PaymentStatus.SETTLED
                    and record.settlement is not None
                    and record.settlement.transaction_id == settlement.transaction_id
                ):
                    return record

                now = self.now()
                if record.status is PaymentStatus.PENDING and record.is_past_deadline(now):
                    record, event = self._expire_locked(record)
                    events.append(event)
                    raise self._reject(record, PaymentStatus.SETTLED, "deadline passed before settlement")
                self._check(record, PaymentStatus.SETTLED)

                with self._settle_guard:
                    owner = self.find_by_transaction(settlement.transaction_id)
                    if owner is not None and owner.reference != reference:
                        raise TransactionAlreadyUsed(settlement.transaction_id, owner.reference)
                    settled = replace(record, status=PaymentStatus.SETTLED, settlement=settlement)
                    self.repository.save_many([settled])
                events.append(self._event(record.status, settled))
                logging.info(
                    "Payment %s settled by %s (%s tokens)",
                    reference,
                    settlement.transaction_id,
                    settlement.settled_amount_token,
                )
                return settled
        finally:
            self._publish(events)

    def supersede(self, reference: str, successor: PaymentRequest) -> Tuple[PaymentRequest, PaymentRequest]:
        """
        Mark the Expired record ``reference`` as Superseded by ``successor``
        and persist both in one write. Returns ``(predecessor, successor)``.
        """
        if successor.status is not PaymentStatus.PENDING:
            raise ValueError("A successor must be created Pending")
        if successor.supersedes != reference:
            raise ValueError(f"Successor {successor.reference} does not link back to {reference}")

        events: List[StatusEvent] = []
        try:
            with self._lock_for(reference):
                record = self._load(reference)
                now = self.now()
                if record.status is PaymentStatus.PENDING and record.is_past_deadline(now):
                    record, event = self._expire_locked(record)
                    events.append(event)
                self._check(record, PaymentStatus.SUPERSEDED)
                if self.repository.load(successor.reference) is not None:
                    raise ValueError(f"Payment reference {successor.reference} already exists")

                superseded = replace(record, status=PaymentStatus.SUPERSEDED, superseded_by=successor.reference)
                self.repository.save_many([successor, superseded])
                events.append(self._event(record.status, superseded))
                events.append(self._event(None, successor))
                logging.info("Payment %s superseded by %s", reference, successor.reference)
                return superseded, successor
        finally:
            self._publish(events)

    def resolve_current(self, reference: str) -> PaymentRequest:
        """Follow ``superseded_by`` links from ``reference`` to the newest link."""
        record = self.get(reference)
        seen = {record.reference}
        while record.superseded_by:
            record = self.get(record.superseded_by)
            if record.reference in seen:
                raise RuntimeError(f"Regeneration chain starting at {reference} loops")
            seen.add(record.reference)
        return record

    def lineage(self, reference: str) -> List[PaymentRequest]:
        """Return the whole regeneration chain containing ``reference``, oldest first."""
        record = self.get(reference)
        seen = {record.reference}
        while record.supersedes:
            record = self.get(record.supersedes)
            if record.reference in seen:
                raise RuntimeError(f"Regeneration chain containing {reference} loops")
            seen.add(record.reference)

        chain = [record]
        while record.superseded_by:
            record = self.get(record.superseded_by)
            chain.append(record)
        return chain
