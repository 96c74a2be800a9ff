"""
Reconciling a claimed transaction against a Pending payment request.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from .errors import IllegalTransition, LedgerError, TransactionAlreadyUsed
from .ledger import LedgerClient, TokenTransfer
from .models import PaymentRequest, PaymentStatus, Settlement
from .store import LifecycleStore

__all__ = [
    "SettlementResult",
    "SettlementVerifier",
    "VerificationReason",
]


class VerificationReason(str, Enum):
    REQUEST_NOT_PENDING = "RequestNotPending"
    AMOUNT_MISMATCH = "AmountMismatch"
    RECIPIENT_MISMATCH = "RecipientMismatch"
    NOT_FINALIZED = "NotFinalized"
    NOT_FOUND = "NotFound"
    DUPLICATE_TRANSACTION = "DuplicateTransaction"

    @property
    def remediation(self) -> str:
        return _REMEDIATION[self]

    @property
    def retryable(self) -> bool:
        return self in (VerificationReason.NOT_FINALIZED, VerificationReason.NOT_FOUND)


_REMEDIATION = {
    VerificationReason.REQUEST_NOT_PENDING: "This payment request can no longer be paid. Ask the merchant for a new one.",
    VerificationReason.AMOUNT_MISMATCH: "The transfer is smaller than the requested amount. Send the remaining tokens.",
    VerificationReason.RECIPIENT_MISMATCH: "The transfer went to a different address. Check the recipient and try again.",
    VerificationReason.NOT_FINALIZED: "The transaction is not confirmed yet. We'll keep checking.",
    VerificationReason.NOT_FOUND: "The transaction could not be found. Check the id or try again shortly.",
    VerificationReason.DUPLICATE_TRANSACTION: "This transaction has already been used for another payment.",
}


@dataclass(frozen=True)
class SettlementResult:
    reference: str
    success: bool
    reason: Optional[VerificationReason] = None
    detail: str = ""
    settlement: Optional[Settlement] = None

    @property
    def retryable(self) -> bool:
        return self.reason is not None and self.reason.retryable

    def to_payload(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "success": self.success,
            "reason": self.reason.value if self.reason else None,
            "message": self.reason.remediation if self.reason else None,
            "detail": self.detail or None,
            "settlement": self.settlement.to_record() if self.settlement else None,
        }


def _failure(reference: str, reason: VerificationReason, detail: str) -> SettlementResult:
    logging.info("Verification of %s failed: %s (%s)", reference, reason.value, detail)
    return SettlementResult(reference=reference, success=False, reason=reason, detail=detail)


def normalize_transaction_id(raw: str) -> str:
    value = (raw or "").strip()
    if not value:
        raise ValueError("transaction_id must not be empty")
    if value[:2].lower() == "0x":
        value = "0x" + value[2:].lower()
    return value


class SettlementVerifier:
    """
    Check a payer's transaction id on the ledger and settle the request.

    A failed check never changes the record, so callers may retry freely.
    The ledger is queried with a timeout and without holding the store's
    per-reference lock.
    """

    def __init__(
        self,
        store: LifecycleStore,
        ledger: LedgerClient,
        *,
        timeout: float = 30.0,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.timeout = timeout
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="ledger")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def _precheck(self, record: PaymentRequest, transaction_id: str) -> Optional[SettlementResult]:
        if record.status is PaymentStatus.SETTLED and record.settlement is not None:
            if record.settlement.transaction_id == transaction_id:
                return SettlementResult(reference=record.reference, success=True, settlement=record.settlement)
        if record.status is not PaymentStatus.PENDING:
            detail = f"payment is {record.status.value}"
            if record.superseded_by:
                detail = f"{detail}; current request is {record.superseded_by}"
            return _failure(record.reference, VerificationReason.REQUEST_NOT_PENDING, detail)

        owner = self.store.find_by_transaction(transaction_id)
        if owner is not None and owner.reference != record.reference:
            return _failure(
                record.reference,
                VerificationReason.DUPLICATE_TRANSACTION,
                f"transaction already settled {owner.reference}",
            )
        return None

    def _lookup(self, record: PaymentRequest, transaction_id: str) -> Union[TokenTransfer, SettlementResult]:
        future = self._executor.submit(
            self.ledger.get_transfer,
            transaction_id,
            token_address=record.token_address,
            recipient=record.recipient_address,
        )
        try:
            transfer = future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            return _failure(
                record.reference,
                VerificationReason.NOT_FINALIZED,
                f"ledger did not answer within {self.timeout:.0f}s",
            )
        except LedgerError as exc:
            return _failure(record.reference, VerificationReason.NOT_FINALIZED, f"ledger unavailable: {exc}")

        if transfer is None:
            return _failure(record.reference, VerificationReason.NOT_FOUND, "ledger has no such transaction")
        return transfer

    def _check_transfer(self, record: PaymentRequest, transfer: TokenTransfer) -> Optional[SettlementResult]:
        if not transfer.finalized:
            return _failure(
                record.reference,
                VerificationReason.NOT_FINALIZED,
                f"{transfer.confirmations} confirmation(s) so far",
            )
        if not transfer.succeeded:
            return _failure(record.reference, VerificationReason.NOT_FOUND, "transaction reverted on-chain")
        if transfer.recipient is None:
            return _failure(
                record.reference,
                VerificationReason.RECIPIENT_MISMATCH,
                f"transaction moved no {record.token_address} tokens",
            )
        if transfer.recipient.lower() != record.recipient_address.lower():
            return _failure(
                record.reference,
                VerificationReason.RECIPIENT_MISMATCH,
                f"tokens went to {transfer.recipient}, expected {record.recipient_address}",
            )
        if transfer.amount < record.amount_token:
            return _failure(
                record.reference,
                VerificationReason.AMOUNT_MISMATCH,
                f"received {transfer.amount}, expected at least {record.amount_token}",
            )
        return None

    def verify(self, reference: str, transaction_id: str) -> SettlementResult:
        transaction_id = normalize_transaction_id(transaction_id)
        record = self.store.get(reference)

        early = self._precheck(record, transaction_id)
        if early is not None:
            return early

        looked_up = self._lookup(record, transaction_id)
        if isinstance(looked_up, SettlementResult):
            return looked_up
        rejected = self._check_transfer(record, looked_up)
        if rejected is not None:
            return rejected

        settlement = Settlement(
            transaction_id=transaction_id,
            settled_at=self.store.now(),
            settled_amount_token=looked_up.amount,
        )
        try:
            settled = self.store.settle(reference, settlement)
        except TransactionAlreadyUsed as exc:
            return _failure(
                reference,
                VerificationReason.DUPLICATE_TRANSACTION,
                f"transaction already settled {exc.used_by}",
            )
        except IllegalTransition:
            # lost a race with expiry or with a concurrent verification
            current = self.store.get(reference)
            resolved = self._precheck(current, transaction_id)
            if resolved is not None:
                return resolved
            raise

        if looked_up.amount > record.amount_token:
            logging.info(
                "Payment %s over-paid by %s tokens",
                reference,
                looked_up.amount - record.amount_token,
            )
        return SettlementResult(reference=reference, success=True, settlement=settled.settlement)
