"""
Exception hierarchy for the payment request lifecycle.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "AuthenticationFailed",
    "ConfigError",
    "IllegalTransition",
    "InvalidAmount",
    "InvalidValidityWindow",
    "LedgerError",
    "NotExpired",
    "PaymentRequestError",
    "PollTimeout",
    "RateUnavailable",
    "TopUpFailed",
    "TransactionAlreadyUsed",
    "UnknownReference",
]


class PaymentRequestError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(PaymentRequestError):
    """Raised when the supplied configuration is invalid."""


class InvalidAmount(PaymentRequestError, ValueError):
    """The USD amount of a new request is zero, negative or not a number."""


class InvalidValidityWindow(PaymentRequestError, ValueError):
    """The validity window of a new request is not strictly positive."""


class RateUnavailable(PaymentRequestError):
    """The rate source could not supply a usable USD-per-token snapshot."""


class UnknownReference(PaymentRequestError, KeyError):
    def __init__(self, reference: str) -> None:
        super().__init__(reference)
        self.reference = reference

    def __str__(self) -> str:
        return f"Unknown payment reference: {self.reference}"


class IllegalTransition(PaymentRequestError):
    """
    A transition was requested that the state machine does not allow.

    The record is left untouched when this is raised.
    """

    def __init__(self, reference: str, current: str, target: str, reason: Optional[str] = None) -> None:
        self.reference = reference
        self.current = current
        self.target = target
        self.reason = reason
        message = f"Cannot move {reference} from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class NotExpired(PaymentRequestError):
    """Regeneration was requested for a request that is not expired."""

    def __init__(self, reference: str, status: str) -> None:
        self.reference = reference
        self.status = status
        if status == "Pending":
            message = f"Payment {reference} is still valid and can be paid as-is"
        else:
            message = f"Payment {reference} is {status} and cannot be regenerated"
        super().__init__(message)


class TransactionAlreadyUsed(PaymentRequestError):
    """A transaction id already settled a different request."""

    def __init__(self, transaction_id: str, used_by: str) -> None:
        self.transaction_id = transaction_id
        self.used_by = used_by
        super().__init__(f"Transaction {transaction_id} already settled payment {used_by}")


class LedgerError(PaymentRequestError):
    """The ledger node could not be reached or returned an error."""


class TopUpFailed(PaymentRequestError):
    """The fiat top-up rail refused or failed to open a top-up."""


class AuthenticationFailed(PaymentRequestError):
    """A payer signature did not verify."""


class PollTimeout(PaymentRequestError):
    """A poll loop gave up before the request reached a terminal state."""
