"""
Value objects for payment requests and their persisted JSON shape.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional

__all__ = [
    "PaymentRequest",
    "PaymentStatus",
    "Settlement",
    "TERMINAL_STATUSES",
    "format_timestamp",
    "parse_timestamp",
    "utcnow",
]


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    EXPIRED = "Expired"
    SETTLED = "Settled"
    SUPERSEDED = "Superseded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({PaymentStatus.SETTLED, PaymentStatus.SUPERSEDED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(raw: str) -> datetime:
    # fromisoformat on older interpreters rejects the "Z" suffix
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    value = datetime.fromisoformat(raw)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _optional(value: Optional[Any]) -> Optional[str]:
    return None if value is None else str(value)


@dataclass(frozen=True)
class Settlement:
    transaction_id: str
    settled_at: datetime
    settled_amount_token: Decimal

    def to_record(self) -> Dict[str, Any]:
        return {
            "transactionId": self.transaction_id,
            "settledAt": format_timestamp(self.settled_at),
            "settledAmountToken": str(self.settled_amount_token),
        }

    @classmethod
    def from_record(cls, payload: Mapping[str, Any]) -> "Settlement":
        return cls(
            transaction_id=payload["transactionId"],
            settled_at=parse_timestamp(payload["settledAt"]),
            settled_amount_token=Decimal(payload["settledAmountToken"]),
        )


@dataclass(frozen=True)
class PaymentRequest:
    """
    One link of a regeneration chain.

    Instances are immutable; the lifecycle store swaps in a modified copy on
    every transition. ``amount_token`` and ``conversion_rate_snapshot`` are
    fixed when the record is created and carried unchanged through every
    copy.
    """

    reference: str
    merchant_id: str
    recipient_address: str
    token_address: str
    amount_usd: Decimal
    conversion_rate_snapshot: Decimal
    amount_token: Decimal
    created_at: datetime
    expires_at: datetime
    status: PaymentStatus = PaymentStatus.PENDING
    order_id: Optional[str] = None
    description: Optional[str] = None
    success_callback: Optional[str] = None
    supersedes: Optional[str] = None
    superseded_by: Optional[str] = None
    settlement: Optional[Settlement] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_past_deadline(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_record(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "merchantId": self.merchant_id,
            "recipientAddress": self.recipient_address,
            "tokenAddress": self.token_address,
            "orderId": self.order_id,
            "description": self.description,
            "amountUsd": str(self.amount_usd),
            "conversionRateSnapshot": str(self.conversion_rate_snapshot),
            "amountToken": str(self.amount_token),
            "status": self.status.value,
            "createdAt": format_timestamp(self.created_at),
            "expiresAt": format_timestamp(self.expires_at),
            "supersedes": self.supersedes,
            "supersededBy": self.superseded_by,
            "settlement": self.settlement.to_record() if self.settlement else None,
            "successCallback": self.success_callback,
        }

    @classmethod
    def from_record(cls, payload: Mapping[str, Any]) -> "PaymentRequest":
        settlement = payload.get("settlement")
        return cls(
            reference=payload["reference"],
            merchant_id=payload["merchantId"],
            recipient_address=payload["recipientAddress"],
            token_address=payload.get("tokenAddress", ""),
            order_id=_optional(payload.get("orderId")),
            description=_optional(payload.get("description")),
            amount_usd=Decimal(payload["amountUsd"]),
            conversion_rate_snapshot=Decimal(payload["conversionRateSnapshot"]),
            amount_token=Decimal(payload["amountToken"]),
            status=PaymentStatus(payload["status"]),
            created_at=parse_timestamp(payload["createdAt"]),
            expires_at=parse_timestamp(payload["expiresAt"]),
            supersedes=_optional(payload.get("supersedes")),
            superseded_by=_optional(payload.get("supersededBy")),
            settlement=Settlement.from_record(settlement) if settlement else None,
            success_callback=_optional(payload.get("successCallback")),
        )
