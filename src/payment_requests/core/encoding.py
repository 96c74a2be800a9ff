"""
Payer-facing renderings of a payment request: the shareable ``/pay/`` link
and the wallet deep link that goes into a QR code.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, quote, urlencode, urlsplit

from .models import PaymentRequest

__all__ = [
    "DeepLink",
    "parse_deep_link_uri",
    "to_deep_link",
    "to_shareable_link",
]

SHARE_PATH = "/pay/"


@dataclass(frozen=True)
class DeepLink:
    recipient_address: str
    token_id: str
    amount_token: Decimal

    def to_payload(self) -> Dict[str, Any]:
        return {
            "recipientAddress": self.recipient_address,
            "tokenId": self.token_id,
            "amountToken": str(self.amount_token),
        }

    def to_uri(self, scheme: str = "ethereum") -> str:
        query = urlencode({"token": self.token_id, "amount": str(self.amount_token)})
        return f"{scheme}:{self.recipient_address}?{query}"


def _require(request: Optional[PaymentRequest]) -> PaymentRequest:
    if request is None:
        raise ValueError("A payment request is required")
    return request


def to_deep_link(request: Optional[PaymentRequest]) -> DeepLink:
    """Wallet deep link for the token, recipient and amount stored on ``request``."""
    request = _require(request)
    return DeepLink(
        recipient_address=request.recipient_address,
        token_id=request.token_address,
        amount_token=request.amount_token,
    )


def to_shareable_link(request: Optional[PaymentRequest], base_url: str = "") -> str:
    request = _require(request)
    return f"{base_url.rstrip('/')}{SHARE_PATH}{quote(request.reference, safe='')}"


def parse_deep_link_uri(uri: str) -> DeepLink:
    """Inverse of :meth:`DeepLink.to_uri`."""
    parts = urlsplit(uri)
    if not parts.scheme or not parts.path:
        raise ValueError(f"Not a payment deep link: {uri!r}")
    query = parse_qs(parts.query)
    try:
        token = query["token"][0]
        amount = Decimal(query["amount"][0])
    except (KeyError, IndexError, InvalidOperation) as exc:
        raise ValueError(f"Deep link {uri!r} lacks a token or amount") from exc
    return DeepLink(recipient_address=parts.path, token_id=token, amount_token=amount)
