"""
Creation of new payment requests.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from decimal import ROUND_UP, Decimal, InvalidOperation, localcontext
from typing import Any, Optional

from .config import normalize_address
from .errors import ConfigError, InvalidAmount, InvalidValidityWindow, PaymentRequestError, RateUnavailable
from .models import PaymentRequest, PaymentStatus
from .rates import RateSource, coerce_rate
from .store import LifecycleStore

__all__ = [
    "DEFAULT_VALIDITY_WINDOW",
    "RequestFactory",
    "new_reference",
    "token_amount",
]

DEFAULT_VALIDITY_WINDOW = timedelta(minutes=15)

# Integer digits of the largest uint256, the widest amount a token contract holds.
MAX_TOKEN_DIGITS = 78


def new_reference() -> str:
    return secrets.token_urlsafe(12)


def token_amount(amount_usd: Decimal, rate: Decimal, precision: int = 6) -> Decimal:
    """
    Convert ``amount_usd`` at ``rate`` USD/token, rounded up to ``precision``
    places so the merchant never receives less than the quoted price.
    """
    quantum = Decimal(1).scaleb(-precision)
    with localcontext() as ctx:
        ctx.prec = MAX_TOKEN_DIGITS + precision + 2
        ctx.rounding = ROUND_UP
        try:
            quotient = amount_usd / rate
            if quotient.adjusted() >= MAX_TOKEN_DIGITS:
                raise InvalidAmount(f"Amount {amount_usd} is too large for the token at rate {rate}")
            return quotient.quantize(quantum)
        except InvalidOperation as exc:
            raise InvalidAmount(f"Amount {amount_usd} is too large for token precision") from exc


def _coerce_amount(raw: Any) -> Decimal:
    if isinstance(raw, float):
        raw = repr(raw)
    try:
        amount = Decimal(raw)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidAmount(f"Amount {raw!r} is not a valid decimal number") from exc
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount(f"Amount must be greater than zero, got {raw}")
    return amount


def _coerce_window(raw: Optional[timedelta | float | int], default: timedelta) -> timedelta:
    if raw is None:
        window = default
    elif isinstance(raw, timedelta):
        window = raw
    else:
        window = timedelta(seconds=raw)
    if window <= timedelta(0):
        raise InvalidValidityWindow(f"Validity window must be positive, got {window}")
    return window


class RequestFactory:
    def __init__(
        self,
        store: LifecycleStore,
        rate_source: RateSource,
        *,
        recipient_address: str,
        token_address: str,
        precision: int = 6,
        validity_window: timedelta = DEFAULT_VALIDITY_WINDOW,
    ) -> None:
        self.store = store
        self.rate_source = rate_source
        self.recipient_address = recipient_address
        self.token_address = token_address
        self.precision = precision
        self.validity_window = _coerce_window(validity_window, DEFAULT_VALIDITY_WINDOW)

    def snapshot_rate(self) -> Decimal:
        try:
            raw = self.rate_source()
        except RateUnavailable:
            raise
        except Exception as exc:  # noqa: BLE001
            raise RateUnavailable(f"Rate source failed: {exc}") from exc
        return coerce_rate(raw)

    def build(
        self,
        merchant_id: str,
        amount_usd: Decimal | str | int | float,
        *,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
        success_callback: Optional[str] = None,
        validity_window: Optional[timedelta | float | int] = None,
        recipient_address: Optional[str] = None,
        supersedes: Optional[str] = None,
    ) -> PaymentRequest:
        """
        Price and assemble a Pending request without persisting it.
        """
        if not merchant_id:
            raise ValueError("merchant_id must not be empty")
        amount = _coerce_amount(amount_usd)
        window = _coerce_window(validity_window, self.validity_window)
        try:
            recipient = normalize_address(recipient_address or self.recipient_address, "recipient_address")
        except ConfigError as exc:
            raise PaymentRequestError(str(exc)) from exc

        rate = self.snapshot_rate()
        created_at = self.store.now()
        return PaymentRequest(
            reference=new_reference(),
            merchant_id=merchant_id,
            recipient_address=recipient,
            token_address=self.token_address,
            amount_usd=amount,
            conversion_rate_snapshot=rate,
            amount_token=token_amount(amount, rate, self.precision),
            created_at=created_at,
            expires_at=created_at + window,
            status=PaymentStatus.PENDING,
            order_id=order_id,
            description=description,
            success_callback=success_callback,
            supersedes=supersedes,
        )

    def create(
        self,
        merchant_id: str,
        amount_usd: Decimal | str | int | float,
        *,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
        success_callback: Optional[str] = None,
        validity_window: Optional[timedelta | float | int] = None,
        recipient_address: Optional[str] = None,
    ) -> PaymentRequest:
        request = self.build(
            merchant_id,
            amount_usd,
            order_id=order_id,
            description=description,
            success_callback=success_callback,
            validity_window=validity_window,
            recipient_address=recipient_address,
        )
        logging.debug("Snapshotted rate %s for new payment %s", request.conversion_rate_snapshot, request.reference)
        return self.store.insert(request)
