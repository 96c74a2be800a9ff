"""
Payer-side balance gate and the fiat top-up detour.

When a payer holds fewer tokens than a request asks for, the payer flow
opens a top-up on the fiat rail for at least the shortfall, waits for the
rail to report completion, and then re-runs :func:`can_settle` before the
transfer is attempted again.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional, Protocol

import requests

from .errors import TopUpFailed
from .ledger import LedgerClient
from .models import PaymentRequest
from .store import LifecycleStore

__all__ = [
    "BalanceCheck",
    "HttpTopUpRail",
    "TopUpCoordinator",
    "TopUpHandle",
    "TopUpRail",
    "can_settle",
]


@dataclass(frozen=True)
class BalanceCheck:
    sufficient: bool
    shortfall: Decimal

    def to_payload(self) -> Dict[str, Any]:
        return {"sufficient": self.sufficient, "shortfall": str(self.shortfall)}


def _decimal(value: Decimal | str | int | float, name: str) -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    try:
        parsed = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f"{name} {value!r} is not a valid decimal number") from exc
    if not parsed.is_finite():
        raise ValueError(f"{name} must be finite")
    return parsed


def can_settle(payer_balance: Decimal | str | int | float, request: PaymentRequest) -> BalanceCheck:
    balance = _decimal(payer_balance, "payer_balance")
    shortfall = max(Decimal(0), request.amount_token - balance)
    return BalanceCheck(sufficient=shortfall == 0, shortfall=shortfall)


@dataclass(frozen=True)
class TopUpHandle:
    handle_id: str
    payer_address: str
    amount_token: Decimal
    status: str = "CREATED"
    approval_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "handleId": self.handle_id,
            "payerAddress": self.payer_address,
            "amountToken": str(self.amount_token),
            "status": self.status,
            "approvalUrl": self.approval_url,
        }


class TopUpRail(Protocol):
    def start_top_up(self, payer_address: str, amount_token: Decimal) -> TopUpHandle:
        ...


class HttpTopUpRail:
    """
    Client for a fiat on-ramp that exposes ``POST {base}/orders``.

    The rail answers with ``{"orderId", "status", "approvalUrl"}``; the
    payer completes the fiat leg at ``approvalUrl`` and the rail credits the
    tokens out of band.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def start_top_up(self, payer_address: str, amount_token: Decimal) -> TopUpHandle:
        url = f"{self.base_url}/orders"
        body = {"payerAddress": payer_address, "tokenAmount": str(amount_token)}
        try:
            response = self.session.post(url, json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TopUpFailed(f"Top-up rail at {url} unreachable: {exc}") from exc

        if response.status_code >= 400:
            raise TopUpFailed(f"Top-up rail responded with {response.status_code}: {response.text}")
        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise TopUpFailed(f"Failed to parse JSON from top-up rail at {url}: {response.text}") from exc

        order_id = payload.get("orderId")
        if not order_id:
            raise TopUpFailed(f"Top-up rail did not return an order id: {payload}")
        return TopUpHandle(
            handle_id=str(order_id),
            payer_address=payer_address,
            amount_token=amount_token,
            status=payload.get("status", "CREATED"),
            approval_url=payload.get("approvalUrl"),
            raw=payload,
        )


class TopUpCoordinator:
    def __init__(
        self,
        store: LifecycleStore,
        rail: TopUpRail,
        *,
        balance_of: Optional[Callable[[str], Decimal]] = None,
    ) -> None:
        self.store = store
        self.rail = rail
        self.balance_of = balance_of

    @classmethod
    def with_ledger(cls, store: LifecycleStore, rail: TopUpRail, ledger: LedgerClient, token_address: str) -> "TopUpCoordinator":
        return cls(
            store,
            rail,
            balance_of=lambda address: ledger.token_balance(address, token_address=token_address),
        )

    def request_top_up(self, payer_address: str, min_amount_token: Decimal | str | int) -> TopUpHandle:
        amount = _decimal(min_amount_token, "min_amount_token")
        if amount <= 0:
            raise ValueError("min_amount_token must be greater than zero")
        handle = self.rail.start_top_up(payer_address, amount)
        logging.info(
            "Opened top-up %s for %s (%s tokens, status %s)",
            handle.handle_id,
            payer_address,
            amount,
            handle.status,
        )
        return handle

    def top_up_for(
        self,
        reference: str,
        payer_address: str,
        payer_balance: Decimal | str | int,
    ) -> Optional[TopUpHandle]:
        """
        Open a top-up covering the shortfall for ``reference``, or return
        ``None`` when the payer can already settle.
        """
        check = can_settle(payer_balance, self.store.get(reference))
        if check.sufficient:
            return None
        return self.request_top_up(payer_address, check.shortfall)

    def resume(
        self,
        handle: TopUpHandle,
        reference: str,
        payer_balance: Optional[Decimal | str | int] = None,
    ) -> BalanceCheck:
        """
        Re-evaluate the gate after the rail reported ``handle`` complete.
        """
        if payer_balance is None:
            if self.balance_of is None:
                raise ValueError("payer_balance is required when no balance lookup is configured")
            payer_balance = self.balance_of(handle.payer_address)
        check = can_settle(payer_balance, self.store.get(reference))
        logging.info(
            "Top-up %s complete for %s: sufficient=%s shortfall=%s",
            handle.handle_id,
            reference,
            check.sufficient,
            check.shortfall,
        )
        return check
