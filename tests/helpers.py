"""Constants and fakes shared by the test modules."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional


from payment_requests.core.ledger import TokenTransfer

RECIPIENT = "0xce3CB5b5A05eDC80594F84740Fd077c80292Bd27"
OTHER_ADDRESS = "0x1111111111111111111111111111111111111111"
TOKEN = "0x96a0Cc3c0fc5d07818E763E1B25bc78ab4170D1b"
TX = "0x" + "ab" * 32
TX2 = "0x" + "cd" * 32


class Clock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeLedger:
    def __init__(self) -> None:
        self.transfers: Dict[str, TokenTransfer] = {}
        self.balances: Dict[str, Decimal] = {}
        self.calls: List[str] = []
        self.block: Optional[threading.Event] = None
        self.head = 10
        self.scans: List[Dict[str, Any]] = []

    def add(
        self,
        transaction_id: str,
        amount: str,
        *,
        recipient: str = RECIPIENT,
        finalized: bool = True,
        succeeded: bool = True,
        block_number: Optional[int] = None,
    ) -> None:
        self.transfers[transaction_id] = TokenTransfer(
            transaction_id=transaction_id,
            token_address=TOKEN,
            recipient=recipient,
            amount=Decimal(amount),
            finalized=finalized,
            succeeded=succeeded,
            confirmations=3 if finalized else 0,
            block_number=block_number,
        )

    def finalize(self, transaction_id: str) -> None:
        self.transfers[transaction_id] = replace(self.transfers[transaction_id], finalized=True, confirmations=3)

    def get_transfer(self, transaction_id: str, *, token_address: str, recipient: str) -> Optional[TokenTransfer]:
        self.calls.append(transaction_id)
        if self.block is not None:
            self.block.wait(5)
        return self.transfers.get(transaction_id)

    def token_balance(self, address: str, *, token_address: str) -> Decimal:
        return self.balances.get(address, Decimal(0))

    def block_number(self) -> int:
        return self.head

    def transfers_to(
        self,
        recipient: str,
        *,
        token_address: str,
        from_block: int,
        to_block: Optional[int] = None,
    ) -> List[TokenTransfer]:
        last = self.head if to_block is None else to_block
        self.scans.append({"recipient": recipient, "from_block": from_block, "to_block": last})
        found = [
            t
            for t in self.transfers.values()
            if t.block_number is not None
            and from_block <= t.block_number <= last
            and t.recipient is not None
            and t.recipient.lower() == recipient.lower()
        ]
        return sorted(found, key=lambda t: t.block_number)


class FakeResponse:
    def __init__(self, payload: Any = None, status_code: int = 200, text: str = "") -> None:
        self._payload = payload
        self.status_code = status_code
        self.text = text or str(payload)

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    """Records requests and answers them from a queue of responses."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.posts: List[Dict[str, Any]] = []
        self.gets: List[Dict[str, Any]] = []

    def _next(self) -> Any:
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response()
        return response

    def post(self, url: str, json: Any = None, timeout: Any = None) -> Any:
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        return self._next()

    def get(self, url: str, timeout: Any = None) -> Any:
        self.gets.append({"url": url, "timeout": timeout})
        return self._next()
