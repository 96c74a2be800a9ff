"""
Ledger access: looking up ERC-20 transfers and balances over EVM JSON-RPC.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

import requests
from eth_utils import keccak, to_checksum_address
from hexbytes import HexBytes

from .errors import LedgerError

__all__ = [
    "EvmLedgerClient",
    "LedgerClient",
    "TokenTransfer",
    "TRANSFER_TOPIC",
    "from_base_units",
]

TRANSFER_TOPIC = "0x" + keccak(text="Transfer(address,address,uint256)").hex()
BALANCE_OF_SELECTOR = "0x" + keccak(text="balanceOf(address)")[:4].hex()

_RETRYABLE_STATUS = {429, 502, 503, 504}


def from_base_units(value: int, decimals: int) -> Decimal:
    return Decimal(value).scaleb(-decimals)


@dataclass(frozen=True)
class TokenTransfer:
    """
    What the ledger knows about one transaction.

    ``recipient`` is ``None`` while the transaction is unmined or when it
    moved none of the requested token. ``amount`` is in whole tokens.
    """

    transaction_id: str
    token_address: str
    recipient: Optional[str]
    amount: Decimal
    finalized: bool
    succeeded: bool = True
    confirmations: int = 0
    block_number: Optional[int] = None
    sender: Optional[str] = None


class LedgerClient(Protocol):
    def get_transfer(
        self,
        transaction_id: str,
        *,
        token_address: str,
        recipient: str,
    ) -> Optional[TokenTransfer]:
        ...

    def token_balance(self, address: str, *, token_address: str) -> Decimal:
        ...

    def block_number(self) -> int:
        ...

    def transfers_to(
        self,
        recipient: str,
        *,
        token_address: str,
        from_block: int,
        to_block: Optional[int] = None,
    ) -> List[TokenTransfer]:
        ...


def _hex_to_int(value: Optional[str]) -> int:
    if not value or value == "0x":
        return 0
    return int(value, 16)


def _topic_address(topic: str) -> str:
    return to_checksum_address("0x" + topic[-40:])


def _address_topic(address: str) -> str:
    return "0x" + to_checksum_address(address)[2:].lower().rjust(64, "0")


def _data_to_int(data: Optional[str]) -> int:
    raw = HexBytes(data or "0x")
    return int.from_bytes(raw, "big") if raw else 0


class EvmLedgerClient:
    def __init__(
        self,
        endpoint: str,
        *,
        token_decimals: int = 18,
        confirmations: int = 1,
        chain_id: Optional[int] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_factor: float = 0.2,
    ) -> None:
        self.endpoint = endpoint
        self.token_decimals = token_decimals
        self.confirmations = confirmations
        self.chain_id = chain_id
        self._chain_verified = chain_id is None
        self.session = session or requests.Session()
        self.timeout = timeout
        self._max_retries = max_retries
        self._backoff_factor = backoff_factor
        self._request_id = 0

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    def _retry_delay(self, attempt: int) -> float:
        return self._backoff_factor * (2 ** (attempt - 1))

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        body = {"jsonrpc": "2.0", "id": self._next_id(), "method": method, "params": params or []}
        attempt = 0
        while True:
            try:
                response = self.session.post(self.endpoint, json=body, timeout=self.timeout)
            except requests.RequestException as exc:
                attempt += 1
                if attempt <= self._max_retries:
                    delay = self._retry_delay(attempt)
                    logging.warning(
                        "Ledger RPC connection error (%s). Retrying in %.2fs (attempt %d/%d)",
                        exc,
                        delay,
                        attempt,
                        self._max_retries,
                    )
                    time.sleep(delay)
                    continue
                raise LedgerError(f"Failed to reach ledger RPC endpoint {self.endpoint}: {exc}") from exc

            if response.status_code in _RETRYABLE_STATUS and attempt < self._max_retries:
                attempt += 1
                delay = self._retry_delay(attempt)
                logging.warning(
                    "Ledger RPC throttled (status=%s). Retrying in %.2fs (attempt %d/%d)",
                    response.status_code,
                    delay,
                    attempt,
                    self._max_retries,
                )
                time.sleep(delay)
                continue
            if response.status_code >= 400:
                raise LedgerError(f"Ledger RPC responded with {response.status_code}: {response.text}")

            try:
                payload = response.json()
            except (json.JSONDecodeError, ValueError) as exc:
                raise LedgerError(f"Failed to parse JSON from ledger RPC at {self.endpoint}: {response.text}") from exc

            logging.debug("Ledger RPC call method=%s params=%s", method, params)
            if payload.get("error"):
                raise LedgerError(f"Ledger RPC {method} failed: {payload['error']}")
            return payload.get("result")

    def block_number(self) -> int:
        return _hex_to_int(self.call("eth_blockNumber"))

    def ensure_chain(self) -> None:
        """Refuse to read from a node serving a different chain than configured."""
        if self._chain_verified:
            return
        served = _hex_to_int(self.call("eth_chainId"))
        if served != self.chain_id:
            raise LedgerError(f"Ledger RPC {self.endpoint} serves chain {served}, expected {self.chain_id}")
        self._chain_verified = True

    def _token_transfers(self, receipt: Dict[str, Any], token_address: str) -> List[Dict[str, Any]]:
        transfers = []
        for log in receipt.get("logs") or []:
            topics = log.get("topics") or []
            if len(topics) != 3 or topics[0].lower() != TRANSFER_TOPIC:
                continue
            if (log.get("address") or "").lower() != token_address.lower():
                continue
            transfers.append(
                {
                    "sender": _topic_address(topics[1]),
                    "recipient": _topic_address(topics[2]),
                    "value": _data_to_int(log.get("data")),
                }
            )
        return transfers

    def get_transfer(
        self,
        transaction_id: str,
        *,
        token_address: str,
        recipient: str,
    ) -> Optional[TokenTransfer]:
        """
        Summarize the ``token_address`` transfers in ``transaction_id``.

        Transfers to ``recipient`` are summed. If the transaction paid someone
        else, the first transfer is reported so the caller can see where the
        tokens went. Returns ``None`` for a transaction the node has never seen.
        """
        self.ensure_chain()
        receipt = self.call("eth_getTransactionReceipt", [transaction_id])
        if receipt is None:
            if self.call("eth_getTransactionByHash", [transaction_id]) is None:
                return None
            return TokenTransfer(
                transaction_id=transaction_id,
                token_address=token_address,
                recipient=None,
                amount=Decimal(0),
                finalized=False,
            )

        block_number = _hex_to_int(receipt.get("blockNumber"))
        confirmations = max(0, self.block_number() - block_number + 1)
        finalized = confirmations >= self.confirmations
        succeeded = _hex_to_int(receipt.get("status")) == 1

        transfers = self._token_transfers(receipt, token_address)
        wanted = recipient.lower()
        matching = [t for t in transfers if t["recipient"].lower() == wanted]
        if matching:
            chosen_recipient = matching[0]["recipient"]
            sender = matching[0]["sender"]
            value = sum(t["value"] for t in matching)
        elif transfers:
            chosen_recipient = transfers[0]["recipient"]
            sender = transfers[0]["sender"]
            value = transfers[0]["value"]
        else:
            chosen_recipient, sender, value = None, None, 0

        logging.debug(
            "Transaction %s: block=%s confirmations=%s status=%s token transfers=%d",
            transaction_id,
            block_number,
            confirmations,
            succeeded,
            len(transfers),
        )
        return TokenTransfer(
            transaction_id=transaction_id,
            token_address=token_address,
            recipient=chosen_recipient,
            amount=from_base_units(value, self.token_decimals),
            finalized=finalized,
            succeeded=succeeded,
            confirmations=confirmations,
            block_number=block_number,
            sender=sender,
        )

    def token_balance(self, address: str, *, token_address: str) -> Decimal:
        self.ensure_chain()
        owner = HexBytes(to_checksum_address(address)).hex()
        if owner.startswith("0x"):
            owner = owner[2:]
        data = BALANCE_OF_SELECTOR + owner.rjust(64, "0")
        result = self.call("eth_call", [{"to": token_address, "data": data}, "latest"])
        return from_base_units(_hex_to_int(result), self.token_decimals)

    def transfers_to(
        self,
        recipient: str,
        *,
        token_address: str,
        from_block: int,
        to_block: Optional[int] = None,
    ) -> List[TokenTransfer]:
        """
        Incoming ``token_address`` transfers to ``recipient`` between two
        blocks (inclusive), one entry per transaction in block order.
        """
        self.ensure_chain()
        head = self.block_number()
        last = head if to_block is None else min(to_block, head)
        if from_block > last:
            return []
        logs = self.call(
            "eth_getLogs",
            [
                {
                    "address": token_address,
                    "fromBlock": hex(from_block),
                    "toBlock": hex(last),
                    "topics": [TRANSFER_TOPIC, None, _address_topic(recipient)],
                }
            ],
        )

        by_transaction: Dict[str, TokenTransfer] = {}
        for log in logs or []:
            topics = log.get("topics") or []
            if len(topics) != 3 or log.get("removed"):
                continue
            transaction_id = (log.get("transactionHash") or "").lower()
            value = from_base_units(_data_to_int(log.get("data")), self.token_decimals)
            known = by_transaction.get(transaction_id)
            if known is not None:
                by_transaction[transaction_id] = replace(known, amount=known.amount + value)
                continue
            block_number = _hex_to_int(log.get("blockNumber"))
            confirmations = max(0, head - block_number + 1)
            by_transaction[transaction_id] = TokenTransfer(
                transaction_id=transaction_id,
                token_address=token_address,
                recipient=_topic_address(topics[2]),
                amount=value,
                finalized=confirmations >= self.confirmations,
                confirmations=confirmations,
                block_number=block_number,
                sender=_topic_address(topics[1]),
            )

        logging.debug(
            "Scanned blocks %d-%d for transfers to %s: %d transaction(s)",
            from_block,
            last,
            recipient,
            len(by_transaction),
        )
        return sorted(by_transaction.values(), key=lambda transfer: transfer.block_number or 0)
