"""
Automatic settlement from incoming token transfers.

Instead of waiting for a payer to submit a transaction id, the reconciler
scans the ledger for ``Transfer`` events into the recipient addresses of
Pending requests and feeds each candidate through
:meth:`SettlementVerifier.verify`, so the usual checks and the
one-transaction-one-request rule still apply.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from .ledger import LedgerClient, TokenTransfer
from .models import PaymentRequest
from .settlement import SettlementResult, SettlementVerifier
from .store import LifecycleStore

__all__ = ["IncomingTransferReconciler"]


def _best_match(candidates: List[PaymentRequest], transfer: TokenTransfer) -> Optional[PaymentRequest]:
    """
    The largest request the transfer covers, oldest first on ties. A
    transfer smaller than every open request matches nothing.
    """
    covered = [r for r in candidates if r.amount_token <= transfer.amount]
    if not covered:
        return None
    return min(covered, key=lambda r: (-r.amount_token, r.created_at))


class IncomingTransferReconciler:
    def __init__(
        self,
        store: LifecycleStore,
        ledger: LedgerClient,
        verifier: SettlementVerifier,
        *,
        lookback_blocks: int = 0,
        start_block: Optional[int] = None,
    ) -> None:
        if lookback_blocks < 0:
            raise ValueError("lookback_blocks must not be negative")
        self.store = store
        self.ledger = ledger
        self.verifier = verifier
        self.lookback_blocks = lookback_blocks
        self.next_block = start_block

    def _open_requests(self) -> Dict[Tuple[str, str], List[PaymentRequest]]:
        now = self.store.now()
        groups: Dict[Tuple[str, str], List[PaymentRequest]] = defaultdict(list)
        for record in self.store.pending():
            if record.is_past_deadline(now):
                continue
            groups[(record.recipient_address, record.token_address)].append(record)
        return groups

    def scan(self) -> List[SettlementResult]:
        """
        Match the transfers mined since the previous scan and return the
        settlements made. Blocks holding a transfer that is not final yet
        are scanned again next time.
        """
        head = self.ledger.block_number()
        if self.next_block is None:
            self.next_block = max(0, head - self.lookback_blocks)
        start = self.next_block
        if start > head:
            return []

        groups = self._open_requests()
        resume = head + 1
        settled: List[SettlementResult] = []
        for (recipient, token_address), candidates in groups.items():
            transfers = self.ledger.transfers_to(recipient, token_address=token_address, from_block=start, to_block=head)
            for transfer in transfers:
                if not transfer.finalized:
                    resume = min(resume, transfer.block_number if transfer.block_number is not None else start)
                    continue
                if self.store.find_by_transaction(transfer.transaction_id) is not None:
                    continue
                match = _best_match(candidates, transfer)
                if match is None:
                    logging.info(
                        "Transfer %s of %s tokens to %s matches no open payment",
                        transfer.transaction_id,
                        transfer.amount,
                        recipient,
                    )
                    continue

                result = self.verifier.verify(match.reference, transfer.transaction_id)
                if result.success:
                    logging.info("Matched transfer %s to payment %s", transfer.transaction_id, match.reference)
                    candidates.remove(match)
                    settled.append(result)
                elif result.retryable:
                    resume = min(resume, transfer.block_number if transfer.block_number is not None else start)

        self.next_block = resume
        return settled
