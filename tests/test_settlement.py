import threading
from decimal import Decimal

import pytest

from payment_requests.core.errors import LedgerError, UnknownReference
from payment_requests.core.models import PaymentStatus
from payment_requests.core.settlement import SettlementVerifier, VerificationReason

from tests.helpers import OTHER_ADDRESS, TX, TX2


@pytest.fixture
def request_(factory):
    return factory.create("merchant-1", "10.00")


def test_over_payment_settles(verifier, store, ledger, request_, clock):
    ledger.add(TX, "5.1")

    result = verifier.verify(request_.reference, TX)
    record = store.get(request_.reference)

    assert result.success
    assert result.reason is None
    assert record.status is PaymentStatus.SETTLED
    assert record.settlement.transaction_id == TX
    assert record.settlement.settled_amount_token == Decimal("5.1")
    assert record.settlement.settled_at == clock.now


def test_exact_payment_settles(verifier, ledger, request_):
    ledger.add(TX, "5")
    assert verifier.verify(request_.reference, TX).success


def test_under_payment_is_rejected_without_mutation(verifier, store, ledger, request_):
    ledger.add(TX, "4.999999")

    result = verifier.verify(request_.reference, TX)

    assert not result.success
    assert result.reason is VerificationReason.AMOUNT_MISMATCH
    assert store.get(request_.reference).status is PaymentStatus.PENDING


def test_wrong_recipient(verifier, store, ledger, request_):
    ledger.add(TX, "5", recipient=OTHER_ADDRESS)

    result = verifier.verify(request_.reference, TX)

    assert result.reason is VerificationReason.RECIPIENT_MISMATCH
    assert OTHER_ADDRESS in result.detail
    assert store.get(request_.reference).status is PaymentStatus.PENDING


def test_transaction_without_token_transfer(verifier, ledger, request_):
    ledger.add(TX, "0", recipient=None)
    assert verifier.verify(request_.reference, TX).reason is VerificationReason.RECIPIENT_MISMATCH


def test_unknown_transaction(verifier, request_):
    result = verifier.verify(request_.reference, TX)
    assert result.reason is VerificationReason.NOT_FOUND
    assert result.retryable


def test_reverted_transaction(verifier, ledger, request_):
    ledger.add(TX, "5", succeeded=False)
    assert verifier.verify(request_.reference, TX).reason is VerificationReason.NOT_FOUND


def test_not_finalized_then_settles_on_retry(verifier, store, ledger, request_):
    ledger.add(TX, "5", finalized=False)

    first = verifier.verify(request_.reference, TX)
    assert first.reason is VerificationReason.NOT_FINALIZED
    assert first.retryable
    assert store.get(request_.reference).status is PaymentStatus.PENDING

    ledger.finalize(TX)
    second = verifier.verify(request_.reference, TX)
    assert second.success
    assert store.get(request_.reference).status is PaymentStatus.SETTLED


def test_repeat_verification_returns_stored_settlement(verifier, ledger, request_, clock):
    ledger.add(TX, "5")

    first = verifier.verify(request_.reference, TX)
    clock.advance(30)
    second = verifier.verify(request_.reference, TX.upper().replace("0X", "0x"))

    assert second.success
    assert second.settlement == first.settlement
    assert ledger.calls == [TX]


def test_settled_request_rejects_other_transactions(verifier, ledger, request_):
    ledger.add(TX, "5")
    ledger.add(TX2, "5")
    verifier.verify(request_.reference, TX)

    result = verifier.verify(request_.reference, TX2)

    assert result.reason is VerificationReason.REQUEST_NOT_PENDING


def test_transaction_reuse_across_requests(verifier, factory, store, ledger, request_):
    other = factory.create("merchant-1", "10.00")
    ledger.add(TX, "5")
    verifier.verify(request_.reference, TX)

    result = verifier.verify(other.reference, TX)

    assert result.reason is VerificationReason.DUPLICATE_TRANSACTION
    assert store.get(other.reference).status is PaymentStatus.PENDING


def test_unknown_reference_raises(verifier):
    with pytest.raises(UnknownReference):
        verifier.verify("nope", TX)


def test_empty_transaction_id(verifier, request_):
    with pytest.raises(ValueError):
        verifier.verify(request_.reference, "  ")


def test_ledger_errors_are_retryable(store, request_):
    class DownLedger:
        def get_transfer(self, *args, **kwargs):
            raise LedgerError("connection refused")

    result = SettlementVerifier(store, DownLedger()).verify(request_.reference, TX)

    assert result.reason is VerificationReason.NOT_FINALIZED
    assert store.get(request_.reference).status is PaymentStatus.PENDING


def test_ledger_timeout_does_not_hold_store_lock(store, ledger, request_):
    ledger.add(TX, "5")
    ledger.block = threading.Event()
    verifier = SettlementVerifier(store, ledger, timeout=0.05)
    try:
        result = verifier.verify(request_.reference, TX)
        assert result.reason is VerificationReason.NOT_FINALIZED
        # the store stays writable while the ledger call is outstanding
        assert store.get(request_.reference).status is PaymentStatus.PENDING
    finally:
        ledger.block.set()
        verifier.close()


def test_expiry_racing_verification(store, ledger, request_, clock):
    ledger.add(TX, "5")
    started = threading.Event()
    release = threading.Event()

    class SlowLedger:
        def get_transfer(self, *args, **kwargs):
            started.set()
            release.wait(5)
            return ledger.get_transfer(*args, **kwargs)

    verifier = SettlementVerifier(store, SlowLedger(), timeout=5)
    results = []
    worker = threading.Thread(target=lambda: results.append(verifier.verify(request_.reference, TX)))
    worker.start()
    started.wait(5)
    clock.advance(15 * 60)
    store.expire(request_.reference)
    release.set()
    worker.join()
    verifier.close()

    assert results[0].reason is VerificationReason.REQUEST_NOT_PENDING
    assert store.get(request_.reference).status is PaymentStatus.EXPIRED


def test_concurrent_duplicate_verifications(store, ledger, request_):
    ledger.add(TX, "5")
    verifier = SettlementVerifier(store, ledger)
    results = []
    threads = [
        threading.Thread(target=lambda: results.append(verifier.verify(request_.reference, TX)))
        for _ in range(8)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    verifier.close()

    assert all(result.success for result in results)
    assert len({result.settlement for result in results}) == 1


def test_remediation_copy_is_distinct():
    messages = {reason.remediation for reason in VerificationReason}
    assert len(messages) == len(VerificationReason)
