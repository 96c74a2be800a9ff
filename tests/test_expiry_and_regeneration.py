import threading
import time
from datetime import timedelta
from decimal import Decimal

import pytest

from payment_requests.core.errors import NotExpired, RateUnavailable
from payment_requests.core.expiry import ExpiryMonitor
from payment_requests.core.models import PaymentStatus, Settlement
from payment_requests.core.regenerator import Regenerator
from payment_requests.core.settlement import SettlementVerifier, VerificationReason

from tests.helpers import TX


@pytest.fixture
def monitor(store):
    return ExpiryMonitor(store, interval_seconds=0.01)


@pytest.fixture
def regenerator(store, factory):
    return Regenerator(store, factory)


def test_sweep_expires_only_overdue_requests(factory, store, clock, monitor):
    short = factory.create("m", "10", validity_window=1)
    long = factory.create("m", "10", validity_window=600)
    clock.advance(2)

    assert monitor.sweep() == [short.reference]
    assert store.repository.load(short.reference).status is PaymentStatus.EXPIRED
    assert store.repository.load(long.reference).status is PaymentStatus.PENDING


def test_sweep_is_idempotent(factory, clock, monitor, events):
    factory.create("m", "10", validity_window=1)
    clock.advance(2)

    monitor.sweep()
    assert monitor.sweep() == []
    assert [e.current for e in events].count(PaymentStatus.EXPIRED) == 1


def test_sweep_skips_requests_settled_in_the_meantime(factory, store, clock, monitor):
    request = factory.create("m", "10", validity_window=1)
    store.settle(request.reference, Settlement(TX, clock.now, Decimal("5")))
    clock.advance(2)

    assert monitor.sweep() == []
    assert store.get(request.reference).status is PaymentStatus.SETTLED


def test_expired_request_cannot_be_verified(factory, store, clock, monitor, ledger):
    request = factory.create("m", "10", validity_window=1)
    ledger.add(TX, "5")
    clock.advance(2)
    monitor.sweep()

    result = SettlementVerifier(store, ledger).verify(request.reference, TX)

    assert not result.success
    assert result.reason is VerificationReason.REQUEST_NOT_PENDING
    assert ledger.calls == []
    assert store.get(request.reference).status is PaymentStatus.EXPIRED


def test_background_monitor_expires_without_any_reader(factory, store, clock, monitor):
    request = factory.create("m", "10", validity_window=1)
    clock.advance(2)

    monitor.start()
    try:
        deadline = time.monotonic() + 2
        while store.repository.load(request.reference).status is PaymentStatus.PENDING:
            assert time.monotonic() < deadline, "monitor never expired the request"
            time.sleep(0.01)
    finally:
        monitor.stop()
    assert not monitor.running


def test_monitor_cannot_start_twice(monitor):
    monitor.start()
    try:
        with pytest.raises(RuntimeError):
            monitor.start()
    finally:
        monitor.stop()


def test_regenerate_links_successor(factory, store, clock, rates, regenerator):
    original = factory.create(
        "merchant-9",
        "10.00",
        order_id="ORD-1",
        description="Two coffees",
        success_callback="https://shop.example/thanks",
        validity_window=60,
    )
    clock.advance(61)
    rates.set_rate("4.00")

    successor = regenerator.regenerate(original.reference)
    original_now = store.get(original.reference)

    assert successor.reference != original.reference
    assert successor.status is PaymentStatus.PENDING
    assert successor.expires_at == clock.now + timedelta(minutes=15)
    assert successor.merchant_id == original.merchant_id
    assert successor.order_id == original.order_id
    assert successor.description == original.description
    assert successor.success_callback == original.success_callback
    assert successor.supersedes == original.reference
    assert successor.conversion_rate_snapshot == Decimal("4.00")
    assert successor.amount_token == Decimal("2.5")

    assert original_now.status is PaymentStatus.SUPERSEDED
    assert original_now.superseded_by == successor.reference
    assert original_now.amount_token == original.amount_token
    assert original_now.conversion_rate_snapshot == original.conversion_rate_snapshot


def test_regenerate_pending_request_fails(factory, regenerator):
    request = factory.create("m", "10")
    with pytest.raises(NotExpired) as excinfo:
        regenerator.regenerate(request.reference)
    assert "still valid" in str(excinfo.value)


def test_regenerate_twice_fails(factory, clock, regenerator):
    request = factory.create("m", "10", validity_window=1)
    clock.advance(1)
    regenerator.regenerate(request.reference)

    with pytest.raises(NotExpired):
        regenerator.regenerate(request.reference)


def test_regenerate_with_rate_outage_leaves_original_expired(factory, store, clock, rates, regenerator):
    request = factory.create("m", "10", validity_window=1)
    clock.advance(1)

    def broken():
        raise RuntimeError("oracle down")

    factory.rate_source = broken
    with pytest.raises(RateUnavailable):
        regenerator.regenerate(request.reference)
    assert store.get(request.reference).status is PaymentStatus.EXPIRED
    assert len(store.repository.all()) == 1


def test_concurrent_regeneration_issues_one_successor(factory, store, clock, regenerator):
    request = factory.create("m", "10", validity_window=1)
    clock.advance(1)
    store.get(request.reference)
    successes, failures = [], []

    def regenerate():
        try:
            successes.append(regenerator.regenerate(request.reference))
        except NotExpired:
            failures.append(True)

    threads = [threading.Thread(target=regenerate) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(successes) == 1
    assert len(failures) == 5
    assert len(store.repository.all()) == 2


def test_regeneration_chain_resolves_to_latest(factory, store, clock, regenerator):
    first = factory.create("m", "10", order_id="ORD-2", validity_window=1)
    clock.advance(1)
    second = regenerator.regenerate(first.reference, validity_window=1)
    clock.advance(1)
    third = regenerator.regenerate(second.reference)

    assert store.resolve_current(first.reference).reference == third.reference
    chain = store.lineage(second.reference)
    assert [r.reference for r in chain] == [first.reference, second.reference, third.reference]
    assert {r.order_id for r in chain} == {"ORD-2"}
    assert [r.status for r in chain] == [PaymentStatus.SUPERSEDED, PaymentStatus.SUPERSEDED, PaymentStatus.PENDING]
