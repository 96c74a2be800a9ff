from __future__ import annotations

import pytest

from payment_requests.core.config import ServiceConfig
from payment_requests.core.factory import RequestFactory
from payment_requests.core.notifier import StatusNotifier
from payment_requests.core.rates import FixedRateSource
from payment_requests.core.settlement import SettlementVerifier
from payment_requests.core.store import LifecycleStore

from tests.helpers import RECIPIENT, TOKEN, Clock, FakeLedger


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def store(clock, events) -> LifecycleStore:
    notifier = StatusNotifier()
    notifier.subscribe(events.append)
    return LifecycleStore(notifier=notifier, clock=clock)


@pytest.fixture
def rates() -> FixedRateSource:
    return FixedRateSource("2.00")


@pytest.fixture
def factory(store, rates) -> RequestFactory:
    return RequestFactory(store, rates, recipient_address=RECIPIENT, token_address=TOKEN)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def config() -> ServiceConfig:
    return ServiceConfig.from_mapping(
        {
            "PAYREQ_MERCHANT_ID": "merchant-1",
            "PAYREQ_RECIPIENT_ADDRESS": RECIPIENT,
            "PAYREQ_TOKEN_ADDRESS": TOKEN,
            "PAYREQ_RATE": "2.00",
            "PAYREQ_BASE_URL": "https://shop.example",
        }
    )


@pytest.fixture
def verifier(store, ledger):
    verifier = SettlementVerifier(store, ledger, timeout=1.0)
    yield verifier
    verifier.close()
