from decimal import Decimal

import pytest

from payment_requests.core.balance import HttpTopUpRail, TopUpCoordinator, TopUpHandle, can_settle
from payment_requests.core.errors import TopUpFailed

from tests.helpers import FakeResponse, FakeSession

PAYER = "0x2222222222222222222222222222222222222222"


class RecordingRail:
    def __init__(self):
        self.calls = []

    def start_top_up(self, payer_address, amount_token):
        self.calls.append((payer_address, amount_token))
        return TopUpHandle(handle_id=f"order-{len(self.calls)}", payer_address=payer_address, amount_token=amount_token)


@pytest.fixture
def request_(factory):
    return factory.create("merchant-1", "10.00")


def test_shortfall_then_sufficient_after_top_up(request_):
    before = can_settle(3, request_)
    assert before.sufficient is False
    assert before.shortfall == Decimal(2)

    after = can_settle(5, request_)
    assert after.sufficient is True
    assert after.shortfall == 0


def test_surplus_balance_has_no_shortfall(request_):
    check = can_settle("100", request_)
    assert check.sufficient
    assert check.shortfall == 0
    assert check.to_payload() == {"sufficient": True, "shortfall": "0"}


def test_invalid_balance(request_):
    with pytest.raises(ValueError):
        can_settle("lots", request_)


def test_top_up_for_shortfall(store, request_):
    rail = RecordingRail()
    coordinator = TopUpCoordinator(store, rail)

    handle = coordinator.top_up_for(request_.reference, PAYER, "3")

    assert rail.calls == [(PAYER, Decimal("2.000000"))]
    assert handle.amount_token == Decimal(2)


def test_no_top_up_when_funded(store, request_):
    rail = RecordingRail()
    assert TopUpCoordinator(store, rail).top_up_for(request_.reference, PAYER, "5") is None
    assert rail.calls == []


def test_resume_reads_balance_from_ledger(store, ledger, request_):
    coordinator = TopUpCoordinator.with_ledger(store, RecordingRail(), ledger, request_.token_address)
    handle = coordinator.top_up_for(request_.reference, PAYER, "3")

    ledger.balances[PAYER] = Decimal("4")
    assert coordinator.resume(handle, request_.reference).shortfall == Decimal(1)

    ledger.balances[PAYER] = Decimal("5")
    assert coordinator.resume(handle, request_.reference).sufficient


def test_resume_without_balance_source(store, request_):
    coordinator = TopUpCoordinator(store, RecordingRail())
    handle = coordinator.request_top_up(PAYER, "2")
    with pytest.raises(ValueError):
        coordinator.resume(handle, request_.reference)
    assert coordinator.resume(handle, request_.reference, payer_balance="5").sufficient


def test_request_top_up_rejects_non_positive(store):
    with pytest.raises(ValueError):
        TopUpCoordinator(store, RecordingRail()).request_top_up(PAYER, "0")


def test_http_rail_opens_order():
    session = FakeSession(
        FakeResponse({"orderId": "PP-123", "status": "CREATED", "approvalUrl": "https://pay.example/PP-123"})
    )
    rail = HttpTopUpRail("https://rail.example/", session=session)

    handle = rail.start_top_up(PAYER, Decimal("2"))

    assert session.posts[0]["url"] == "https://rail.example/orders"
    assert session.posts[0]["json"] == {"payerAddress": PAYER, "tokenAmount": "2"}
    assert handle.handle_id == "PP-123"
    assert handle.approval_url == "https://pay.example/PP-123"


@pytest.mark.parametrize(
    "response",
    [
        FakeResponse({"message": "unavailable"}, status_code=503),
        FakeResponse({"status": "CREATED"}),
        FakeResponse(ValueError("not json"), text="<html>"),
    ],
)
def test_http_rail_failures(response):
    rail = HttpTopUpRail("https://rail.example", session=FakeSession(response))
    with pytest.raises(TopUpFailed):
        rail.start_top_up(PAYER, Decimal("2"))
