import json
from dataclasses import replace
from decimal import Decimal

import pytest

from payment_requests import PaymentStatus, VerificationReason, create_service
from payment_requests.cli import run_cli
from payment_requests.core.balance import TopUpHandle
from payment_requests.core.errors import ConfigError, NotExpired
from payment_requests.core.notifier import StatusNotifier
from payment_requests.core.rates import FixedRateSource

from tests.helpers import RECIPIENT, TOKEN, TX

PAYER = "0x2222222222222222222222222222222222222222"
OTHER_TOKEN = "0x3333333333333333333333333333333333333333"


class Rail:
    def start_top_up(self, payer_address, amount_token):
        return TopUpHandle(handle_id="h-1", payer_address=payer_address, amount_token=amount_token)


@pytest.fixture
def service(config, ledger, clock):
    service = create_service(config=config, ledger=ledger, top_up_rail=Rail(), clock=clock, notifier=StatusNotifier())
    yield service
    service.stop()


def test_end_to_end_with_top_up(service, ledger):
    request = service.create_payment_request("10.00", order_id="A-1")
    assert request.merchant_id == "merchant-1"
    assert service.shareable_link(request.reference) == f"https://shop.example/pay/{request.reference}"
    assert service.deep_link_uri(request.reference) == f"ethereum:{RECIPIENT}?token={TOKEN}&amount=5.000000"

    ledger.balances[PAYER] = Decimal(3)
    check = service.check_balance(request.reference, payer_address=PAYER)
    assert check.shortfall == Decimal(2)
    handle = service.request_top_up(PAYER, check.shortfall)
    assert handle.amount_token == Decimal(2)

    ledger.balances[PAYER] = Decimal(5)
    assert service.top_up.resume(handle, request.reference).sufficient

    ledger.add(TX, "5")
    result = service.verify_settlement(request.reference, TX)
    assert result.success
    assert service.get_payment_request(request.reference).status is PaymentStatus.SETTLED


def test_expire_regenerate_settle(service, ledger, clock):
    request = service.create_payment_request("10.00", validity_window=1)
    clock.advance(2)
    assert service.sweep_expired() == [request.reference]

    ledger.add(TX, "5")
    assert service.verify_settlement(request.reference, TX).reason is VerificationReason.REQUEST_NOT_PENDING

    successor = service.regenerate_payment_request(request.reference)
    stale = service.get_payment_request(request.reference)
    assert stale.superseded_by == successor.reference
    assert service.resolve_current(request.reference).reference == successor.reference
    assert service.verify_settlement(successor.reference, TX).success
    assert [r.status for r in service.lineage(successor.reference)] == [
        PaymentStatus.SUPERSEDED,
        PaymentStatus.SETTLED,
    ]


def test_deep_link_uses_the_token_stored_on_the_request(config, ledger, clock, tmp_path):
    path = str(tmp_path / "records.json")
    original = create_service(config=replace(config, store_path=path), ledger=ledger, clock=clock, notifier=StatusNotifier())
    request = original.create_payment_request("10.00")
    original.stop()

    switched = replace(config, store_path=path, token_address=OTHER_TOKEN)
    service = create_service(config=switched, ledger=ledger, clock=clock, notifier=StatusNotifier())

    link = service.deep_link(request.reference)
    assert link.token_id == TOKEN == service.get_payment_request(request.reference).token_address
    assert f"token={TOKEN}" in service.deep_link_uri(request.reference)
    assert service.create_payment_request("1").token_address == OTHER_TOKEN
    service.stop()


def test_regenerate_rejects_live_request(service):
    request = service.create_payment_request("1")
    with pytest.raises(NotExpired):
        service.regenerate_payment_request(request.reference)


def test_top_up_requires_a_rail(config, ledger):
    service = create_service(config=config, ledger=ledger, rate_source=FixedRateSource("1"))
    with pytest.raises(ConfigError):
        service.request_top_up(PAYER, "1")
    service.stop()


def test_config_and_environment_are_exclusive(config):
    with pytest.raises(ValueError):
        create_service(config=config, overrides={"PAYREQ_RATE": "1"})


def _cli(tmp_path, capsys, *args):
    argv = [
        "--env-file",
        str(tmp_path / "absent.env"),
        "--store",
        str(tmp_path / "records.json"),
        "--set",
        f"PAYREQ_RECIPIENT_ADDRESS={RECIPIENT}",
        "--set",
        "PAYREQ_RATE=2",
        "--set",
        "PAYREQ_MERCHANT_ID=cli-merchant",
        *args,
    ]
    code = run_cli(argv)
    out = capsys.readouterr().out
    return code, (json.loads(out) if out.strip() else None)


def test_cli_create_show_link_sweep(tmp_path, capsys):
    code, created = _cli(tmp_path, capsys, "create", "10.00", "--order-id", "A-9")
    assert code == 0
    assert created["amountToken"] == "5.000000"
    assert created["merchantId"] == "cli-merchant"

    code, shown = _cli(tmp_path, capsys, "show", created["reference"])
    assert code == 0
    assert shown == created

    code, links = _cli(tmp_path, capsys, "link", created["reference"])
    assert links["shareableLink"] == f"/pay/{created['reference']}"
    assert links["uri"].startswith(f"ethereum:{RECIPIENT}?token=")

    code, swept = _cli(tmp_path, capsys, "sweep")
    assert code == 0
    assert swept == {"expired": []}


def test_cli_errors_exit_non_zero(tmp_path, capsys):
    code, _ = _cli(tmp_path, capsys, "show", "missing")
    assert code == 1

    code, created = _cli(tmp_path, capsys, "create", "10")
    code, _ = _cli(tmp_path, capsys, "regenerate", created["reference"])
    assert code == 1

    code, _ = _cli(tmp_path, capsys, "create", "-5")
    assert code == 1


def test_cli_invalid_configuration(tmp_path, capsys, monkeypatch):
    monkeypatch.delenv("PAYREQ_RECIPIENT_ADDRESS", raising=False)
    code = run_cli(["--env-file", str(tmp_path / "absent.env"), "--set", "PAYREQ_RATE=2", "sweep"])
    assert code == 1


def test_incoming_transfers_are_reconciled(service, ledger):
    request = service.create_payment_request("10.00")
    ledger.add(TX, "5", block_number=ledger.head)
    service.reconciler.next_block = 1

    results = service.reconcile_incoming()

    assert [r.reference for r in results] == [request.reference]
    assert service.get_payment_request(request.reference).status is PaymentStatus.SETTLED
    assert service.monitor.reconciler is service.reconciler


def test_transfer_watching_can_be_disabled(config, ledger):
    service = create_service(config=replace(config, watch_transfers=False), ledger=ledger, notifier=StatusNotifier())
    assert service.monitor.reconciler is None
    service.stop()
