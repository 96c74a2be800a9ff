"""
Public, high-level entry point wiring the lifecycle components together.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Mapping, Optional

import requests

from .core.balance import BalanceCheck, HttpTopUpRail, TopUpCoordinator, TopUpHandle, TopUpRail, can_settle
from .core.config import ServiceConfig, ServiceParameters, load_service_config
from .core.encoding import DeepLink, to_deep_link, to_shareable_link
from .core.errors import ConfigError
from .core.expiry import ExpiryMonitor
from .core.factory import RequestFactory
from .core.ledger import EvmLedgerClient, LedgerClient
from .core.models import PaymentRequest, utcnow
from .core.notifier import LoggingNotifier, StatusNotifier, WebhookNotifier
from .core.rates import FixedRateSource, HttpRateSource, RateSource
from .core.reconciler import IncomingTransferReconciler
from .core.regenerator import Regenerator
from .core.settlement import SettlementResult, SettlementVerifier
from .core.store import InMemoryRepository, JsonFileRepository, LifecycleStore, RecordRepository

__all__ = [
    "PaymentRequestService",
    "create_service",
]


def _default_rate_source(config: ServiceConfig, session: requests.Session) -> RateSource:
    if config.rate is not None:
        return FixedRateSource(config.rate)
    if config.rate_url:
        return HttpRateSource(config.rate_url, field=config.rate_field, session=session)
    raise ConfigError("No rate source configured")


def _default_repository(config: ServiceConfig) -> RecordRepository:
    if config.store_path:
        return JsonFileRepository(config.store_path)
    return InMemoryRepository()


class PaymentRequestService:
    """
    The request surface offered to merchants and payers.

    Collaborators not passed in are built from ``config``: a JSON-file or
    in-memory repository, a fixed or HTTP rate source, the EVM JSON-RPC
    ledger and, when ``PAYREQ_TOPUP_URL`` is set, the HTTP top-up rail.
    """

    def __init__(
        self,
        config: ServiceConfig,
        *,
        repository: Optional[RecordRepository] = None,
        rate_source: Optional[RateSource] = None,
        ledger: Optional[LedgerClient] = None,
        top_up_rail: Optional[TopUpRail] = None,
        notifier: Optional[StatusNotifier] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.session = session or requests.Session()

        self.notifier = notifier or StatusNotifier()
        if notifier is None:
            self.notifier.subscribe(LoggingNotifier())
            if config.webhook_url:
                self.notifier.subscribe(WebhookNotifier(config.webhook_url, session=self.session))

        self.store = LifecycleStore(
            repository if repository is not None else _default_repository(config),
            notifier=self.notifier,
            clock=clock,
        )
        self.factory = RequestFactory(
            self.store,
            rate_source or _default_rate_source(config, self.session),
            recipient_address=config.recipient_address,
            token_address=config.token_address,
            precision=config.token_precision,
            validity_window=config.validity_window,
        )
        self.regenerator = Regenerator(self.store, self.factory)

        self.ledger: LedgerClient = ledger or EvmLedgerClient(
            config.rpc_url,
            token_decimals=config.token_decimals,
            confirmations=config.confirmations,
            chain_id=config.chain_id,
            session=self.session,
            timeout=config.ledger_timeout_seconds,
        )
        self.verifier = SettlementVerifier(self.store, self.ledger, timeout=config.ledger_timeout_seconds)
        self.reconciler = IncomingTransferReconciler(
            self.store,
            self.ledger,
            self.verifier,
            lookback_blocks=config.watch_lookback_blocks,
        )
        self.monitor = ExpiryMonitor(
            self.store,
            interval_seconds=config.sweep_interval_seconds,
            reconciler=self.reconciler if config.watch_transfers else None,
        )

        if top_up_rail is None and config.topup_url:
            top_up_rail = HttpTopUpRail(config.topup_url, session=self.session)
        self.top_up: Optional[TopUpCoordinator] = None
        if top_up_rail is not None:
            self.top_up = TopUpCoordinator.with_ledger(self.store, top_up_rail, self.ledger, config.token_address)

    def start(self) -> None:
        self.monitor.start()

    def stop(self) -> None:
        self.monitor.stop()
        self.verifier.close()

    def __enter__(self) -> "PaymentRequestService":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def create_payment_request(
        self,
        amount_usd: Decimal | str | int | float,
        *,
        merchant_id: Optional[str] = None,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
        success_callback: Optional[str] = None,
        validity_window: Optional[timedelta | float | int] = None,
    ) -> PaymentRequest:
        return self.factory.create(
            merchant_id or self.config.merchant_id,
            amount_usd,
            order_id=order_id,
            description=description,
            success_callback=success_callback,
            validity_window=validity_window,
        )

    def get_payment_request(self, reference: str) -> PaymentRequest:
        return self.store.get(reference)

    def regenerate_payment_request(
        self,
        reference: str,
        *,
        validity_window: Optional[timedelta | float | int] = None,
    ) -> PaymentRequest:
        return self.regenerator.regenerate(reference, validity_window=validity_window)

    def verify_settlement(self, reference: str, transaction_id: str) -> SettlementResult:
        return self.verifier.verify(reference, transaction_id)

    def request_top_up(self, payer_address: str, min_amount_token: Decimal | str | int) -> TopUpHandle:
        if self.top_up is None:
            raise ConfigError("No top-up rail configured (set PAYREQ_TOPUP_URL)")
        return self.top_up.request_top_up(payer_address, min_amount_token)

    def check_balance(
        self,
        reference: str,
        payer_address: Optional[str] = None,
        payer_balance: Optional[Decimal | str | int] = None,
    ) -> BalanceCheck:
        if payer_balance is None:
            if payer_address is None:
                raise ValueError("Provide payer_address or payer_balance")
            payer_balance = self.ledger.token_balance(payer_address, token_address=self.config.token_address)
        return can_settle(payer_balance, self.store.get(reference))

    def deep_link(self, reference: str) -> DeepLink:
        return to_deep_link(self.store.get(reference))

    def deep_link_uri(self, reference: str) -> str:
        return self.deep_link(reference).to_uri(self.config.chain_scheme)

    def shareable_link(self, reference: str) -> str:
        return to_shareable_link(self.store.get(reference), self.config.base_url)

    def resolve_current(self, reference: str) -> PaymentRequest:
        return self.store.resolve_current(reference)

    def lineage(self, reference: str) -> List[PaymentRequest]:
        return self.store.lineage(reference)

    def sweep_expired(self) -> List[str]:
        return self.monitor.sweep()

    def reconcile_incoming(self) -> List[SettlementResult]:
        """Settle Pending requests from transfers mined since the last scan."""
        return self.reconciler.scan()


def create_service(
    *,
    config: Optional[ServiceConfig] = None,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
    parameters: Optional[ServiceParameters] = None,
    repository: Optional[RecordRepository] = None,
    rate_source: Optional[RateSource] = None,
    ledger: Optional[LedgerClient] = None,
    top_up_rail: Optional[TopUpRail] = None,
    notifier: Optional[StatusNotifier] = None,
    session: Optional[requests.Session] = None,
    clock: Callable[[], datetime] = utcnow,
) -> PaymentRequestService:
    """
    Construct a :class:`PaymentRequestService`.

    Callers can either supply a ready-made :class:`ServiceConfig` or let the
    helper assemble one from environment data.
    """
    if config is not None:
        if any(item is not None and item != {} for item in (overrides, base, parameters)):
            raise ValueError("Provide either a pre-built ServiceConfig or environment parameters, not both.")
        cfg = config
    else:
        cfg = load_service_config(env_file=env_file, overrides=overrides, base=base, parameters=parameters)

    return PaymentRequestService(
        cfg,
        repository=repository,
        rate_source=rate_source,
        ledger=ledger,
        top_up_rail=top_up_rail,
        notifier=notifier,
        session=session,
        clock=clock,
    )
