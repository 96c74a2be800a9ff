"""
Public facade for the payment request lifecycle package.

The most useful pieces are re-exported here so integrators can
``from payment_requests import ...`` without navigating the package.
"""

from .api import PaymentRequestService, create_service
from .core import (
    BalanceCheck,
    ConfigError,
    DeepLink,
    EvmLedgerClient,
    FixedRateSource,
    HttpRateSource,
    HttpTopUpRail,
    IllegalTransition,
    InMemoryRepository,
    InvalidAmount,
    JsonFileRepository,
    LifecycleStore,
    NotExpired,
    PaymentRequest,
    PaymentRequestError,
    PaymentStatus,
    RateUnavailable,
    ServiceConfig,
    ServiceParameters,
    Settlement,
    SettlementResult,
    StatusEvent,
    TopUpHandle,
    UnknownReference,
    VerificationReason,
    can_settle,
    load_service_config,
    poll_until_terminal,
    to_deep_link,
    to_shareable_link,
    verify_until_final,
)

__all__ = (
    "BalanceCheck",
    "ConfigError",
    "DeepLink",
    "EvmLedgerClient",
    "FixedRateSource",
    "HttpRateSource",
    "HttpTopUpRail",
    "IllegalTransition",
    "InMemoryRepository",
    "InvalidAmount",
    "JsonFileRepository",
    "LifecycleStore",
    "NotExpired",
    "PaymentRequest",
    "PaymentRequestError",
    "PaymentRequestService",
    "PaymentStatus",
    "RateUnavailable",
    "ServiceConfig",
    "ServiceParameters",
    "Settlement",
    "SettlementResult",
    "StatusEvent",
    "TopUpHandle",
    "UnknownReference",
    "VerificationReason",
    "can_settle",
    "create_service",
    "load_service_config",
    "poll_until_terminal",
    "to_deep_link",
    "to_shareable_link",
    "verify_until_final",
)
