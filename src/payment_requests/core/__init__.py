"""
Core primitives that implement the payment request lifecycle.
"""

from .balance import BalanceCheck, HttpTopUpRail, TopUpCoordinator, TopUpHandle, TopUpRail, can_settle
from .config import ServiceConfig, ServiceParameters, load_service_config
from .encoding import DeepLink, parse_deep_link_uri, to_deep_link, to_shareable_link
from .environment import ServiceEnvironment, build_environment, load_env_file
from .errors import (
    AuthenticationFailed,
    ConfigError,
    IllegalTransition,
    InvalidAmount,
    InvalidValidityWindow,
    LedgerError,
    NotExpired,
    PaymentRequestError,
    PollTimeout,
    RateUnavailable,
    TopUpFailed,
    TransactionAlreadyUsed,
    UnknownReference,
)
from .expiry import ExpiryMonitor
from .factory import RequestFactory
from .identity import PayerIdentity, SignedMessageIdentityProvider, build_challenge
from .ledger import EvmLedgerClient, LedgerClient, TokenTransfer
from .models import PaymentRequest, PaymentStatus, Settlement
from .notifier import LoggingNotifier, StatusEvent, StatusNotifier, WebhookNotifier
from .polling import poll_until_terminal, verify_until_final
from .rates import FixedRateSource, HttpRateSource, RateSource
from .reconciler import IncomingTransferReconciler
from .regenerator import Regenerator
from .settlement import SettlementResult, SettlementVerifier, VerificationReason
from .store import InMemoryRepository, JsonFileRepository, LifecycleStore

__all__ = [
    "AuthenticationFailed",
    "BalanceCheck",
    "ConfigError",
    "DeepLink",
    "EvmLedgerClient",
    "ExpiryMonitor",
    "FixedRateSource",
    "HttpRateSource",
    "HttpTopUpRail",
    "IllegalTransition",
    "InMemoryRepository",
    "IncomingTransferReconciler",
    "InvalidAmount",
    "InvalidValidityWindow",
    "JsonFileRepository",
    "LedgerClient",
    "LedgerError",
    "LifecycleStore",
    "LoggingNotifier",
    "NotExpired",
    "PayerIdentity",
    "PaymentRequest",
    "PaymentRequestError",
    "PaymentStatus",
    "PollTimeout",
    "RateSource",
    "RateUnavailable",
    "Regenerator",
    "RequestFactory",
    "ServiceConfig",
    "ServiceEnvironment",
    "ServiceParameters",
    "Settlement",
    "SettlementResult",
    "SettlementVerifier",
    "SignedMessageIdentityProvider",
    "StatusEvent",
    "StatusNotifier",
    "TokenTransfer",
    "TopUpCoordinator",
    "TopUpFailed",
    "TopUpHandle",
    "TopUpRail",
    "TransactionAlreadyUsed",
    "UnknownReference",
    "VerificationReason",
    "WebhookNotifier",
    "build_challenge",
    "build_environment",
    "can_settle",
    "load_env_file",
    "load_service_config",
    "parse_deep_link_uri",
    "poll_until_terminal",
    "to_deep_link",
    "to_shareable_link",
    "verify_until_final",
]
