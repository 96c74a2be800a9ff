"""
Configuration objects and helpers for the payment request service.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

from eth_utils import is_hex_address, to_checksum_address

from .environment import ServiceEnvironment, build_environment
from .errors import ConfigError

__all__ = [
    "ConfigError",
    "ServiceConfig",
    "ServiceParameters",
    "load_service_config",
    "normalize_address",
]

DEFAULT_TOKEN_ADDRESS = "0x96a0Cc3c0fc5d07818E763E1B25bc78ab4170D1b"
DEFAULT_RPC_URL = "https://mainnet.base.org"

_PARAMETER_TO_ENV_KEY = {
    "merchant_id": "PAYREQ_MERCHANT_ID",
    "recipient_address": "PAYREQ_RECIPIENT_ADDRESS",
    "token_address": "PAYREQ_TOKEN_ADDRESS",
    "token_decimals": "PAYREQ_TOKEN_DECIMALS",
    "token_precision": "PAYREQ_TOKEN_PRECISION",
    "chain_id": "PAYREQ_CHAIN_ID",
    "chain_scheme": "PAYREQ_CHAIN_SCHEME",
    "rpc_url": "PAYREQ_RPC_URL",
    "confirmations": "PAYREQ_CONFIRMATIONS",
    "ledger_timeout_seconds": "PAYREQ_LEDGER_TIMEOUT_SECONDS",
    "validity_seconds": "PAYREQ_VALIDITY_SECONDS",
    "sweep_interval_seconds": "PAYREQ_SWEEP_INTERVAL_SECONDS",
    "rate": "PAYREQ_RATE",
    "rate_url": "PAYREQ_RATE_URL",
    "rate_field": "PAYREQ_RATE_FIELD",
    "topup_url": "PAYREQ_TOPUP_URL",
    "webhook_url": "PAYREQ_WEBHOOK_URL",
    "base_url": "PAYREQ_BASE_URL",
    "store_path": "PAYREQ_STORE_PATH",
    "watch_transfers": "PAYREQ_WATCH_TRANSFERS",
    "watch_lookback_blocks": "PAYREQ_WATCH_LOOKBACK_BLOCKS",
}


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, timedelta):
        return str(value.total_seconds())
    return str(value)


@dataclass(frozen=True)
class ServiceParameters:
    """
    Explicit parameter bundle for constructing :class:`ServiceConfig`.

    Every field maps onto one ``PAYREQ_*`` key; ``None`` leaves the
    environment value in place.
    """

    merchant_id: Optional[str] = None
    recipient_address: Optional[str] = None
    token_address: Optional[str] = None
    token_decimals: Optional[int | str] = None
    token_precision: Optional[int | str] = None
    chain_id: Optional[int | str] = None
    chain_scheme: Optional[str] = None
    rpc_url: Optional[str] = None
    confirmations: Optional[int | str] = None
    ledger_timeout_seconds: Optional[float | str] = None
    validity_seconds: Optional[float | str | timedelta] = None
    sweep_interval_seconds: Optional[float | str] = None
    rate: Optional[Decimal | str | float | int] = None
    rate_url: Optional[str] = None
    rate_field: Optional[str] = None
    topup_url: Optional[str] = None
    webhook_url: Optional[str] = None
    base_url: Optional[str] = None
    store_path: Optional[str] = None
    watch_transfers: Optional[bool | str] = None
    watch_lookback_blocks: Optional[int | str] = None

    def as_overrides(self) -> Dict[str, str]:
        overrides: Dict[str, str] = {}
        for field_name, env_key in _PARAMETER_TO_ENV_KEY.items():
            value = getattr(self, field_name)
            if value is None:
                continue
            overrides[env_key] = _stringify(value)
        return overrides


def normalize_address(raw_address: str, field_name: str) -> str:
    value = raw_address.strip()
    if not value:
        raise ConfigError(f"{field_name} must not be empty")
    if not value.startswith("0x"):
        value = "0x" + value
    if not is_hex_address(value):
        raise ConfigError(f"{field_name} is not a valid EVM address")

    return to_checksum_address(value)


def _int(values: ServiceEnvironment, key: str, default: int, *, minimum: int = 0) -> int:
    raw = values.get(key, str(default))
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got '{raw}'") from exc
    if parsed < minimum:
        raise ConfigError(f"{key} must be at least {minimum}, got {parsed}")
    return parsed


def _seconds(values: ServiceEnvironment, key: str, default: float) -> float:
    raw = values.get(key, str(default))
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number of seconds, got '{raw}'") from exc
    if parsed <= 0:
        raise ConfigError(f"{key} must be greater than zero")
    return parsed


_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _flag(values: ServiceEnvironment, key: str, default: bool) -> bool:
    raw = values.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigError(f"{key} must be true or false, got '{raw}'")


def _optional_rate(values: ServiceEnvironment) -> Optional[Decimal]:
    raw = values.get("PAYREQ_RATE")
    if raw is None:
        return None
    try:
        rate = Decimal(raw)
    except InvalidOperation as exc:
        raise ConfigError(f"PAYREQ_RATE must be a valid decimal number, got '{raw}'") from exc
    if not rate.is_finite() or rate <= 0:
        raise ConfigError("PAYREQ_RATE must be greater than zero")
    return rate


@dataclass(frozen=True)
class ServiceConfig:
    merchant_id: str
    recipient_address: str
    token_address: str = DEFAULT_TOKEN_ADDRESS
    token_decimals: int = 18
    token_precision: int = 6
    chain_id: int = 8453
    chain_scheme: str = "ethereum"
    rpc_url: str = DEFAULT_RPC_URL
    confirmations: int = 1
    ledger_timeout_seconds: float = 30.0
    validity_seconds: float = 900.0
    sweep_interval_seconds: float = 5.0
    rate: Optional[Decimal] = None
    rate_url: Optional[str] = None
    rate_field: str = "usd"
    topup_url: Optional[str] = None
    webhook_url: Optional[str] = None
    base_url: str = ""
    store_path: Optional[str] = None
    watch_transfers: bool = True
    watch_lookback_blocks: int = 0

    @property
    def validity_window(self) -> timedelta:
        return timedelta(seconds=self.validity_seconds)

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "ServiceConfig":
        env = values if isinstance(values, ServiceEnvironment) else ServiceEnvironment(values)
        env = env.scoped()
        unknown = env.unknown_keys(_PARAMETER_TO_ENV_KEY.values())
        if unknown:
            logging.warning("Ignoring unknown setting(s): %s", ", ".join(unknown))

        recipient_address = normalize_address(
            env.require("PAYREQ_RECIPIENT_ADDRESS"),
            "PAYREQ_RECIPIENT_ADDRESS",
        )

        token_address = normalize_address(
            env.get("PAYREQ_TOKEN_ADDRESS", DEFAULT_TOKEN_ADDRESS),
            "PAYREQ_TOKEN_ADDRESS",
        )

        token_decimals = _int(env, "PAYREQ_TOKEN_DECIMALS", 18)
        token_precision = _int(env, "PAYREQ_TOKEN_PRECISION", 6)
        if token_precision > token_decimals:
            raise ConfigError(
                "PAYREQ_TOKEN_PRECISION cannot exceed PAYREQ_TOKEN_DECIMALS "
                f"({token_precision} > {token_decimals})"
            )

        rate = _optional_rate(env)
        rate_url = env.get("PAYREQ_RATE_URL")
        if rate is None and rate_url is None:
            raise ConfigError("Either PAYREQ_RATE or PAYREQ_RATE_URL must be provided")

        return cls(
            merchant_id=env.get("PAYREQ_MERCHANT_ID", "default"),
            recipient_address=recipient_address,
            token_address=token_address,
            token_decimals=token_decimals,
            token_precision=token_precision,
            chain_id=_int(env, "PAYREQ_CHAIN_ID", 8453, minimum=1),
            chain_scheme=env.get("PAYREQ_CHAIN_SCHEME", "ethereum"),
            rpc_url=env.get("PAYREQ_RPC_URL", DEFAULT_RPC_URL).rstrip("/"),
            confirmations=_int(env, "PAYREQ_CONFIRMATIONS", 1, minimum=1),
            ledger_timeout_seconds=_seconds(env, "PAYREQ_LEDGER_TIMEOUT_SECONDS", 30.0),
            validity_seconds=_seconds(env, "PAYREQ_VALIDITY_SECONDS", 900.0),
            sweep_interval_seconds=_seconds(env, "PAYREQ_SWEEP_INTERVAL_SECONDS", 5.0),
            rate=rate,
            rate_url=rate_url,
            rate_field=env.get("PAYREQ_RATE_FIELD", "usd"),
            topup_url=env.get("PAYREQ_TOPUP_URL"),
            webhook_url=env.get("PAYREQ_WEBHOOK_URL"),
            base_url=env.get("PAYREQ_BASE_URL", "").rstrip("/"),
            store_path=env.get("PAYREQ_STORE_PATH"),
            watch_transfers=_flag(env, "PAYREQ_WATCH_TRANSFERS", True),
            watch_lookback_blocks=_int(env, "PAYREQ_WATCH_LOOKBACK_BLOCKS", 0),
        )

    @classmethod
    def from_env(
        cls,
        *,
        env_file: Optional[str] = ".env",
        overrides: Optional[Mapping[str, str]] = None,
        base: Optional[Mapping[str, str]] = None,
        parameters: Optional[ServiceParameters] = None,
    ) -> "ServiceConfig":
        merged_overrides = dict(overrides or {})
        if parameters is not None:
            merged_overrides.update(parameters.as_overrides())

        environment = build_environment(
            env_file=env_file,
            base=base,
            overrides=merged_overrides,
        )
        return cls.from_mapping(environment)


def load_service_config(
    *,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
    parameters: Optional[ServiceParameters] = None,
    **fields: Any,
) -> ServiceConfig:
    """
    Convenience wrapper around :meth:`ServiceConfig.from_env`.

    Keyword arguments named after :class:`ServiceParameters` fields are
    layered on top of ``parameters``.
    """
    unknown = set(fields) - set(_PARAMETER_TO_ENV_KEY)
    if unknown:
        raise TypeError(f"Unknown service parameter(s): {', '.join(sorted(unknown))}")

    bundle = parameters or ServiceParameters()
    explicit = {key: value for key, value in fields.items() if value is not None}
    if explicit:
        bundle = ServiceParameters(**{**_non_null(bundle), **explicit})

    return ServiceConfig.from_env(
        env_file=env_file,
        overrides=overrides,
        base=base,
        parameters=bundle,
    )


def _non_null(parameters: ServiceParameters) -> Dict[str, Any]:
    return {
        name: getattr(parameters, name)
        for name in _PARAMETER_TO_ENV_KEY
        if getattr(parameters, name) is not None
    }
