"""
USD-per-token rate sources.

A rate source is any callable returning the current price of one token in
USD as a :class:`~decimal.Decimal`. The factory snapshots it once per
request and never asks again for that request.
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

import requests

from .errors import RateUnavailable

__all__ = [
    "FixedRateSource",
    "HttpRateSource",
    "RateSource",
    "coerce_rate",
]

RateSource = Callable[[], Decimal]


def coerce_rate(raw: Any) -> Decimal:
    """Turn ``raw`` into a positive finite Decimal or raise :class:`RateUnavailable`."""
    if isinstance(raw, float):
        raw = repr(raw)
    try:
        rate = Decimal(raw)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise RateUnavailable(f"Rate {raw!r} is not a number") from exc
    if not rate.is_finite() or rate <= 0:
        raise RateUnavailable(f"Rate {raw!r} must be a positive number")
    return rate


class FixedRateSource:
    def __init__(self, rate: Decimal | str | int) -> None:
        self._rate = coerce_rate(rate)

    @property
    def rate(self) -> Decimal:
        return self._rate

    def set_rate(self, rate: Decimal | str | int) -> None:
        self._rate = coerce_rate(rate)

    def __call__(self) -> Decimal:
        return self._rate


class HttpRateSource:
    """
    Read the rate from a JSON price endpoint.

    ``field`` is a dotted path into the response, e.g. ``"data.price"``.
    """

    def __init__(
        self,
        url: str,
        *,
        field: str = "usd",
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ) -> None:
        self.url = url
        self.field = field
        self.session = session or requests.Session()
        self.timeout = timeout

    def _extract(self, payload: Any) -> Any:
        value = payload
        for part in self.field.split("."):
            if not isinstance(value, dict) or part not in value:
                raise RateUnavailable(f"Price response from {self.url} has no '{self.field}' field")
            value = value[part]
        return value

    def __call__(self) -> Decimal:
        try:
            response = self.session.get(self.url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RateUnavailable(f"Price endpoint {self.url} unreachable: {exc}") from exc

        if response.status_code >= 400:
            raise RateUnavailable(f"Price endpoint responded with {response.status_code}: {response.text}")
        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise RateUnavailable(f"Failed to parse JSON from price endpoint at {self.url}") from exc

        rate = coerce_rate(self._extract(payload))
        logging.debug("Fetched rate %s USD/token from %s", rate, self.url)
        return rate
