"""
Minimal merchant checkout: issue a payment request, hand out its links and
keep verifying the payer's transaction until it settles.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Iterable, Tuple

from payment_requests import (
    ConfigError,
    PaymentRequestError,
    create_service,
    verify_until_final,
)


def _override(value: str) -> Tuple[str, str]:
    if "=" not in value:
        raise argparse.ArgumentTypeError("Overrides must look like KEY=VALUE")
    key, val = value.split("=", 1)
    key = key.strip()
    if not key:
        raise argparse.ArgumentTypeError("Override key must not be empty")
    return key, val


def _build_overrides(pairs: Iterable[Tuple[str, str]]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, value in pairs:
        overrides[key] = value
    return overrides


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one payment request from creation to settlement")
    parser.add_argument("amount_usd", help="Price in USD")
    parser.add_argument("--order-id", help="Merchant order id carried on the request")
    parser.add_argument("--description", help="Text shown to the payer")
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to the .env file containing PAYREQ_* settings",
    )
    parser.add_argument(
        "--set",
        action="append",
        type=_override,
        metavar="KEY=VALUE",
        default=None,
        help="Override an environment variable without editing the .env file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    parser.add_argument(
        "--retry-seconds",
        type=float,
        default=5.0,
        help="Delay between verification attempts while the transaction finalizes",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )

    try:
        service = create_service(env_file=args.env_file, overrides=_build_overrides(args.set or ()))
    except (ConfigError, ValueError) as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    with service:
        try:
            request = service.create_payment_request(
                args.amount_usd,
                order_id=args.order_id,
                description=args.description,
            )
        except PaymentRequestError as exc:
            logging.error("Could not create payment request: %s", exc)
            return 1

        print(f"Share:   {service.shareable_link(request.reference)}")
        print(f"Wallet:  {service.deep_link_uri(request.reference)}")
        print(f"Pay {request.amount_token} tokens before {request.expires_at.isoformat()}")

        transaction_id = input("Transaction id: ").strip()
        result = verify_until_final(
            service.verify_settlement,
            request.reference,
            transaction_id,
            interval=args.retry_seconds,
        )
        if not result.success:
            logging.warning("%s (%s)", result.reason.remediation, result.detail)
            return 1
        logging.info("Settled by %s", result.settlement.transaction_id)
        return 0


if __name__ == "__main__":
    sys.exit(main())
