"""
Command-line interface for managing payment requests.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, Iterable, Sequence, Tuple

import requests

from .api import PaymentRequestService, create_service
from .core.errors import ConfigError, PaymentRequestError
from .core.models import PaymentRequest
from .core.polling import DEFAULT_POLL_INTERVAL, poll_until_terminal, verify_until_final


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )


def _env_override(value: str) -> Tuple[str, str]:
    if "=" not in value:
        raise argparse.ArgumentTypeError("Overrides must look like KEY=VALUE")
    key, val = value.split("=", 1)
    key = key.strip()
    if not key:
        raise argparse.ArgumentTypeError("Override key must not be empty")
    return key, val


def _collect_overrides(pairs: Iterable[Tuple[str, str]]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, value in pairs:
        overrides[key] = value
    return overrides


def _emit(payload: Dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="payment-requests",
        description="Create, inspect and settle token payment requests",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to the .env file containing PAYREQ_* settings (default: .env)",
    )
    parser.add_argument(
        "--set",
        action="append",
        type=_env_override,
        metavar="KEY=VALUE",
        default=None,
        help="Override an environment variable without editing the .env file",
    )
    parser.add_argument(
        "--store",
        help="JSON file holding payment records (overrides PAYREQ_STORE_PATH)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Create a new payment request")
    create.add_argument("amount_usd", help="Price in USD, e.g. 10.00")
    create.add_argument("--merchant-id", help="Merchant id (default: PAYREQ_MERCHANT_ID)")
    create.add_argument("--order-id")
    create.add_argument("--description")
    create.add_argument("--success-callback", metavar="URL")
    create.add_argument("--validity-seconds", type=float)

    show = commands.add_parser("show", help="Print a payment request")
    show.add_argument("reference")
    show.add_argument("--follow", action="store_true", help="Resolve regenerations to the current request")

    link = commands.add_parser("link", help="Print the shareable link and wallet deep link")
    link.add_argument("reference")

    regenerate = commands.add_parser("regenerate", help="Re-issue an expired payment request")
    regenerate.add_argument("reference")
    regenerate.add_argument("--validity-seconds", type=float)

    verify = commands.add_parser("verify", help="Verify a transaction against a payment request")
    verify.add_argument("reference")
    verify.add_argument("transaction_id")
    verify.add_argument("--wait", action="store_true", help="Keep checking while the transaction is not final")
    verify.add_argument("--interval", type=float, default=DEFAULT_POLL_INTERVAL)
    verify.add_argument("--timeout", type=float)

    commands.add_parser("sweep", help="Expire every pending request past its deadline")

    reconcile = commands.add_parser("reconcile", help="Settle pending requests from incoming token transfers")
    reconcile.add_argument("--from-block", type=int, help="First block to scan (default: head minus PAYREQ_WATCH_LOOKBACK_BLOCKS)")

    watch = commands.add_parser("watch", help="Poll a payment request until it settles or expires")
    watch.add_argument("reference")
    watch.add_argument("--interval", type=float, default=DEFAULT_POLL_INTERVAL)
    watch.add_argument("--timeout", type=float)

    return parser


def _show(record: PaymentRequest) -> int:
    _emit(record.to_record())
    return 0


def _dispatch(service: PaymentRequestService, args: argparse.Namespace) -> int:
    if args.command == "create":
        record = service.create_payment_request(
            args.amount_usd,
            merchant_id=args.merchant_id,
            order_id=args.order_id,
            description=args.description,
            success_callback=args.success_callback,
            validity_window=args.validity_seconds,
        )
        return _show(record)

    if args.command == "show":
        getter = service.resolve_current if args.follow else service.get_payment_request
        return _show(getter(args.reference))

    if args.command == "link":
        deep_link = service.deep_link(args.reference)
        _emit(
            {
                "shareableLink": service.shareable_link(args.reference),
                "deepLink": deep_link.to_payload(),
                "uri": deep_link.to_uri(service.config.chain_scheme),
            }
        )
        return 0

    if args.command == "regenerate":
        return _show(service.regenerate_payment_request(args.reference, validity_window=args.validity_seconds))

    if args.command == "verify":
        if args.wait:
            result = verify_until_final(
                service.verify_settlement,
                args.reference,
                args.transaction_id,
                interval=args.interval,
                timeout=args.timeout,
            )
        else:
            result = service.verify_settlement(args.reference, args.transaction_id)
        _emit(result.to_payload())
        return 0 if result.success else 1

    if args.command == "sweep":
        _emit({"expired": service.sweep_expired()})
        return 0

    if args.command == "reconcile":
        if args.from_block is not None:
            service.reconciler.next_block = args.from_block
        settled = service.reconcile_incoming()
        _emit({"settled": [result.to_payload() for result in settled], "nextBlock": service.reconciler.next_block})
        return 0

    if args.command == "watch":
        record = poll_until_terminal(
            service.get_payment_request,
            args.reference,
            interval=args.interval,
            timeout=args.timeout,
            on_update=lambda r: logging.info("Payment %s is %s", r.reference, r.status.value),
        )
        return _show(record)

    raise AssertionError(f"unhandled command {args.command}")


def run_cli(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)
    overrides = _collect_overrides(args.set or ())
    if args.store:
        overrides["PAYREQ_STORE_PATH"] = args.store

    try:
        service = create_service(env_file=args.env_file, overrides=overrides, session=requests.Session())
    except ConfigError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    try:
        return _dispatch(service, args)
    except (PaymentRequestError, ValueError) as exc:
        logging.error("%s", exc)
        return 1
    finally:
        service.verifier.close()


def main() -> None:
    sys.exit(run_cli())


if __name__ == "__main__":
    main()
