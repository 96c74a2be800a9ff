"""
Payer identity from a signed challenge.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import to_checksum_address

from .errors import AuthenticationFailed

__all__ = [
    "PayerIdentity",
    "SignedMessageIdentityProvider",
    "build_challenge",
]


@dataclass(frozen=True)
class PayerIdentity:
    address: str
    display_name: str


def build_challenge(reference: str, nonce: Optional[str] = None) -> str:
    nonce = nonce or secrets.token_hex(16)
    return f"Sign in to pay request {reference}\nNonce: {nonce}"


class SignedMessageIdentityProvider:
    """
    Authenticate a payer by recovering the signer of an EIP-191 message.
    """

    def authenticate(
        self,
        message: str,
        signature: str,
        *,
        expected_address: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> PayerIdentity:
        try:
            address = Account.recover_message(encode_defunct(text=message), signature=signature)
        except Exception as exc:  # noqa: BLE001
            raise AuthenticationFailed(f"Signature does not verify: {exc}") from exc

        address = to_checksum_address(address)
        if expected_address and address.lower() != expected_address.lower():
            raise AuthenticationFailed(f"Message was signed by {address}, not {expected_address}")
        return PayerIdentity(address=address, display_name=display_name or f"{address[:6]}...{address[-4:]}")
