"""
Re-issuing expired payment requests.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from .errors import IllegalTransition, NotExpired
from .factory import RequestFactory
from .models import PaymentRequest, PaymentStatus
from .store import LifecycleStore

__all__ = ["Regenerator"]


class Regenerator:
    def __init__(self, store: LifecycleStore, factory: RequestFactory) -> None:
        self.store = store
        self.factory = factory

    def regenerate(
        self,
        expired_reference: str,
        validity_window: Optional[timedelta | float | int] = None,
    ) -> PaymentRequest:
        """
        Issue a successor to the Expired request ``expired_reference``.

        The successor is priced at a fresh rate and keeps the merchant,
        recipient, order, description and callback of its predecessor. The
        predecessor itself only gains its ``superseded_by`` link.
        """
        original = self.store.get(expired_reference)
        if original.status is not PaymentStatus.EXPIRED:
            raise NotExpired(original.reference, original.status.value)

        successor = self.factory.build(
            original.merchant_id,
            original.amount_usd,
            order_id=original.order_id,
            description=original.description,
            success_callback=original.success_callback,
            validity_window=validity_window,
            recipient_address=original.recipient_address,
            supersedes=original.reference,
        )

        try:
            _, successor = self.store.supersede(original.reference, successor)
        except IllegalTransition as exc:
            # another caller regenerated it first
            raise NotExpired(original.reference, exc.current) from exc
        return successor
