"""Stripe calls made by the worker: compensating refunds and mentor payouts.

The SDK is synchronous, so calls run in a worker thread. Every call carries an
idempotency key derived from the payment, which makes a resumed saga safe to
repeat the call.
"""

import asyncio
from dataclasses import dataclass

import stripe

from mentorsaga.common.config import settings
from mentorsaga.common.errors import classify_stripe_error

REFUND_REASON = "requested_by_customer"


def configure_stripe() -> None:
    """Bounded network timeout and a single SDK-level retry."""

    stripe.api_key = settings.stripe_secret_key
    stripe.default_http_client = stripe.http_client.RequestsClient(timeout=settings.stripe_timeout_seconds)
    stripe.max_network_retries = settings.stripe_max_network_retries


@dataclass(frozen=True)
class RefundReceipt:
    refund_id: str
    status: str
    amount: int | None


@dataclass(frozen=True)
class TransferReceipt:
    transfer_id: str
    amount: int


class StripeGateway:
    async def refund_payment(self, payment_intent_id: str, payment_id: str) -> RefundReceipt:
        """Full refund of the payment intent."""

        def _call():
            return stripe.Refund.create(
                payment_intent=payment_intent_id,
                reason=REFUND_REASON,
                metadata={"payment_id": payment_id, "reason": "booking_failed"},
                idempotency_key=f"refund-{payment_intent_id}",
            )

        try:
            refund = await asyncio.to_thread(_call)
        except stripe.StripeError as exc:
            raise classify_stripe_error(exc) from exc
        return RefundReceipt(refund_id=refund["id"], status=refund["status"], amount=refund.get("amount"))

    async def transfer_payout(
        self,
        *,
        payment_id: str,
        amount: int,
        currency: str,
        destination: str,
        attempt: int,
    ) -> TransferReceipt:
        def _call():
            return stripe.Transfer.create(
                amount=amount,
                currency=currency.lower(),
                destination=destination,
                transfer_group=f"payment:{payment_id}",
                metadata={"payment_id": payment_id},
                idempotency_key=f"payout-{payment_id}-{attempt}",
            )

        try:
            transfer = await asyncio.to_thread(_call)
        except stripe.StripeError as exc:
            raise classify_stripe_error(exc) from exc
        return TransferReceipt(transfer_id=transfer["id"], amount=amount)
