"""Stripe Checkout adapter for paid job postings.

Checkout sessions carry the posting id in ``metadata.posting_id`` and
``client_reference_id``; the webhook maps session events back to a
``PaymentCompletion`` for the lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import stripe
from fastapi import Depends

from jobboard_api.core.config import Settings, get_settings
from jobboard_api.services.lifecycle import CheckoutTransaction, PaymentOutcome

logger = logging.getLogger(__name__)

SUCCESS_EVENT_TYPES = {"checkout.session.async_payment_succeeded"}
FAILURE_EVENT_TYPES = {"checkout.session.async_payment_failed", "checkout.session.expired"}
PAID_STATUSES = {"paid", "no_payment_required"}


class PaymentError(Exception):
    """Base payment adapter error."""


class PaymentGatewayError(PaymentError):
    """Raised when the payment provider rejects or fails a request."""


class PaymentSignatureError(PaymentError):
    """Raised when a webhook payload cannot be verified."""


@dataclass(slots=True)
class PaymentCompletion:
    posting_id: str
    outcome: PaymentOutcome
    event_id: str
    event_type: str


class StripeCheckoutGateway:
    def __init__(
        self,
        *,
        secret_key: str | None,
        webhook_secret: str | None,
        currency: str,
        success_url: str,
        cancel_url: str,
    ) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency.lower()
        self.success_url = success_url
        self.cancel_url = cancel_url

    async def start_transaction(
        self, posting_id: str, amount: int, description: str, *, details: str | None = None
    ) -> CheckoutTransaction:
        if not self.secret_key:
            raise PaymentGatewayError("JB_STRIPE_SECRET_KEY is required")

        product_data = {"name": description}
        if details:
            product_data["description"] = details

        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=self.secret_key,
                mode="payment",
                client_reference_id=posting_id,
                metadata={"posting_id": posting_id},
                line_items=[
                    {
                        "price_data": {
                            "currency": self.currency,
                            "unit_amount": amount * 100,
                            "product_data": product_data,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=self.success_url,
                cancel_url=self.cancel_url,
            )
        except stripe.StripeError as exc:
            logger.error("stripe checkout creation failed posting_id=%s error=%s", posting_id, exc)
            raise PaymentGatewayError(f"failed to create checkout session: {exc}") from exc

        if not session.url:
            raise PaymentGatewayError("checkout session has no redirect url")
        return CheckoutTransaction(transaction_id=session.id, redirect_url=session.url)

    def parse_completion(self, payload: bytes, signature: str | None) -> PaymentCompletion | None:
        if not self.webhook_secret:
            raise PaymentGatewayError("JB_STRIPE_WEBHOOK_SECRET is required")
        if not signature:
            raise PaymentSignatureError("missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as exc:
            raise PaymentSignatureError(f"invalid webhook payload: {exc}") from exc
        except stripe.SignatureVerificationError as exc:
            raise PaymentSignatureError(f"invalid signature: {exc}") from exc

        return completion_from_event(event)


def completion_from_event(event: Any) -> PaymentCompletion | None:
    event_type = event["type"]
    session = event["data"]["object"]

    if event_type == "checkout.session.completed":
        payment_status = _field(session, "payment_status")
        if payment_status not in PAID_STATUSES:
            # Delayed payment methods report through the async_payment_* events.
            return None
        outcome = PaymentOutcome.SUCCESS
    elif event_type in SUCCESS_EVENT_TYPES:
        outcome = PaymentOutcome.SUCCESS
    elif event_type in FAILURE_EVENT_TYPES:
        outcome = PaymentOutcome.FAILURE
    else:
        return None

    posting_id = _posting_id_from_session(session)
    if not posting_id:
        logger.warning("checkout event without posting id event_id=%s type=%s", event["id"], event_type)
        return None

    return PaymentCompletion(
        posting_id=posting_id,
        outcome=outcome,
        event_id=event["id"],
        event_type=event_type,
    )


def _posting_id_from_session(session: Any) -> str | None:
    metadata = _field(session, "metadata") or {}
    posting_id = _field(metadata, "posting_id") or _field(session, "client_reference_id")
    if isinstance(posting_id, str) and posting_id.strip():
        return posting_id.strip()
    return None


def _field(obj: Any, key: str) -> Any:
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def get_payment_gateway(settings: Settings = Depends(get_settings)) -> StripeCheckoutGateway:
    return StripeCheckoutGateway(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        currency=settings.payment_currency,
        success_url=settings.checkout_success_url,
        cancel_url=settings.checkout_cancel_url,
    )
