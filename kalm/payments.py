"""Thin wrapper around the Stripe SDK for hosted checkout."""
from __future__ import annotations

import logging

import stripe
from flask import current_app

from .models import PendingPayment

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """The payment gateway is unreachable, misconfigured or rejected a call."""


class InvalidWebhookError(Exception):
    """Webhook payload could not be parsed or its signature did not verify."""


def _configure() -> None:
    stripe_key = current_app.config.get("STRIPE_SECRET_KEY")
    if not stripe_key:
        logger.warning("Stripe secret key not configured")
        raise PaymentGatewayError("Payments are not currently available. Please contact support.")
    stripe.api_key = stripe_key


def create_checkout(pending: PendingPayment, customer_email: str | None = None):
    """Create a hosted checkout for ``pending`` and return the Stripe session."""
    _configure()
    config = current_app.config
    success_url = f"{config['PAYMENT_SUCCESS_URL']}?order_id={pending.order_id}"
    cancel_url = f"{config['PAYMENT_CANCEL_URL']}?order_id={pending.order_id}"
    params = {
        "mode": "payment",
        "line_items": [
            {
                "quantity": 1,
                "price_data": {
                    "currency": config["PAYMENT_CURRENCY"],
                    "unit_amount": pending.final_amount_cents,
                    "product_data": {
                        "name": pending.service_name or f"{pending.session_type.title()} therapy session",
                    },
                },
            }
        ],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "client_reference_id": pending.order_id,
        "metadata": {
            "order_id": pending.order_id,
            "client_id": pending.client_uid,
            "therapist_id": pending.therapist_id,
        },
    }
    if customer_email:
        params["customer_email"] = customer_email

    try:
        return stripe.checkout.Session.create(**params)
    except stripe.StripeError as exc:
        logger.exception("Stripe API error while creating checkout for %s", pending.order_id)
        raise PaymentGatewayError("An error occurred while processing the payment.") from exc


def retrieve_checkout(checkout_session_id: str):
    _configure()
    try:
        return stripe.checkout.Session.retrieve(checkout_session_id)
    except stripe.StripeError as exc:
        logger.exception("Stripe API error while retrieving checkout %s", checkout_session_id)
        raise PaymentGatewayError("Failed to retrieve payment status.") from exc


def is_paid(checkout) -> bool:
    return getattr(checkout, "payment_status", None) == "paid"


def refund(payment_intent_id: str):
    _configure()
    try:
        return stripe.Refund.create(payment_intent=payment_intent_id)
    except stripe.StripeError as exc:
        logger.exception("Stripe API error while refunding %s", payment_intent_id)
        raise PaymentGatewayError("Failed to refund payment.") from exc


def construct_event(payload: bytes, sig_header: str | None):
    webhook_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not webhook_secret:
        raise PaymentGatewayError("Stripe webhook secret not configured")
    try:
        return stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except ValueError as exc:
        raise InvalidWebhookError("invalid_payload") from exc
    except stripe.SignatureVerificationError as exc:
        raise InvalidWebhookError("invalid_signature") from exc
