"""Stripe adapter used by the booking lifecycle.

An instance is built explicitly and handed to the lifecycle service, so tests
can swap in a fake with the same three methods.
"""
import json
import logging
from dataclasses import dataclass
from typing import Optional

import stripe
from django.conf import settings

from bookings.exceptions import PaymentGatewayError

logger = logging.getLogger(__name__)

PAYMENT_TYPES = ('upfront', 'rental', 'security_deposit')
REQUIRED_METADATA = ('bookingId', 'listingId', 'renterId', 'ownerId', 'paymentType')

# Stripe only accepts these refund reasons; free text goes in metadata.
STRIPE_REFUND_REASONS = ('duplicate', 'fraudulent', 'requested_by_customer')


@dataclass
class ChargeResult:
    id: str
    status: str
    client_secret: str
    amount: int
    currency: str


@dataclass
class RefundResult:
    id: str
    status: str
    amount: int
    payment_id: str
    reason: Optional[str] = None


class StripeGateway:
    def __init__(self, api_key=None, webhook_secret=None):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET

    def charge(self, amount, currency, metadata, description=None):
        missing = [key for key in REQUIRED_METADATA if not metadata.get(key)]
        if missing:
            raise ValueError(f"Missing payment metadata: {', '.join(missing)}")
        if metadata['paymentType'] not in PAYMENT_TYPES:
            raise ValueError(f"Unknown payment type: {metadata['paymentType']}")
        if amount <= 0:
            raise ValueError('Amount must be > 0')

        self._check_key()
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=currency.lower(),
                description=description or f"{metadata['paymentType']} payment for booking {metadata['bookingId']}",
                metadata={key: str(value) for key, value in metadata.items()},
                automatic_payment_methods={'enabled': True},
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            logger.error('Error creating payment intent for booking %s: %s', metadata['bookingId'], e)
            raise PaymentGatewayError('Failed to create payment intent')

        return ChargeResult(
            id=intent.id,
            status=intent.status,
            client_secret=intent.client_secret,
            amount=intent.amount,
            currency=intent.currency,
        )

    def refund(self, payment_id, amount=None, reason=None):
        self._check_key()
        params = {
            'payment_intent': payment_id,
            'reason': reason if reason in STRIPE_REFUND_REASONS else 'requested_by_customer',
        }
        if amount is not None:
            params['amount'] = amount
        if reason and reason not in STRIPE_REFUND_REASONS:
            params['metadata'] = {'reason': reason[:500]}

        try:
            refund = stripe.Refund.create(
                api_key=self.api_key,
                idempotency_key=f"refund-{payment_id}-{amount if amount is not None else 'full'}",
                **params,
            )
        except stripe.StripeError as e:
            logger.error('Error creating refund for %s: %s', payment_id, e)
            raise PaymentGatewayError('Failed to process refund')

        return RefundResult(
            id=refund.id,
            status=refund.status,
            amount=refund.amount,
            payment_id=payment_id,
            reason=reason,
        )

    def construct_event(self, payload, signature):
        """Verify a webhook payload and return the event as plain dicts.

        Raises ValueError for a malformed payload and
        stripe.SignatureVerificationError for a bad signature.
        """
        if not self.webhook_secret:
            raise PaymentGatewayError('Webhook secret not configured')
        stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        if isinstance(payload, bytes):
            payload = payload.decode('utf-8')
        return json.loads(payload)

    def _check_key(self):
        if not self.api_key or not self.api_key.startswith('sk_'):
            logger.error('Invalid or missing Stripe secret key')
            raise PaymentGatewayError('Payment processor is not configured')
