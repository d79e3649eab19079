"""
Stripe Gateway

The only module that talks to the Stripe API. Stripe exceptions are
translated into billing errors here so callers can tell retryable outages
from rejected requests.
"""

import json
import os
from typing import Optional, Dict, Any

import stripe

from billing.errors import (
    PaymentProcessorError,
    PaymentProcessorUnavailable,
    WebhookVerificationError,
)

# Initialize Stripe with secret key
STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY')
WEBHOOK_SECRET = os.environ.get('STRIPE_WEBHOOK_SECRET')
WEBHOOK_TOLERANCE_SECONDS = int(os.environ.get('STRIPE_WEBHOOK_TOLERANCE', 300))

stripe.api_key = STRIPE_SECRET_KEY


def translate_stripe_error(e: Exception, operation: str) -> PaymentProcessorError:
    if isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)):
        return PaymentProcessorUnavailable(f'{operation}: {e}')
    if isinstance(e, stripe.StripeError) and (getattr(e, 'http_status', None) or 0) >= 500:
        return PaymentProcessorUnavailable(f'{operation}: {e}')
    return PaymentProcessorError(f'{operation}: {e}')


def verify_webhook(payload: bytes, sig_header: Optional[str], secret: str,
                   tolerance: int = WEBHOOK_TOLERANCE_SECONDS) -> Dict[str, Any]:
    """
    Verify a webhook signature and parse the event.

    Args:
        payload: Raw request body
        sig_header: Value of the Stripe-Signature header
        secret: Endpoint signing secret
        tolerance: Maximum age of the signature timestamp in seconds

    Returns:
        The event as a plain dict

    Raises:
        WebhookVerificationError: missing/invalid signature or unparseable body
    """
    if not sig_header:
        raise WebhookVerificationError('Missing Stripe-Signature header')
    try:
        body = payload.decode('utf-8')
    except UnicodeDecodeError as e:
        raise WebhookVerificationError('Payload is not UTF-8') from e

    try:
        stripe.WebhookSignature.verify_header(body, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise WebhookVerificationError(f'Invalid signature: {e}') from e

    try:
        event = json.loads(body)
    except ValueError as e:
        raise WebhookVerificationError(f'Invalid payload: {e}') from e
    if not isinstance(event, dict) or 'type' not in event or 'id' not in event:
        raise WebhookVerificationError('Payload is not a Stripe event')
    return event


class StripeProcessor:
    """Outbound Stripe calls used by checkout and reconciliation."""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or STRIPE_SECRET_KEY

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def create_checkout_session(self, **params) -> Dict[str, Any]:
        try:
            session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        except stripe.StripeError as e:
            raise translate_stripe_error(e, 'checkout.Session.create') from e
        return {'id': session['id'], 'url': session['url']}

    def create_portal_session(self, customer: str, return_url: str) -> Dict[str, Any]:
        try:
            session = stripe.billing_portal.Session.create(
                api_key=self.api_key,
                customer=customer,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            raise translate_stripe_error(e, 'billing_portal.Session.create') from e
        return {'id': session['id'], 'url': session['url']}

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            return stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)
        except stripe.StripeError as e:
            raise translate_stripe_error(e, 'Subscription.retrieve') from e

    def modify_subscription(self, subscription_id: str, items, proration_behavior: str,
                            metadata: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Swap subscription items. The webhook applies the result locally."""
        try:
            subscription = stripe.Subscription.modify(
                subscription_id,
                api_key=self.api_key,
                items=items,
                proration_behavior=proration_behavior,
                metadata=metadata or {},
            )
        except stripe.StripeError as e:
            raise translate_stripe_error(e, 'Subscription.modify') from e
        return {'id': subscription['id'], 'status': subscription['status']}
