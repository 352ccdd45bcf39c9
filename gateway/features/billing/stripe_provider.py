"""
Stripe billing provider implementation.

Implements BillingProvider using the Stripe SDK. Webhook signatures are
checked against the raw body before the payload is decoded.
"""
import json
from typing import Any, Dict, Mapping, Optional

import stripe

from gateway.core.errors import ConfigurationError
from gateway.features.billing.provider import BillingProviderError, BillingWebhookError


SIGNATURE_HEADER = "stripe-signature"


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None, tolerance_seconds: int = 300):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (only needed for API calls)
            webhook_secret: Stripe webhook signing secret
            tolerance_seconds: Accepted age of a signed webhook timestamp
        """
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds

    def verify_event(self, headers: Mapping[str, str], body: bytes) -> Dict[str, Any]:
        """Verify Stripe webhook signature and decode the event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get(SIGNATURE_HEADER) or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")

        try:
            stripe.WebhookSignature.verify_header(
                payload, sig_header, self.webhook_secret, self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        if not isinstance(event, dict):
            raise BillingWebhookError("Invalid payload: event must be a JSON object")
        return event

    def latest_subscription(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """Most recent Stripe subscription for the customer, any status."""
        if not self.secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY not configured")
        try:
            subs = stripe.Subscription.list(
                customer=customer_id,
                status="all",
                limit=1,
                api_key=self.secret_key,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription lookup failed: {e}")
        if not subs.data:
            return None
        return subs.data[0]
