"""
Billing provider protocol.

Defines the interface the webhook processor and the tier refresher need
from a billing provider (Stripe). Tests substitute fakes that satisfy it.
"""
from typing import Any, Dict, Mapping, Optional, Protocol

from gateway.core.errors import AppError, ValidationError


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Webhook signature verification against the raw body
    - Fetching a customer's most recent subscription
    """

    def verify_event(self, headers: Mapping[str, str], body: bytes) -> Dict[str, Any]:
        """
        Verify webhook signature and decode the event.

        Args:
            headers: HTTP headers (must include the signature header)
            body: Raw, unparsed webhook body

        Returns:
            The decoded event payload

        Raises:
            BillingWebhookError: If the secret, signature or payload is bad
        """
        ...

    def latest_subscription(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch the customer's most recent subscription in any status.

        Returns:
            Subscription object, or None when the customer has none

        Raises:
            BillingProviderError: If the provider call fails
        """
        ...


class BillingProviderError(AppError):
    """Base exception for billing provider errors."""
    code = "billing_provider_error"
    status_code = 502


class BillingWebhookError(ValidationError):
    """Webhook rejected before dispatch (secret, signature or payload)."""
    code = "invalid_webhook"
    status_code = 400
