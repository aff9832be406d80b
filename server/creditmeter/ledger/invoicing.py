from __future__ import annotations

from dataclasses import dataclass

import stripe

from server.creditmeter.core.config import Settings
from server.creditmeter.ledger.errors import InvoiceCollaboratorUnavailable


@dataclass
class StripeInvoiceClient:
    secret_key: str

    def create_invoice_item(
        self,
        *,
        customer_id: str,
        amount_cents: int,
        currency: str,
        description: str,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> str:
        """Create a pending invoice item; Stripe dedupes on ``idempotency_key``."""
        stripe.api_key = self.secret_key
        try:
            item = stripe.InvoiceItem.create(
                customer=customer_id,
                amount=int(amount_cents),
                currency=currency,
                description=description,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise InvoiceCollaboratorUnavailable(f"Stripe invoice item failed: {e}") from e
        return str(item["id"])


def invoice_client_from_settings(settings: Settings) -> StripeInvoiceClient | None:
    if not settings.invoicing_enabled or not settings.stripe_secret_key:
        return None
    return StripeInvoiceClient(secret_key=settings.stripe_secret_key)
