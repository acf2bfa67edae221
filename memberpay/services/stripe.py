from decimal import Decimal
from typing import Optional

from ..config import settings
from ..errors import GatewayError, ValidationError
from ..models import PaymentMethod, PaymentStatus
from .gateways import GatewayAdapter, GatewayHandle, Notification

# currencies stripe expects in whole units rather than cents
ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
}

EVENT_STATUS = {
    "payment_intent.succeeded": PaymentStatus.COMPLETED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.FAILED,
}


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount)
    return int(amount * 100)


class StripeGateway(GatewayAdapter):
    """Stripe PaymentIntents: the browser completes the charge with the client secret."""

    name = "stripe"
    method = PaymentMethod.INTENT

    async def initiate(self, amount: Decimal, currency: str, invoice_number: str, params: dict) -> GatewayHandle:
        if not settings.stripe_secret_key:
            raise GatewayError("Stripe Secret Key not configured", GatewayError.PERMANENT, self.name)

        data = {
            "amount": to_minor_units(amount, currency),
            "currency": currency.lower(),
            "payment_method_types[]": "card",
            "metadata[invoice_number]": invoice_number,
            "description": params.get("description") or f"Invoice {invoice_number}",
        }
        if params.get("receipt_email"):
            data["receipt_email"] = params["receipt_email"]

        async with self.client(settings.stripe_api_base) as client:
            resp = await self.request(
                client,
                "POST",
                "/payment_intents",
                data=data,
                headers={
                    "Authorization": f"Bearer {settings.stripe_secret_key}",
                    "Idempotency-Key": invoice_number,
                },
            )
        intent = self.json(resp)
        if not intent.get("id") or not intent.get("client_secret"):
            raise GatewayError("Stripe did not return a payment intent", GatewayError.PERMANENT, self.name)

        return GatewayHandle(
            reference=intent["id"],
            continuation={"client_secret": intent["client_secret"]},
        )

    def parse_notification(self, payload: dict) -> Optional[Notification]:
        event_type = payload.get("type")
        intent = (payload.get("data") or {}).get("object")
        if not event_type or not isinstance(intent, dict):
            raise ValidationError("Invalid Stripe event")
        status = EVENT_STATUS.get(event_type)
        if status is None:
            return None
        if not intent.get("id"):
            raise ValidationError(f"Stripe {event_type} event without a payment intent id")

        message = (intent.get("last_payment_error") or {}).get("message") or intent.get("cancellation_reason")
        return Notification(reference=intent["id"], status=status, event=event_type, message=message)
