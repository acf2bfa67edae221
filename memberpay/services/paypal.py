from decimal import Decimal
from typing import Optional

from ..config import settings
from ..errors import GatewayError, ValidationError
from ..models import PaymentMethod, PaymentStatus
from .gateways import CaptureResult, GatewayAdapter, GatewayHandle, Notification

COMPLETED_EVENTS = {"CHECKOUT.ORDER.COMPLETED", "PAYMENT.CAPTURE.COMPLETED"}
FAILED_EVENTS = {"PAYMENT.CAPTURE.DENIED", "CHECKOUT.ORDER.VOIDED"}
CAPTURE_EVENTS = {"PAYMENT.CAPTURE.COMPLETED", "PAYMENT.CAPTURE.DENIED"}


def _issues(body) -> list:
    if not isinstance(body, dict):
        return []
    return [detail.get("issue") for detail in body.get("details") or [] if detail.get("issue")]


class PaypalGateway(GatewayAdapter):
    """PayPal Orders v2: the payer approves on PayPal, then we capture the order."""

    name = "paypal"
    method = PaymentMethod.REDIRECT
    supports_capture = True

    async def access_token(self, client) -> str:
        resp = await self.request(
            client,
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(settings.paypal_client_id, settings.paypal_secret),
        )
        token = self.json(resp).get("access_token")
        if not token:
            raise GatewayError("Failed to generate PayPal access token", GatewayError.PERMANENT, self.name)
        return token

    async def initiate(self, amount: Decimal, currency: str, invoice_number: str, params: dict) -> GatewayHandle:
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": invoice_number,
                "invoice_id": invoice_number,
                "amount": {"currency_code": currency, "value": f"{amount:.2f}"},
            }],
        }
        return_url = params.get("return_url") or settings.paypal_return_url
        cancel_url = params.get("cancel_url") or settings.paypal_cancel_url
        if return_url or cancel_url:
            payload["application_context"] = {
                key: value for key, value in (("return_url", return_url), ("cancel_url", cancel_url)) if value
            }

        async with self.client(settings.paypal_api_base) as client:
            token = await self.access_token(client)
            resp = await self.request(
                client,
                "POST",
                "/v2/checkout/orders",
                json=payload,
                # paypal dedupes retried creates on this header
                headers={"Authorization": f"Bearer {token}", "PayPal-Request-Id": invoice_number},
            )
        order = self.json(resp)
        if not order.get("id"):
            raise GatewayError("PayPal did not return an order id", GatewayError.PERMANENT, self.name)

        approval_url = next(
            (link.get("href") for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return GatewayHandle(
            reference=order["id"],
            continuation={"order_id": order["id"], "approval_url": approval_url},
            requires_capture=True,
        )

    async def capture(self, order_id: str) -> CaptureResult:
        async with self.client(settings.paypal_api_base) as client:
            token = await self.access_token(client)
            try:
                resp = await self.request(
                    client,
                    "POST",
                    f"/v2/checkout/orders/{order_id}/capture",
                    headers={"Authorization": f"Bearer {token}", "PayPal-Request-Id": f"capture-{order_id}"},
                )
            except GatewayError as exc:
                # a declined instrument comes back as 422 rather than a DECLINED order
                if exc.response_status != 422:
                    raise
                issues = _issues(exc.response_body)
                if "ORDER_ALREADY_CAPTURED" in issues:
                    return CaptureResult(order_id=order_id, status=PaymentStatus.COMPLETED, message="ORDER_ALREADY_CAPTURED")
                if "ORDER_NOT_APPROVED" in issues:
                    raise GatewayError("The payer has not approved this order yet", GatewayError.PERMANENT, self.name)
                return CaptureResult(
                    order_id=order_id,
                    status=PaymentStatus.FAILED,
                    message=", ".join(issues) or exc.message,
                    raw=exc.response_body if isinstance(exc.response_body, dict) else {},
                )
        body = self.json(resp)
        order_status = body.get("status")
        if order_status == "COMPLETED":
            status = PaymentStatus.COMPLETED
        elif order_status in ("DECLINED", "VOIDED"):
            status = PaymentStatus.FAILED
        else:
            status = PaymentStatus.PENDING
        return CaptureResult(order_id=order_id, status=status, message=order_status, raw=body)

    def parse_notification(self, payload: dict) -> Optional[Notification]:
        event_type = payload.get("event_type")
        resource = payload.get("resource")
        if not event_type or not isinstance(resource, dict):
            raise ValidationError("Invalid PayPal webhook event")
        if event_type in COMPLETED_EVENTS:
            status = PaymentStatus.COMPLETED
        elif event_type in FAILED_EVENTS:
            status = PaymentStatus.FAILED
        else:
            return None

        if event_type in CAPTURE_EVENTS:
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            reference = related.get("order_id")
        else:
            reference = resource.get("id")
        if not reference:
            raise ValidationError(f"PayPal {event_type} event without an order id")
        return Notification(reference=reference, status=status, event=event_type, message=resource.get("status"))
