import base64
from datetime import datetime
from decimal import Decimal
from typing import Optional

from ..config import settings
from ..errors import GatewayError, ValidationError
from ..models import PaymentMethod, PaymentStatus
from ..utils import normalize_phone_number
from .gateways import GatewayAdapter, GatewayHandle, Notification


class MpesaGateway(GatewayAdapter):
    """M-Pesa STK push: the payer's phone is prompted, the result arrives by callback."""

    name = "mpesa"
    method = PaymentMethod.PUSH

    async def access_token(self, client) -> str:
        resp = await self.request(
            client,
            "GET",
            "/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=(settings.mpesa_consumer_key, settings.mpesa_consumer_secret),
        )
        token = self.json(resp).get("access_token")
        if not token:
            raise GatewayError("Failed to generate access token", GatewayError.PERMANENT, self.name)
        return token

    def validate(self, amount: Decimal, currency: str, params: dict) -> None:
        if not normalize_phone_number(params.get("phone_number") or ""):
            raise ValidationError("Phone number required for M-Pesa payment")
        if currency != "KES":
            raise ValidationError("M-Pesa payments must be in KES")
        if amount != amount.to_integral_value():
            raise ValidationError("M-Pesa payments must be a whole number of shillings")

    async def initiate(self, amount: Decimal, currency: str, invoice_number: str, params: dict) -> GatewayHandle:
        phone = normalize_phone_number(params["phone_number"])
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        password = base64.b64encode(
            f"{settings.mpesa_shortcode}{settings.mpesa_passkey}{timestamp}".encode()
        ).decode()
        payload = {
            "BusinessShortCode": settings.mpesa_shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": phone,
            "PartyB": settings.mpesa_shortcode,
            "PhoneNumber": phone,
            "CallBackURL": settings.mpesa_callback_url,
            "AccountReference": invoice_number,
            "TransactionDesc": params.get("description") or settings.mpesa_transaction_desc,
        }

        async with self.client(settings.mpesa_api_base) as client:
            token = await self.access_token(client)
            resp = await self.request(
                client,
                "POST",
                "/mpesa/stkpush/v1/processrequest",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        body = self.json(resp)

        if str(body.get("ResponseCode")) != "0" or not body.get("CheckoutRequestID"):
            message = body.get("errorMessage") or body.get("ResponseDescription") or "M-Pesa request failed"
            raise GatewayError(message, GatewayError.PERMANENT, self.name)

        return GatewayHandle(
            reference=body["CheckoutRequestID"],
            continuation={
                "customer_message": body.get("CustomerMessage"),
                "merchant_request_id": body.get("MerchantRequestID"),
            },
        )

    def parse_notification(self, payload: dict) -> Optional[Notification]:
        callback = (payload.get("Body") or {}).get("stkCallback")
        if not isinstance(callback, dict):
            raise ValidationError("Invalid callback data")
        reference = callback.get("CheckoutRequestID")
        result_code = callback.get("ResultCode")
        if not reference or result_code is None:
            raise ValidationError("Invalid callback data")
        try:
            succeeded = int(result_code) == 0
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid ResultCode {result_code!r}")

        return Notification(
            reference=reference,
            status=PaymentStatus.COMPLETED if succeeded else PaymentStatus.FAILED,
            event="stkCallback",
            message=callback.get("ResultDesc"),
        )
