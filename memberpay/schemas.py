from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional


class CreatePaymentIn(BaseModel):
    amount: Decimal = Field(..., description="Amount in major units e.g. 5000 or '10.00'")
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    method: str = Field(..., description="push-payment, redirect-payment, intent-payment, manual, cash, bank-transfer or import")
    purpose: str = Field(..., description="membership, event or donation")
    ref: Optional[int] = Field(None, description="membership_type_id or event_id, depending on purpose")
    method_params: dict = Field(default_factory=dict)  # e.g. {"phone_number": "0712345678"}
    member_id: Optional[int] = None  # admin only: pay on behalf of another member
    status: Optional[str] = None  # admin only, off-gateway methods: "completed"
    description: Optional[str] = None
    transaction_reference: Optional[str] = None  # off-gateway receipt / bank reference


class CreatePaymentOut(BaseModel):
    payment_id: int
    invoice_number: str
    status: str
    continuation: Optional[dict] = None


class CapturePaymentIn(BaseModel):
    order_id: str
    payment_id: int


class CapturePaymentOut(BaseModel):
    payment_id: int
    invoice_number: str
    status: str


class UpdateStatusIn(BaseModel):
    status: str


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    payer_id: int
    amount: Decimal
    currency: str
    method: str
    purpose: str
    membership_type_id: Optional[int] = None
    event_id: Optional[int] = None
    description: Optional[str] = None
    status: str
    stage: str
    gateway_reference: Optional[str] = None
    invoice_number: str
    failure_reason: Optional[str] = None
    created_at: datetime
    settled_at: Optional[datetime] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class PaymentListOut(BaseModel):
    payments: List[PaymentOut]
    pagination: Pagination


class WebhookAck(BaseModel):
    result: str = "accepted"
