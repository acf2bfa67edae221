from typing import Optional
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class PaymentStage(str, Enum):
    """Orchestration progress of a payment that is still pending."""
    CREATED = "created"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CAPTURE_PENDING = "capture_pending"
    SETTLED = "settled"


class PaymentMethod(str, Enum):
    PUSH = "push-payment"
    REDIRECT = "redirect-payment"
    INTENT = "intent-payment"
    MANUAL = "manual"
    CASH = "cash"
    BANK_TRANSFER = "bank-transfer"
    IMPORT = "import"

    @property
    def uses_gateway(self) -> bool:
        return self in GATEWAY_METHODS


GATEWAY_METHODS = frozenset({PaymentMethod.PUSH, PaymentMethod.REDIRECT, PaymentMethod.INTENT})


class PaymentPurpose(str, Enum):
    MEMBERSHIP = "membership"
    EVENT = "event"
    DONATION = "donation"


class Payment(SQLModel, table=True):
    __tablename__ = "payments"

    id: Optional[int] = Field(default=None, primary_key=True)
    payer_id: int = Field(index=True, foreign_key="members.id")
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    currency: str = Field(default="KES", max_length=3)
    method: str = Field(max_length=32)
    purpose: str = Field(max_length=16, index=True)
    membership_type_id: Optional[int] = Field(default=None, foreign_key="membership_types.id")
    event_id: Optional[int] = None
    description: Optional[str] = None

    status: str = Field(default=PaymentStatus.PENDING.value, index=True)  # pending, completed, failed
    stage: str = Field(default=PaymentStage.CREATED.value)
    gateway_reference: Optional[str] = Field(default=None, unique=True, index=True, max_length=128)
    invoice_number: str = Field(unique=True, index=True, max_length=32)
    failure_reason: Optional[str] = None
    created_by: Optional[int] = None

    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    settled_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))


class InvoiceSequence(SQLModel, table=True):
    """One counter row per period prefix; bumped atomically."""
    __tablename__ = "invoice_sequences"

    prefix: str = Field(primary_key=True, max_length=32)
    last_value: int = 0


class MembershipType(SQLModel, table=True):
    __tablename__ = "membership_types"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=100)
    price: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    currency: str = "KES"
    duration_type: str = "annual"  # annual, lifetime, ...
    duration_months: int = 12
    is_active: bool = True

    @property
    def is_lifetime(self) -> bool:
        return self.duration_type == "lifetime" or not self.duration_months


class Member(SQLModel, table=True):
    __tablename__ = "members"

    id: Optional[int] = Field(default=None, primary_key=True)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    membership_number: Optional[str] = Field(default=None, unique=True, max_length=32)
    membership_type_id: Optional[int] = Field(default=None, foreign_key="membership_types.id")
    status: str = Field(default="pending")  # pending, active, inactive, suspended
    expiry_date: Optional[date] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
