"""Payment record persistence.

All mutation of a payment after creation goes through
``attach_gateway_reference`` and ``transition``. Both are single conditional
UPDATE statements, so concurrent callers (duplicate webhooks, a capture racing
its own notification) cannot both win.
"""
import math
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import func, select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..errors import ConflictError, NotFoundError, ValidationError
from ..models import Payment, PaymentMethod, PaymentPurpose, PaymentStage, PaymentStatus, utcnow
from .sequence import SequenceGenerator, invoice_prefix

logger = structlog.get_logger(__name__)

MONEY_QUANT = Decimal("0.01")


@dataclass
class Transition:
    payment: Payment
    applied: bool  # False when the record was already terminal


def parse_enum(enum_cls, value, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {field} '{value}'; expected one of: {allowed}")


def normalize_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Invalid monetary amount")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    return amount.quantize(MONEY_QUANT)


class PaymentStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        payer_id: int,
        amount,
        currency: str,
        method,
        purpose,
        ref: Optional[int] = None,
        description: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> Payment:
        method = parse_enum(PaymentMethod, method, "method")
        purpose = parse_enum(PaymentPurpose, purpose, "purpose")
        amount = normalize_amount(amount)
        currency = (currency or "").strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError("Currency must be a 3-letter ISO code")

        membership_type_id = event_id = None
        if purpose is PaymentPurpose.MEMBERSHIP:
            if ref is None:
                raise ValidationError("membership payments require a membership_type_id")
            membership_type_id = ref
        elif purpose is PaymentPurpose.EVENT:
            if ref is None:
                raise ValidationError("event payments require an event_id")
            event_id = ref

        invoice_number = await SequenceGenerator(self.session).next(invoice_prefix())
        payment = Payment(
            payer_id=payer_id,
            amount=amount,
            currency=currency,
            method=method.value,
            purpose=purpose.value,
            membership_type_id=membership_type_id,
            event_id=event_id,
            description=description,
            invoice_number=invoice_number,
            created_by=created_by,
        )
        self.session.add(payment)
        await self.session.commit()
        await self.session.refresh(payment)
        logger.info(
            "payment.created",
            payment_id=payment.id,
            invoice_number=invoice_number,
            method=payment.method,
            purpose=payment.purpose,
            amount=str(amount),
            currency=currency,
        )
        return payment

    async def get(self, payment_id: int) -> Payment:
        payment = await self.session.get(Payment, payment_id, populate_existing=True)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    async def find_by_gateway_reference(self, reference: str) -> Optional[Payment]:
        if not reference:
            return None
        result = await self.session.exec(
            select(Payment)
            .where(Payment.gateway_reference == reference)
            .execution_options(populate_existing=True)
        )
        return result.one_or_none()

    async def attach_gateway_reference(
        self, payment_id: int, reference: str, stage: Optional[PaymentStage] = None
    ) -> Payment:
        if not reference:
            raise ValidationError("Gateway reference must not be empty")
        values = {"gateway_reference": reference, "updated_at": utcnow()}
        if stage is not None:
            values["stage"] = stage.value
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.gateway_reference.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.exec(stmt)
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise ConflictError(f"Gateway reference {reference} already belongs to another payment")

        payment = await self.get(payment_id)
        if result.rowcount == 0 and payment.gateway_reference != reference:
            raise ConflictError(
                f"Payment {payment_id} already has gateway reference {payment.gateway_reference}"
            )
        if result.rowcount:
            logger.info("payment.gateway_attached", payment_id=payment_id, gateway_reference=reference)
        return payment

    async def transition(
        self,
        payment_id: int,
        new_status,
        reason: Optional[str] = None,
        commit: bool = True,
    ) -> Transition:
        """Move a pending payment to ``completed`` or ``failed``.

        A payment that is already terminal is returned untouched with
        ``applied=False``. With ``commit=False`` the caller owns the
        transaction, so follow-up work (membership activation) commits or
        rolls back together with the status change.
        """
        new_status = parse_enum(PaymentStatus, new_status, "status")
        if not new_status.is_terminal:
            raise ValidationError("Payments can only transition to completed or failed")

        now = utcnow()
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value)
            .values(
                status=new_status.value,
                stage=PaymentStage.SETTLED.value,
                settled_at=now,
                updated_at=now,
                failure_reason=reason if new_status is PaymentStatus.FAILED else None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.exec(stmt)
        applied = result.rowcount == 1
        if commit:
            await self.session.commit()

        payment = await self.get(payment_id)
        if applied:
            logger.info("payment.transition", payment_id=payment_id, status=new_status.value)
        else:
            logger.info(
                "payment.transition_noop",
                payment_id=payment_id,
                requested=new_status.value,
                current=payment.status,
            )
        return Transition(payment=payment, applied=applied)

    async def list_payments(
        self,
        status: Optional[str] = None,
        purpose: Optional[str] = None,
        method: Optional[str] = None,
        stale_minutes: Optional[int] = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict:
        page = max(1, page)
        limit = min(100, max(10, limit))

        filters = []
        if status:
            filters.append(Payment.status == parse_enum(PaymentStatus, status, "status").value)
        if purpose:
            filters.append(Payment.purpose == parse_enum(PaymentPurpose, purpose, "purpose").value)
        if method:
            filters.append(Payment.method == parse_enum(PaymentMethod, method, "method").value)
        if stale_minutes is not None:
            # pending records nobody has heard back about
            cutoff = utcnow() - timedelta(minutes=stale_minutes)
            filters.append(Payment.status == PaymentStatus.PENDING.value)
            filters.append(Payment.created_at < cutoff)

        total = (await self.session.exec(select(func.count()).select_from(Payment).where(*filters))).one()
        rows = await self.session.exec(
            select(Payment)
            .where(*filters)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return {
            "payments": rows.all(),
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit),
            },
        }
