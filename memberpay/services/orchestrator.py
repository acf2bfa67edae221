"""Payment submission: record first, then hand off to the matching gateway."""
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlmodel.ext.asyncio.session import AsyncSession

from ..config import settings
from ..errors import GatewayError, PermissionDenied, ValidationError
from ..models import Member, MembershipType, Payment, PaymentMethod, PaymentPurpose, PaymentStage, PaymentStatus
from ..observability import payments_submitted_total
from ..utils import CallerIdentity
from .gateways import GatewayRegistry
from .reconciliation import settle_payment
from .store import PaymentStore, parse_enum, normalize_amount

logger = structlog.get_logger(__name__)


@dataclass
class OrchestrationResult:
    payment: Payment
    continuation: Optional[dict] = None


class PaymentOrchestrator:
    def __init__(self, session: AsyncSession, gateways: GatewayRegistry):
        self.session = session
        self.gateways = gateways
        self.store = PaymentStore(session)

    def _resolve_payer(self, caller: CallerIdentity, payer_id: Optional[int]) -> int:
        # Use the caller's own id unless an admin pays on someone's behalf
        if payer_id is None or payer_id == caller.member_id:
            return caller.member_id
        if not caller.is_admin:
            raise PermissionDenied("Only administrators can submit payments for other members")
        return payer_id

    async def _check_references(self, payer_id: int, purpose: PaymentPurpose, ref: Optional[int]) -> None:
        if await self.session.get(Member, payer_id) is None:
            raise ValidationError(f"Unknown member {payer_id}")
        if purpose is PaymentPurpose.MEMBERSHIP and ref is not None:
            if await self.session.get(MembershipType, ref) is None:
                raise ValidationError(f"Unknown membership type {ref}")

    async def submit(
        self,
        caller: CallerIdentity,
        amount,
        method,
        purpose,
        currency: Optional[str] = None,
        ref: Optional[int] = None,
        method_params: Optional[dict] = None,
        payer_id: Optional[int] = None,
        status: Optional[str] = None,
        description: Optional[str] = None,
        transaction_reference: Optional[str] = None,
    ) -> OrchestrationResult:
        params = dict(method_params or {})
        method = parse_enum(PaymentMethod, method, "method")
        purpose = parse_enum(PaymentPurpose, purpose, "purpose")
        currency = (currency or settings.default_currency).strip().upper()
        requested = parse_enum(PaymentStatus, status or PaymentStatus.PENDING.value, "status")
        if requested is PaymentStatus.FAILED:
            raise ValidationError("A new payment cannot be submitted as failed")

        payer_id = self._resolve_payer(caller, payer_id)
        adapter = None
        if method.uses_gateway:
            if requested is PaymentStatus.COMPLETED:
                raise ValidationError(f"{method.value} payments are confirmed by the gateway")
            if transaction_reference:
                raise ValidationError("Gateway payments receive their reference from the gateway")
            adapter = self.gateways.for_method(method)
            adapter.validate(normalize_amount(amount), currency, params)
        elif not caller.is_admin:
            raise PermissionDenied(f"Only administrators can record {method.value} payments")

        await self._check_references(payer_id, purpose, ref)
        payment = await self.store.create(
            payer_id=payer_id,
            amount=amount,
            currency=currency,
            method=method,
            purpose=purpose,
            ref=ref,
            description=description,
            created_by=caller.member_id,
        )
        log = logger.bind(payment_id=payment.id, invoice_number=payment.invoice_number, method=method.value)

        if adapter is None:
            return await self._record_offline(payment, requested, transaction_reference, log)

        try:
            handle = await adapter.initiate(payment.amount, payment.currency, payment.invoice_number, params)
        except GatewayError as exc:
            # no automatic retry: a second STK push would prompt the payer twice
            await self.store.transition(payment.id, PaymentStatus.FAILED, reason=exc.message)
            exc.payment_id = payment.id
            exc.invoice_number = payment.invoice_number
            log.warning("payment.gateway_failed", kind=exc.kind, error=exc.message)
            payments_submitted_total.labels(method=method.value, outcome="gateway_failed").inc()
            raise
        except Exception:
            await self.store.transition(payment.id, PaymentStatus.FAILED, reason="internal error during initiation")
            log.exception("payment.initiation_error")
            raise

        stage = PaymentStage.CAPTURE_PENDING if handle.requires_capture else PaymentStage.AWAITING_CONFIRMATION
        payment = await self.store.attach_gateway_reference(payment.id, handle.reference, stage)
        log.info("payment.initiated", gateway_reference=handle.reference, stage=stage.value)
        payments_submitted_total.labels(method=method.value, outcome="initiated").inc()
        return OrchestrationResult(payment=payment, continuation=handle.continuation)

    async def _record_offline(self, payment: Payment, requested: PaymentStatus, transaction_reference, log):
        """Manual, cash, bank-transfer and import payments: no gateway involved."""
        if transaction_reference:
            payment = await self.store.attach_gateway_reference(payment.id, transaction_reference)
        if requested is PaymentStatus.COMPLETED:
            payment = (await settle_payment(self.session, payment.id, PaymentStatus.COMPLETED)).payment
            log.info("payment.recorded_completed")
            payments_submitted_total.labels(method=payment.method, outcome="completed").inc()
        else:
            payments_submitted_total.labels(method=payment.method, outcome="recorded").inc()
        return OrchestrationResult(payment=payment)

    async def get_payment(self, caller: CallerIdentity, payment_id: int) -> Payment:
        payment = await self.store.get(payment_id)
        if not caller.can_access(payment.payer_id):
            raise PermissionDenied("Access denied")
        return payment

    async def list_payments(self, caller: CallerIdentity, **filters) -> dict:
        if not caller.is_admin:
            raise PermissionDenied("Admin access required")
        return await self.store.list_payments(**filters)

    async def update_status(self, caller: CallerIdentity, payment_id: int, status: str) -> Payment:
        """Administrator settlement of a pending payment (e.g. a confirmed bank transfer)."""
        if not caller.is_admin:
            raise PermissionDenied("Admin access required")
        await self.store.get(payment_id)
        transition = await settle_payment(
            self.session,
            payment_id,
            parse_enum(PaymentStatus, status, "status"),
            reason=f"marked failed by administrator {caller.member_id}",
        )
        logger.info(
            "payment.admin_status",
            payment_id=payment_id,
            requested=status,
            applied=transition.applied,
            admin_id=caller.member_id,
        )
        return transition.payment
