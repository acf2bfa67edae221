"""Applying gateway outcomes to payment records.

Gateways deliver notifications at least once, in any order, sometimes
concurrently. Everything funnels into ``settle_payment``, whose conditional
status update lets exactly one caller win; only that caller activates the
membership.
"""
import asyncio
from typing import Optional

import structlog
from sqlmodel.ext.asyncio.session import AsyncSession

from ..config import settings
from ..errors import GatewayError, NotFoundError, PermissionDenied, ValidationError
from ..models import Payment, PaymentPurpose, PaymentStatus
from ..observability import webhooks_total
from ..utils import CallerIdentity
from .gateways import GatewayRegistry
from .membership import MembershipActivator
from .store import PaymentStore, Transition

logger = structlog.get_logger(__name__)


async def settle_payment(
    session: AsyncSession, payment_id: int, status: PaymentStatus, reason: Optional[str] = None
) -> Transition:
    """Terminal transition plus, when it actually happened, membership activation.

    Both are committed together; on any error the transaction is rolled back
    and the payment stays pending.
    """
    store = PaymentStore(session)
    try:
        transition = await store.transition(payment_id, status, reason=reason, commit=False)
        payment = transition.payment
        if (
            transition.applied
            and payment.status == PaymentStatus.COMPLETED.value
            and payment.purpose == PaymentPurpose.MEMBERSHIP.value
            and payment.membership_type_id is not None
        ):
            await MembershipActivator(session).activate(payment.payer_id, payment.membership_type_id)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return transition


class ReconciliationHandler:
    def __init__(self, session: AsyncSession, gateways: GatewayRegistry):
        self.session = session
        self.gateways = gateways
        self.store = PaymentStore(session)

    async def _find_payment(self, reference: str) -> Optional[Payment]:
        # the callback can beat the initiating request to attaching the reference
        attempts = max(1, settings.webhook_reference_attempts)
        for attempt in range(attempts):
            payment = await self.store.find_by_gateway_reference(reference)
            if payment is not None or attempt == attempts - 1:
                return payment
            await asyncio.sleep(settings.webhook_reference_delay_seconds)
        return None

    async def handle_notification(self, gateway: str, payload) -> str:
        """Apply one gateway notification; returns the outcome label.

        Unknown gateways and unparseable payloads raise. Anything that goes
        wrong after that is logged with the full payload and reported as
        ``error`` so the gateway still gets its acknowledgement.
        """
        adapter = self.gateways.by_name(gateway)
        if not isinstance(payload, dict):
            raise ValidationError("Notification payload must be a JSON object")
        notification = adapter.parse_notification(payload)
        log = logger.bind(gateway=gateway)

        if notification is None:
            log.info("webhook.ignored", event_type=payload.get("type") or payload.get("event_type"))
            webhooks_total.labels(gateway=gateway, outcome="ignored").inc()
            return "ignored"

        log = log.bind(gateway_reference=notification.reference, event_type=notification.event)
        log.info("webhook.received", status=notification.status.value)
        try:
            payment = await self._find_payment(notification.reference)
            if payment is None:
                # a paid notification dropped here leaves money unmatched
                log.error("webhook.unknown_reference", status=notification.status.value, payload=payload)
                outcome = "unknown_reference"
            else:
                transition = await settle_payment(
                    self.session, payment.id, notification.status, reason=notification.message
                )
                outcome = "applied" if transition.applied else "duplicate"
                log.info("webhook.processed", payment_id=payment.id, outcome=outcome, status=transition.payment.status)
        except Exception:
            log.exception("webhook.processing_failed", payload=payload)
            outcome = "error"

        webhooks_total.labels(gateway=gateway, outcome=outcome).inc()
        return outcome

    async def capture(self, gateway: str, order_id: str, payment_id: int, caller: CallerIdentity) -> Payment:
        """Capture an approved redirect-payment order for its payer.

        Unlike webhooks this is a direct client action, so an unknown order is
        reported as not found instead of being acknowledged.
        """
        adapter = self.gateways.by_name(gateway)
        if not adapter.supports_capture:
            raise ValidationError(f"{gateway} payments do not support capture")

        payment = await self.store.find_by_gateway_reference(order_id)
        if payment is None or payment.id != payment_id:
            logger.warning("capture.unknown_order", gateway=gateway, order_id=order_id, payment_id=payment_id)
            raise NotFoundError(f"Order {order_id} not found")
        if not caller.can_access(payment.payer_id):
            raise PermissionDenied("Access denied")
        if payment.status != PaymentStatus.PENDING.value:
            return payment

        try:
            result = await adapter.capture(order_id)
        except GatewayError as exc:
            # the payment is still pending and can be captured again
            exc.phase = GatewayError.CAPTURE
            exc.payment_id = payment.id
            exc.invoice_number = payment.invoice_number
            logger.warning(
                "capture.gateway_failed", gateway=gateway, order_id=order_id, payment_id=payment.id, error=exc.message
            )
            raise
        logger.info("capture.result", gateway=gateway, order_id=order_id, payment_id=payment.id, status=result.status.value)
        if result.status is PaymentStatus.PENDING:
            return payment
        transition = await settle_payment(self.session, payment.id, result.status, reason=result.message)
        return transition.payment
