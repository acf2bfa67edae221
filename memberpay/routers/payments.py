import json
from fastapi import APIRouter, Depends, Query, Request
from sqlmodel.ext.asyncio.session import AsyncSession
from typing import Optional
from ..schemas import (
    CapturePaymentIn,
    CapturePaymentOut,
    CreatePaymentIn,
    CreatePaymentOut,
    PaymentListOut,
    PaymentOut,
    UpdateStatusIn,
    WebhookAck,
)
from ..services.gateways import GatewayRegistry, get_gateways
from ..services.orchestrator import PaymentOrchestrator
from ..services.reconciliation import ReconciliationHandler
from ..db import get_session
from ..errors import ValidationError
from ..utils import CallerIdentity, get_caller, require_service_api_key

router = APIRouter(prefix="/payments", tags=["payments"])


def get_orchestrator(
    session: AsyncSession = Depends(get_session),
    gateways: GatewayRegistry = Depends(get_gateways),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(session, gateways)


def get_reconciler(
    session: AsyncSession = Depends(get_session),
    gateways: GatewayRegistry = Depends(get_gateways),
) -> ReconciliationHandler:
    return ReconciliationHandler(session, gateways)


@router.post("", response_model=CreatePaymentOut, status_code=201, dependencies=[Depends(require_service_api_key)])
async def create_payment(
    payload: CreatePaymentIn,
    caller: CallerIdentity = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Record a payment and start it with the gateway matching its method."""
    result = await orchestrator.submit(
        caller,
        amount=payload.amount,
        method=payload.method,
        purpose=payload.purpose,
        currency=payload.currency,
        ref=payload.ref,
        method_params=payload.method_params,
        payer_id=payload.member_id,
        status=payload.status,
        description=payload.description,
        transaction_reference=payload.transaction_reference,
    )
    return CreatePaymentOut(
        payment_id=result.payment.id,
        invoice_number=result.payment.invoice_number,
        status=result.payment.status,
        continuation=result.continuation,
    )


@router.get("", response_model=PaymentListOut, dependencies=[Depends(require_service_api_key)])
async def list_payments(
    status: Optional[str] = None,
    purpose: Optional[str] = None,
    method: Optional[str] = None,
    stale_minutes: Optional[int] = Query(default=None, ge=0),
    page: int = 1,
    limit: int = 20,
    caller: CallerIdentity = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Admin listing; ``stale_minutes`` narrows to pending payments older than that."""
    return await orchestrator.list_payments(
        caller,
        status=status,
        purpose=purpose,
        method=method,
        stale_minutes=stale_minutes,
        page=page,
        limit=limit,
    )


# Webhook (gateway -> POST). Authenticity is checked in front of this service.
@router.post("/webhooks/{gateway}", response_model=WebhookAck)
async def webhook(gateway: str, request: Request, reconciler: ReconciliationHandler = Depends(get_reconciler)):
    """
    Acknowledge every well-formed notification, even ones we cannot match or
    fail to apply: retries of a processed notification are harmless, and a
    non-2xx answer only makes the gateway retry.
    """
    try:
        payload = json.loads(await request.body())
    except ValueError:
        raise ValidationError("Invalid callback data")
    await reconciler.handle_notification(gateway, payload)
    return WebhookAck()


@router.post("/{gateway}/capture", response_model=CapturePaymentOut, dependencies=[Depends(require_service_api_key)])
async def capture_payment(
    gateway: str,
    payload: CapturePaymentIn,
    caller: CallerIdentity = Depends(get_caller),
    reconciler: ReconciliationHandler = Depends(get_reconciler),
):
    """Capture an order the payer approved on the gateway's hosted page."""
    payment = await reconciler.capture(gateway, payload.order_id, payload.payment_id, caller)
    return CapturePaymentOut(payment_id=payment.id, invoice_number=payment.invoice_number, status=payment.status)


@router.get("/{payment_id}", response_model=PaymentOut, dependencies=[Depends(require_service_api_key)])
async def get_payment(
    payment_id: int,
    caller: CallerIdentity = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_payment(caller, payment_id)


@router.put("/{payment_id}/status", response_model=PaymentOut, dependencies=[Depends(require_service_api_key)])
async def update_payment_status(
    payment_id: int,
    payload: UpdateStatusIn,
    caller: CallerIdentity = Depends(get_caller),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Admin settlement of a pending payment. Terminal payments come back unchanged."""
    return await orchestrator.update_status(caller, payment_id, payload.status)
