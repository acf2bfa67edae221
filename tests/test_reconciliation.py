import asyncio
from datetime import date

import pytest

from memberpay.config import settings
from memberpay.db import async_session
from memberpay.errors import GatewayError, NotFoundError, PermissionDenied, ValidationError
from memberpay.models import Member, PaymentStatus
from memberpay.services.membership import MembershipActivator, add_months
from memberpay.services.orchestrator import PaymentOrchestrator
from memberpay.services.reconciliation import ReconciliationHandler
from memberpay.services.store import PaymentStore
from memberpay.utils import CallerIdentity

from conftest import mpesa_callback


@pytest.fixture
def reconciler(session, gateways):
    return ReconciliationHandler(session, gateways)


@pytest.fixture
def activations(monkeypatch):
    calls = []
    activate = MembershipActivator.activate

    async def spy(self, member_id, membership_type_id, today=None):
        calls.append(member_id)
        return await activate(self, member_id, membership_type_id, today)

    monkeypatch.setattr(MembershipActivator, "activate", spy)
    return calls


@pytest.fixture
async def pushed(session, gateways, caller, annual_type):
    """A pending M-Pesa membership payment waiting for its callback."""
    result = await PaymentOrchestrator(session, gateways).submit(
        caller,
        amount=5000,
        method="push-payment",
        purpose="membership",
        ref=annual_type.id,
        method_params={"phone_number": "0712345678"},
    )
    return result.payment


@pytest.fixture
async def redirected(session, gateways, caller, annual_type):
    result = await PaymentOrchestrator(session, gateways).submit(
        caller, amount=50, currency="USD", method="redirect-payment", purpose="membership", ref=annual_type.id
    )
    return result.payment


async def reload_member(session, member_id):
    return await session.get(Member, member_id, populate_existing=True)


async def test_successful_callback_activates_membership(reconciler, session, pushed, member, annual_type):
    outcome = await reconciler.handle_notification("mpesa", mpesa_callback(pushed.gateway_reference))

    assert outcome == "applied"
    payment = await PaymentStore(session).get(pushed.id)
    assert payment.status == "completed"
    assert payment.stage == "settled"
    assert payment.settled_at is not None
    activated = await reload_member(session, member.id)
    assert activated.status == "active"
    assert activated.membership_type_id == annual_type.id
    assert activated.expiry_date == add_months(date.today(), 12)
    assert activated.membership_number.endswith("-0001")


async def test_failed_callback_leaves_member_untouched(reconciler, session, pushed, member, activations):
    outcome = await reconciler.handle_notification(
        "mpesa", mpesa_callback(pushed.gateway_reference, 1032, "Request cancelled by user")
    )

    assert outcome == "applied"
    payment = await PaymentStore(session).get(pushed.id)
    assert payment.status == "failed"
    assert payment.failure_reason == "Request cancelled by user"
    assert activations == []
    assert (await reload_member(session, member.id)).status == "pending"


async def test_duplicate_callback_is_a_noop(reconciler, session, pushed, activations):
    callback = mpesa_callback(pushed.gateway_reference)

    assert await reconciler.handle_notification("mpesa", callback) == "applied"
    settled_at = (await PaymentStore(session).get(pushed.id)).settled_at
    assert await reconciler.handle_notification("mpesa", callback) == "duplicate"

    assert activations == [pushed.payer_id]
    assert (await PaymentStore(session).get(pushed.id)).settled_at == settled_at


async def test_late_failure_does_not_undo_completion(reconciler, session, pushed, member):
    await reconciler.handle_notification("mpesa", mpesa_callback(pushed.gateway_reference))
    outcome = await reconciler.handle_notification(
        "mpesa", mpesa_callback(pushed.gateway_reference, 1, "The balance is insufficient")
    )

    assert outcome == "duplicate"
    payment = await PaymentStore(session).get(pushed.id)
    assert payment.status == "completed"
    assert payment.failure_reason is None
    assert (await reload_member(session, member.id)).status == "active"


async def test_concurrent_duplicates_activate_once(gateways, pushed, activations):
    callback = mpesa_callback(pushed.gateway_reference)

    async def deliver():
        async with async_session() as session:
            return await ReconciliationHandler(session, gateways).handle_notification("mpesa", callback)

    outcomes = await asyncio.gather(deliver(), deliver())

    assert sorted(outcomes) == ["applied", "duplicate"]
    assert activations == [pushed.payer_id]


async def test_unknown_reference_is_acknowledged(reconciler, session, pushed):
    assert await reconciler.handle_notification("mpesa", mpesa_callback("ws_CO_nobody")) == "unknown_reference"
    assert (await PaymentStore(session).get(pushed.id)).status == "pending"


async def test_unusable_payloads_raise(reconciler):
    with pytest.raises(ValidationError):
        await reconciler.handle_notification("mpesa", {"Body": {"stkCallback": {}}})
    with pytest.raises(ValidationError):
        await reconciler.handle_notification("mpesa", ["not", "an", "object"])
    with pytest.raises(NotFoundError):
        await reconciler.handle_notification("adyen", {"id": "tr_1"})


async def test_events_without_outcome_are_ignored(reconciler, session, redirected):
    event = {"event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": redirected.gateway_reference}}
    assert await reconciler.handle_notification("paypal", event) == "ignored"
    assert (await PaymentStore(session).get(redirected.id)).status == "pending"


async def test_paypal_capture_webhook_settles_order(reconciler, session, redirected, member):
    event = {
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {
            "id": "3C679366HH908993F",
            "status": "COMPLETED",
            "supplementary_data": {"related_ids": {"order_id": redirected.gateway_reference}},
        },
    }
    assert await reconciler.handle_notification("paypal", event) == "applied"
    assert (await PaymentStore(session).get(redirected.id)).status == "completed"
    assert (await reload_member(session, member.id)).status == "active"


async def test_activation_error_rolls_back_the_transition(reconciler, session, pushed, member, monkeypatch):
    payment_id, member_id, reference = pushed.id, member.id, pushed.gateway_reference

    async def broken(self, member_id, membership_type_id, today=None):
        raise RuntimeError("members table unavailable")

    monkeypatch.setattr(MembershipActivator, "activate", broken)

    outcome = await reconciler.handle_notification("mpesa", mpesa_callback(reference))

    assert outcome == "error"
    assert (await PaymentStore(session).get(payment_id)).status == "pending"
    assert (await reload_member(session, member_id)).status == "pending"


async def test_capture_settles_approved_order(reconciler, session, gateways, redirected, caller, member):
    payment = await reconciler.capture("paypal", redirected.gateway_reference, redirected.id, caller)

    assert payment.status == "completed"
    assert gateways.by_name("paypal").captures == [redirected.gateway_reference]
    assert (await reload_member(session, member.id)).status == "active"

    again = await reconciler.capture("paypal", redirected.gateway_reference, redirected.id, caller)
    assert again.status == "completed"
    assert gateways.by_name("paypal").captures == [redirected.gateway_reference]


async def test_capture_still_pending_keeps_payment_pending(reconciler, gateways, redirected, caller):
    gateways.by_name("paypal").capture_status = PaymentStatus.PENDING
    payment = await reconciler.capture("paypal", redirected.gateway_reference, redirected.id, caller)
    assert payment.status == "pending"


async def test_declined_capture_fails_payment(reconciler, session, gateways, redirected, caller, member):
    gateways.by_name("paypal").capture_status = PaymentStatus.FAILED
    payment = await reconciler.capture("paypal", redirected.gateway_reference, redirected.id, caller)
    assert payment.status == "failed"
    assert (await reload_member(session, member.id)).status == "pending"


async def test_capture_refusals(reconciler, redirected, pushed, caller):
    with pytest.raises(NotFoundError):
        await reconciler.capture("paypal", "ORDER-UNKNOWN", redirected.id, caller)
    with pytest.raises(NotFoundError):
        await reconciler.capture("paypal", redirected.gateway_reference, pushed.id, caller)
    with pytest.raises(ValidationError):
        await reconciler.capture("mpesa", pushed.gateway_reference, pushed.id, caller)
    with pytest.raises(PermissionDenied):
        await reconciler.capture(
            "paypal", redirected.gateway_reference, redirected.id, CallerIdentity(member_id=caller.member_id + 100)
        )


async def test_stripe_events_without_outcome_are_ignored(reconciler):
    event = {"type": "charge.refunded", "data": {"object": {"id": "ch_3MtwBw", "object": "charge"}}}
    assert await reconciler.handle_notification("stripe", event) == "ignored"


async def test_callback_arriving_during_initiation_is_applied(session, gateways, caller, member, annual_type, monkeypatch):
    monkeypatch.setattr(settings, "webhook_reference_attempts", 20)
    deliveries = []

    async def deliver(reference):
        async with async_session() as callback_session:
            handler = ReconciliationHandler(callback_session, gateways)
            return await handler.handle_notification("mpesa", mpesa_callback(reference))

    async def paid_before_response(reference):
        deliveries.append(asyncio.create_task(deliver(reference)))
        await asyncio.sleep(0.01)

    gateways.by_name("mpesa").on_initiate = paid_before_response
    result = await PaymentOrchestrator(session, gateways).submit(
        caller,
        amount=5000,
        method="push-payment",
        purpose="membership",
        ref=annual_type.id,
        method_params={"phone_number": "0712345678"},
    )

    assert await deliveries[0] == "applied"
    assert (await PaymentStore(session).get(result.payment.id)).status == "completed"
    assert (await reload_member(session, member.id)).status == "active"


async def test_refused_capture_reports_the_pending_payment(reconciler, session, gateways, redirected, caller):
    paypal = gateways.by_name("paypal")
    paypal.capture_error = GatewayError("The payer has not approved this order yet", GatewayError.PERMANENT, "paypal")

    with pytest.raises(GatewayError) as exc_info:
        await reconciler.capture("paypal", redirected.gateway_reference, redirected.id, caller)

    error = exc_info.value
    assert error.payment_id == redirected.id
    assert error.invoice_number == redirected.invoice_number
    assert error.to_content()["detail"] == "Your payment could not be completed: The payer has not approved this order yet"
    assert (await PaymentStore(session).get(redirected.id)).status == "pending"
