import os
import tempfile

_tmpdir = tempfile.mkdtemp(prefix="memberpay-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_tmpdir}/payments.db")
os.environ.setdefault("SERVICE_API_KEY", "test-service-key")
os.environ.setdefault("WEBHOOK_REFERENCE_DELAY_SECONDS", "0.05")

from decimal import Decimal

import httpx
import pytest
from sqlmodel import SQLModel

from memberpay.config import settings
from memberpay.db import async_session, engine
from memberpay.errors import GatewayError
from memberpay.main import app
from memberpay.models import Member, MembershipType, PaymentStatus
from memberpay.services.gateways import CaptureResult, GatewayHandle, GatewayRegistry, get_gateways
from memberpay.services.mpesa import MpesaGateway
from memberpay.services.paypal import PaypalGateway
from memberpay.services.stripe import StripeGateway
from memberpay.utils import CallerIdentity


class FakeMpesa(MpesaGateway):
    """Real callback parsing, canned STK push responses."""

    def __init__(self):
        super().__init__()
        self.calls = []
        self.error = None
        self.on_initiate = None  # async hook called with the reference before returning

    async def initiate(self, amount, currency, invoice_number, params):
        self.calls.append((amount, currency, invoice_number, params))
        if self.error:
            raise self.error
        if self.on_initiate:
            await self.on_initiate(f"ws_CO_{invoice_number}")
        return GatewayHandle(
            reference=f"ws_CO_{invoice_number}",
            continuation={"customer_message": "Success. Request accepted for processing"},
        )


class FakePaypal(PaypalGateway):
    def __init__(self):
        super().__init__()
        self.calls = []
        self.captures = []
        self.capture_status = PaymentStatus.COMPLETED
        self.capture_error = None

    async def initiate(self, amount, currency, invoice_number, params):
        self.calls.append((amount, currency, invoice_number, params))
        order_id = f"ORDER-{invoice_number}"
        return GatewayHandle(
            reference=order_id,
            continuation={"order_id": order_id, "approval_url": f"https://paypal.test/approve/{order_id}"},
            requires_capture=True,
        )

    async def capture(self, order_id):
        self.captures.append(order_id)
        if self.capture_error:
            raise self.capture_error
        return CaptureResult(order_id=order_id, status=self.capture_status, message=self.capture_status.value.upper())


class FakeStripe(StripeGateway):
    def __init__(self):
        super().__init__()
        self.calls = []

    async def initiate(self, amount, currency, invoice_number, params):
        self.calls.append((amount, currency, invoice_number, params))
        intent_id = f"pi_{invoice_number}"
        return GatewayHandle(reference=intent_id, continuation={"client_secret": f"{intent_id}_secret_abc"})


def mpesa_callback(reference, result_code=0, desc="The service request is processed successfully."):
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": reference,
                "ResultCode": result_code,
                "ResultDesc": desc,
            }
        }
    }


def api_headers(member_id, role="member"):
    return {"X-API-KEY": settings.service_api_key, "X-Member-Id": str(member_id), "X-Member-Role": role}


@pytest.fixture(autouse=True)
async def database():
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture
async def session():
    async with async_session() as session:
        yield session


@pytest.fixture
def gateways():
    return GatewayRegistry([FakeMpesa(), FakePaypal(), FakeStripe()])


@pytest.fixture
async def annual_type(session):
    membership_type = MembershipType(name="Regular Nurse", price=Decimal("5000.00"), duration_months=12)
    session.add(membership_type)
    await session.commit()
    await session.refresh(membership_type)
    return membership_type


@pytest.fixture
async def lifetime_type(session):
    membership_type = MembershipType(
        name="Lifetime Member", price=Decimal("50000.00"), duration_type="lifetime", duration_months=0
    )
    session.add(membership_type)
    await session.commit()
    await session.refresh(membership_type)
    return membership_type


@pytest.fixture
async def member(session):
    member = Member(first_name="Wanjiru", last_name="Kamau", email="wanjiru@example.org", phone="0712345678")
    session.add(member)
    await session.commit()
    await session.refresh(member)
    return member


@pytest.fixture
async def admin(session):
    admin = Member(first_name="Admin", email="admin@example.org", status="active")
    session.add(admin)
    await session.commit()
    await session.refresh(admin)
    return admin


@pytest.fixture
def caller(member):
    return CallerIdentity(member_id=member.id)


@pytest.fixture
def admin_caller(admin):
    return CallerIdentity(member_id=admin.id, is_admin=True)


@pytest.fixture
async def client(gateways):
    app.dependency_overrides[get_gateways] = lambda: gateways
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def gateway_error():
    return GatewayError("The initiator information is invalid.", GatewayError.PERMANENT, "mpesa")
