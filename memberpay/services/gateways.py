"""Common contract for the external payment processors.

Each adapter knows how to start a payment with its processor, optionally how to
capture it, and how to read that processor's notification payloads. Adapters
never touch the database; the orchestrator and reconciler do that.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from typing import Optional

import httpx
import structlog

from ..config import settings
from ..errors import GatewayError, NotFoundError, ValidationError
from ..models import PaymentMethod, PaymentStatus

logger = structlog.get_logger(__name__)


@dataclass
class GatewayHandle:
    """What a processor hands back after accepting a payment request."""
    reference: str
    continuation: dict = field(default_factory=dict)
    requires_capture: bool = False


@dataclass
class CaptureResult:
    order_id: str
    status: PaymentStatus  # PENDING when the processor has not decided yet
    message: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass
class Notification:
    reference: str
    status: PaymentStatus
    event: str
    message: Optional[str] = None


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return error["message"]  # stripe
        for key in ("errorMessage", "message", "error_description", "ResponseDescription"):
            if body.get(key):
                return str(body[key])
    return resp.reason_phrase or f"HTTP {resp.status_code}"


class GatewayAdapter(ABC):
    name: str = ""
    method: PaymentMethod
    supports_capture = False

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: Optional[float] = None):
        # transport is injectable so tests can stand in for the processor
        self.transport = transport
        self.timeout = timeout or settings.gateway_timeout_seconds

    def client(self, base_url: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=base_url, timeout=self.timeout, transport=self.transport)

    async def request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request, translating failures into ``GatewayError``."""
        try:
            resp = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("gateway.request_failed", gateway=self.name, url=url, error=repr(exc))
            raise GatewayError(f"{self.name} did not respond in time", GatewayError.TRANSIENT, self.name)
        except httpx.TransportError as exc:
            logger.warning("gateway.request_failed", gateway=self.name, url=url, error=repr(exc))
            raise GatewayError(f"Could not reach {self.name}", GatewayError.TRANSIENT, self.name)

        if resp.is_success:
            return resp
        message = _error_message(resp)
        kind = GatewayError.TRANSIENT if resp.status_code >= 500 or resp.status_code == 429 else GatewayError.PERMANENT
        logger.warning(
            "gateway.request_failed", gateway=self.name, url=url, status_code=resp.status_code, error=message
        )
        try:
            body = resp.json()
        except ValueError:
            body = None
        raise GatewayError(message, kind, self.name, response_status=resp.status_code, response_body=body)

    def json(self, resp: httpx.Response) -> dict:
        try:
            body = resp.json()
        except ValueError:
            raise GatewayError(f"{self.name} returned an unreadable response", GatewayError.TRANSIENT, self.name)
        if not isinstance(body, dict):
            raise GatewayError(f"{self.name} returned an unexpected response", GatewayError.TRANSIENT, self.name)
        return body

    def validate(self, amount: Decimal, currency: str, params: dict) -> None:
        """Reject requests this processor can never accept, before anything is stored."""

    @abstractmethod
    async def initiate(self, amount: Decimal, currency: str, invoice_number: str, params: dict) -> GatewayHandle:
        ...

    async def capture(self, order_id: str) -> CaptureResult:
        raise ValidationError(f"{self.name} payments do not support capture")

    @abstractmethod
    def parse_notification(self, payload: dict) -> Optional[Notification]:
        """Extract reference and outcome.

        Raises ``ValidationError`` for structurally unusable payloads and
        returns ``None`` for well-formed events that carry no outcome.
        """


class GatewayRegistry:
    def __init__(self, adapters=()):
        self._by_method = {}
        self._by_name = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: GatewayAdapter) -> None:
        self._by_method[adapter.method] = adapter
        self._by_name[adapter.name] = adapter

    def for_method(self, method: PaymentMethod) -> GatewayAdapter:
        try:
            return self._by_method[method]
        except KeyError:
            raise ValidationError(f"No gateway configured for method '{method.value}'")

    def by_name(self, name: str) -> GatewayAdapter:
        try:
            return self._by_name[name]
        except KeyError:
            raise NotFoundError(f"Unknown payment gateway '{name}'")


@lru_cache()
def get_gateways() -> GatewayRegistry:
    from .mpesa import MpesaGateway
    from .paypal import PaypalGateway
    from .stripe import StripeGateway

    return GatewayRegistry([MpesaGateway(), PaypalGateway(), StripeGateway()])
