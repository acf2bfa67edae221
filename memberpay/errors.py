"""Domain errors and their HTTP mapping."""
from collections.abc import Iterable
from typing import Any, Optional

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


class PaymentError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_content(self) -> dict:
        return {"detail": self.message}


class ValidationError(PaymentError):
    """Bad request shape or amount. Nothing was persisted."""
    status_code = 400


class PermissionDenied(PaymentError):
    status_code = 403


class NotFoundError(PaymentError):
    status_code = 404


class ConflictError(PaymentError):
    """A second, different gateway reference for the same record."""
    status_code = 409


class GatewayError(PaymentError):
    """The external processor rejected the request or could not be reached.

    ``kind`` is ``transient`` (network trouble, 5xx, throttling: the caller may
    retry) or ``permanent`` (bad request, invalid amount: never retry).
    """
    status_code = 502

    TRANSIENT = "transient"
    PERMANENT = "permanent"

    INITIATE = "initiate"
    CAPTURE = "capture"
    PHASE_MESSAGES = {
        INITIATE: "Your payment could not be started",
        CAPTURE: "Your payment could not be completed",
    }

    def __init__(
        self,
        message: str,
        kind: str = PERMANENT,
        gateway: Optional[str] = None,
        response_status: Optional[int] = None,
        response_body: Any = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.gateway = gateway
        self.response_status = response_status
        self.response_body = response_body
        self.phase = self.INITIATE
        # filled in once the affected record is known
        self.payment_id: Optional[int] = None
        self.invoice_number: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return self.kind == self.TRANSIENT

    def to_content(self) -> dict:
        return {
            "detail": f"{self.PHASE_MESSAGES[self.phase]}: {self.message}",
            "retryable": self.retryable,
            "payment_id": self.payment_id,
            "invoice_number": self.invoice_number,
        }


def _flatten_detail(detail: Any) -> str:
    if isinstance(detail, str):
        return detail
    if isinstance(detail, dict):
        return "; ".join(f"{key}: {value}" for key, value in detail.items())
    if isinstance(detail, Iterable) and not isinstance(detail, (bytes, bytearray)):
        return "; ".join(_flatten_detail(item) for item in detail)
    if detail is None:
        return "An error occurred"
    return str(detail)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        if isinstance(exc, ConflictError):
            logger.error("payment.conflict", path=request.url.path, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_content())

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        response = JSONResponse(status_code=exc.status_code, content={"detail": _flatten_detail(exc.detail)})
        if exc.headers:
            for key, value in exc.headers.items():
                response.headers[key] = value
        return response

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        messages = []
        for error in exc.errors():
            location = [str(loc) for loc in error.get("loc", []) if loc != "body"]
            message = error.get("msg", "Invalid input")
            messages.append(f"{'.'.join(location)}: {message}" if location else message)
        return JSONResponse(status_code=422, content={"detail": "; ".join(messages) or "Invalid request"})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("request.unhandled_error", method=request.method, path=request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
