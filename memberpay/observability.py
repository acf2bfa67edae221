import logging
import structlog
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest

from .config import settings

# Business metrics
payments_submitted_total = Counter(
    "memberpay_payments_submitted_total",
    "Payment submissions by method and outcome",
    ["method", "outcome"],  # outcome: initiated, completed, recorded, gateway_failed
)

webhooks_total = Counter(
    "memberpay_webhooks_total",
    "Gateway notifications received",
    ["gateway", "outcome"],  # outcome: applied, duplicate, ignored, unknown_reference, error
)

membership_activations_total = Counter(
    "memberpay_membership_activations_total",
    "Members activated after a completed membership payment",
)


def configure_logging(level: str = None):
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName((level or settings.log_level).upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_observability(app: FastAPI):
    """Structured logs plus a Prometheus scrape endpoint at /metrics."""
    configure_logging()

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
