import structlog
import uvicorn
from fastapi import FastAPI
from .routers import payments
from .db import init_db
from .config import settings
from .errors import register_exception_handlers
from .observability import setup_observability
from fastapi.middleware.cors import CORSMiddleware

logger = structlog.get_logger(__name__)

app = FastAPI(title="Membership Payments Service")

setup_observability(app)
register_exception_handlers(app)

# CORS - the member portal calls the payment endpoints from the browser
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # restrict to the portal domain in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(payments.router)

@app.on_event("startup")
async def on_startup():
    # init db tables if not using migrations
    await init_db()
    logger.info("service.started", env=settings.env)

@app.get("/health", include_in_schema=False)
async def health():
    return {"service": "payments", "status": "running"}

if __name__ == "__main__":
    uvicorn.run("memberpay.main:app", host=settings.app_host, port=settings.app_port, reload=(settings.env != "production"))
