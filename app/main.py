import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.config import APP_ENV, CORS_ORIGINS, DATABASE_URL, LOG_LEVEL, TRUSTED_HOSTS
from app.database import Base, SessionLocal, engine
from app.errors import BillingError
from app.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware, setup_logging
from app.models import (  # noqa: F401  registers the tables on Base.metadata
    AgencySubscription, AgencyWallet, OnlineRentPayment, PaymentTransaction,
    SubscriptionPlan, WithdrawalRequest,
)
from app.rate_limit import limiter
from app.routers import billing, super_admin, webhooks, withdrawals

logger = logging.getLogger("immopay")

_start_time: float = 0.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _start_time
    _start_time = time.time()

    setup_logging(LOG_LEVEL)
    db_type = DATABASE_URL.split("://")[0] if "://" in DATABASE_URL else "unknown"
    logger.info("Starting ImmoPay billing (env=%s, db_type=%s)", APP_ENV, db_type)

    Base.metadata.create_all(bind=engine)
    logger.info("Database ready")

    yield
    logger.info("Shutting down ImmoPay billing")


app = FastAPI(title="ImmoPay Billing", lifespan=lifespan)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.code, "message": exc.message},
    )


# Middleware (order matters: last added = first executed)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=500)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
if TRUSTED_HOSTS:
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=TRUSTED_HOSTS)

app.include_router(billing.router)
app.include_router(webhooks.router)
app.include_router(withdrawals.router)
app.include_router(super_admin.router)


@app.get("/api/health")
def health_check():
    db_status = "connected"
    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
    except SQLAlchemyError as exc:
        logger.warning("Health check database error: %s", exc)
        db_status = "disconnected"

    db_type = "postgresql" if DATABASE_URL.startswith("postgresql") else "sqlite"
    return {
        "status": "healthy" if db_status == "connected" else "unhealthy",
        "database": db_status,
        "database_type": db_type,
        "environment": APP_ENV,
        "uptime_seconds": round(time.time() - _start_time, 1),
    }
