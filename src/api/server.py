"""
Quota Ledger - FastAPI Server

HTTP surface over the quota ledger.

Endpoints:
- GET /products - Purchasable quota packages
- GET /users/{user_id}/quota - Active balance summary
- GET /users/{user_id}/quota/details - Recent grants
- GET /users/{user_id}/quota/usage - Usage history
- POST /users/{user_id}/quota/check - Pre-check before chargeable work
- POST /users/{user_id}/quota/consume - Debit quota
- POST /users/{user_id}/grants - Issue a grant
- POST /users/{user_id}/payments - Open a payment (or a Stripe checkout)
- POST /users/{user_id}/payments/{payment_id}/complete - Settle a payment
- POST /webhooks/stripe - Stripe Checkout webhooks
- POST /events/process - Drain the outbox
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import os
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

# Import core components
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from billing.pricing import PriceTable
from billing.stripe_integration import StripeIntegration, StripeIntegrationError
from ledger.config import LedgerConfig
from ledger.errors import (
    AlreadyProcessedError,
    InsufficientFundsError,
    LedgerError,
    NotFoundError,
    StorageError,
)
from ledger.grants import expires_in
from ledger.service import QuotaLedger
from persistence.database import Database
from persistence.models import GrantSource

logger = structlog.get_logger()

VERSION = "1.0.0"

# Purchase and referral grants are only issued by payment settlement
MANUAL_GRANT_SOURCES = frozenset(
    s.value for s in GrantSource if s not in (GrantSource.PURCHASE, GrantSource.REFERRAL_BONUS)
)


# ============================================================================
# Pydantic Models
# ============================================================================

class AmountRequest(BaseModel):
    """Quota pre-check."""
    amount: int = Field(..., description="Units of quota the work will cost")


class ConsumeRequest(BaseModel):
    """Debit quota after chargeable work."""
    amount: int = Field(..., description="Units of quota to debit")
    tag: str = Field(default="", description="What the quota was spent on, e.g. chat or image")
    models: List[str] = Field(default_factory=list, description="Models involved")


class GrantRequest(BaseModel):
    """Issue a grant."""
    amount: int = Field(..., description="Units of quota to grant")
    expires_at: Optional[datetime] = Field(None, description="Absolute expiry (UTC)")
    expires_in_days: Optional[int] = Field(None, description="Expiry relative to now")
    note: str = Field(default="")
    source: str = Field(default="manual")


class PaymentRequest(BaseModel):
    """Open a payment. With success/cancel URLs a Stripe checkout session is created."""
    product_id: str
    source: str = Field(default="manual", description="Payment channel")
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CompletePaymentRequest(BaseModel):
    """Provider confirmation of a payment outcome."""
    status: str = Field(..., description="success, failed or canceled")
    provider_fields: Dict[str, Any] = Field(default_factory=dict)
    environment: Optional[str] = None
    note: Optional[str] = None


class QuotaSummaryResponse(BaseModel):
    """Active balance."""
    user_id: str
    granted: int
    remaining: int
    used: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    database: str
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self):
        self.db = Database()
        self.price_table = PriceTable.load()
        self.ledger = QuotaLedger(
            db=self.db,
            price_table=self.price_table,
            config=LedgerConfig.from_env(),
        )
        self.stripe = StripeIntegration(self.ledger.settlement)
        self.start_time = datetime.now(timezone.utc)


app_state: Optional[AppState] = None


# ============================================================================
# Error Mapping
# ============================================================================

def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error_response(404, exc)


async def already_processed_handler(request: Request, exc: AlreadyProcessedError) -> JSONResponse:
    return _error_response(409, exc)


async def insufficient_funds_handler(request: Request, exc: InsufficientFundsError) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content={
            "detail": "quota not enough",
            "required": exc.required,
            "available": exc.available,
        },
    )


async def bad_request_handler(request: Request, exc: Exception) -> JSONResponse:
    return _error_response(400, exc)


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("storage_unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"detail": "storage unavailable, retry later"})


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    logger.info("quota_ledger_starting", version=VERSION)
    app_state = AppState()
    yield
    app_state.db.close()
    app_state = None
    logger.info("quota_ledger_stopping")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Quota Ledger",
        description="""
# Prepaid Quota Ledger

Time-bounded quota grants for metered AI usage.

## Features
- **Grants**: Purchased and gifted quota, each with its own expiry
- **Consumption**: Soonest-to-expire first; shortfalls become debt, never refusals
- **Settlement**: Idempotent payment completion with outbox events
- **Stripe**: Checkout sessions and signed webhooks
        """,
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Resolved along the exception MRO, so subclasses win over LedgerError
    application.add_exception_handler(NotFoundError, not_found_handler)
    application.add_exception_handler(AlreadyProcessedError, already_processed_handler)
    application.add_exception_handler(InsufficientFundsError, insufficient_funds_handler)
    application.add_exception_handler(LedgerError, bad_request_handler)
    application.add_exception_handler(ValueError, bad_request_handler)
    application.add_exception_handler(StripeIntegrationError, bad_request_handler)
    application.add_exception_handler(StorageError, storage_error_handler)

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify API key."""
    expected = os.environ.get("API_KEY", "dev-key-change-in-production")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        database="postgres" if state.db.is_postgres else "sqlite",
        uptime_seconds=uptime,
    )


@app.get("/products", tags=["Billing"])
def list_products(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Purchasable quota packages."""
    return {"products": [p.to_dict() for p in state.ledger.products()]}


@app.get("/users/{user_id}/quota", response_model=QuotaSummaryResponse, tags=["Quota"])
def get_quota(
    user_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Totals over the user's active grants."""
    summary = state.ledger.summary(user_id)
    return QuotaSummaryResponse(user_id=user_id, **summary.to_dict())


@app.get("/users/{user_id}/quota/details", tags=["Quota"])
def get_quota_details(
    user_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Active grants and those expired within the lookback window, newest first."""
    grants = state.ledger.details(user_id)
    return {
        "user_id": user_id,
        "total": len(grants),
        "grants": [g.to_dict() for g in grants],
    }


@app.get("/users/{user_id}/quota/usage", tags=["Quota"])
def get_usage(
    user_id: str,
    days: Optional[int] = Query(None, ge=1, le=365),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Usage history for the last ``days`` days."""
    records = state.ledger.usage_history(user_id, days)
    return {
        "user_id": user_id,
        "total": len(records),
        "amount": sum(r.amount_debited for r in records),
        "records": [r.to_dict() for r in records],
    }


@app.post("/users/{user_id}/quota/check", tags=["Quota"])
def check_quota(
    user_id: str,
    request: AmountRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Run before chargeable work.

    Responds 402 when the active balance cannot cover ``amount``.
    """
    summary = state.ledger.check_quota(user_id, request.amount)
    return {"user_id": user_id, "ok": True, "remaining": summary.remaining}


@app.post("/users/{user_id}/quota/consume", tags=["Quota"])
def consume_quota(
    user_id: str,
    request: ConsumeRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Debit quota after chargeable work.

    Never refused for lack of balance: the uncovered part is recorded as debt.
    """
    record = state.ledger.consume(
        user_id,
        request.amount,
        {"tag": request.tag, "models": request.models},
    )
    return record.to_dict()


@app.post("/users/{user_id}/grants", tags=["Quota"])
def create_grant(
    user_id: str,
    request: GrantRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Issue a grant expiring at ``expires_at`` or ``expires_in_days`` from now."""
    if request.source not in MANUAL_GRANT_SOURCES:
        raise HTTPException(
            status_code=400,
            detail=f"source must be one of: {', '.join(sorted(MANUAL_GRANT_SOURCES))}",
        )

    if request.expires_at is not None:
        expires_at = request.expires_at
    elif request.expires_in_days is not None:
        expires_at = expires_in(request.expires_in_days)
    else:
        raise HTTPException(status_code=400, detail="expires_at or expires_in_days is required")

    grant_id = state.ledger.create_grant(
        user_id,
        request.amount,
        expires_at,
        note=request.note,
        source=request.source,
    )
    return {"grant_id": grant_id, "user_id": user_id, "amount": request.amount}


@app.post("/users/{user_id}/payments", tags=["Billing"])
def create_payment(
    user_id: str,
    request: PaymentRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Open a waiting payment for a product."""
    if request.success_url and request.cancel_url:
        session = state.stripe.create_checkout_session(
            user_id,
            request.product_id,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
        )
        return session.to_dict()

    payment_id = state.ledger.create_payment(user_id, request.product_id, request.source)
    return {"payment_id": payment_id}


@app.get("/users/{user_id}/payments/{payment_id}", tags=["Billing"])
def get_payment(
    user_id: str,
    payment_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.ledger.get_payment(user_id, payment_id).to_dict()


@app.post("/users/{user_id}/payments/{payment_id}/complete", tags=["Billing"])
def complete_payment(
    user_id: str,
    payment_id: str,
    request: CompletePaymentRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Settle a waiting payment.

    409 when the payment was already settled; the stored row is unchanged.
    """
    event_id = state.ledger.complete_payment(
        user_id,
        payment_id,
        request.status,
        provider_fields=request.provider_fields,
        environment=request.environment,
        note=request.note,
    )
    return {"payment_id": payment_id, "status": request.status, "event_id": event_id}


@app.post("/webhooks/stripe", tags=["Billing"])
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
    state: AppState = Depends(get_state),
):
    """Stripe Checkout webhook. Authenticated by its signature, not the API key."""
    payload = await request.body()
    return await run_in_threadpool(state.stripe.handle_webhook, payload, stripe_signature)


@app.post("/events/process", tags=["Billing"])
def process_events(
    limit: int = Query(100, ge=1, le=1000),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Drain waiting outbox events."""
    return {"processed": state.ledger.process_events(limit)}


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
