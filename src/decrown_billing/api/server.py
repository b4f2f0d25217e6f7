"""
DeCrown Billing - FastAPI Server

Endpoints:
- POST /webhooks/{provider} - Inbound processor webhooks (signed, no API key)
- GET /health - Liveness and webhook provider status
- GET /invoices/{invoice_id} - Invoice with amount due
- GET /invoices/{invoice_id}/attempts - Payment attempts of an invoice
- GET /invoices/{invoice_id}/notices - Dunning notices of an invoice
- GET /accounts/{account_id}/invoices - Invoices of an account
- GET /webhooks/stats - Webhook ingestion statistics
- GET /security-log/verify - Verify the webhook security log chain
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import os
import structlog

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import BillingSettings
from ..core.errors import BillingError, NotFound, WebhookRejected
from ..services import BillingServices
from ..webhooks.pipeline import RequestSource

logger = structlog.get_logger()

VERSION = "1.0.0"


# ============================================================================
# Pydantic Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    processor: str
    webhook_providers: List[str]
    uptime_seconds: float


class LineItemModel(BaseModel):
    code: str
    description: str
    quantity: str
    unit_price: str
    amount: str


class InvoiceResponse(BaseModel):
    """Invoice as issued, plus the amount still due after corrections."""
    id: str
    invoice_number: str
    account_id: str
    ledger_id: str
    period: str
    line_items: List[LineItemModel]
    subtotal: str
    tax: str
    total: str
    amount_due: str
    currency: str
    due_date: str
    status: str
    paid_at: Optional[str] = None
    overdue_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    collections_handoff_at: Optional[str] = None
    created_at: str


class PaymentAttemptModel(BaseModel):
    id: str
    invoice_id: str
    amount: str
    currency: str
    processor: str
    idempotency_key: str
    status: str
    retry_count: int
    next_retry_at: Optional[str] = None
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: str
    completed_at: Optional[str] = None


class DunningNoticeModel(BaseModel):
    id: str
    invoice_id: str
    account_id: str
    notice_level: int
    due_date: str
    amount: str
    message: str
    status: str
    delivery_method: str
    created_at: str
    delivered_at: Optional[str] = None


class WebhookAck(BaseModel):
    """Response to a processed webhook delivery."""
    status: str
    provider: str
    event_id: str
    webhook_id: Optional[str] = None
    outcome: Optional[str] = None
    deferred_consumers: List[str] = Field(default_factory=list)


class ChainVerificationResponse(BaseModel):
    valid: bool
    length: int
    checkpoints_verified: int
    error: Optional[str] = None


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self, services: Optional[BillingServices] = None):
        self.services = services or BillingServices(BillingSettings.from_env())
        self.start_time = datetime.now(timezone.utc)


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    logger.info("decrown_billing_starting", version=VERSION)
    if app_state is None:
        app_state = AppState()
    yield
    logger.info("decrown_billing_stopping")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    return FastAPI(
        title="DeCrown Billing",
        description="Billing and payment reconciliation core: invoices, payment attempts, "
                    "processor webhooks and dunning.",
        version=VERSION,
        lifespan=lifespan,
    )


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Verify API key."""
    expected = state.services.settings.api_key or os.environ.get("API_KEY", "dev-key-change-in-production")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def _not_found(e: NotFound) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        processor=state.services.processor.name,
        webhook_providers=state.services.registry.providers(),
        uptime_seconds=uptime,
    )


@app.post("/webhooks/{provider}", response_model=WebhookAck, tags=["Webhooks"])
async def receive_webhook(
    provider: str,
    request: Request,
    state: AppState = Depends(get_state),
):
    """
    Receive a processor webhook.

    200 for accepted, duplicate, in-progress and ignored deliveries; 202 when
    application was deferred to internal redelivery; 401 bad signature; 400
    stale timestamp or malformed payload; 404 unknown provider.
    """
    body = await request.body()
    source = RequestSource(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    try:
        result = await run_in_threadpool(
            state.services.pipeline.ingest, provider, body, dict(request.headers), source
        )
    except WebhookRejected as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except BillingError as e:
        logger.error("webhook_processing_failed", provider=provider, error=str(e), error_type=type(e).__name__)
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return JSONResponse(status_code=result.http_status, content=result.to_dict())


@app.get("/webhooks/stats", tags=["Webhooks"])
async def webhook_stats(
    provider: Optional[str] = None,
    hours: int = Query(default=24, ge=1, le=24 * 90),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Totals, processed, failed and duplicate deliveries over the last ``hours``."""
    return await run_in_threadpool(state.services.pipeline.stats, provider, hours)


@app.get("/invoices/{invoice_id}", response_model=InvoiceResponse, tags=["Invoices"])
async def get_invoice(
    invoice_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Get an invoice with the amount currently due."""
    service = state.services.invoices
    try:
        invoice = service.get(invoice_id)
        amount_due = service.amount_due(invoice_id)
    except NotFound as e:
        raise _not_found(e)
    return InvoiceResponse(**invoice.to_dict(), amount_due=str(amount_due))


@app.get("/invoices/{invoice_id}/attempts", response_model=List[PaymentAttemptModel], tags=["Invoices"])
async def list_payment_attempts(
    invoice_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """List payment attempts of an invoice, oldest first."""
    try:
        state.services.invoices.get(invoice_id)
    except NotFound as e:
        raise _not_found(e)
    attempts = state.services.payments.attempts.list_for_invoice(invoice_id)
    return [PaymentAttemptModel(**a.to_dict()) for a in attempts]


@app.get("/invoices/{invoice_id}/notices", response_model=List[DunningNoticeModel], tags=["Invoices"])
async def list_dunning_notices(
    invoice_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """List dunning notices of an invoice by level."""
    try:
        state.services.invoices.get(invoice_id)
    except NotFound as e:
        raise _not_found(e)
    notices = state.services.dunning.notices.list_for_invoice(invoice_id)
    return [DunningNoticeModel(**n.to_dict()) for n in notices]


@app.get("/accounts/{account_id}/invoices", response_model=List[InvoiceResponse], tags=["Invoices"])
async def list_account_invoices(
    account_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """List an account's invoices, newest period first."""
    service = state.services.invoices
    return [
        InvoiceResponse(**invoice.to_dict(), amount_due=str(service.amount_due(invoice.id)))
        for invoice in service.invoices.list_by_account(account_id, limit)
    ]


@app.get("/security-log/verify", response_model=ChainVerificationResponse, tags=["Security"])
async def verify_security_log(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Walk the webhook security log chain and its signed checkpoints."""
    result = await run_in_threadpool(state.services.security_log.verify)
    if not result.valid:
        logger.critical("security_log_chain_invalid", error=result.error, length=result.length)
    return ChainVerificationResponse(**result.to_dict())


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "decrown_billing.api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
