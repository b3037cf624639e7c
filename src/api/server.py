"""
Credit Ledger - FastAPI Server

Endpoints:
- POST /credits/deduct - Deduct credits (402 on insufficient balance)
- GET  /credits/{account_id}/balance - Current balance
- /service-costs - Rate catalog administration
- /credits/purchases - Purchase lifecycle, bonuses, pricing
- POST /webhooks/stripe - Stripe payment webhooks
- GET  /credits/{account_id}[/usage|/analytics|/uptime-report] - Reporting
- POST /billing/run - Run the daily fleet billing cycle
"""

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
import os
import structlog

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from billing.deduction import DeductionEngine, LowBalanceWarning
from billing.directory import SqlEntityDirectory
from billing.fleet import FleetBillingScheduler
from billing.purchases import PurchaseLedger
from billing.rate_catalog import RateCatalog
from billing.reporting import CreditReporting
from billing.stripe_integration import StripeIntegration
from core.config import LedgerConfig
from core.errors import LedgerError
from core.references import ReferenceTypeRegistry
from persistence.database import Database

logger = structlog.get_logger()

VERSION = "1.0.0"

ERROR_STATUS = {
    "INSUFFICIENT_CREDITS": 402,
    "SERVICE_NOT_FOUND": 404,
    "TRANSACTION_NOT_FOUND": 404,
    "ENTITY_NOT_FOUND": 404,
    "TRANSACTION_STATE_ERROR": 409,
    "DUPLICATE_SERVICE": 409,
    "INVALID_AMOUNT": 400,
    "INVALID_REFERENCE": 400,
    "INVALID_SERVICE": 400,
    "STRIPE_ERROR": 400,
    "STORAGE_UNAVAILABLE": 503,
    "FLEET_BILLING_FAILED": 500,
}


# ============================================================================
# Pydantic Models
# ============================================================================

class DeductRequest(BaseModel):
    """Request to deduct credits."""
    account_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., description="Credits to deduct, > 0")
    description: str = Field(..., min_length=1)
    metadata: Optional[Dict[str, Any]] = None
    reference_id: Optional[str] = None
    reference_type: Optional[str] = Field(None, description="Registered reference type")
    entity_id: Optional[str] = None
    usage_type: str = "general"


class ServiceCreateRequest(BaseModel):
    service_key: str = Field(..., min_length=1)
    service_name: str = Field(..., min_length=1)
    cost_per_unit: Decimal
    billing_type: str
    service_category: str = "other"
    description: Optional[str] = None
    is_active: bool = True
    is_visible: bool = True
    display_order: int = 0
    metadata: Optional[Dict[str, Any]] = None
    updated_by: Optional[str] = None


class ServiceUpdateRequest(BaseModel):
    service_name: Optional[str] = None
    service_category: Optional[str] = None
    description: Optional[str] = None
    cost_per_unit: Optional[Decimal] = None
    billing_type: Optional[str] = None
    is_active: Optional[bool] = None
    is_visible: Optional[bool] = None
    display_order: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None
    updated_by: Optional[str] = None


class ToggleRequest(BaseModel):
    updated_by: Optional[str] = None


class CalculateRequest(BaseModel):
    service_key: str
    units: Decimal = Decimal("1")


class PurchaseRequest(BaseModel):
    account_id: str = Field(..., min_length=1)
    amount_usd: Decimal
    credits_amount: Decimal


class CompletePurchaseRequest(BaseModel):
    charge_id: Optional[str] = None


class FailPurchaseRequest(BaseModel):
    reason: Optional[str] = None


class BonusRequest(BaseModel):
    account_id: str = Field(..., min_length=1)
    amount: Decimal
    description: str = "Bonus credits"
    performed_by: Optional[str] = None


class BillingRunRequest(BaseModel):
    charged_date: Optional[date] = Field(None, description="Billing day, defaults to today (UTC)")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container. Every component is wired here once."""

    def __init__(self, config: LedgerConfig):
        self.config = config
        self.db = Database(config.database_url)
        self.db.initialize()

        self.catalog = RateCatalog(self.db)
        self.catalog.seed_defaults()
        self.references = ReferenceTypeRegistry()
        self.engine = DeductionEngine(self.db, self.catalog, self.references)
        self.engine.add_listener(LowBalanceWarning(config.low_balance_threshold))
        self.purchases = PurchaseLedger(self.db, self.engine, config)
        self.directory = SqlEntityDirectory(self.db)
        self.fleet = FleetBillingScheduler(self.db, self.engine, self.directory, config)
        self.reporting = CreditReporting(self.db)
        self.stripe = StripeIntegration(
            self.purchases,
            api_key=config.stripe_api_key,
            webhook_secret=config.stripe_webhook_secret,
        )
        self.start_time = datetime.now(timezone.utc)

    def close(self) -> None:
        self.db.close()


# ============================================================================
# Dependencies
# ============================================================================

def get_state(request: Request) -> AppState:
    """Get application state."""
    state = getattr(request.app.state, "ledger", None)
    if state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return state


def verify_api_key(
    request: Request,
    x_api_key: str = Header(..., alias="X-API-Key"),
) -> str:
    """Verify API key."""
    if x_api_key != request.app.state.config.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status = ERROR_STATUS.get(exc.code, 500)
    if status >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=str(exc))
    return JSONResponse(status_code=status, content={"success": False, **exc.to_dict()})


router = APIRouter()


# ============================================================================
# Endpoints
# ============================================================================

@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(status="healthy", version=VERSION, uptime_seconds=uptime)


@router.post("/credits/deduct", tags=["Credits"])
def deduct_credits(
    request: DeductRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Deduct credits from an account.

    Returns 402 with required and available amounts when the balance is
    too low; the balance is left unchanged in that case.
    """
    result = state.engine.deduct(
        request.account_id,
        request.amount,
        request.description,
        metadata=request.metadata,
        reference_id=request.reference_id,
        reference_type=request.reference_type,
        entity_id=request.entity_id,
        usage_type=request.usage_type,
    )
    return result.unwrap().to_dict()


@router.get("/credits/pricing", tags=["Purchases"])
def credit_pricing(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.purchases.get_credit_pricing()


@router.post("/credits/purchases", tags=["Purchases"])
def create_purchase(
    request: PurchaseRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Create a pending purchase and its payment intent."""
    transaction = state.purchases.create_purchase(
        request.account_id, request.amount_usd, request.credits_amount
    )
    intent = state.stripe.create_payment_intent(transaction)
    return {
        "transaction": state.purchases.get_transaction(transaction.id).to_dict(),
        "payment_intent": intent,
    }


@router.post("/credits/purchases/{transaction_id}/complete", tags=["Purchases"])
def complete_purchase(
    transaction_id: str,
    request: CompletePurchaseRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.purchases.complete_purchase(transaction_id, request.charge_id).to_dict()


@router.post("/credits/purchases/{transaction_id}/fail", tags=["Purchases"])
def fail_purchase(
    transaction_id: str,
    request: FailPurchaseRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.purchases.fail_purchase(transaction_id, request.reason).to_dict()


@router.post("/credits/bonus", tags=["Purchases"])
def award_bonus(
    request: BonusRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    transaction = state.purchases.award_bonus(
        request.account_id, request.amount, request.description, request.performed_by
    )
    return {
        "transaction": transaction.to_dict(),
        "balance": float(state.engine.get_balance(request.account_id)),
    }


@router.get("/credits/{account_id}/balance", tags=["Credits"])
def get_balance(
    account_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return {"account_id": account_id, "balance": float(state.engine.get_balance(account_id))}


@router.get("/credits/{account_id}/can-afford", tags=["Credits"])
def can_afford(
    account_id: str,
    service_key: str,
    units: Decimal = Decimal("1"),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Check whether the account can pay for units of a service."""
    check = state.engine.can_afford(account_id, service_key, units)
    return {
        **check,
        "required": float(check["required"]),
        "available": float(check["available"]),
    }


@router.get("/credits/{account_id}/transactions", tags=["Purchases"])
def list_transactions(
    account_id: str,
    limit: int = 50,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    transactions = state.purchases.list_transactions(account_id, limit)
    return {"account_id": account_id, "transactions": [t.to_dict() for t in transactions]}


@router.get("/credits/{account_id}/usage", tags=["Reporting"])
def usage_history(
    account_id: str,
    start: Optional[str] = None,
    end: Optional[str] = None,
    usage_type: Optional[str] = None,
    limit: int = 100,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    usage = state.reporting.get_usage_history(account_id, start, end, usage_type, limit)
    return {"account_id": account_id, "usage": usage}


@router.get("/credits/{account_id}/analytics", tags=["Reporting"])
def usage_analytics(
    account_id: str,
    days: int = 30,
    usage_type: Optional[str] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.reporting.get_usage_stats(account_id, days, usage_type)


@router.get("/credits/{account_id}/uptime-report", tags=["Reporting"])
def uptime_report(
    account_id: str,
    days: int = 30,
    entity_id: Optional[str] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.reporting.get_uptime_report(account_id, days, entity_id)


@router.get("/credits/{account_id}", tags=["Reporting"])
def credit_info(
    account_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.reporting.get_credit_info(account_id)


@router.get("/service-costs", tags=["Rate Catalog"])
def list_services(
    category: Optional[str] = None,
    active_only: bool = False,
    visible_only: bool = False,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    services = state.catalog.list_services(category, active_only, visible_only)
    return {"services": [s.to_dict() for s in services]}


@router.get("/service-costs/by-category", tags=["Rate Catalog"])
def services_by_category(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    grouped = state.catalog.services_by_category()
    return {
        "categories": {
            category: [s.to_dict() for s in services]
            for category, services in grouped.items()
        }
    }


@router.get("/service-costs/key/{service_key}", tags=["Rate Catalog"])
def get_service(
    service_key: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.catalog.get_service(service_key).to_dict()


@router.post("/service-costs/calculate", tags=["Rate Catalog"])
def calculate_cost(
    request: CalculateRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    cost = state.catalog.calculate_cost(request.service_key, request.units)
    return {
        "service_key": request.service_key,
        "units": float(request.units),
        "total_cost": float(cost),
    }


@router.post("/service-costs", status_code=201, tags=["Rate Catalog"])
def create_service(
    request: ServiceCreateRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    service = state.catalog.create_service(**request.model_dump())
    return service.to_dict()


@router.put("/service-costs/{service_key}", tags=["Rate Catalog"])
def update_service(
    service_key: str,
    request: ServiceUpdateRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    fields = request.model_dump(exclude_unset=True)
    updated_by = fields.pop("updated_by", None)
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    return state.catalog.update_service(service_key, updated_by=updated_by, **fields).to_dict()


@router.patch("/service-costs/{service_key}/toggle", tags=["Rate Catalog"])
def toggle_service(
    service_key: str,
    request: ToggleRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.catalog.toggle_active(service_key, request.updated_by).to_dict()


@router.delete("/service-costs/{service_key}", tags=["Rate Catalog"])
def delete_service(
    service_key: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    state.catalog.delete_service(service_key)
    return {"deleted": service_key}


@router.post("/webhooks/stripe", tags=["Purchases"])
async def stripe_webhook(request: Request, state: AppState = Depends(get_state)):
    """
    Stripe webhook receiver.

    Authenticated by the Stripe-Signature header instead of X-API-Key.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    return state.stripe.handle_webhook(payload, signature)


@router.post("/billing/run", tags=["Billing"])
def run_billing(
    request: Optional[BillingRunRequest] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Run the daily fleet billing cycle. Safe to call repeatedly."""
    charged_date = request.charged_date if request else None
    return state.fleet.run_billing_cycle(charged_date)


# ============================================================================
# Application Factory
# ============================================================================

def create_app(config: Optional[LedgerConfig] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or LedgerConfig.from_env()

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        """Application lifespan handler."""
        logger.info("credit_ledger_starting", version=VERSION)
        application.state.ledger = AppState(config)
        yield
        application.state.ledger.close()
        application.state.ledger = None
        logger.info("credit_ledger_stopping")

    application = FastAPI(
        title="Credit Ledger",
        description="Prepaid credit balances, usage metering and daily fleet billing.",
        version=VERSION,
        lifespan=lifespan,
    )
    application.state.config = config

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_exception_handler(LedgerError, ledger_error_handler)
    application.include_router(router)

    return application


app = create_app()


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
