import logging

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.config import DEFAULT_COUNTRY_CODE, RATE_LIMIT_CHECKOUT
from app.database import get_db
from app.dependencies import get_provider_registry, require_agency_admin, require_agency_user, require_auth
from app.models.plan import SubscriptionPlan
from app.models.transaction import PaymentTransaction
from app.rate_limit import limiter
from app.schemas.billing import (
    CheckoutRequestBody,
    CheckoutResponse,
    PlanItem,
    PlanListResponse,
    ProrationDetail,
    ProrationPreviewRequest,
    ProrationPreviewResponse,
    SubscriptionResponse,
    TransactionItem,
    TransactionListResponse,
)
from app.services.checkout_service import build_and_dispatch_checkout, preview_checkout
from app.services.proration import ProrationResult, format_proration_summary
from app.services.provider_registry import ProviderRegistry
from app.services.subscription_service import get_active_plan, get_current_subscription
from app.services.transaction_ledger import Customer

logger = logging.getLogger("immopay")

router = APIRouter(prefix="/api/billing", tags=["billing"])


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _proration_detail(result: ProrationResult | None) -> ProrationDetail | None:
    if result is None:
        return None
    summary = format_proration_summary(result)
    return ProrationDetail(
        remaining_days=result.remaining_days,
        total_days=result.total_days,
        remaining_percentage=result.remaining_percentage,
        current_plan_credit=result.current_plan_credit,
        new_plan_prorata_cost=result.new_plan_prorata_cost,
        amount_due=result.amount_due,
        is_credit=summary.is_credit,
        display_amount=summary.display_amount,
        summary=summary.summary,
    )


@router.get("/plans", response_model=PlanListResponse)
def list_plans(db: Session = Depends(get_db), user: dict = Depends(require_auth)):
    plans = (
        db.query(SubscriptionPlan)
        .filter(SubscriptionPlan.is_active == True)
        .order_by(SubscriptionPlan.price_monthly, SubscriptionPlan.id)
        .all()
    )
    return PlanListResponse(
        success=True,
        plans=[
            PlanItem(
                id=p.id,
                name=p.name,
                description=p.description,
                price_monthly=p.price_monthly,
                price_yearly=p.price_yearly,
                billing_currency=p.billing_currency,
            )
            for p in plans
        ],
    )


@router.get("/subscription", response_model=SubscriptionResponse)
def current_subscription(db: Session = Depends(get_db), user: dict = Depends(require_agency_user)):
    subscription = get_current_subscription(db, user["agency_id"])
    if subscription is None:
        return SubscriptionResponse(success=True, active=False)

    plan = db.get(SubscriptionPlan, subscription.plan_id)
    return SubscriptionResponse(
        success=True,
        active=subscription.status == "active",
        plan_id=subscription.plan_id,
        plan_name=plan.name if plan else None,
        billing_cycle=subscription.billing_cycle,
        status=subscription.status,
        starts_at=_iso(subscription.starts_at),
        ends_at=_iso(subscription.ends_at),
    )


@router.post("/proration", response_model=ProrationPreviewResponse)
def proration_preview(
    req: ProrationPreviewRequest,
    db: Session = Depends(get_db),
    user: dict = Depends(require_agency_user),
):
    """Preview what a plan change would cost right now."""
    full_amount, amount_due, proration = preview_checkout(
        db, user["agency_id"], req.plan_id, req.billing_cycle
    )
    plan = get_active_plan(db, req.plan_id)
    return ProrationPreviewResponse(
        success=True,
        full_amount=full_amount,
        amount_due=amount_due,
        currency=plan.billing_currency,
        proration=_proration_detail(proration),
    )


@router.post("/checkout", response_model=CheckoutResponse)
@limiter.limit(RATE_LIMIT_CHECKOUT)
def checkout(
    req: CheckoutRequestBody,
    request: Request,
    db: Session = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry),
    user: dict = Depends(require_agency_admin),
):
    """Start a subscription payment with the provider behind ``payment_method``."""
    agency_id = user["agency_id"]
    logger.info(
        "Checkout requested: agency_id=%d plan_id=%d cycle=%s method=%s",
        agency_id, req.plan_id, req.billing_cycle, req.payment_method,
    )
    result = build_and_dispatch_checkout(
        db,
        registry,
        agency_id=agency_id,
        plan_id=req.plan_id,
        billing_cycle=req.billing_cycle,
        payment_method=req.payment_method,
        customer=Customer(
            phone=req.customer_phone,
            name=req.customer_name,
            email=req.customer_email,
        ),
        return_url=req.return_url,
        country_code=req.country_code or DEFAULT_COUNTRY_CODE,
    )

    outcome = result.outcome
    return CheckoutResponse(
        success=True,
        outcome=outcome.kind,
        amount=result.amount,
        transaction_id=result.transaction.id if result.transaction else None,
        redirect_url=getattr(outcome, "url", None),
        external_reference=outcome.external_reference,
        credit_amount=getattr(outcome, "credit_amount", 0),
        message=getattr(outcome, "message", None),
        proration=_proration_detail(result.proration),
    )


@router.get("/transactions", response_model=TransactionListResponse)
def list_transactions(
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: dict = Depends(require_agency_user),
):
    transactions = (
        db.query(PaymentTransaction)
        .filter(PaymentTransaction.agency_id == user["agency_id"])
        .order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
        .limit(limit)
        .all()
    )
    return TransactionListResponse(
        success=True,
        transactions=[
            TransactionItem(
                id=tx.id,
                plan_id=tx.plan_id,
                billing_cycle=tx.billing_cycle,
                amount=tx.amount,
                currency=tx.currency,
                payment_method=tx.payment_method,
                provider_name=tx.provider_name,
                status=tx.status,
                external_reference=tx.external_reference,
                is_prorated=bool(tx.is_prorated),
                proration_credit=tx.proration_credit,
                error_message=tx.error_message,
                created_at=tx.created_at.isoformat(),
                completed_at=_iso(tx.completed_at),
            )
            for tx in transactions
        ],
    )
