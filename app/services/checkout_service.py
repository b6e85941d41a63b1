"""Checkout orchestration: proration, transaction creation, provider dispatch."""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from app.config import DEFAULT_COUNTRY_CODE
from app.errors import ProviderError, ValidationError
from app.models.plan import SubscriptionPlan
from app.models.subscription import AgencySubscription
from app.models.transaction import PaymentTransaction
from app.services import transaction_ledger as ledger
from app.services.payment_providers import (
    CheckoutOutcome,
    CheckoutRequest,
    ImmediateSuccess,
    PaymentMethod,
)
from app.services.proration import BILLING_CYCLES, ProrationResult, prorate_plan_change
from app.services.provider_registry import ProviderRegistry, parse_payment_method
from app.services.subscription_service import (
    activate_subscription,
    change_plan,
    get_active_plan,
    get_current_subscription,
)

logger = logging.getLogger("immopay")


@dataclass(frozen=True)
class CheckoutResult:
    outcome: CheckoutOutcome
    amount: int
    proration: ProrationResult | None = None
    transaction: PaymentTransaction | None = None


def proration_for_change(
    db: Session,
    subscription: AgencySubscription | None,
    new_plan: SubscriptionPlan,
    billing_cycle: str,
    now: datetime | None = None,
) -> ProrationResult | None:
    """Server-side proration of a mid-cycle plan change, or None for full price.

    Only a change of plan inside the same billing cycle is prorated. A cycle
    switch, a first subscription, a lapsed one or an open-ended (free) one is
    charged in full and gets a fresh window.
    """
    if subscription is None or subscription.status != "active" or subscription.ends_at is None:
        return None
    if subscription.plan_id == new_plan.id or subscription.billing_cycle != billing_cycle:
        return None

    current_plan = db.get(SubscriptionPlan, subscription.plan_id)
    if current_plan is None:
        return None

    return prorate_plan_change(
        current_plan.price_for(billing_cycle),
        new_plan.price_for(billing_cycle),
        subscription.starts_at,
        subscription.ends_at,
        billing_cycle,
        now=now,
    )


def preview_checkout(
    db: Session, agency_id: int, plan_id: int, billing_cycle: str, now: datetime | None = None
) -> tuple[int, int, ProrationResult | None]:
    """(full_amount, amount_due, proration) for the plan, without side effects."""
    if billing_cycle not in BILLING_CYCLES:
        raise ValidationError(f"Cycle de facturation inconnu: {billing_cycle}")
    plan = get_active_plan(db, plan_id)
    subscription = get_current_subscription(db, agency_id)
    full_amount = plan.price_for(billing_cycle)
    proration = proration_for_change(db, subscription, plan, billing_cycle, now=now)
    amount = proration.amount_due if proration is not None else full_amount
    return full_amount, amount, proration


def _activate_without_payment(
    db: Session,
    agency_id: int,
    plan: SubscriptionPlan,
    billing_cycle: str,
    subscription: AgencySubscription | None,
    proration: ProrationResult | None,
    now: datetime,
) -> ImmediateSuccess:
    if proration is not None and subscription is not None:
        change_plan(db, subscription, plan.id, billing_cycle)
        db.commit()
        credit = -proration.amount_due
        logger.info(
            "Plan change without payment: agency_id=%d plan_id=%d credit=%d",
            agency_id, plan.id, credit,
        )
        if credit > 0:
            return ImmediateSuccess(
                credit_amount=credit,
                message=f"Forfait changé avec un crédit de {credit} {plan.billing_currency}",
            )
        return ImmediateSuccess(message="Forfait changé")

    # free plan: open-ended, any remaining credit on the old plan is forfeited
    activate_subscription(db, agency_id, plan.id, billing_cycle, now, None)
    db.commit()
    return ImmediateSuccess(message="Forfait gratuit activé")


def build_and_dispatch_checkout(
    db: Session,
    registry: ProviderRegistry,
    agency_id: int,
    plan_id: int,
    billing_cycle: str,
    payment_method: str | PaymentMethod,
    customer: ledger.Customer,
    return_url: str | None = None,
    country_code: str = DEFAULT_COUNTRY_CODE,
    now: datetime | None = None,
) -> CheckoutResult:
    """Charge the agency for ``plan_id`` through the provider of ``payment_method``.

    Nothing is written before the provider is resolved. A provider failure
    marks the transaction failed, except a timeout, which leaves it pending
    for reconciliation by the provider's callback.
    """
    now = now or datetime.utcnow()
    method = parse_payment_method(payment_method)
    adapter = registry.adapter_for(method)
    if billing_cycle not in BILLING_CYCLES:
        raise ValidationError(f"Cycle de facturation inconnu: {billing_cycle}")

    plan = get_active_plan(db, plan_id)
    subscription = get_current_subscription(db, agency_id)
    proration = proration_for_change(db, subscription, plan, billing_cycle, now=now)
    amount = proration.amount_due if proration is not None else plan.price_for(billing_cycle)

    if amount <= 0:
        outcome = _activate_without_payment(
            db, agency_id, plan, billing_cycle, subscription, proration, now
        )
        return CheckoutResult(outcome=outcome, amount=0, proration=proration)

    adapter.check_supported(method, country_code, plan.billing_currency)

    tx = ledger.create_pending(
        db,
        agency_id=agency_id,
        plan_id=plan.id,
        billing_cycle=billing_cycle,
        amount=amount,
        currency=plan.billing_currency,
        payment_method=method.value,
        provider_name=adapter.name.value,
        customer=customer,
        proration=proration,
        subscription_id=subscription.id if subscription else None,
        previous_plan_id=subscription.plan_id if proration is not None else None,
    )
    transaction_id = tx.id

    request = CheckoutRequest(
        transaction_id=transaction_id,
        plan_id=plan.id,
        plan_name=plan.name,
        billing_cycle=billing_cycle,
        payment_method=method,
        amount=amount,
        currency=plan.billing_currency,
        customer_phone=customer.phone,
        customer_name=customer.name,
        customer_email=customer.email,
        return_url=return_url,
        country_code=country_code,
        proration=proration,
    )
    # built before the commit: nothing reloads while the provider is called
    db.commit()

    try:
        outcome = adapter.dispatch(request)
    except ProviderError as exc:
        if exc.timeout:
            logger.warning("Checkout tx=%d left pending after timeout", transaction_id)
        else:
            ledger.mark_failed(db, transaction_id, exc.message)
        raise
    except ValidationError as exc:
        ledger.mark_failed(db, transaction_id, exc.message)
        raise

    if outcome.external_reference:
        tx = ledger.attach_reference(db, transaction_id, outcome.external_reference)

    logger.info("Checkout dispatched: tx=%d outcome=%s", transaction_id, outcome.kind)
    return CheckoutResult(outcome=outcome, amount=amount, proration=proration, transaction=tx)
