"""Subscription reads and atomic plan changes.

``AgencySubscription.version`` is the mapper's version counter, so every
UPDATE is guarded by the version that was read. A concurrent writer makes
the flush fail with StaleDataError, surfaced as ConcurrentUpdateError.
"""

import logging
from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.errors import ConcurrentUpdateError, NotFoundError, ValidationError
from app.models.plan import SubscriptionPlan
from app.models.subscription import AgencySubscription
from app.models.transaction import PaymentTransaction
from app.services.proration import BILLING_CYCLES, cycle_end

logger = logging.getLogger("immopay")


def get_active_plan(db: Session, plan_id: int) -> SubscriptionPlan:
    plan = (
        db.query(SubscriptionPlan)
        .filter(SubscriptionPlan.id == plan_id, SubscriptionPlan.is_active == True)
        .first()
    )
    if not plan:
        raise NotFoundError("Forfait non trouvé ou inactif")
    return plan


def get_current_subscription(db: Session, agency_id: int) -> AgencySubscription | None:
    return db.query(AgencySubscription).filter(AgencySubscription.agency_id == agency_id).first()


def _flush(db: Session, agency_id: int) -> None:
    try:
        db.flush()
    except StaleDataError as exc:
        db.rollback()
        logger.warning("Concurrent subscription update for agency_id=%d", agency_id)
        raise ConcurrentUpdateError(
            "L'abonnement a été modifié entre-temps, veuillez réessayer."
        ) from exc


def activate_subscription(
    db: Session,
    agency_id: int,
    plan_id: int,
    billing_cycle: str,
    starts_at: datetime,
    ends_at: datetime | None,
) -> AgencySubscription:
    """Point the agency at a plan with a new window. Flushes, does not commit."""
    if billing_cycle not in BILLING_CYCLES:
        raise ValidationError(f"Cycle de facturation inconnu: {billing_cycle}")

    subscription = get_current_subscription(db, agency_id)
    if subscription is None:
        subscription = AgencySubscription(agency_id=agency_id)
        db.add(subscription)

    subscription.plan_id = plan_id
    subscription.billing_cycle = billing_cycle
    subscription.status = "active"
    subscription.starts_at = starts_at
    subscription.ends_at = ends_at
    _flush(db, agency_id)

    logger.info(
        "Subscription activated: agency_id=%d plan_id=%d cycle=%s ends_at=%s",
        agency_id, plan_id, billing_cycle, ends_at,
    )
    return subscription


def change_plan(
    db: Session, subscription: AgencySubscription, plan_id: int, billing_cycle: str
) -> AgencySubscription:
    """Swap the plan inside the current window (prorated change).

    ``subscription`` must be the instance the proration was computed from;
    its loaded version guards the UPDATE. An open-ended window is closed at
    the end of the cycle it was prorated against.
    """
    old_plan_id = subscription.plan_id
    subscription.plan_id = plan_id
    subscription.billing_cycle = billing_cycle
    subscription.status = "active"
    if subscription.ends_at is None:
        subscription.ends_at = cycle_end(subscription.starts_at, billing_cycle)
    _flush(db, subscription.agency_id)

    logger.info(
        "Plan changed: agency_id=%d plan %d -> %d",
        subscription.agency_id, old_plan_id, plan_id,
    )
    return subscription


def apply_completed_transaction(db: Session, tx: PaymentTransaction) -> AgencySubscription:
    """Activate what a completed transaction paid for."""
    paid_at = tx.completed_at or datetime.utcnow()
    subscription = get_current_subscription(db, tx.agency_id)

    if tx.is_prorated and subscription is not None:
        return change_plan(db, subscription, tx.plan_id, tx.billing_cycle)

    starts_at = paid_at
    # early renewal of the same plan: the new window follows the running one
    if (
        subscription is not None
        and subscription.status == "active"
        and subscription.plan_id == tx.plan_id
        and subscription.ends_at is not None
        and subscription.ends_at > paid_at
    ):
        starts_at = subscription.ends_at

    ends_at = cycle_end(starts_at, tx.billing_cycle)
    return activate_subscription(db, tx.agency_id, tx.plan_id, tx.billing_cycle, starts_at, ends_at)
