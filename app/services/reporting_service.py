"""Read-only aggregates for the super admin dashboard.

Revenue only ever counts completed transactions. Pending, failed and
refunded ones are still counted for the success rate.
"""

from datetime import datetime

from sqlalchemy import and_, case, func
from sqlalchemy.orm import Session

from app.models.plan import SubscriptionPlan
from app.models.transaction import PaymentTransaction
from app.models.withdrawal import WithdrawalRequest
from app.services.proration import add_months


def _month_start(value: datetime) -> datetime:
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def transaction_stats(
    db: Session,
    now: datetime | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict:
    now = now or datetime.utcnow()
    this_month = _month_start(now)
    last_month = add_months(this_month, -1)

    def scoped(query):
        if start is not None:
            query = query.filter(PaymentTransaction.created_at >= start)
        if end is not None:
            query = query.filter(PaymentTransaction.created_at < end)
        return query

    status_rows = scoped(
        db.query(PaymentTransaction.status, func.count(PaymentTransaction.id).label("count"))
    ).group_by(PaymentTransaction.status).all()
    by_status = {"pending": 0, "completed": 0, "failed": 0, "refunded": 0}
    for row in status_rows:
        by_status[row.status] = row.count
    total = sum(by_status.values())

    amount = PaymentTransaction.amount
    booked_at = func.coalesce(PaymentTransaction.completed_at, PaymentTransaction.created_at)
    revenue = scoped(
        db.query(
            func.coalesce(func.sum(amount), 0).label("total"),
            func.coalesce(func.sum(case((booked_at >= this_month, amount), else_=0)), 0).label("this_month"),
            func.coalesce(
                func.sum(case((and_(booked_at >= last_month, booked_at < this_month), amount), else_=0)), 0
            ).label("last_month"),
        ).filter(PaymentTransaction.status == "completed")
    ).one()
    revenue_this_month = int(revenue.this_month)
    revenue_last_month = int(revenue.last_month)

    method_rows = scoped(
        db.query(
            PaymentTransaction.payment_method,
            func.count(PaymentTransaction.id).label("count"),
            func.sum(amount).label("amount"),
        ).filter(PaymentTransaction.status == "completed")
    ).group_by(PaymentTransaction.payment_method).all()

    plan_rows = scoped(
        db.query(
            SubscriptionPlan.name.label("plan_name"),
            func.count(PaymentTransaction.id).label("count"),
            func.sum(amount).label("amount"),
        )
        .select_from(PaymentTransaction)
        .outerjoin(SubscriptionPlan, SubscriptionPlan.id == PaymentTransaction.plan_id)
        .filter(PaymentTransaction.status == "completed")
    ).group_by(SubscriptionPlan.name).all()
    by_plan: dict[str, dict] = {}
    for row in plan_rows:
        # transactions of a deleted plan are grouped together
        entry = by_plan.setdefault(row.plan_name or "Inconnu", {"count": 0, "amount": 0})
        entry["count"] += row.count
        entry["amount"] += int(row.amount)

    if revenue_last_month > 0:
        growth_rate = (revenue_this_month - revenue_last_month) / revenue_last_month * 100
    elif revenue_this_month > 0:
        growth_rate = 100.0
    else:
        growth_rate = 0.0

    return {
        "total_revenue": int(revenue.total),
        "total_transactions": total,
        "completed_transactions": by_status["completed"],
        "pending_transactions": by_status["pending"],
        "failed_transactions": by_status["failed"],
        "refunded_transactions": by_status["refunded"],
        "success_rate": by_status["completed"] / total if total else 0.0,
        "revenue_this_month": revenue_this_month,
        "revenue_last_month": revenue_last_month,
        "growth_rate": round(growth_rate, 1),
        "by_payment_method": {
            row.payment_method: {"count": row.count, "amount": int(row.amount)} for row in method_rows
        },
        "by_plan": by_plan,
    }


def withdrawal_aggregates(db: Session, agency_id: int | None = None) -> dict:
    query = db.query(
        WithdrawalRequest.status,
        func.count(WithdrawalRequest.id).label("count"),
        func.coalesce(func.sum(WithdrawalRequest.amount), 0).label("amount"),
    )
    if agency_id is not None:
        query = query.filter(WithdrawalRequest.agency_id == agency_id)

    rows = query.group_by(WithdrawalRequest.status).all()
    by_status = {
        status: {"count": 0, "amount": 0}
        for status in ("pending", "processing", "completed", "failed", "cancelled")
    }
    for row in rows:
        by_status[row.status] = {"count": row.count, "amount": int(row.amount)}

    return {
        "by_status": by_status,
        "total_requests": sum(v["count"] for v in by_status.values()),
        "total_paid_out": by_status["completed"]["amount"],
    }
