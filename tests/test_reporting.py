from datetime import datetime

from sqlalchemy import event

from app.models import PaymentTransaction, WithdrawalRequest
from app.services.reporting_service import transaction_stats, withdrawal_aggregates

NOW = datetime(2024, 6, 15)


def add_tx(db, plan_id, amount, status, completed_at=None, method="orange_money", created_at=None):
    db.add(
        PaymentTransaction(
            agency_id=1,
            plan_id=plan_id,
            billing_cycle="monthly",
            amount=amount,
            currency="XOF",
            payment_method=method,
            provider_name="fedapay",
            status=status,
            completed_at=completed_at,
            created_at=created_at or completed_at or NOW,
        )
    )
    db.commit()


def test_revenue_counts_completed_only(db, plans):
    add_tx(db, plans["Basic"], 10_000, "completed", datetime(2024, 6, 10))
    add_tx(db, plans["Pro"], 20_000, "completed", datetime(2024, 5, 20), method="card")
    add_tx(db, plans["Basic"], 10_000, "failed")
    add_tx(db, plans["Pro"], 5_000, "pending")
    add_tx(db, 999, 7_000, "completed", datetime(2024, 4, 2))
    add_tx(db, plans["Basic"], 10_000, "refunded", datetime(2024, 6, 1))

    stats = transaction_stats(db, now=NOW)

    assert stats["total_revenue"] == 37_000
    assert stats["total_transactions"] == 6
    assert stats["completed_transactions"] == 3
    assert stats["pending_transactions"] == 1
    assert stats["failed_transactions"] == 1
    assert stats["refunded_transactions"] == 1
    assert stats["success_rate"] == 0.5
    assert stats["revenue_this_month"] == 10_000
    assert stats["revenue_last_month"] == 20_000
    assert stats["growth_rate"] == -50.0
    assert stats["by_payment_method"]["card"] == {"count": 1, "amount": 20_000}
    assert stats["by_payment_method"]["orange_money"] == {"count": 2, "amount": 17_000}
    assert stats["by_plan"]["Basic"] == {"count": 1, "amount": 10_000}
    assert stats["by_plan"]["Inconnu"] == {"count": 1, "amount": 7_000}


def test_period_filter_and_empty_growth(db, plans):
    add_tx(db, plans["Basic"], 10_000, "completed", datetime(2024, 6, 10))
    add_tx(db, plans["Basic"], 10_000, "completed", datetime(2024, 3, 10))

    stats = transaction_stats(db, now=NOW, start=datetime(2024, 6, 1), end=datetime(2024, 7, 1))

    assert stats["total_transactions"] == 1
    assert stats["growth_rate"] == 100.0

    empty = transaction_stats(db, now=NOW, start=datetime(2030, 1, 1))
    assert empty["success_rate"] == 0.0
    assert empty["growth_rate"] == 0.0


def test_stats_are_aggregated_by_the_database(db, engine, plans):
    add_tx(db, plans["Basic"], 10_000, "completed", datetime(2024, 6, 10))
    add_tx(db, plans["Pro"], 5_000, "pending")
    statements = []

    def record(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement.lower())

    event.listen(engine, "before_cursor_execute", record)
    try:
        stats = transaction_stats(db, now=NOW)
    finally:
        event.remove(engine, "before_cursor_execute", record)

    assert stats["total_revenue"] == 10_000
    selects = [s for s in statements if s.lstrip().startswith("select")]
    assert selects
    # no per-row load of the ledger, only grouped counts and sums
    assert all("count(" in s or "sum(" in s for s in selects)


def test_withdrawal_aggregates(db):
    rows = [(1, 10_000, "completed"), (1, 5_000, "pending"), (2, 7_000, "completed"), (2, 3_000, "failed")]
    for agency_id, amount, status in rows:
        db.add(
            WithdrawalRequest(
                agency_id=agency_id,
                amount=amount,
                recipient_phone="0701020304",
                payment_method="wave",
                status=status,
            )
        )
    db.commit()

    overall = withdrawal_aggregates(db)
    assert overall["total_requests"] == 4
    assert overall["total_paid_out"] == 17_000
    assert overall["by_status"]["failed"] == {"count": 1, "amount": 3_000}
    assert overall["by_status"]["cancelled"] == {"count": 0, "amount": 0}

    agency = withdrawal_aggregates(db, agency_id=1)
    assert agency["total_requests"] == 2
    assert agency["total_paid_out"] == 10_000
