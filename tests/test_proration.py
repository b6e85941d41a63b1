from datetime import datetime, timedelta, timezone

import pytest

from app.errors import ValidationError
from app.services.proration import (
    add_months,
    calculate_proration,
    cycle_end,
    format_amount,
    format_proration_summary,
    prorate_plan_change,
)

START = datetime(2024, 6, 1)
END = datetime(2024, 7, 1)


def test_upgrade_halfway_through_cycle():
    result = calculate_proration(10_000, 20_000, START, END, "monthly", now=datetime(2024, 6, 16))

    assert result.total_days == 30
    assert result.remaining_days == 15
    assert result.current_plan_credit == 5_000
    assert result.new_plan_prorata_cost == 10_000
    assert result.amount_due == 5_000
    assert not result.is_credit
    assert result.remaining_percentage == pytest.approx(50.0)


def test_downgrade_yields_credit():
    result = calculate_proration(20_000, 10_000, START, END, "monthly", now=datetime(2024, 6, 21))

    assert result.remaining_days == 10
    assert result.current_plan_credit == 6_667
    assert result.new_plan_prorata_cost == 3_333
    assert result.amount_due == -3_334
    assert result.is_credit


def test_partial_day_counts_as_a_full_day():
    result = calculate_proration(10_000, 20_000, START, END, "monthly", now=datetime(2024, 6, 16, 12))
    assert result.remaining_days == 15


def test_expired_cycle_has_no_monetary_effect():
    result = calculate_proration(10_000, 20_000, START, END, "monthly", now=datetime(2024, 7, 2))

    assert result.remaining_days == 0
    assert result.current_plan_credit == 0
    assert result.new_plan_prorata_cost == 0
    assert result.amount_due == 0


def test_now_before_start_is_capped_to_total_days():
    result = calculate_proration(10_000, 20_000, START, END, "monthly", now=datetime(2024, 5, 20))

    assert result.remaining_days == result.total_days == 30
    assert result.amount_due == 10_000


def test_missing_end_uses_calendar_cycle():
    result = calculate_proration(
        10_000, 20_000, datetime(2024, 1, 31), None, "monthly", now=datetime(2024, 2, 1)
    )
    # 31 Jan + 1 month is clamped to 29 Feb
    assert result.total_days == 29

    yearly = calculate_proration(
        100_000, 200_000, datetime(2024, 1, 1), None, "yearly", now=datetime(2024, 1, 1)
    )
    assert yearly.total_days == 366


def test_timezone_aware_dates_are_supported():
    start = datetime(2024, 6, 1, tzinfo=timezone.utc)
    result = calculate_proration(
        10_000, 20_000, start, start + timedelta(days=30), "monthly",
        now=datetime(2024, 6, 16, tzinfo=timezone.utc),
    )
    assert result.amount_due == 5_000


def test_amount_due_is_cost_minus_credit_everywhere():
    for current, new in ((0, 15_000), (9_999, 1), (20_000, 10_000), (12_345, 67_890)):
        for day in range(1, 31):
            result = calculate_proration(
                current, new, START, END, "monthly", now=START + timedelta(days=day, hours=3)
            )
            assert result.amount_due == result.new_plan_prorata_cost - result.current_plan_credit
            assert 0 <= result.remaining_days <= result.total_days
            assert 0 <= result.current_plan_credit <= current
            assert 0 <= result.new_plan_prorata_cost <= new


@pytest.mark.parametrize(
    "current, new, cycle, end",
    [
        (-1, 10_000, "monthly", END),
        (10_000, -5, "monthly", END),
        (10_000.5, 20_000, "monthly", END),
        (10_000, 20_000, "weekly", END),
        (10_000, 20_000, "monthly", START),
        (10_000, 20_000, "monthly", START - timedelta(days=1)),
    ],
)
def test_invalid_inputs_are_rejected(current, new, cycle, end):
    with pytest.raises(ValidationError):
        calculate_proration(current, new, START, end, cycle, now=datetime(2024, 6, 10))


def test_mixed_timezones_are_rejected():
    with pytest.raises(ValidationError):
        calculate_proration(
            10_000, 20_000, START, END, "monthly", now=datetime(2024, 6, 10, tzinfo=timezone.utc)
        )


def test_prorate_plan_change_returns_none_for_full_price():
    now = datetime(2024, 6, 16)
    assert prorate_plan_change(10_000, 20_000, None, None, "monthly", now=now) is None
    # moving to a free plan forfeits the remaining credit
    assert prorate_plan_change(20_000, 0, START, END, "monthly", now=now) is None
    assert prorate_plan_change(10_000, 20_000, START, END, "monthly", now=datetime(2024, 8, 1)) is None

    result = prorate_plan_change(10_000, 20_000, START, END, "monthly", now=now)
    assert result is not None
    assert result.amount_due == 5_000


def test_calendar_helpers():
    assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
    assert add_months(datetime(2024, 12, 15), 1) == datetime(2025, 1, 15)
    assert add_months(datetime(2024, 3, 31), -1) == datetime(2024, 2, 29)
    assert cycle_end(datetime(2024, 2, 29), "yearly") == datetime(2025, 2, 28)


def test_summary_for_display():
    credit = calculate_proration(20_000, 10_000, START, END, "monthly", now=datetime(2024, 6, 21))
    summary = format_proration_summary(credit)

    assert summary.is_credit
    assert summary.display_amount == "3 334 XOF"
    assert "10 jours" in summary.summary
    assert format_amount(1_250_000) == "1 250 000 XOF"
