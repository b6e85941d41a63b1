"""Proration of immediate subscription plan changes.

All monetary terms are computed from integer day counts. Each term is
rounded once (half up, to the smallest currency unit) and ``amount_due`` is
the exact difference of the two rounded terms.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from app.config import DEFAULT_CURRENCY
from app.errors import ValidationError

BILLING_CYCLES = ("monthly", "yearly")

_DAY = timedelta(days=1)


@dataclass(frozen=True)
class ProrationResult:
    remaining_days: int
    total_days: int
    remaining_percentage: float
    current_plan_credit: int
    new_plan_prorata_cost: int
    amount_due: int
    description: str = ""

    @property
    def is_credit(self) -> bool:
        return self.amount_due < 0

    def as_dict(self) -> dict:
        return {
            "remaining_days": self.remaining_days,
            "total_days": self.total_days,
            "current_plan_credit": self.current_plan_credit,
            "new_plan_prorata_cost": self.new_plan_prorata_cost,
            "amount_due": self.amount_due,
        }


@dataclass(frozen=True)
class ProrationSummary:
    is_credit: bool
    display_amount: str
    summary: str


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def cycle_end(cycle_start: datetime, billing_cycle: str) -> datetime:
    """End of one billing cycle starting at ``cycle_start``."""
    if billing_cycle == "yearly":
        return add_months(cycle_start, 12)
    return add_months(cycle_start, 1)


def _ceil_days(delta: timedelta) -> int:
    if delta <= timedelta(0):
        return 0
    return -(-delta // _DAY)


def _prorate(price: int, remaining_days: int, total_days: int) -> int:
    # round-half-up of price * remaining / total, in integers
    return (2 * price * remaining_days + total_days) // (2 * total_days)


def format_amount(amount: int, currency: str = DEFAULT_CURRENCY) -> str:
    return f"{abs(amount):,}".replace(",", " ") + f" {currency}"


def _describe(remaining_days: int, credit: int, cost: int, amount_due: int) -> str:
    if amount_due > 0:
        return (
            f"Vous avez {remaining_days} jours restants. Crédit: {format_amount(credit)}. "
            f"Coût prorata nouveau forfait: {format_amount(cost)}. "
            f"Total à payer: {format_amount(amount_due)}."
        )
    if amount_due < 0:
        return (
            f"Vous avez {remaining_days} jours restants. Un crédit de "
            f"{format_amount(amount_due)} sera appliqué à votre compte."
        )
    return f"Vous avez {remaining_days} jours restants. Aucun montant supplémentaire dû."


def _validate(current_plan_price: int, new_plan_price: int, billing_cycle: str) -> None:
    for label, price in (("current_plan_price", current_plan_price), ("new_plan_price", new_plan_price)):
        if isinstance(price, bool) or not isinstance(price, int):
            raise ValidationError(f"{label} doit être un entier")
        if price < 0:
            raise ValidationError(f"{label} ne peut pas être négatif")
    if billing_cycle not in BILLING_CYCLES:
        raise ValidationError(f"Cycle de facturation inconnu: {billing_cycle}")


def _resolve_now(cycle_start: datetime, now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc) if cycle_start.tzinfo else datetime.utcnow()
    if (now.tzinfo is None) != (cycle_start.tzinfo is None):
        raise ValidationError("Dates avec et sans fuseau horaire mélangées")
    return now


def calculate_proration(
    current_plan_price: int,
    new_plan_price: int,
    cycle_start: datetime,
    cycle_end_or_null: datetime | None,
    billing_cycle: str,
    now: datetime | None = None,
) -> ProrationResult:
    """Compute the charge (or credit) for switching plans right now.

    ``cycle_end_or_null`` wins over the calendar length of ``billing_cycle``
    when it is set. When no time is left, every monetary field is 0.
    """
    _validate(current_plan_price, new_plan_price, billing_cycle)
    now = _resolve_now(cycle_start, now)

    if cycle_end_or_null is not None:
        if (cycle_end_or_null.tzinfo is None) != (cycle_start.tzinfo is None):
            raise ValidationError("Dates avec et sans fuseau horaire mélangées")
        if cycle_end_or_null <= cycle_start:
            raise ValidationError("La fin de période doit être postérieure au début")
        end = cycle_end_or_null
    else:
        end = cycle_end(cycle_start, billing_cycle)

    total_days = _ceil_days(end - cycle_start)
    remaining_days = min(_ceil_days(end - now), total_days)

    if total_days == 0 or remaining_days == 0:
        return ProrationResult(
            remaining_days=0,
            total_days=total_days,
            remaining_percentage=0.0,
            current_plan_credit=0,
            new_plan_prorata_cost=0,
            amount_due=0,
            description="L'abonnement actuel est expiré. Le nouveau forfait sera facturé en totalité.",
        )

    credit = _prorate(current_plan_price, remaining_days, total_days)
    cost = _prorate(new_plan_price, remaining_days, total_days)
    amount_due = cost - credit

    return ProrationResult(
        remaining_days=remaining_days,
        total_days=total_days,
        remaining_percentage=remaining_days / total_days * 100,
        current_plan_credit=credit,
        new_plan_prorata_cost=cost,
        amount_due=amount_due,
        description=_describe(remaining_days, credit, cost, amount_due),
    )


def prorate_plan_change(
    current_plan_price: int,
    new_plan_price: int,
    cycle_start: datetime | None,
    cycle_end_or_null: datetime | None,
    billing_cycle: str,
    now: datetime | None = None,
) -> ProrationResult | None:
    """Proration for a plan change, or ``None`` meaning "charge full price".

    ``None`` is returned when there is no previous subscription window, when
    the target plan is free (the remaining credit is forfeited, never paid
    out), or when the current window has no days left.
    """
    _validate(current_plan_price, new_plan_price, billing_cycle)
    if cycle_start is None or new_plan_price == 0:
        return None

    result = calculate_proration(
        current_plan_price, new_plan_price, cycle_start, cycle_end_or_null, billing_cycle, now
    )
    if result.total_days == 0 or result.remaining_days == 0:
        return None
    return result


def format_proration_summary(result: ProrationResult) -> ProrationSummary:
    if result.amount_due > 0:
        summary = f"Montant au prorata à payer pour les {result.remaining_days} jours restants"
    elif result.amount_due < 0:
        summary = (
            f"Crédit pour les {result.remaining_days} jours restants "
            "(applicable sur prochaine facture)"
        )
    else:
        summary = f"Aucun ajustement pour les {result.remaining_days} jours restants"

    return ProrationSummary(
        is_credit=result.is_credit,
        display_amount=format_amount(result.amount_due),
        summary=summary,
    )
