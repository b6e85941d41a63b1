from datetime import datetime

import httpx
import pytest

from app.errors import ConfigurationError, NotFoundError, ProviderError, ValidationError
from app.models import PaymentTransaction
from app.services.checkout_service import build_and_dispatch_checkout, preview_checkout
from app.services.payment_providers import ImmediateSuccess, PushPending, Redirect
from app.services.subscription_service import change_plan, get_current_subscription
from app.services.transaction_ledger import Customer, mark_completed
from tests.conftest import AGENCY_ID, subscribe

START = datetime(2024, 6, 1)
END = datetime(2024, 7, 1)
CUSTOMER = Customer(phone="0701020304", name="Awa Koné", email="awa@example.ci")


def checkout(db, registry, plan_id, method="orange_money", cycle="monthly", now=None, **kwargs):
    return build_and_dispatch_checkout(
        db,
        registry,
        agency_id=AGENCY_ID,
        plan_id=plan_id,
        billing_cycle=cycle,
        payment_method=method,
        customer=CUSTOMER,
        now=now,
        **kwargs,
    )


def test_first_subscription_is_charged_in_full(db, registry, provider_stub, plans):
    result = checkout(db, registry, plans["Pro"])

    assert isinstance(result.outcome, Redirect)
    assert result.outcome.url == "https://checkout.fedapay.test/777"
    assert result.amount == 20_000
    assert result.proration is None

    tx = db.get(PaymentTransaction, result.transaction.id)
    assert tx.status == "pending"
    assert tx.provider_name == "fedapay"
    assert tx.external_reference == "777"
    assert tx.amount == 20_000
    assert provider_stub.last_json["amount"] == 20_000


def test_yearly_cycle_uses_yearly_price(db, registry, provider_stub, plans):
    result = checkout(db, registry, plans["Basic"], cycle="yearly")
    assert result.amount == 100_000
    assert provider_stub.last_json["metadata"]["billing_cycle"] == "yearly"


def test_mid_cycle_upgrade_is_prorated(db, registry, provider_stub, plans):
    subscription_id = subscribe(db, plans["Basic"], START, END)

    result = checkout(db, registry, plans["Pro"], method="card", now=datetime(2024, 6, 16))

    assert result.amount == 5_000
    assert result.proration.current_plan_credit == 5_000
    tx = db.get(PaymentTransaction, result.transaction.id)
    assert tx.is_prorated
    assert tx.previous_plan_id == plans["Basic"]
    assert tx.subscription_id == subscription_id
    assert provider_stub.last_json["amount"] == 5_000


def test_cycle_switch_is_not_prorated(db, registry, plans):
    subscribe(db, plans["Basic"], START, END)
    result = checkout(db, registry, plans["Pro"], cycle="yearly", now=datetime(2024, 6, 16))
    assert result.proration is None
    assert result.amount == 200_000


def test_downgrade_covered_by_credit_needs_no_payment(db, registry, provider_stub, plans):
    subscribe(db, plans["Pro"], START, END)

    result = checkout(db, registry, plans["Basic"], now=datetime(2024, 6, 21))

    assert isinstance(result.outcome, ImmediateSuccess)
    assert result.outcome.credit_amount == 3_334
    assert result.amount == 0
    assert result.transaction is None
    assert provider_stub.requests == []
    assert db.query(PaymentTransaction).count() == 0
    subscription = get_current_subscription(db, AGENCY_ID)
    assert subscription.plan_id == plans["Basic"]
    assert subscription.ends_at == END


def test_free_plan_activates_immediately(db, registry, provider_stub, plans):
    subscribe(db, plans["Pro"], START, END)

    result = checkout(db, registry, plans["Free"], now=datetime(2024, 6, 21))

    assert isinstance(result.outcome, ImmediateSuccess)
    assert result.outcome.credit_amount == 0
    assert provider_stub.requests == []
    subscription = get_current_subscription(db, AGENCY_ID)
    assert subscription.plan_id == plans["Free"]
    assert subscription.starts_at == datetime(2024, 6, 21)
    assert subscription.ends_at is None


def test_pawapay_push_payment(db, registry, provider_stub, plans):
    result = checkout(db, registry, plans["Basic"], method="pawapay_orange")

    assert isinstance(result.outcome, PushPending)
    payload = provider_stub.last_json
    assert payload["correspondent"] == "ORANGE_CIV"
    tx = db.get(PaymentTransaction, result.transaction.id)
    assert tx.provider_name == "pawapay"
    assert tx.payment_method == "pawapay_orange"
    assert tx.external_reference == payload["depositId"]


def test_unsupported_country_writes_nothing(db, registry, provider_stub, plans):
    with pytest.raises(ConfigurationError):
        checkout(db, registry, plans["Basic"], method="pawapay_mtn", country_code="GH")
    assert provider_stub.requests == []
    assert db.query(PaymentTransaction).count() == 0


@pytest.mark.parametrize("method", ["bitcoin", ""])
def test_unknown_method_writes_nothing(db, registry, plans, method):
    with pytest.raises(ConfigurationError):
        checkout(db, registry, plans["Basic"], method=method)
    assert db.query(PaymentTransaction).count() == 0


def test_unknown_or_inactive_plan(db, registry, plans):
    with pytest.raises(NotFoundError):
        checkout(db, registry, plans["Legacy"])
    with pytest.raises(NotFoundError):
        checkout(db, registry, 999)
    with pytest.raises(ValidationError):
        checkout(db, registry, plans["Basic"], cycle="weekly")


def test_provider_error_marks_transaction_failed(db, registry, provider_stub, plans):
    provider_stub.fail_with = 500

    with pytest.raises(ProviderError):
        checkout(db, registry, plans["Basic"])

    tx = db.query(PaymentTransaction).one()
    assert tx.status == "failed"
    assert "500" in tx.error_message


def test_timeout_leaves_transaction_pending(db, registry, provider_stub, plans):
    provider_stub.fail_with = httpx.ConnectTimeout("timed out")

    with pytest.raises(ProviderError) as excinfo:
        checkout(db, registry, plans["Basic"], method="wave_direct")

    assert excinfo.value.timeout
    tx = db.query(PaymentTransaction).one()
    assert tx.status == "pending"
    assert tx.provider_name == "wave_ci"


def test_invalid_phone_marks_transaction_failed(db, registry, provider_stub, plans):
    with pytest.raises(ValidationError):
        build_and_dispatch_checkout(
            db,
            registry,
            agency_id=AGENCY_ID,
            plan_id=plans["Basic"],
            billing_cycle="monthly",
            payment_method="wave_direct",
            customer=Customer(phone="12"),
        )
    assert provider_stub.requests == []
    assert db.query(PaymentTransaction).one().status == "failed"


def test_preview_has_no_side_effects(db, plans):
    subscribe(db, plans["Basic"], START, END)

    full, amount, proration = preview_checkout(
        db, AGENCY_ID, plans["Pro"], "monthly", now=datetime(2024, 6, 16)
    )

    assert (full, amount) == (20_000, 5_000)
    assert proration.remaining_days == 15
    assert db.query(PaymentTransaction).count() == 0
    assert get_current_subscription(db, AGENCY_ID).plan_id == plans["Basic"]


def test_upgrade_from_free_plan_is_charged_in_full_with_a_new_window(db, registry, provider_stub, plans):
    subscribe(db, plans["Free"], datetime(2024, 6, 5), None)

    result = checkout(db, registry, plans["Pro"], now=datetime(2024, 6, 10))

    assert result.proration is None
    assert result.amount == 20_000
    tx_id = result.transaction.id
    assert not db.get(PaymentTransaction, tx_id).is_prorated

    mark_completed(db, tx_id, "777", completed_at=datetime(2024, 6, 10))

    subscription = get_current_subscription(db, AGENCY_ID)
    assert subscription.plan_id == plans["Pro"]
    assert subscription.starts_at == datetime(2024, 6, 10)
    assert subscription.ends_at == datetime(2024, 7, 10)


def test_plan_change_closes_an_open_ended_window(db, plans):
    subscribe(db, plans["Free"], datetime(2024, 6, 5), None)
    subscription = get_current_subscription(db, AGENCY_ID)

    change_plan(db, subscription, plans["Basic"], "monthly")
    db.commit()

    subscription = get_current_subscription(db, AGENCY_ID)
    assert subscription.plan_id == plans["Basic"]
    assert subscription.ends_at == datetime(2024, 7, 5)
