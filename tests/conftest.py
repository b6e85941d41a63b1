import json
from datetime import datetime

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from app.database import Base, get_db, make_engine
from app.dependencies import get_payout_client, get_provider_registry
from app.main import app as fastapi_app
from app.models import AgencySubscription, OnlineRentPayment, SubscriptionPlan
from app.rate_limit import limiter
from app.services.jwt_service import create_access_token
from app.services.payment_providers import ProviderName, ProviderSettings
from app.services.payout_client import PayoutClient, PayoutResult
from app.services.provider_registry import build_registry

AGENCY_ID = 1


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def plans(db):
    """Plan ids by name: Basic 10 000, Pro 20 000, Free 0 (monthly)."""
    rows = [
        SubscriptionPlan(name="Basic", price_monthly=10_000, price_yearly=100_000),
        SubscriptionPlan(name="Pro", price_monthly=20_000, price_yearly=200_000),
        SubscriptionPlan(name="Free", price_monthly=0, price_yearly=0),
        SubscriptionPlan(name="Legacy", price_monthly=5_000, price_yearly=50_000, is_active=False),
    ]
    db.add_all(rows)
    db.flush()
    ids = {p.name: p.id for p in rows}
    # end the transaction: SQLite holds the write lock until then
    db.commit()
    return ids


def subscribe(db, plan_id, starts_at, ends_at, agency_id=AGENCY_ID, billing_cycle="monthly"):
    subscription = AgencySubscription(
        agency_id=agency_id,
        plan_id=plan_id,
        billing_cycle=billing_cycle,
        status="active",
        starts_at=starts_at,
        ends_at=ends_at,
    )
    db.add(subscription)
    db.flush()
    subscription_id = subscription.id
    db.commit()
    return subscription_id


def add_rent(db, amount, reference, agency_id=AGENCY_ID, status="completed"):
    payment = OnlineRentPayment(
        agency_id=agency_id,
        amount=amount,
        external_reference=reference,
        status=status,
        paid_at=datetime(2024, 6, 1),
    )
    db.add(payment)
    db.commit()


# --- payment providers ---

PROVIDER_SETTINGS = [
    ProviderSettings(
        name=ProviderName.FEDAPAY,
        api_key="sk_sandbox_test",
        base_url="https://fedapay.test",
        callback_url="https://immopay.test/api/webhooks/fedapay",
    ),
    ProviderSettings(
        name=ProviderName.WAVE_CI,
        api_key="wave_test",
        base_url="https://wave.test",
        callback_url="https://immopay.test/api/webhooks/wave_ci",
    ),
    ProviderSettings(
        name=ProviderName.PAWAPAY,
        api_key="pawapay_test",
        base_url="https://pawapay.test",
        sandbox=True,
        callback_url="https://immopay.test/api/webhooks/pawapay",
    ),
    ProviderSettings(
        name=ProviderName.KKIAPAY,
        api_key="kkiapay_test",
        base_url="https://kkiapay.test",
        sandbox=True,
        callback_url="https://immopay.test/api/webhooks/kkiapay",
    ),
]


class ProviderStub:
    """MockTransport handler answering like each provider's sandbox.

    Requests are recorded. Set ``fail_with`` to an exception or a status
    code to make the next calls fail.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.fail_with = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.fail_with, Exception):
            raise self.fail_with
        if isinstance(self.fail_with, int):
            return httpx.Response(self.fail_with, json={"message": "Service indisponible"})

        host = request.url.host
        if host == "fedapay.test":
            return httpx.Response(
                200,
                json={"v1/transaction": {"id": 777, "payment_url": "https://checkout.fedapay.test/777"}},
            )
        if host == "wave.test":
            return httpx.Response(
                200, json={"id": "cos-123", "wave_launch_url": "https://pay.wave.test/c/cos-123"}
            )
        if host == "pawapay.test":
            body = json.loads(request.content)
            return httpx.Response(200, json={"depositId": body["depositId"], "status": "ACCEPTED"})
        if host == "kkiapay.test":
            return httpx.Response(200, json={"transactionId": "kk-42"})
        return httpx.Response(404, json={"message": "unknown host"})

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def provider_stub():
    return ProviderStub()


@pytest.fixture
def registry(provider_stub):
    client = httpx.Client(transport=httpx.MockTransport(provider_stub))
    yield build_registry(PROVIDER_SETTINGS, client=client)
    client.close()


class FakePayoutClient(PayoutClient):
    def __init__(self):
        self.sent = []
        self.next_result = None

    def send_payout(self, withdrawal):
        self.sent.append(withdrawal.id)
        if self.next_result is not None:
            return self.next_result
        return PayoutResult(success=True, reference=f"po_{withdrawal.id}")


@pytest.fixture
def payout_client():
    return FakePayoutClient()


# --- HTTP ---


def auth_headers(agency_id=AGENCY_ID, role="owner", user_id=10) -> dict:
    token = create_access_token(user_id, agency_id, role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(session_factory, registry, payout_client):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_provider_registry] = lambda: registry
    fastapi_app.dependency_overrides[get_payout_client] = lambda: payout_client
    limiter.enabled = False
    try:
        yield TestClient(fastapi_app)
    finally:
        fastapi_app.dependency_overrides.clear()
        limiter.enabled = True
