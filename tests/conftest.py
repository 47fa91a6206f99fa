"""Shared fixtures: file-backed SQLite database, fake Paystack, recording notifier."""

import json
import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_secret")

import httpx
import pytest

from fybpay.common.db import Base, build_engine, session_factory_for
from fybpay.services.gateway.client import PaystackClient
from fybpay.services.ledger import models as ledger_models  # noqa: F401
from fybpay.services.ledger.service import PaymentLedger
from fybpay.services.projects.models import Lead, Project, User
from fybpay.services.reconciliation.service import ReconciliationEngine


WEBHOOK_SECRET = "sk_test_secret"


class FakePaystack:
    """In-memory Paystack: transactions keyed by reference, every call recorded."""

    def __init__(self) -> None:
        self.transactions: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_initialize = False
        self.unreachable = False
        self.on_initialize = None

    def settle(self, reference: str, amount: int, status: str = "success", currency: str = "NGN", metadata=None):
        """Record what the gateway will report for `reference` (amount in Naira)."""

        self.transactions[reference] = {
            "reference": reference,
            "status": status,
            "amount": amount * 100,
            "currency": currency,
            "metadata": metadata or {},
        }

    def verify_calls(self, reference: str) -> int:
        return sum(1 for op, ref in self.calls if op == "verify" and ref == reference)

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.unreachable:
            raise httpx.ConnectError("gateway down", request=request)
        path = request.url.path
        if path == "/transaction/initialize":
            payload = json.loads(request.content)
            self.calls.append(("initialize", payload["reference"]))
            if self.on_initialize is not None:
                self.on_initialize(payload["reference"])
            if self.fail_initialize:
                return httpx.Response(400, json={"status": False, "message": "Invalid key"})
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "message": "Authorization URL created",
                    "data": {
                        "authorization_url": f"https://checkout.paystack.com/{payload['reference']}",
                        "access_code": "ac_" + payload["reference"][-6:],
                        "reference": payload["reference"],
                    },
                },
            )
        if path.startswith("/transaction/verify/"):
            reference = path.rsplit("/", 1)[-1]
            self.calls.append(("verify", reference))
            tx = self.transactions.get(reference)
            if tx is None:
                return httpx.Response(404, json={"status": False, "message": "Transaction reference not found"})
            return httpx.Response(200, json={"status": True, "message": "Verification successful", "data": tx})
        return httpx.Response(404, json={"status": False, "message": "not found"})


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.receipts = []
        self.links = []

    def payment_succeeded(self, receipt) -> None:
        self.receipts.append(receipt)
        if self.fail:
            raise RuntimeError("email provider down")

    def payment_link_sent(self, target_id: str, amount: int, tier: str) -> None:
        self.links.append((target_id, amount, tier))

    def close(self) -> None:
        pass


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'fybpay.db'}")
    Base.metadata.create_all(engine)
    yield session_factory_for(engine)
    engine.dispose()


@pytest.fixture
def paystack():
    return FakePaystack()


@pytest.fixture
def gateway(paystack):
    client = PaystackClient(
        secret_key="sk_test_secret",
        base_url="https://api.paystack.test",
        transport=httpx.MockTransport(paystack.handler),
    )
    yield client
    client.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def ledger():
    return PaymentLedger(processing_stale_seconds=30)


@pytest.fixture
def engine(session_factory, gateway, notifier, ledger):
    return ReconciliationEngine(session_factory, gateway, notifier, ledger=ledger, timeout_seconds=5.0)


@pytest.fixture
def seed(session_factory):
    """Insert users, projects and leads; returns a helper for each."""

    class Seeder:
        def user(self, user_id="user-1", email="ada@example.com", name="Ada"):
            with session_factory() as db:
                db.add(User(id=user_id, email=email, name=name))
                db.commit()
            return user_id

        def project(self, project_id="project-1", user_id="user-1", **kwargs):
            with session_factory() as db:
                db.add(Project(id=project_id, user_id=user_id, topic=kwargs.pop("topic", "Crop yield prediction"), **kwargs))
                db.commit()
            return project_id

        def lead(self, lead_id="lead-1", user_id=None, **kwargs):
            with session_factory() as db:
                db.add(Lead(id=lead_id, user_id=user_id, topic=kwargs.pop("topic", "Smart irrigation"), **kwargs))
                db.commit()
            return lead_id

        def payment(self, reference, amount, project_id=None, lead_id=None, user_id="user-1", purpose="project_unlock", metadata=None):
            with session_factory() as db:
                PaymentLedger().create_pending(
                    db,
                    reference=reference,
                    purpose=purpose,
                    amount=amount,
                    currency="NGN",
                    user_id=user_id,
                    project_id=project_id,
                    lead_id=lead_id,
                    customer_email="ada@example.com",
                    checkout_metadata=metadata,
                )
                db.commit()
            return reference

    return Seeder()
