"""HTTP contract tests for the payment endpoints."""

import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from fybpay.common.ratelimit import RateLimitExceeded
from fybpay.services.api.main import create_app
from fybpay.services.ledger.models import Payment
from fybpay.services.projects.models import Lead, Project

from conftest import WEBHOOK_SECRET


USER_HEADERS = {"x-user-id": "user-1", "x-user-email": "ada@example.com", "x-user-name": "Ada"}


class ExhaustedBucket:
    def consume(self, scope: str, key: str) -> None:
        raise RateLimitExceeded(f"{scope}:{key}")


@pytest.fixture
def client(session_factory, gateway, notifier):
    with TestClient(create_app(session_factory, gateway, notifier)) as test_client:
        yield test_client


def _sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def _charge_event(reference: str, event: str = "charge.success", amount_kobo: int = 1_500_000) -> bytes:
    return json.dumps(
        {
            "event": event,
            "data": {
                "reference": reference,
                "amount": amount_kobo,
                "currency": "NGN",
                "status": "success",
                "customer": {"email": "ada@example.com"},
            },
        }
    ).encode("utf-8")


def _status(session_factory, reference):
    with session_factory() as db:
        return db.execute(select(Payment.status).where(Payment.reference == reference)).scalar_one()


def test_signed_webhook_settles_payment(client, session_factory, paystack, seed):
    seed.project()
    seed.payment("REF1", 15000, project_id="project-1")
    paystack.settle("REF1", 15000)
    body = _charge_event("REF1")

    resp = client.post("/api/pay/webhook", content=body, headers={"x-paystack-signature": _sign(body)})

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    assert _status(session_factory, "REF1") == "SUCCESS"


def test_tampered_webhook_is_rejected_before_any_work(client, session_factory, paystack, seed):
    """A body edited after signing must not touch the ledger or the gateway."""

    seed.project()
    seed.payment("REF1", 15000, project_id="project-1")
    paystack.settle("REF1", 15000)
    signature = _sign(_charge_event("REF1", amount_kobo=1_000_000))
    tampered = _charge_event("REF1")

    resp = client.post("/api/pay/webhook", content=tampered, headers={"x-paystack-signature": signature})

    assert resp.status_code == 401
    assert _status(session_factory, "REF1") == "PENDING"
    assert paystack.calls == []


def test_webhook_without_signature_is_rejected(client):
    assert client.post("/api/pay/webhook", content=_charge_event("REF1")).status_code == 401


def test_webhook_signed_with_wrong_secret_is_rejected(client):
    body = _charge_event("REF1")
    resp = client.post("/api/pay/webhook", content=body, headers={"x-paystack-signature": _sign(body, "other")})
    assert resp.status_code == 401


@pytest.mark.parametrize("signature", ["é", "ÿ" * 128, "a1b2 é"])
def test_webhook_with_non_ascii_signature_is_rejected(client, paystack, signature):
    body = _charge_event("REF1")
    resp = client.post(
        "/api/pay/webhook",
        content=body,
        headers={"x-paystack-signature": signature.encode("latin-1")},
    )
    assert resp.status_code == 401
    assert paystack.calls == []


@pytest.mark.parametrize(
    "body",
    [
        b"{not json",
        b'{"data": {}}',
        b'{"event": "charge.success", "data": {"amount": 100}}',
    ],
)
def test_malformed_signed_webhook_is_bad_request(client, body):
    resp = client.post("/api/pay/webhook", content=body, headers={"x-paystack-signature": _sign(body)})
    assert resp.status_code == 400


def test_unhandled_event_is_acknowledged(client, paystack):
    body = json.dumps({"event": "transfer.success", "data": {"reference": "TRF1"}}).encode("utf-8")

    resp = client.post("/api/pay/webhook", content=body, headers={"x-paystack-signature": _sign(body)})

    assert resp.status_code == 200
    assert paystack.calls == []


def test_webhook_internal_error_asks_for_redelivery(client, session_factory, paystack, seed, monkeypatch):
    """A 5xx makes Paystack retry; the attempt stays PENDING for that retry."""

    seed.project()
    seed.payment("REF1", 15000, project_id="project-1")
    paystack.settle("REF1", 15000)

    def boom(*args, **kwargs):
        raise RuntimeError("db went away")

    monkeypatch.setattr(client.app.state.engine.ledger, "mark_succeeded", boom)
    body = _charge_event("REF1")

    resp = client.post("/api/pay/webhook", content=body, headers={"x-paystack-signature": _sign(body)})

    assert resp.status_code == 500
    assert _status(session_factory, "REF1") == "PENDING"


def test_verify_success_then_replay(client, paystack, seed):
    seed.project()
    seed.payment("REF1", 15000, project_id="project-1")
    paystack.settle("REF1", 15000)

    first = client.post("/api/pay/verify", json={"reference": "REF1"})
    second = client.post("/api/pay/verify", json={"reference": "REF1"})

    assert first.status_code == 200
    assert first.json() == {"success": True, "projectId": "project-1"}
    assert second.status_code == 200
    assert second.json()["message"] == "Already verified"


def test_verify_hides_failure_reason(client, paystack, seed):
    """Amount tampering is reported to the client as a generic failure."""

    seed.project()
    seed.payment("REF1", 15000, project_id="project-1")
    paystack.settle("REF1", 10000)

    resp = client.post("/api/pay/verify", json={"reference": "REF1"})

    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "Payment verification failed"}
    assert "amount" not in resp.text


def test_verify_unknown_reference(client):
    resp = client.post("/api/pay/verify", json={"reference": "NOPE"})
    assert resp.status_code == 404
    assert resp.json()["success"] is False


def test_verify_rejects_malformed_reference(client, paystack):
    resp = client.post("/api/pay/verify", json={"reference": "../../etc/passwd"})
    assert resp.status_code == 422
    assert paystack.calls == []


def test_verify_is_rate_limited(session_factory, gateway, notifier):
    app = create_app(session_factory, gateway, notifier, bucket=ExhaustedBucket())
    with TestClient(app) as limited:
        resp = limited.post("/api/pay/verify", json={"reference": "REF1"})
    assert resp.status_code == 429


def test_initialize_creates_pending_attempt(client, session_factory, paystack, seed):
    seed.project()

    resp = client.post("/api/pay/initialize", json={"projectId": "project-1"}, headers=USER_HEADERS)

    assert resp.status_code == 200
    reference = resp.json()["reference"]
    assert reference.isalnum()
    assert resp.json()["url"] == f"https://checkout.paystack.com/{reference}"
    with session_factory() as db:
        payment = db.execute(select(Payment).where(Payment.reference == reference)).scalar_one()
    assert payment.status == "PENDING"
    assert payment.amount == 15000
    assert payment.project_id == "project-1"
    assert payment.authorization_url == resp.json()["url"]
    assert payment.checkout_metadata["kind"] == "project_unlock"


def test_initialize_requires_identity(client):
    assert client.post("/api/pay/initialize", json={"projectId": "project-1"}).status_code == 401


def test_initialize_rejects_foreign_and_unlocked_projects(client, seed):
    seed.project(project_id="theirs", user_id="user-2")
    seed.project(project_id="done", is_unlocked=True)

    assert client.post("/api/pay/initialize", json={"projectId": "theirs"}, headers=USER_HEADERS).status_code == 403
    assert client.post("/api/pay/initialize", json={"projectId": "done"}, headers=USER_HEADERS).status_code == 400
    assert client.post("/api/pay/initialize", json={"projectId": "missing"}, headers=USER_HEADERS).status_code == 404


def test_initialize_gateway_failure_is_bad_gateway(client, session_factory, paystack, seed):
    seed.project()
    paystack.fail_initialize = True

    resp = client.post("/api/pay/initialize", json={"projectId": "project-1"}, headers=USER_HEADERS)

    assert resp.status_code == 502
    with session_factory() as db:
        statuses = db.execute(select(Payment.status)).scalars().all()
    assert statuses == ["PENDING"]


def test_service_purchase_and_listing(client, paystack, seed):
    seed.project()

    resp = client.post(
        "/api/services/purchase",
        json={"serviceId": "ADDON_CHAPTER_EDIT", "projectId": "project-1"},
        headers=USER_HEADERS,
    )
    assert resp.status_code == 200
    reference = resp.json()["reference"]
    assert reference.startswith("SVCADDONCHAPTEREDIT")

    paystack.settle(reference, 10000, metadata={"kind": "service_addon", "serviceId": "ADDON_CHAPTER_EDIT"})
    assert client.post("/api/pay/verify", json={"reference": reference}).status_code == 200

    listing = client.get("/api/services/purchased", params={"projectId": "project-1"}, headers=USER_HEADERS)
    assert listing.json() == {"services": ["ADDON_CHAPTER_EDIT"]}


def test_unknown_service_is_not_found(client, seed):
    seed.project()
    resp = client.post(
        "/api/services/purchase",
        json={"serviceId": "ADDON_NOPE", "projectId": "project-1"},
        headers=USER_HEADERS,
    )
    assert resp.status_code == 404


def test_admin_lead_link_then_webhook_creates_project(client, session_factory, paystack, notifier, seed):
    """Admin sells a lead; the paid webhook synthesizes the project and converts the lead."""

    seed.lead(anonymous_id="anon-9")

    assert client.post("/api/admin/leads/lead-1/send-payment-link", json={"amount": 60000, "tier": "AGENCY_PAPER_EXPRESS"}).status_code == 401

    resp = client.post(
        "/api/admin/leads/lead-1/send-payment-link",
        json={"amount": 60000, "tier": "AGENCY_PAPER_EXPRESS"},
        headers={"x-api-key": "test-api-key"},
    )
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["emailUsed"] == "hey@jstarstudios.com"
    assert notifier.links == [("lead-1", 60000, "AGENCY_PAPER_EXPRESS")]

    reference = payload["reference"]
    paystack.settle(reference, 60000, metadata={"kind": "tier_purchase", "leadId": "lead-1", "tier": "AGENCY_PAPER_EXPRESS"})
    body = _charge_event(reference, amount_kobo=6_000_000)
    assert client.post("/api/pay/webhook", content=body, headers={"x-paystack-signature": _sign(body)}).status_code == 200

    with session_factory() as db:
        project = db.execute(select(Project).where(Project.source_lead_id == "lead-1")).scalar_one()
        lead = db.get(Lead, "lead-1")
    assert project.is_unlocked
    assert project.mode == "CONCIERGE"
    assert lead.status == "PAID"


def test_claim_requires_matching_anonymous_cookie(client, seed):
    seed.project(project_id="anon-project", user_id=None, anonymous_id="anon-7")

    wrong = {**USER_HEADERS, "cookie": "anonymous_id=someone-else"}
    assert client.post("/api/projects/anon-project/claim", headers=wrong).status_code == 403

    resp = client.post("/api/projects/anon-project/claim", headers={**USER_HEADERS, "cookie": "anonymous_id=anon-7"})
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "projectId": "anon-project", "userId": "user-1"}


def test_billing_and_history(client, paystack, seed):
    seed.project()
    seed.payment("REF1", 15000, project_id="project-1")
    paystack.settle("REF1", 15000)
    client.post("/api/pay/verify", json={"reference": "REF1"})

    billing = client.get("/api/projects/project-1/billing", headers=USER_HEADERS).json()
    history = client.get("/api/payments", headers=USER_HEADERS).json()

    assert billing == {"totalPaid": 15000, "currentTrack": "PAPER", "isAgencyMode": False}
    assert [item["reference"] for item in history] == ["REF1"]
    assert history[0]["status"] == "SUCCESS"


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert b"reconciliation_outcomes_total" in resp.content
