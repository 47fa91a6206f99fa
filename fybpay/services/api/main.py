"""HTTP surface: checkout initialization, payment verification and the Paystack webhook.

`create_app` wires every collaborator explicitly so tests (and scripts) can
substitute the database, gateway, notifier and rate limiter.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

import redis
from fastapi import Cookie, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from fybpay.common.config import CommonSettings, settings
from fybpay.common.db import SessionLocal
from fybpay.common.logging import configure_logging, logger, trace_id_ctx
from fybpay.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
    rate_limited_total,
    webhook_rejections_total,
)
from fybpay.common.ratelimit import RateLimitExceeded, TokenBucket
from fybpay.common.startup import log_startup_config
from fybpay.common.tracing import configure_tracing
from fybpay.services.api.dependencies import client_key, current_user, enforce_api_key
from fybpay.services.api.schemas import (
    BillingDetailsResponse,
    CheckoutResponse,
    ClaimProjectResponse,
    InitializePaymentRequest,
    InitializePaymentResponse,
    PaymentHistoryItem,
    PaymentLinkRequest,
    PurchasedServicesResponse,
    ServicePurchaseRequest,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from fybpay.services.checkout.service import CheckoutError, CheckoutService, CheckoutUser
from fybpay.services.gateway.client import PaystackClient
from fybpay.services.gateway.schemas import ChargeEventData, WebhookEnvelope
from fybpay.services.ledger.service import PaymentLedger
from fybpay.services.notification.service import NotificationService
from fybpay.services.projects.service import ProjectAccessError, ProjectService
from fybpay.services.reconciliation.outcomes import (
    AlreadyTerminal,
    Failed,
    FailureReason,
    InProgress,
    NotFound,
    Outcome,
    Succeeded,
)
from fybpay.services.reconciliation.service import ReconciliationEngine


RECONCILED_EVENTS = frozenset({"charge.success", "charge.failed"})
GENERIC_PAYMENT_FAILURE = "Payment verification failed"


def verify_response(outcome: Outcome) -> JSONResponse:
    """Translate an engine outcome into the client envelope; never leaks why it failed."""

    if isinstance(outcome, Succeeded):
        status_code, body = 200, VerifyPaymentResponse(success=True, project_id=outcome.project_id)
    elif isinstance(outcome, AlreadyTerminal) and outcome.succeeded:
        status_code, body = 200, VerifyPaymentResponse(
            success=True, project_id=outcome.project_id, message="Already verified"
        )
    elif isinstance(outcome, NotFound):
        status_code, body = 404, VerifyPaymentResponse(success=False, error="Payment not found")
    elif isinstance(outcome, InProgress):
        status_code, body = 409, VerifyPaymentResponse(success=False, error="Payment is still being processed")
    elif isinstance(outcome, Failed) and not outcome.reason.is_terminal:
        status_code, body = 500, VerifyPaymentResponse(success=False, error="Payment could not be processed, please retry")
    else:
        status_code, body = 400, VerifyPaymentResponse(success=False, error=GENERIC_PAYMENT_FAILURE)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True, exclude_none=True))


def create_app(
    session_factory,
    gateway: PaystackClient,
    notifier: NotificationService,
    bucket: TokenBucket | None = None,
    config: CommonSettings = settings,
) -> FastAPI:
    ledger = PaymentLedger(processing_stale_seconds=config.processing_stale_seconds)
    engine = ReconciliationEngine(
        session_factory,
        gateway,
        notifier,
        ledger=ledger,
        timeout_seconds=config.reconcile_timeout_seconds,
        service_name=config.service_name,
    )
    checkout = CheckoutService(
        session_factory,
        gateway,
        notifier,
        ledger,
        app_url=config.app_url,
        currency=config.currency,
        fallback_email=config.fallback_payer_email,
        service_name=config.service_name,
    )
    projects = ProjectService(session_factory, ledger)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Release outbound HTTP pools on shutdown."""

        yield
        gateway.close()
        notifier.close()

    app = FastAPI(title="FYBPay Payments", lifespan=lifespan)
    app.state.engine = engine
    app.state.checkout = checkout
    configure_tracing(config, app)

    def limit(scope: str, key: str) -> None:
        if bucket is None:
            return
        try:
            bucket.consume(scope, key)
        except RateLimitExceeded:
            rate_limited_total.labels(service=config.service_name, scope=scope).inc()
            raise HTTPException(status_code=429, detail="rate limit exceeded")

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=config.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=config.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.post("/api/pay/initialize", response_model=InitializePaymentResponse)
    def initialize_payment(req: InitializePaymentRequest, user: CheckoutUser = Depends(current_user)):
        """Open a checkout to unlock one of the caller's projects."""

        limit("checkout", user.id)
        try:
            session = checkout.start_project_unlock(user, req.project_id, req.tier_id)
        except CheckoutError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
        return InitializePaymentResponse(url=session.authorization_url, reference=session.reference)

    @app.post("/api/services/purchase", response_model=CheckoutResponse)
    def purchase_service(req: ServicePurchaseRequest, user: CheckoutUser = Depends(current_user)):
        """Open a checkout for an a-la-carte add-on on one of the caller's projects."""

        limit("checkout", user.id)
        try:
            session = checkout.start_service_purchase(user, req.service_id, req.project_id)
        except CheckoutError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
        return CheckoutResponse(authorization_url=session.authorization_url, reference=session.reference)

    @app.get("/api/services/purchased", response_model=PurchasedServicesResponse)
    def purchased_services(project_id: str = Query(alias="projectId"), user: CheckoutUser = Depends(current_user)):
        try:
            services = projects.purchased_services(user.id, project_id)
        except ProjectAccessError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
        return PurchasedServicesResponse(services=services)

    @app.post(
        "/api/admin/leads/{lead_id}/send-payment-link",
        response_model=CheckoutResponse,
        dependencies=[Depends(enforce_api_key)],
    )
    def send_lead_payment_link(lead_id: str, req: PaymentLinkRequest):
        try:
            session = checkout.send_lead_payment_link(lead_id, req.amount, req.tier)
        except CheckoutError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
        return CheckoutResponse(
            authorization_url=session.authorization_url,
            reference=session.reference,
            email_used=session.email,
        )

    @app.post(
        "/api/admin/projects/{project_id}/send-payment-link",
        response_model=CheckoutResponse,
        dependencies=[Depends(enforce_api_key)],
    )
    def send_project_payment_link(project_id: str, req: PaymentLinkRequest):
        try:
            session = checkout.send_project_payment_link(project_id, req.amount, req.tier)
        except CheckoutError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
        return CheckoutResponse(
            authorization_url=session.authorization_url,
            reference=session.reference,
            email_used=session.email,
        )

    @app.post("/api/pay/verify")
    def verify_payment(req: VerifyPaymentRequest, request: Request):
        """Client-triggered verification after the checkout redirect.

        Only the reference is taken from the client; everything else is
        re-derived from the gateway.
        """

        limit("verify", client_key(request))
        return verify_response(engine.reconcile(req.reference, source="verify"))

    @app.post("/api/pay/webhook")
    async def paystack_webhook(request: Request, x_paystack_signature: str | None = Header(default=None)):
        """Paystack event receiver; authenticates the raw body before reading any field."""

        raw_body = await request.body()
        if not gateway.verify_webhook_signature(raw_body, x_paystack_signature):
            webhook_rejections_total.labels(service=config.service_name, reason="signature").inc()
            logger.warning(
                "security_event=webhook_signature_invalid header_present=%s client=%s",
                bool(x_paystack_signature),
                client_key(request),
            )
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            envelope = WebhookEnvelope.model_validate_json(raw_body)
        except ValidationError:
            webhook_rejections_total.labels(service=config.service_name, reason="malformed").inc()
            raise HTTPException(status_code=400, detail="Malformed payload")

        logger.info("webhook received event=%s", envelope.event)
        if envelope.event not in RECONCILED_EVENTS:
            return {"received": True}

        try:
            data = ChargeEventData.model_validate(envelope.data)
        except ValidationError:
            webhook_rejections_total.labels(service=config.service_name, reason="schema").inc()
            raise HTTPException(status_code=400, detail="Malformed payload")

        # Shielded so a dropped connection cannot abandon a reservation mid-flight.
        outcome = await asyncio.shield(run_in_threadpool(engine.reconcile, data.reference, "webhook"))
        if isinstance(outcome, Failed) and outcome.reason is FailureReason.INTERNAL_ERROR:
            # Non-2xx makes Paystack redeliver; the row is still PENDING.
            return JSONResponse(status_code=500, content={"received": False, "error": "Processing error logged"})
        return {"received": True}

    @app.post("/api/projects/{project_id}/claim", response_model=ClaimProjectResponse)
    def claim_project(
        project_id: str,
        user: CheckoutUser = Depends(current_user),
        anonymous_id: str | None = Cookie(default=None),
    ):
        try:
            project = projects.claim_project(user.id, project_id, anonymous_id)
        except ProjectAccessError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
        return ClaimProjectResponse(project_id=project.id, user_id=user.id)

    @app.get("/api/projects/{project_id}/billing", response_model=BillingDetailsResponse)
    def billing_details(project_id: str, user: CheckoutUser = Depends(current_user)):
        try:
            details = projects.billing_details(user.id, project_id)
        except ProjectAccessError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
        return BillingDetailsResponse(
            total_paid=details.total_paid,
            current_track=details.current_track,
            is_agency_mode=details.is_agency_mode,
        )

    @app.get("/api/payments", response_model=list[PaymentHistoryItem])
    def payment_history(user: CheckoutUser = Depends(current_user)):
        with session_factory() as db:
            payments = ledger.history_for_user(db, user.id)
        return [
            PaymentHistoryItem(
                reference=p.reference,
                amount=p.amount,
                currency=p.currency,
                status=p.status,
                purpose=p.purpose,
                project_id=p.project_id,
                created_at=p.created_at,
            )
            for p in payments
        ]

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app


def build_app() -> FastAPI:
    """Production wiring from environment settings."""

    configure_logging()
    log_startup_config(settings, "api")
    gateway = PaystackClient(
        secret_key=settings.paystack_secret_key,
        webhook_secret=settings.webhook_secret,
        base_url=settings.paystack_base_url,
        timeout=settings.gateway_timeout_seconds,
        service_name=settings.service_name,
    )
    notifier = NotificationService(
        resend_api_key=settings.resend_api_key,
        from_email=settings.receipt_from_email,
        discord_webhook_url=settings.discord_webhook_url,
        resend_base_url=settings.resend_base_url,
        service_name=settings.service_name,
    )
    rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    bucket = TokenBucket(rdb, settings.rate_limit_per_minute)
    return create_app(SessionLocal, gateway, notifier, bucket)
