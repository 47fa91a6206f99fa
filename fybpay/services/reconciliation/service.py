"""Reconciliation engine: drive one payment reference to a terminal state exactly once.

Webhooks, client verification after redirect and the pending sweep all
converge on `ReconciliationEngine.reconcile`. Each call is one database
transaction: reserve the ledger row, re-verify with the gateway, check amount
integrity, resolve the entitlement and commit payment + project + lead
together. Notifications are sent only after that commit.
"""

from datetime import datetime, timedelta, timezone
from time import perf_counter

from sqlalchemy import text

from fybpay.common.logging import logger, reference_ctx, source_ctx
from fybpay.common.metrics import (
    integrity_failures_total,
    payment_failure_total,
    payment_success_total,
    reconciliation_latency_seconds,
    reconciliation_outcomes_total,
)
from fybpay.common.state_machine import is_terminal
from fybpay.common.tracing import tracer
from fybpay.services.entitlement.service import (
    UnknownMetadata,
    parse_payment_metadata,
    resolve_entitlement,
)
from fybpay.services.gateway.client import to_minor_units
from fybpay.services.gateway.schemas import VerificationResult
from fybpay.services.ledger.models import Payment
from fybpay.services.ledger.service import PaymentLedger
from fybpay.services.notification.service import PaymentReceipt
from fybpay.services.projects.service import apply_entitlement, mark_lead_paid, materialize_target
from fybpay.services.reconciliation.outcomes import (
    AlreadyTerminal,
    Failed,
    FailureReason,
    InProgress,
    NotFound,
    Outcome,
    Succeeded,
    outcome_label,
)


MIN_GATEWAY_TIMEOUT_SECONDS = 0.5


class ReconciliationEngine:
    """Exactly-once payment processing shared by every entry point."""

    def __init__(
        self,
        session_factory,
        gateway,
        notifier,
        ledger: PaymentLedger | None = None,
        timeout_seconds: float = 8.0,
        service_name: str = "fybpay",
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.ledger = ledger or PaymentLedger()
        self.timeout_seconds = timeout_seconds
        self.service_name = service_name

    def reconcile(self, reference: str, source: str) -> Outcome:
        """Process `reference` once; replays and race losers get the recorded result."""

        reference = reference.strip()
        reference_token = reference_ctx.set(reference)
        source_token = source_ctx.set(source)
        started = perf_counter()
        receipt = None
        try:
            with tracer.start_as_current_span(
                "payment.reconcile",
                attributes={"payment.reference": reference, "payment.source": source},
            ) as span:
                try:
                    outcome, receipt = self._run(reference, source, started)
                except Exception as exc:
                    # Rolled back: the row is still PENDING and a later call can retry.
                    logger.exception("reconciliation_error error=%s", exc)
                    span.record_exception(exc)
                    outcome = Failed(reference, FailureReason.INTERNAL_ERROR)
                finally:
                    reconciliation_latency_seconds.labels(service=self.service_name, source=source).observe(
                        max(0.0, perf_counter() - started)
                    )
                label = outcome_label(outcome)
                span.set_attribute("payment.outcome", label)

            reconciliation_outcomes_total.labels(service=self.service_name, source=source, outcome=label).inc()
            logger.info("reconciliation_outcome outcome=%s", label)

            if receipt is not None:
                self._notify(receipt)
            return outcome
        finally:
            reference_ctx.reset(reference_token)
            source_ctx.reset(source_token)

    def _remaining(self, started: float) -> float:
        return max(MIN_GATEWAY_TIMEOUT_SECONDS, self.timeout_seconds - (perf_counter() - started))

    def _bound_transaction(self, db) -> None:
        """Cap how long this transaction may wait on or hold row locks (PostgreSQL)."""

        if db.get_bind().dialect.name != "postgresql":
            return
        budget_ms = int(self.timeout_seconds * 1000)
        db.execute(text(f"SET LOCAL lock_timeout = {budget_ms}"))
        db.execute(text(f"SET LOCAL idle_in_transaction_session_timeout = {budget_ms}"))

    def _run(self, reference: str, source: str, started: float) -> tuple[Outcome, PaymentReceipt | None]:
        with self.session_factory() as db:
            self._bound_transaction(db)
            # The reservation must be the transaction's first statement.
            if not self.ledger.reserve(db, reference):
                payment = self.ledger.get_by_reference(db, reference)
                if payment is None:
                    logger.warning("reconciliation_reference_unknown")
                    return NotFound(reference), None
                if is_terminal(payment.status):
                    logger.info("payment already processed status=%s", payment.status)
                    return AlreadyTerminal(reference, payment.status, payment.project_id), None
                return InProgress(reference), None

            payment = self.ledger.get_by_reference(db, reference)
            verification = self.gateway.verify_transaction(reference, timeout=self._remaining(started))

            if not verification.success:
                return self._fail(db, payment, FailureReason.GATEWAY_UNREACHABLE, source, verification), None
            if not verification.paid:
                return self._fail(db, payment, FailureReason.GATEWAY_DECLINED, source, verification), None

            integrity = self._integrity_failure(payment, verification)
            if integrity is not None:
                integrity_failures_total.labels(service=self.service_name, reason=integrity.value).inc()
                logger.warning(
                    "security_event=payment_integrity_failure reason=%s expected_minor=%s gateway_minor=%s "
                    "expected_currency=%s gateway_currency=%s",
                    integrity.value,
                    to_minor_units(payment.amount),
                    verification.amount_minor,
                    payment.currency,
                    verification.currency,
                )
                return self._fail(db, payment, integrity, source, verification), None

            metadata = parse_payment_metadata(verification.metadata)
            if isinstance(metadata, UnknownMetadata) and payment.checkout_metadata:
                metadata = parse_payment_metadata(payment.checkout_metadata)
            project = materialize_target(db, payment, lead_hint=getattr(metadata, "lead_id", None))
            if project is None:
                logger.error(
                    "reconciliation_target_unavailable project_id=%s lead_id=%s",
                    payment.project_id,
                    payment.lead_id,
                )
                db.rollback()
                return Failed(reference, FailureReason.TARGET_UNAVAILABLE), None

            if metadata.project_id and metadata.project_id != project.id:
                logger.warning("metadata_project_mismatch metadata_project_id=%s project_id=%s", metadata.project_id, project.id)
            if payment.user_id and project.user_id and payment.user_id != project.user_id:
                logger.warning("payer_owner_mismatch project_id=%s", project.id)

            patch = resolve_entitlement(payment.amount, metadata, project.status, purpose=payment.purpose)
            apply_entitlement(project, patch)
            mark_lead_paid(db, payment.lead_id or project.source_lead_id)
            self.ledger.mark_succeeded(db, payment, source, verification.raw, project.id)
            db.commit()

            payment_success_total.labels(service=self.service_name).inc()
            logger.info("payment reconciled project_id=%s tier_id=%s", project.id, patch.tier_id)
            receipt = PaymentReceipt(
                reference=payment.reference,
                amount=payment.amount,
                currency=payment.currency,
                email=payment.customer_email,
                name=payment.customer_name,
                project_id=project.id,
                project_topic=project.topic or None,
                paid_at=datetime.now(timezone.utc),
            )
            return Succeeded(reference, project.id, patch), receipt

    def _integrity_failure(self, payment: Payment, verification: VerificationResult) -> FailureReason | None:
        if verification.amount_minor != to_minor_units(payment.amount):
            return FailureReason.AMOUNT_MISMATCH
        if (verification.currency or "").upper() != payment.currency.upper():
            return FailureReason.CURRENCY_MISMATCH
        return None

    def _fail(
        self,
        db,
        payment: Payment,
        reason: FailureReason,
        source: str,
        verification: VerificationResult,
    ) -> Failed:
        self.ledger.mark_failed(db, payment, reason.value, source, verification.raw)
        db.commit()
        payment_failure_total.labels(service=self.service_name, reason=reason.value).inc()
        logger.warning("payment failed reason=%s gateway_status=%s", reason.value, verification.status)
        return Failed(payment.reference, reason)

    def _notify(self, receipt: PaymentReceipt) -> None:
        try:
            self.notifier.payment_succeeded(receipt)
        except Exception as exc:
            logger.exception("post-commit notification failed: %s", exc)

    def sweep_pending(self, older_than: timedelta, limit: int = 200) -> dict[str, int]:
        """Reconcile abandoned or unnotified checkouts; returns outcome counts."""

        with self.session_factory() as db:
            references = self.ledger.stale_pending_references(db, older_than, limit=limit)

        counts: dict[str, int] = {}
        for reference in references:
            label = outcome_label(self.reconcile(reference, source="sweep"))
            counts[label] = counts.get(label, 0) + 1
        logger.info("pending sweep done checked=%s outcomes=%s", len(references), counts)
        return counts
