"""Payment ledger: durable record of checkout attempts and their lifecycle.

All methods operate on a caller-owned session so the reconciliation engine can
compose reservation, terminal transition and entity updates into one commit.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm.attributes import set_committed_value

from fybpay.common.state_machine import FAILED, PENDING, PROCESSING, SUCCESS, validate_transition
from fybpay.services.ledger.models import Payment, PaymentTimeline


class LedgerConflict(RuntimeError):
    """A guarded status update matched no row (someone else moved it first)."""


class PaymentLedger:
    """Owns every write to `payments` and `payment_timeline`."""

    def __init__(self, processing_stale_seconds: int = 30) -> None:
        self.processing_stale_seconds = processing_stale_seconds

    def create_pending(
        self,
        db,
        *,
        reference: str,
        purpose: str,
        amount: int,
        currency: str,
        user_id: str | None,
        project_id: str | None = None,
        lead_id: str | None = None,
        customer_email: str | None = None,
        customer_name: str | None = None,
        checkout_metadata: dict[str, Any] | None = None,
    ) -> Payment:
        """Insert a new attempt in `PENDING`; the unique reference index rejects reuse."""

        payment = Payment(
            reference=reference,
            purpose=purpose,
            amount=amount,
            currency=currency,
            status=PENDING,
            user_id=user_id,
            project_id=project_id,
            lead_id=lead_id,
            customer_email=customer_email,
            customer_name=customer_name,
            checkout_metadata=checkout_metadata,
        )
        db.add(payment)
        db.flush()
        db.add(
            PaymentTimeline(
                payment_id=payment.id,
                from_state=None,
                to_state=PENDING,
                reason="checkout_initialized",
                source="checkout",
            )
        )
        return payment

    def record_authorization(self, db, reference: str, authorization_url: str | None, access_code: str | None) -> None:
        """Store hosted-checkout details; only meaningful while still `PENDING`."""

        db.execute(
            update(Payment)
            .where(Payment.reference == reference, Payment.status == PENDING)
            .values(
                authorization_url=authorization_url,
                access_code=access_code,
                updated_at=datetime.now(timezone.utc),
            )
        )

    def get_by_reference(self, db, reference: str) -> Payment | None:
        return db.execute(
            select(Payment).where(Payment.reference == reference).execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def reserve(self, db, reference: str) -> bool:
        """Atomically move one attempt into `PROCESSING`.

        Single compare-and-swap statement: matches `PENDING`, or a `PROCESSING`
        row whose holder has been silent longer than the staleness window. On
        PostgreSQL the statement also takes the row lock, so a concurrent caller
        blocks here until the holder commits and then re-evaluates against the
        committed status.
        """

        now = datetime.now(timezone.utc)
        stale_before = now - timedelta(seconds=self.processing_stale_seconds)
        result = db.execute(
            update(Payment)
            .where(
                Payment.reference == reference,
                or_(
                    Payment.status == PENDING,
                    (Payment.status == PROCESSING) & (Payment.updated_at < stale_before),
                ),
            )
            .values(status=PROCESSING, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _transition(
        self,
        db,
        payment: Payment,
        new_status: str,
        reason: str,
        source: str,
        values: dict[str, Any],
    ) -> None:
        """Apply one validated transition guarded by the current status."""

        validate_transition(payment.status, new_status)
        from_status = payment.status
        result = db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == from_status)
            .values(status=new_status, updated_at=datetime.now(timezone.utc), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise LedgerConflict(f"payment {payment.reference} left {from_status} before {new_status} could apply")

        # Mirror the guarded write without marking the row dirty: a second ORM
        # UPDATE on a terminal row would trip the immutability trigger.
        set_committed_value(payment, "status", new_status)
        for key, value in values.items():
            set_committed_value(payment, key, value)
        db.add(
            PaymentTimeline(
                payment_id=payment.id,
                from_state=from_status,
                to_state=new_status,
                reason=reason,
                source=source,
            )
        )

    def mark_failed(
        self,
        db,
        payment: Payment,
        reason: str,
        source: str,
        gateway_response: dict[str, Any] | None,
    ) -> None:
        self._transition(
            db,
            payment,
            FAILED,
            reason=reason,
            source=source,
            values={"failure_reason": reason, "gateway_response": gateway_response or {}},
        )

    def mark_succeeded(
        self,
        db,
        payment: Payment,
        source: str,
        gateway_response: dict[str, Any],
        project_id: str | None,
    ) -> None:
        self._transition(
            db,
            payment,
            SUCCESS,
            reason="gateway_verified",
            source=source,
            values={"gateway_response": gateway_response, "project_id": project_id, "failure_reason": None},
        )

    def stale_pending_references(self, db, older_than: timedelta, limit: int = 200) -> list[str]:
        """References still `PENDING` after `older_than`, oldest first."""

        cutoff = datetime.now(timezone.utc) - older_than
        return list(
            db.execute(
                select(Payment.reference)
                .where(Payment.status == PENDING, Payment.created_at <= cutoff)
                .order_by(Payment.created_at)
                .limit(limit)
            ).scalars()
        )

    def history_for_user(self, db, user_id: str) -> list[Payment]:
        return list(
            db.execute(
                select(Payment).where(Payment.user_id == user_id).order_by(Payment.created_at.desc())
            ).scalars()
        )

    def total_paid_for_project(self, db, project_id: str) -> int:
        return db.execute(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.project_id == project_id,
                Payment.status == SUCCESS,
            )
        ).scalar_one()

    def successful_for_project(self, db, project_id: str, purpose: str) -> list[Payment]:
        return list(
            db.execute(
                select(Payment)
                .where(
                    Payment.project_id == project_id,
                    Payment.purpose == purpose,
                    Payment.status == SUCCESS,
                )
                .order_by(Payment.created_at)
            ).scalars()
        )
