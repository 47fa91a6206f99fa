"""Project/Lead operations used by reconciliation and the account endpoints."""

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import or_, select, update

from fybpay.common.logging import logger
from fybpay.services.entitlement.catalog import (
    MODE_CONCIERGE,
    SOFTWARE_TRACK_THRESHOLD,
    TRACK_PAPER,
    TRACK_SOFTWARE,
)
from fybpay.services.entitlement.service import PURPOSE_SERVICE_ADDON, EntitlementPatch
from fybpay.services.ledger.models import Payment
from fybpay.services.ledger.service import PaymentLedger
from fybpay.services.projects.models import Lead, Project


LEAD_NEW = "NEW"
LEAD_PAID = "PAID"


class ProjectAccessError(Exception):
    """Caller may not act on this project."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


@dataclass(frozen=True)
class BillingDetails:
    total_paid: int
    current_track: str
    is_agency_mode: bool


def materialize_target(db, payment: Payment, lead_hint: str | None = None) -> Project | None:
    """Return the project a payment unlocks, synthesizing it from its lead if needed.

    Lookup order: the recorded project, a project already converted from the
    lead, a project with the lead's topic and owner, then a new project. Runs
    inside the reconciliation transaction; a concurrent insert for the same lead
    fails on the unique `source_lead_id` index and rolls the whole attempt back.
    """

    if payment.project_id:
        project = db.get(Project, payment.project_id)
        if project is not None:
            return project
        logger.warning("payment_project_missing project_id=%s", payment.project_id)

    lead_id = payment.lead_id or lead_hint
    lead = db.get(Lead, lead_id) if lead_id else None
    if lead is None:
        return None

    project = db.execute(select(Project).where(Project.source_lead_id == lead.id)).scalar_one_or_none()
    if project is not None:
        return project

    owners = []
    if lead.user_id:
        owners.append(Project.user_id == lead.user_id)
    if lead.anonymous_id:
        owners.append(Project.anonymous_id == lead.anonymous_id)
    if owners:
        project = db.execute(
            select(Project)
            .where(Project.topic == lead.topic, or_(*owners))
            .order_by(Project.created_at)
            .limit(1)
        ).scalar_one_or_none()
        if project is not None:
            return project

    project = Project(
        topic=lead.topic,
        twist=lead.twist,
        user_id=lead.user_id,
        anonymous_id=lead.anonymous_id,
        mode=MODE_CONCIERGE,
        status="OUTLINE_GENERATED",
        source_lead_id=lead.id,
    )
    db.add(project)
    db.flush()
    logger.info("project_synthesized_from_lead lead_id=%s project_id=%s", lead.id, project.id)
    return project


def apply_entitlement(project: Project, patch: EntitlementPatch) -> None:
    """Set absolute values from the patch; applying twice equals applying once."""

    if patch.unlocked is not None:
        project.is_unlocked = patch.unlocked
    if patch.locked is not None:
        if patch.locked and not project.is_locked:
            project.locked_at = datetime.now(timezone.utc)
        project.is_locked = patch.locked
    if patch.mode is not None:
        project.mode = patch.mode
    if patch.status is not None:
        project.status = patch.status


def mark_lead_paid(db, lead_id: str | None) -> None:
    if not lead_id:
        return
    db.execute(
        update(Lead)
        .where(Lead.id == lead_id)
        .values(status=LEAD_PAID, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )


class ProjectService:
    """Account-facing project operations (claim, billing view)."""

    def __init__(self, session_factory, ledger: PaymentLedger) -> None:
        self.session_factory = session_factory
        self.ledger = ledger

    def claim_project(self, user_id: str, project_id: str, anonymous_id: str | None) -> Project:
        """Attach an anonymous project to the signed-in user.

        Only a caller holding the matching anonymous cookie may claim. Leads
        captured under the same anonymous id move to the user as well.
        """

        with self.session_factory() as db:
            project = db.get(Project, project_id)
            if project is None:
                raise ProjectAccessError(404, "Project not found")
            if project.user_id == user_id:
                return project
            if project.user_id:
                raise ProjectAccessError(403, "Forbidden")
            if not project.anonymous_id or project.anonymous_id != anonymous_id:
                logger.warning("project_claim_mismatch project_id=%s", project_id)
                raise ProjectAccessError(403, "Forbidden: Ownership mismatch")

            previous_anonymous_id = project.anonymous_id
            project.user_id = user_id
            project.anonymous_id = None
            db.execute(
                update(Lead)
                .where(Lead.anonymous_id == previous_anonymous_id)
                .values(user_id=user_id)
                .execution_options(synchronize_session=False)
            )
            paid_by_other = db.execute(
                select(Payment.id).where(
                    Payment.project_id == project_id,
                    Payment.user_id.is_not(None),
                    Payment.user_id != user_id,
                )
            ).first()
            if paid_by_other is not None:
                # TODO: decide whether a payer other than the claimant keeps any rights to the project.
                logger.warning("claim_after_foreign_payment project_id=%s user_id=%s", project_id, user_id)
            db.commit()
            return project

    def owned_project(self, db, user_id: str, project_id: str) -> Project:
        project = db.get(Project, project_id)
        if project is None:
            raise ProjectAccessError(404, "Project not found")
        if project.user_id != user_id:
            raise ProjectAccessError(403, "Forbidden")
        return project

    def billing_details(self, user_id: str, project_id: str) -> BillingDetails:
        with self.session_factory() as db:
            project = self.owned_project(db, user_id, project_id)
            total_paid = self.ledger.total_paid_for_project(db, project.id)
            return BillingDetails(
                total_paid=total_paid,
                current_track=TRACK_SOFTWARE if total_paid >= SOFTWARE_TRACK_THRESHOLD else TRACK_PAPER,
                is_agency_mode=project.mode == MODE_CONCIERGE,
            )

    def purchased_services(self, user_id: str, project_id: str) -> list[str]:
        with self.session_factory() as db:
            project = self.owned_project(db, user_id, project_id)
            payments = self.ledger.successful_for_project(db, project.id, PURPOSE_SERVICE_ADDON)
            return [
                p.checkout_metadata.get("serviceId")
                for p in payments
                if p.checkout_metadata and p.checkout_metadata.get("serviceId")
            ]
