"""Checkout initialization: record a PENDING attempt, then open a gateway checkout.

The ledger row is committed before the gateway is called so a webhook can
never arrive for a reference we have not stored.
"""

import re
import secrets
import time
from dataclasses import dataclass
from typing import Any

from fybpay.common.logging import logger, reference_ctx
from fybpay.common.metrics import payment_initializations_total
from fybpay.services.entitlement.catalog import DEFAULT_UNLOCK_TIER, addon_by_id, tier_by_id
from fybpay.services.entitlement.service import (
    PURPOSE_PROJECT_UNLOCK,
    PURPOSE_SERVICE_ADDON,
    PURPOSE_TIER_PURCHASE,
)
from fybpay.services.ledger.service import PaymentLedger
from fybpay.services.projects.models import Lead, Project, User


_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")
MAX_PREFIX_LENGTH = 24


class CheckoutError(Exception):
    """A checkout request that cannot proceed; carries the HTTP status to report."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


@dataclass(frozen=True)
class CheckoutUser:
    id: str
    email: str
    name: str | None = None


@dataclass(frozen=True)
class CheckoutSession:
    reference: str
    authorization_url: str
    project_id: str | None
    email: str


def reference_for(*parts: str) -> str:
    """Alphanumeric-only reference: sanitized prefix + ms timestamp + random hex.

    Paystack rejects several special characters in references, so the prefix
    is stripped to `[A-Za-z0-9]` and upper-cased.
    """

    prefix = "".join(_NON_ALNUM.sub("", part) for part in parts).upper()[:MAX_PREFIX_LENGTH]
    return f"{prefix}{int(time.time() * 1000)}{secrets.token_hex(4).upper()}"


class CheckoutService:
    """Creates PENDING payment attempts for every purchasable thing."""

    def __init__(
        self,
        session_factory,
        gateway,
        notifier,
        ledger: PaymentLedger,
        app_url: str,
        currency: str = "NGN",
        fallback_email: str = "",
        service_name: str = "fybpay",
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.ledger = ledger
        self.app_url = app_url.rstrip("/")
        self.currency = currency
        self.fallback_email = fallback_email
        self.service_name = service_name

    def _open_checkout(
        self,
        *,
        purpose: str,
        reference: str,
        amount: int,
        email: str,
        name: str | None,
        user_id: str | None,
        project_id: str | None,
        lead_id: str | None,
        callback_url: str,
        metadata: dict[str, Any],
    ) -> CheckoutSession:
        token = reference_ctx.set(reference)
        try:
            with self.session_factory() as db:
                self.ledger.create_pending(
                    db,
                    reference=reference,
                    purpose=purpose,
                    amount=amount,
                    currency=self.currency,
                    user_id=user_id,
                    project_id=project_id,
                    lead_id=lead_id,
                    customer_email=email,
                    customer_name=name,
                    checkout_metadata=metadata,
                )
                db.commit()

            result = self.gateway.initialize_transaction(
                email=email,
                amount=amount,
                reference=reference,
                callback_url=callback_url,
                metadata=metadata,
            )
            if not result.success or not result.authorization_url:
                # Left PENDING; the pending sweep retires it once the gateway confirms nothing was paid.
                payment_initializations_total.labels(
                    service=self.service_name, purpose=purpose, result="gateway_error"
                ).inc()
                raise CheckoutError(502, "Failed to initialize payment")

            with self.session_factory() as db:
                self.ledger.record_authorization(db, reference, result.authorization_url, result.access_code)
                db.commit()

            payment_initializations_total.labels(service=self.service_name, purpose=purpose, result="ok").inc()
            logger.info("checkout initialized purpose=%s amount=%s", purpose, amount)
            return CheckoutSession(
                reference=reference,
                authorization_url=result.authorization_url,
                project_id=project_id,
                email=email,
            )
        finally:
            reference_ctx.reset(token)

    def _owned_project(self, db, user: CheckoutUser, project_id: str) -> Project:
        project = db.get(Project, project_id)
        if project is None:
            raise CheckoutError(404, "Project not found")
        if project.user_id != user.id:
            raise CheckoutError(403, "Forbidden")
        return project

    def start_project_unlock(self, user: CheckoutUser, project_id: str, tier_id: str | None = None) -> CheckoutSession:
        """Self-service unlock of a claimed project (DIY tiers by default)."""

        tier = tier_by_id(tier_id) if tier_id else DEFAULT_UNLOCK_TIER
        if tier is None:
            raise CheckoutError(400, "Unknown tier")
        with self.session_factory() as db:
            project = self._owned_project(db, user, project_id)
            if project.is_unlocked:
                raise CheckoutError(400, "Project already unlocked")

        return self._open_checkout(
            purpose=PURPOSE_PROJECT_UNLOCK,
            reference=reference_for("ref", tier.id),
            amount=tier.price,
            email=user.email,
            name=user.name,
            user_id=user.id,
            project_id=project_id,
            lead_id=None,
            callback_url=f"{self.app_url}/project/builder?payment=verifying",
            metadata={"kind": PURPOSE_PROJECT_UNLOCK, "projectId": project_id, "userId": user.id, "tierId": tier.id},
        )

    def start_service_purchase(self, user: CheckoutUser, service_id: str, project_id: str) -> CheckoutSession:
        addon = addon_by_id(service_id)
        if addon is None:
            raise CheckoutError(404, "Service not found")
        with self.session_factory() as db:
            project = self._owned_project(db, user, project_id)
            topic = project.topic

        reference = reference_for("SVC", addon.id[:20])
        return self._open_checkout(
            purpose=PURPOSE_SERVICE_ADDON,
            reference=reference,
            amount=addon.price,
            email=user.email,
            name=user.name,
            user_id=user.id,
            project_id=project_id,
            lead_id=None,
            callback_url=f"{self.app_url}/services/complete?ref={reference}&service={addon.id}",
            metadata={
                "kind": PURPOSE_SERVICE_ADDON,
                "projectId": project_id,
                "userId": user.id,
                "serviceId": addon.id,
                "serviceName": addon.label,
                "custom_fields": [
                    {"display_name": "Service", "variable_name": "service", "value": addon.label},
                    {"display_name": "Project", "variable_name": "project", "value": topic},
                ],
            },
        )

    def _email_for(self, db, user_id: str | None) -> tuple[str, str | None]:
        if user_id:
            user = db.get(User, user_id)
            if user is not None and user.email:
                return user.email, user.name
        return self.fallback_email, None

    def send_lead_payment_link(self, lead_id: str, amount: int, tier: str) -> CheckoutSession:
        """Admin payment link for a lead; its project is only created once paid."""

        with self.session_factory() as db:
            lead = db.get(Lead, lead_id)
            if lead is None:
                raise CheckoutError(404, "Lead not found")
            email, name = self._email_for(db, lead.user_id)
            user_id, topic = lead.user_id, lead.topic

        reference = reference_for("FYB", tier or "UNKNOWN", lead_id[:8])
        session = self._open_checkout(
            purpose=PURPOSE_TIER_PURCHASE,
            reference=reference,
            amount=amount,
            email=email,
            name=name,
            user_id=user_id,
            project_id=None,
            lead_id=lead_id,
            callback_url=f"{self.app_url}/project/builder?payment_ref={reference}",
            metadata={
                "kind": PURPOSE_TIER_PURCHASE,
                "leadId": lead_id,
                "tier": tier,
                "custom_fields": [
                    {"display_name": "Project Topic", "variable_name": "project_topic", "value": topic},
                    {"display_name": "Tier", "variable_name": "tier", "value": tier},
                ],
            },
        )
        self.notifier.payment_link_sent(lead_id, amount, tier)
        return session

    def send_project_payment_link(self, project_id: str, amount: int, tier: str) -> CheckoutSession:
        """Admin upgrade link for an existing project."""

        with self.session_factory() as db:
            project = db.get(Project, project_id)
            if project is None:
                raise CheckoutError(404, "Project not found")
            email, name = self._email_for(db, project.user_id)
            user_id, topic = project.user_id, project.topic

        reference = reference_for("FYB", tier or "UPGRADE", project_id[:8])
        return self._open_checkout(
            purpose=PURPOSE_TIER_PURCHASE,
            reference=reference,
            amount=amount,
            email=email,
            name=name,
            user_id=user_id,
            project_id=project_id,
            lead_id=None,
            callback_url=f"{self.app_url}/project/builder?projectId={project_id}&payment_ref={reference}",
            metadata={
                "kind": PURPOSE_TIER_PURCHASE,
                "projectId": project_id,
                "tier": tier,
                "custom_fields": [
                    {"display_name": "Project Topic", "variable_name": "project_topic", "value": topic},
                    {"display_name": "Upgrade Tier", "variable_name": "tier", "value": tier},
                ],
            },
        )
