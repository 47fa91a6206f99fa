"""Entitlement resolution: what a verified payment grants its project.

Gateway metadata is arbitrary JSON echoed back from checkout. It is narrowed
here into a tagged union on `kind`, with an explicit unknown branch, and turned
into an `EntitlementPatch` by a pure function.
"""

from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from fybpay.services.entitlement.catalog import addon_by_id, tier_by_price


PURPOSE_PROJECT_UNLOCK = "project_unlock"
PURPOSE_TIER_PURCHASE = "tier_purchase"
PURPOSE_SERVICE_ADDON = "service_addon"

PROJECT_STATUS_ORDER = (
    "OUTLINE_GENERATED",
    "RESEARCH_IN_PROGRESS",
    "RESEARCH_COMPLETE",
    "WRITING_IN_PROGRESS",
    "PROJECT_COMPLETE",
)
UNLOCKED_STATUS = "RESEARCH_IN_PROGRESS"


class _Metadata(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    project_id: str | None = Field(default=None, alias="projectId")
    user_id: str | None = Field(default=None, alias="userId")


class ProjectUnlockMetadata(_Metadata):
    kind: Literal["project_unlock"]
    tier_id: str | None = Field(default=None, alias="tierId")


class TierPurchaseMetadata(_Metadata):
    kind: Literal["tier_purchase"]
    tier: str
    lead_id: str | None = Field(default=None, alias="leadId")


class ServiceAddOnMetadata(_Metadata):
    kind: Literal["service_addon"]
    service_id: str = Field(alias="serviceId")


@dataclass(frozen=True)
class UnknownMetadata:
    """Anything that does not match a known checkout shape."""

    raw: dict[str, Any]

    @property
    def project_id(self) -> str | None:
        value = self.raw.get("projectId")
        return value if isinstance(value, str) else None

    @property
    def lead_id(self) -> str | None:
        value = self.raw.get("leadId")
        return value if isinstance(value, str) else None


KnownMetadata = Annotated[
    Union[ProjectUnlockMetadata, TierPurchaseMetadata, ServiceAddOnMetadata],
    Field(discriminator="kind"),
]
PaymentMetadata = Union[ProjectUnlockMetadata, TierPurchaseMetadata, ServiceAddOnMetadata, UnknownMetadata]

_metadata_adapter = TypeAdapter(KnownMetadata)


def parse_payment_metadata(raw: dict[str, Any]) -> PaymentMetadata:
    try:
        return _metadata_adapter.validate_python(raw)
    except ValidationError:
        return UnknownMetadata(raw=dict(raw))


@dataclass(frozen=True)
class EntitlementPatch:
    """Absolute target values; `None` leaves the field untouched."""

    unlocked: bool | None = None
    locked: bool | None = None
    mode: str | None = None
    status: str | None = None
    tier_id: str | None = None
    service_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.unlocked is None and self.locked is None and self.mode is None and self.status is None


def advance_status(current: str | None, target: str) -> str:
    """Workflow status only moves forward."""

    if current in PROJECT_STATUS_ORDER and PROJECT_STATUS_ORDER.index(current) >= PROJECT_STATUS_ORDER.index(target):
        return current
    return target


def resolve_entitlement(
    amount: int,
    metadata: PaymentMetadata,
    current_status: str | None,
    purpose: str | None = None,
) -> EntitlementPatch:
    """Compute the project patch a verified payment of `amount` grants.

    `purpose` is the ledger's record of what was sold and wins over the
    gateway-echoed metadata when present. Add-ons never touch unlock flags.
    Tier purchases and unlocks are matched against catalog price points; an
    unmatched amount still grants the generic unlock, just without a
    fulfillment mode change.
    """

    is_addon = purpose == PURPOSE_SERVICE_ADDON if purpose else isinstance(metadata, ServiceAddOnMetadata)
    if is_addon:
        service_id = metadata.service_id if isinstance(metadata, ServiceAddOnMetadata) else None
        addon = addon_by_id(service_id) if service_id else None
        return EntitlementPatch(service_id=addon.id if addon else service_id)

    tier = tier_by_price(amount)
    status = advance_status(current_status, UNLOCKED_STATUS)
    if tier is None:
        return EntitlementPatch(unlocked=True, locked=True, status=status)
    return EntitlementPatch(unlocked=True, locked=True, mode=tier.mode, status=status, tier_id=tier.id)
