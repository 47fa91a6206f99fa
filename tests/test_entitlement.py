"""Pure entitlement resolution and metadata narrowing."""

from fybpay.services.entitlement.catalog import MODE_CONCIERGE, MODE_DIY, tier_by_price
from fybpay.services.entitlement.service import (
    ProjectUnlockMetadata,
    ServiceAddOnMetadata,
    TierPurchaseMetadata,
    UnknownMetadata,
    advance_status,
    parse_payment_metadata,
    resolve_entitlement,
)


def test_metadata_is_narrowed_by_kind():
    """Each checkout shape parses into its own branch; camelCase keys accepted."""

    unlock = parse_payment_metadata({"kind": "project_unlock", "projectId": "p1", "tierId": "DIY_PAPER"})
    tier = parse_payment_metadata({"kind": "tier_purchase", "leadId": "l1", "tier": "AGENCY_CODE_GO"})
    addon = parse_payment_metadata({"kind": "service_addon", "projectId": "p1", "serviceId": "ADDON_CODE_REVIEW"})

    assert isinstance(unlock, ProjectUnlockMetadata) and unlock.project_id == "p1"
    assert isinstance(tier, TierPurchaseMetadata) and tier.lead_id == "l1"
    assert isinstance(addon, ServiceAddOnMetadata) and addon.service_id == "ADDON_CODE_REVIEW"


def test_unrecognized_metadata_falls_back_to_unknown():
    """Missing or foreign `kind` never raises."""

    for raw in ({}, {"kind": "gift_card"}, {"kind": "service_addon"}, {"projectId": "p9", "leadId": 7}):
        parsed = parse_payment_metadata(raw)
        assert isinstance(parsed, UnknownMetadata)
    assert parse_payment_metadata({"projectId": "p9", "leadId": 7}).project_id == "p9"
    assert parse_payment_metadata({"projectId": "p9", "leadId": 7}).lead_id is None


def test_diy_price_unlocks_without_concierge_mode():
    patch = resolve_entitlement(15000, UnknownMetadata(raw={}), "OUTLINE_GENERATED")

    assert patch.unlocked is True
    assert patch.locked is True
    assert patch.mode == MODE_DIY
    assert patch.status == "RESEARCH_IN_PROGRESS"
    assert patch.tier_id == "DIY_PAPER"


def test_agency_price_switches_to_concierge():
    patch = resolve_entitlement(120_000, TierPurchaseMetadata(kind="tier_purchase", tier="AGENCY_CODE_GO"), None)

    assert patch.mode == MODE_CONCIERGE
    assert patch.tier_id == "AGENCY_CODE_GO"


def test_unmatched_amount_still_unlocks_generically():
    """Off-catalog amounts (custom admin links) unlock but leave the mode alone."""

    patch = resolve_entitlement(47_500, UnknownMetadata(raw={}), "OUTLINE_GENERATED")

    assert patch.unlocked is True
    assert patch.mode is None
    assert patch.tier_id is None


def test_addon_never_touches_unlock_flags():
    patch = resolve_entitlement(
        20_000, ServiceAddOnMetadata(kind="service_addon", serviceId="ADDON_CODE_REVIEW"), "OUTLINE_GENERATED"
    )

    assert patch.is_empty
    assert patch.service_id == "ADDON_CODE_REVIEW"


def test_status_only_moves_forward():
    assert advance_status("OUTLINE_GENERATED", "RESEARCH_IN_PROGRESS") == "RESEARCH_IN_PROGRESS"
    assert advance_status("WRITING_IN_PROGRESS", "RESEARCH_IN_PROGRESS") == "WRITING_IN_PROGRESS"
    assert advance_status(None, "RESEARCH_IN_PROGRESS") == "RESEARCH_IN_PROGRESS"
    assert advance_status("SOMETHING_NEW", "RESEARCH_IN_PROGRESS") == "RESEARCH_IN_PROGRESS"


def test_tier_lookup_by_price():
    assert tier_by_price(20_000).id == "DIY_SOFTWARE"
    assert tier_by_price(1) is None


def test_addon_purpose_wins_over_missing_metadata():
    """An add-on priced like a tier still grants no unlock when the gateway echoes no metadata."""

    patch = resolve_entitlement(20_000, UnknownMetadata(raw={}), "OUTLINE_GENERATED", purpose="service_addon")

    assert patch.is_empty
    assert patch.tier_id is None


def test_unlock_purpose_ignores_addon_shaped_metadata():
    metadata = ServiceAddOnMetadata(kind="service_addon", serviceId="ADDON_RUSH_DELIVERY")

    patch = resolve_entitlement(15_000, metadata, "OUTLINE_GENERATED", purpose="project_unlock")

    assert patch.unlocked is True
    assert patch.tier_id == "DIY_PAPER"
