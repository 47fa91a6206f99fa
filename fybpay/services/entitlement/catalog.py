"""Product catalog price points (NGN, major units)."""

from dataclasses import dataclass


MODE_DIY = "DIY"
MODE_CONCIERGE = "CONCIERGE"

TRACK_PAPER = "PAPER"
TRACK_SOFTWARE = "SOFTWARE"


@dataclass(frozen=True)
class Tier:
    id: str
    price: int

    @property
    def is_agency(self) -> bool:
        return self.id.startswith("AGENCY")

    @property
    def mode(self) -> str:
        return MODE_CONCIERGE if self.is_agency else MODE_DIY


@dataclass(frozen=True)
class AddOn:
    id: str
    label: str
    price: int


SAAS_TIERS: tuple[Tier, ...] = (
    Tier("DIY_PAPER", 15_000),
    Tier("DIY_SOFTWARE", 20_000),
)

AGENCY_TIERS: tuple[Tier, ...] = (
    Tier("AGENCY_PAPER_EXPRESS", 60_000),
    Tier("AGENCY_PAPER_DEFENSE", 80_000),
    Tier("AGENCY_PAPER_PREMIUM", 100_000),
    Tier("AGENCY_CODE_GO", 120_000),
    Tier("AGENCY_DEFENSE_READY", 200_000),
    Tier("AGENCY_SOFT_LIFE", 320_000),
)

ADD_ONS: tuple[AddOn, ...] = (
    AddOn("ADDON_DEFENSE_SPEECH", "Defense Speech Writing", 25_000),
    AddOn("ADDON_CODE_REVIEW", "Code Review & Debug", 20_000),
    AddOn("ADDON_CHAPTER_EDIT", "Chapter Editing", 10_000),
    AddOn("ADDON_RUSH_DELIVERY", "Rush Delivery", 15_000),
    AddOn("ADDON_DEEP_RESEARCH", "AI Deep Research", 5_000),
)

DEFAULT_UNLOCK_TIER = SAAS_TIERS[0]
SOFTWARE_TRACK_THRESHOLD = SAAS_TIERS[1].price


def tier_by_price(price: int) -> Tier | None:
    """SaaS tiers win over agency tiers on equal price."""

    for tier in SAAS_TIERS + AGENCY_TIERS:
        if tier.price == price:
            return tier
    return None


def tier_by_id(tier_id: str) -> Tier | None:
    for tier in SAAS_TIERS + AGENCY_TIERS:
        if tier.id == tier_id:
            return tier
    return None


def addon_by_id(addon_id: str) -> AddOn | None:
    for addon in ADD_ONS:
        if addon.id == addon_id:
            return addon
    return None
