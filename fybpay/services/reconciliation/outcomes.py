"""Explicit result type of one reconciliation call.

Callers branch on these values; nothing in the reconciliation path signals a
business outcome by raising.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Union

from fybpay.services.entitlement.service import EntitlementPatch


class FailureReason(str, Enum):
    GATEWAY_DECLINED = "gateway_declined"
    GATEWAY_UNREACHABLE = "gateway_unreachable"
    AMOUNT_MISMATCH = "amount_mismatch"
    CURRENCY_MISMATCH = "currency_mismatch"
    TARGET_UNAVAILABLE = "target_unavailable"
    INTERNAL_ERROR = "internal_error"

    @property
    def is_terminal(self) -> bool:
        """Whether the ledger row was moved to FAILED for this reason."""

        return self not in (FailureReason.TARGET_UNAVAILABLE, FailureReason.INTERNAL_ERROR)


@dataclass(frozen=True)
class NotFound:
    reference: str


@dataclass(frozen=True)
class AlreadyTerminal:
    """Historical result echoed for a replay; no side effects were applied."""

    reference: str
    status: str
    project_id: str | None

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCESS"


@dataclass(frozen=True)
class InProgress:
    reference: str


@dataclass(frozen=True)
class Failed:
    reference: str
    reason: FailureReason


@dataclass(frozen=True)
class Succeeded:
    reference: str
    project_id: str | None
    patch: EntitlementPatch


Outcome = Union[NotFound, AlreadyTerminal, InProgress, Failed, Succeeded]


def outcome_label(outcome: Outcome) -> str:
    """Low-cardinality label for metrics and logs."""

    if isinstance(outcome, Failed):
        return f"failed:{outcome.reason.value}"
    if isinstance(outcome, AlreadyTerminal):
        return f"already_{outcome.status.lower()}"
    return {
        NotFound: "not_found",
        InProgress: "in_progress",
        Succeeded: "succeeded",
    }[type(outcome)]
