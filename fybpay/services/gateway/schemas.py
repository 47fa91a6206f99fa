"""Structured results returned by the Paystack client and inbound webhook shapes."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class InitializeResult(BaseModel):
    """Outcome of `/transaction/initialize`."""

    success: bool
    authorization_url: str | None = None
    access_code: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class VerificationResult(BaseModel):
    """Outcome of `/transaction/verify/{reference}`.

    `success` only reports that the gateway answered and recognized the
    reference; the charge itself succeeded only when `status == "success"`.
    """

    success: bool
    status: str | None = None
    amount_minor: int | None = None
    currency: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    raw: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None

    @property
    def paid(self) -> bool:
        return self.success and self.status == "success"


class WebhookEnvelope(BaseModel):
    """Outer shape every Paystack event shares."""

    model_config = ConfigDict(extra="ignore")

    event: str = Field(min_length=1)
    data: dict[str, Any]


class WebhookCustomer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str


class ChargeEventData(BaseModel):
    """`data` block of `charge.*` events; only `reference` is ever trusted."""

    model_config = ConfigDict(extra="ignore")

    reference: str = Field(min_length=1)
    amount: int
    currency: str
    status: str
    metadata: dict[str, Any] | str | None = None
    customer: WebhookCustomer | None = None
