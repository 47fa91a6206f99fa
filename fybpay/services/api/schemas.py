"""API request/response schemas (camelCase on the wire)."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InitializePaymentRequest(CamelModel):
    project_id: str = Field(min_length=1)
    tier_id: str | None = None


class InitializePaymentResponse(CamelModel):
    url: str
    reference: str


class ServicePurchaseRequest(CamelModel):
    service_id: str = Field(min_length=1)
    project_id: str = Field(min_length=1)


class CheckoutResponse(CamelModel):
    success: bool = True
    authorization_url: str
    reference: str
    email_used: str | None = None


class PaymentLinkRequest(CamelModel):
    amount: int = Field(gt=0)
    tier: str = Field(min_length=1, max_length=64)


class VerifyPaymentRequest(CamelModel):
    # Paystack references only ever contain these characters.
    reference: str = Field(min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_.=\-]+$")


class VerifyPaymentResponse(CamelModel):
    success: bool
    project_id: str | None = None
    message: str | None = None
    error: str | None = None


class BillingDetailsResponse(CamelModel):
    total_paid: int
    current_track: str
    is_agency_mode: bool


class PurchasedServicesResponse(CamelModel):
    services: list[str]


class PaymentHistoryItem(CamelModel):
    reference: str
    amount: int
    currency: str
    status: str
    purpose: str
    project_id: str | None
    created_at: datetime | None


class ClaimProjectResponse(CamelModel):
    success: bool = True
    project_id: str
    user_id: str
