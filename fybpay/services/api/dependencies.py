"""Request-scoped FastAPI dependencies: identity, admin key, client key."""

from fastapi import Header, HTTPException, Request

from fybpay.common.config import settings
from fybpay.services.checkout.service import CheckoutUser


def current_user(
    x_user_id: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
    x_user_name: str | None = Header(default=None),
) -> CheckoutUser:
    """Identity forwarded by the upstream auth layer."""

    if not x_user_id or not x_user_email:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return CheckoutUser(id=x_user_id, email=x_user_email, name=x_user_name)


def enforce_api_key(x_api_key: str | None = Header(default=None)) -> None:
    """Reject admin requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"
