"""Paystack integration: the only code that talks to the payment gateway.

Every call reports failures as structured results so the reconciliation engine
can always land a deterministic ledger transition.
"""

import hashlib
import hmac
import json
from time import perf_counter
from typing import Any
from urllib.parse import quote

import httpx

from fybpay.common.logging import logger
from fybpay.common.metrics import gateway_request_seconds
from fybpay.services.gateway.schemas import InitializeResult, VerificationResult


SIGNATURE_HEADER = "x-paystack-signature"


def to_minor_units(amount: int) -> int:
    """Naira -> kobo."""

    return amount * 100


def parse_metadata(value: Any) -> dict[str, Any]:
    """Normalize metadata echoed by Paystack (object, JSON string, or empty)."""

    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


class PaystackClient:
    """Thin synchronous Paystack client built on a shared `httpx.Client`."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str | None = None,
        base_url: str = "https://api.paystack.co",
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
        service_name: str = "fybpay",
    ) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret or secret_key
        self.timeout = timeout
        self.service_name = service_name
        self._http = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {secret_key}"},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def _observe(self, operation: str, result: str, started: float) -> None:
        gateway_request_seconds.labels(
            service=self.service_name,
            operation=operation,
            result=result,
        ).observe(max(0.0, perf_counter() - started))

    def initialize_transaction(
        self,
        email: str,
        amount: int,
        reference: str,
        callback_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> InitializeResult:
        """Create a hosted-checkout transaction and return its authorization URL.

        `amount` is in Naira and must be a positive integer; Paystack expects kobo.
        """

        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError(f"amount must be a positive integer, got {amount!r}")

        payload: dict[str, Any] = {
            "email": email,
            "amount": to_minor_units(amount),
            "reference": reference,
        }
        if callback_url:
            payload["callback_url"] = callback_url
        if metadata:
            payload["metadata"] = metadata

        started = perf_counter()
        try:
            resp = self._http.post("/transaction/initialize", json=payload)
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._observe("initialize", "error", started)
            logger.error("gateway_initialize_failed reference=%s error=%s", reference, exc)
            return InitializeResult(success=False, error=type(exc).__name__)

        if not isinstance(body, dict):
            self._observe("initialize", "rejected", started)
            return InitializeResult(success=False, error="malformed_response")

        data = body.get("data")
        if resp.status_code >= 400 or not body.get("status") or not isinstance(data, dict):
            self._observe("initialize", "rejected", started)
            logger.error(
                "gateway_initialize_rejected reference=%s http_status=%s message=%s",
                reference,
                resp.status_code,
                body.get("message"),
            )
            return InitializeResult(success=False, raw=body, error="rejected")

        self._observe("initialize", "ok", started)
        return InitializeResult(
            success=True,
            authorization_url=data.get("authorization_url"),
            access_code=data.get("access_code"),
            raw=body,
        )

    def verify_transaction(self, reference: str, timeout: float | None = None) -> VerificationResult:
        """Read the authoritative transaction state from Paystack.

        Read-only and safe to repeat. Never raises for gateway or network
        problems; those come back as `success=False`.
        """

        started = perf_counter()
        try:
            resp = self._http.get(
                f"/transaction/verify/{quote(reference, safe='')}",
                timeout=timeout if timeout is not None else self.timeout,
            )
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._observe("verify", "error", started)
            logger.error("gateway_verify_failed reference=%s error=%s", reference, exc)
            return VerificationResult(success=False, error=type(exc).__name__)

        if not isinstance(body, dict):
            self._observe("verify", "rejected", started)
            return VerificationResult(success=False, error="malformed_response")

        data = body.get("data")
        if resp.status_code >= 400 or not body.get("status") or not isinstance(data, dict):
            self._observe("verify", "rejected", started)
            logger.warning(
                "gateway_verify_rejected reference=%s http_status=%s message=%s",
                reference,
                resp.status_code,
                body.get("message"),
            )
            return VerificationResult(success=False, raw=body, error="rejected")

        amount = data.get("amount")
        self._observe("verify", "ok", started)
        return VerificationResult(
            success=True,
            status=data.get("status"),
            amount_minor=amount if isinstance(amount, int) and not isinstance(amount, bool) else None,
            currency=data.get("currency"),
            metadata=parse_metadata(data.get("metadata")),
            raw=body,
        )

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None) -> bool:
        """HMAC-SHA512 over the exact raw request bytes, constant-time compared."""

        if not signature or not self.webhook_secret:
            return False
        digest = hmac.new(self.webhook_secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(digest.encode("ascii"), signature.strip().lower().encode("utf-8", "replace"))
