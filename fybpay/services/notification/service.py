"""Best-effort payment notifications: receipt email and internal alerts.

Nothing here may raise into the caller; every delivery failure is logged and
counted.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from html import escape

import httpx

from fybpay.common.logging import logger
from fybpay.common.metrics import notification_failures_total


COLOR_SUCCESS = 15548997
COLOR_LINK_SENT = 3447003


@dataclass(frozen=True)
class PaymentReceipt:
    reference: str
    amount: int
    currency: str
    email: str | None
    name: str | None
    project_id: str | None
    project_topic: str | None
    paid_at: datetime


def _naira(amount: int) -> str:
    return f"₦{amount:,}"


class NotificationService:
    """Sends receipts through Resend and alerts through a Discord webhook."""

    def __init__(
        self,
        resend_api_key: str = "",
        from_email: str = "",
        discord_webhook_url: str = "",
        resend_base_url: str = "https://api.resend.com",
        transport: httpx.BaseTransport | None = None,
        timeout: float = 5.0,
        service_name: str = "fybpay",
    ) -> None:
        self.resend_api_key = resend_api_key
        self.from_email = from_email
        self.discord_webhook_url = discord_webhook_url
        self.resend_base_url = resend_base_url.rstrip("/")
        self.service_name = service_name
        self._http = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._http.close()

    def _failed(self, channel: str, exc: Exception) -> None:
        notification_failures_total.labels(service=self.service_name, channel=channel).inc()
        logger.error("notification_failed channel=%s error=%s", channel, exc)

    def send_receipt_email(self, receipt: PaymentReceipt) -> bool:
        if not self.resend_api_key:
            logger.warning("receipt email skipped: RESEND_API_KEY missing")
            return False
        if not receipt.email:
            logger.warning("receipt email skipped: no customer email reference=%s", receipt.reference)
            return False

        name = escape(receipt.name or "Valued Customer")
        topic = escape(receipt.project_topic or "Project Unlock")
        html = (
            f"<p>Hi {name},</p>"
            f"<p>We received your payment of <strong>{_naira(receipt.amount)}</strong> for {topic}.</p>"
            f"<p>Reference: {escape(receipt.reference)}<br>Date: {receipt.paid_at:%Y-%m-%d %H:%M} UTC</p>"
        )
        try:
            resp = self._http.post(
                f"{self.resend_base_url}/emails",
                headers={"Authorization": f"Bearer {self.resend_api_key}"},
                json={
                    "from": self.from_email,
                    "to": [receipt.email],
                    "subject": "Payment Receipt - J-Star Projects",
                    "html": html,
                },
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            self._failed("email", exc)
            return False
        logger.info("receipt email sent reference=%s", receipt.reference)
        return True

    def send_alert(self, title: str, description: str, fields: list[dict], color: int) -> bool:
        if not self.discord_webhook_url:
            logger.warning("alert skipped: DISCORD_WEBHOOK_URL not set")
            return False
        try:
            resp = self._http.post(
                self.discord_webhook_url,
                json={
                    "embeds": [
                        {
                            "title": title,
                            "description": description,
                            "color": color,
                            "fields": fields,
                            "footer": {"text": "JStar FYB Admin"},
                            "timestamp": datetime.now(timezone.utc).isoformat(),
                        }
                    ]
                },
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            self._failed("discord", exc)
            return False
        return True

    def payment_succeeded(self, receipt: PaymentReceipt) -> None:
        """Fan out receipt + alert for one committed SUCCESS transition."""

        self.send_receipt_email(receipt)
        self.send_alert(
            "Payment Received!",
            "Successful payment processed.",
            [
                {"name": "Reference", "value": receipt.reference, "inline": True},
                {"name": "Amount", "value": _naira(receipt.amount), "inline": True},
                {"name": "User", "value": receipt.email or "Unknown", "inline": True},
            ],
            COLOR_SUCCESS,
        )

    def payment_link_sent(self, target_id: str, amount: int, tier: str) -> None:
        self.send_alert(
            "Payment Link Sent",
            f"Payment link generated for #{target_id[:8]}",
            [
                {"name": "Amount", "value": _naira(amount), "inline": True},
                {"name": "Tier", "value": tier, "inline": True},
            ],
            COLOR_LINK_SENT,
        )
