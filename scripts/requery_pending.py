"""Re-verify stale PENDING payments with Paystack and settle them.

Run from cron; every reference goes through the same reconciliation engine as
webhooks, so a payment settled concurrently is simply reported as done.
"""

import argparse
import json
from datetime import timedelta

from fybpay.common.config import settings
from fybpay.common.db import SessionLocal
from fybpay.common.logging import configure_logging
from fybpay.common.startup import log_startup_config
from fybpay.services.gateway.client import PaystackClient
from fybpay.services.ledger.service import PaymentLedger
from fybpay.services.notification.service import NotificationService
from fybpay.services.reconciliation.service import ReconciliationEngine


def main() -> None:
    """CLI entrypoint for the pending-payment sweep."""

    parser = argparse.ArgumentParser(description="Reconcile PENDING payments older than N minutes.")
    parser.add_argument("--age-mins", type=int, default=15)
    parser.add_argument("--max", type=int, default=200)
    args = parser.parse_args()

    configure_logging()
    log_startup_config(settings, "pending-sweep")
    gateway = PaystackClient(
        secret_key=settings.paystack_secret_key,
        webhook_secret=settings.webhook_secret,
        base_url=settings.paystack_base_url,
        timeout=settings.gateway_timeout_seconds,
        service_name=settings.service_name,
    )
    notifier = NotificationService(
        resend_api_key=settings.resend_api_key,
        from_email=settings.receipt_from_email,
        discord_webhook_url=settings.discord_webhook_url,
        resend_base_url=settings.resend_base_url,
        service_name=settings.service_name,
    )
    engine = ReconciliationEngine(
        SessionLocal,
        gateway,
        notifier,
        ledger=PaymentLedger(processing_stale_seconds=settings.processing_stale_seconds),
        timeout_seconds=settings.reconcile_timeout_seconds,
        service_name=settings.service_name,
    )
    try:
        counts = engine.sweep_pending(timedelta(minutes=args.age_mins), limit=args.max)
    finally:
        gateway.close()
        notifier.close()
    print(json.dumps(counts, indent=2))


if __name__ == "__main__":
    main()
