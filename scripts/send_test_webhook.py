"""Send a signed Paystack-style webhook to a local deployment."""

import argparse
import hashlib
import hmac
import json

import httpx


def main() -> None:
    """CLI entrypoint for webhook smoke tests."""

    parser = argparse.ArgumentParser(description="POST a signed charge event to the webhook endpoint.")
    parser.add_argument("--url", default="http://localhost:8000/api/pay/webhook")
    parser.add_argument("--secret", required=True, help="Paystack webhook secret used for signing")
    parser.add_argument("--reference", required=True)
    parser.add_argument("--event", default="charge.success")
    parser.add_argument("--amount-kobo", type=int, default=1500000)
    parser.add_argument("--tamper", action="store_true", help="Corrupt the signature to exercise rejection")
    args = parser.parse_args()

    body = json.dumps(
        {
            "event": args.event,
            "data": {
                "reference": args.reference,
                "amount": args.amount_kobo,
                "currency": "NGN",
                "status": "success" if args.event == "charge.success" else "failed",
                "customer": {"email": "smoke@example.com"},
            },
        }
    ).encode("utf-8")
    signature = hmac.new(args.secret.encode("utf-8"), body, hashlib.sha512).hexdigest()
    if args.tamper:
        signature = signature[:-2] + "00"

    resp = httpx.post(
        args.url,
        content=body,
        headers={"content-type": "application/json", "x-paystack-signature": signature},
        timeout=15.0,
    )
    print(resp.status_code, resp.text)


if __name__ == "__main__":
    main()
