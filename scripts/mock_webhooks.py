from __future__ import annotations

import argparse
import hashlib
import hmac
import json
import sys
import time
import urllib.error
import urllib.request


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            content = response.read().decode("utf-8")
            return response.status, content
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def message_change(index: int, phone_number_id: str) -> dict:
    sender = f"1555{index:07d}"
    return {
        "field": "messages",
        "value": {
            "messaging_product": "whatsapp",
            "metadata": {"phone_number_id": phone_number_id},
            "messages": [
                {
                    "id": f"wamid.mock.in.{index}",
                    "from": sender,
                    "timestamp": str(int(time.time())),
                    "type": "text",
                    "text": {"body": f"mock inbound message {index}"},
                }
            ],
        },
    }


def status_change(index: int, status: str) -> dict:
    return {
        "field": "message_status",
        "value": {
            "statuses": [
                {
                    "id": f"wamid.mock.out.{index}",
                    "status": status,
                    "timestamp": str(int(time.time())),
                }
            ]
        },
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Send mock Meta webhook deliveries to local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--kind", choices=["messages", "statuses"], default="messages")
    parser.add_argument("--status", default="delivered")
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--start-index", type=int, default=1)
    parser.add_argument("--waba-id", default="waba_mock")
    parser.add_argument("--phone-number-id", default="phone_mock")
    parser.add_argument("--secret", default="")
    args = parser.parse_args()

    endpoint = f"{args.base_url.rstrip('/')}/webhooks/whatsapp"
    for index in range(args.start_index, args.start_index + args.count):
        if args.kind == "messages":
            change = message_change(index, args.phone_number_id)
        else:
            change = status_change(index, args.status)
        payload = {
            "object": "whatsapp_business_account",
            "entry": [{"id": args.waba_id, "changes": [change]}],
        }
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        headers: dict[str, str] = {}
        if args.secret:
            headers["X-Hub-Signature-256"] = sign_payload(args.secret, body)
        status_code, response = post_json(endpoint, body, headers)
        print(f"{status_code} {args.kind}#{index} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
