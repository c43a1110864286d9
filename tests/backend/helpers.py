from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Optional

from backend.app.services.outbound import ProviderResponse

TEST_ENCRYPTION_KEY = "5f" * 32
TEST_WEBHOOK_SECRET = "meta-app-secret"


def sign(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def encode(payload: dict) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def webhook_body(field: str, value: dict, waba_id: str = "waba1") -> dict:
    return {"entry": [{"id": waba_id, "changes": [{"field": field, "value": value}]}]}


def inbound_value(
    message_id: str = "wamid.1",
    sender: str = "15551230000",
    text: str = "hi",
    phone_number_id: str = "phoneA",
) -> dict:
    return {
        "messages": [
            {
                "id": message_id,
                "from": sender,
                "timestamp": 1700000000,
                "text": {"body": text},
            }
        ],
        "metadata": {"phone_number_id": phone_number_id},
    }


def status_value(provider_message_id: str, status: str) -> dict:
    return {"statuses": [{"id": provider_message_id, "status": status, "timestamp": "1700000100"}]}


class FakeProviderClient:
    def __init__(
        self,
        response: Optional[ProviderResponse] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.response = response or ProviderResponse(200, {"messages": [{"id": "wamid.out1"}]})
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def send_message(
        self,
        *,
        phone_number_id: str,
        access_token: str,
        payload: dict[str, Any],
    ) -> ProviderResponse:
        self.calls.append(
            {
                "phone_number_id": phone_number_id,
                "access_token": access_token,
                "payload": payload,
            }
        )
        if self.error is not None:
            raise self.error
        return self.response
