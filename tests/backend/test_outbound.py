from __future__ import annotations

import io
import json
import socket
from urllib.error import HTTPError

import jwt
import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.models import ErrorCode, MessageDirection, MessageStatus, MessageType
from backend.app.services import outbound
from backend.app.services.outbound import (
    MetaGraphClient,
    ProviderResponse,
    ProviderTransportError,
    build_meta_payload,
)
from backend.app.services.vault import CredentialVault
from tests.backend.helpers import FakeProviderClient, status_value, webhook_body

ACCESS_TOKEN = "EAAG-live-token"


def _register_phone(client: TestClient, owner: str = "owner-1", vault: CredentialVault | None = None):
    store = client.app.state.store
    sealer = vault or client.app.state.vault
    return store.create_phone(
        business_account_id="waba1",
        user_id=owner,
        phone_number="+15550001111",
        phone_number_id="phoneA",
        access_token_encrypted=sealer.encrypt(ACCESS_TOKEN),
    )


def _send(client: TestClient, phone_id: str, **overrides):
    payload = {
        "phone_id": phone_id,
        "recipient_phone": "+1 555 123 0000",
        "message_type": "text",
        "content": "Order confirmed",
    }
    payload.update(overrides)
    return client.post("/whatsapp/send-message", json=payload)


def test_successful_send_records_message_and_counters(client: TestClient) -> None:
    provider = FakeProviderClient()
    client.app.state.provider_client = provider
    phone = _register_phone(client)

    response = _send(client, phone.id)

    assert response.status_code == 201
    body = response.json()
    assert body["provider_message_id"] == "wamid.out1"
    store = client.app.state.store
    assert store.error_records == []
    messages = store.list_messages(MessageDirection.outbound)
    assert len(messages) == 1
    message = messages[0]
    assert message.id == body["message_id"]
    assert message.status == MessageStatus.sent
    assert message.content == "Order confirmed"
    assert message.contact_phone == "15551230000"
    assert message.cost.total == pytest.approx(0.004)
    assert message.cost.currency == "USD"

    call = provider.calls[0]
    assert call["phone_number_id"] == "phoneA"
    assert call["access_token"] == ACCESS_TOKEN
    assert call["payload"]["to"] == "15551230000"
    assert call["payload"]["text"] == {"preview_url": False, "body": "Order confirmed"}

    updated_phone = store.get_phone(phone.id)
    assert updated_phone.statistics.total_messages_sent == 1
    assert updated_phone.statistics.total_templates_sent == 0
    assert updated_phone.messaging_limit.used == 1
    assert [entry.action for entry in store.audit_logs] == ["SEND_MESSAGE"]
    assert client.app.state.metrics.count("outbound_sent") == 1


def test_provider_rejection_records_error_and_no_message(client: TestClient) -> None:
    client.app.state.provider_client = FakeProviderClient(
        ProviderResponse(400, {"error": {"code": 131030, "message": "Recipient not in allowed list"}})
    )
    phone = _register_phone(client)

    response = _send(client, phone.id)

    assert response.status_code == 400
    assert response.json() == {
        "error": "EXTERNAL_API_ERROR",
        "details": "Recipient not in allowed list",
    }
    store = client.app.state.store
    assert store.messages == {}
    assert len(store.error_records) == 1
    error = store.error_records[0]
    assert error.error_code == "131030"
    assert error.phone_number_id == "phoneA"
    assert error.resolved is False
    assert error.context.operation == "SEND_MESSAGE"
    assert error.context.message_type == "text"
    assert store.get_phone(phone.id).statistics.total_messages_sent == 0


def test_success_without_message_id_is_treated_as_failure(client: TestClient) -> None:
    client.app.state.provider_client = FakeProviderClient(ProviderResponse(200, {"messages": []}))
    phone = _register_phone(client)

    response = _send(client, phone.id)

    assert response.status_code == 400
    store = client.app.state.store
    assert store.messages == {}
    assert [error.error_code for error in store.error_records] == ["MISSING_MESSAGE_ID"]


def test_transport_timeout_is_handled_like_rejection(client: TestClient) -> None:
    client.app.state.provider_client = FakeProviderClient(
        error=ProviderTransportError("provider request failed: timed out")
    )
    phone = _register_phone(client)

    response = _send(client, phone.id)

    assert response.status_code == 400
    assert response.json()["error"] == ErrorCode.external_api_error.value
    store = client.app.state.store
    assert store.messages == {}
    assert [error.error_code for error in store.error_records] == ["TRANSPORT_ERROR"]


def test_unknown_phone_is_not_found(client: TestClient) -> None:
    provider = FakeProviderClient()
    client.app.state.provider_client = provider

    response = _send(client, "phn_missing")

    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"
    assert provider.calls == []


def test_template_send_requires_template_name(client: TestClient) -> None:
    provider = FakeProviderClient()
    client.app.state.provider_client = provider
    phone = _register_phone(client)

    response = _send(client, phone.id, message_type="template", content={"components": []})

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_INPUT"
    assert provider.calls == []


def test_template_send_counts_templates(client: TestClient) -> None:
    provider = FakeProviderClient()
    client.app.state.provider_client = provider
    phone = _register_phone(client)

    response = _send(
        client,
        phone.id,
        message_type="template",
        content={"components": [{"type": "body", "parameters": [{"type": "text", "text": "42"}]}]},
        template_name="order_update",
    )

    assert response.status_code == 201
    template = provider.calls[0]["payload"]["template"]
    assert template["name"] == "order_update"
    assert template["language"] == {"code": "en_US"}
    assert template["components"][0]["type"] == "body"
    assert client.app.state.store.get_phone(phone.id).statistics.total_templates_sent == 1


def test_token_sealed_under_other_key_is_rejected(client: TestClient) -> None:
    provider = FakeProviderClient()
    client.app.state.provider_client = provider
    phone = _register_phone(client, vault=CredentialVault("a1" * 32))

    response = _send(client, phone.id)

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_INPUT"
    assert provider.calls == []
    assert client.app.state.store.error_records == []


def test_local_write_failure_leaves_reconciliation_record(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    client.app.state.provider_client = FakeProviderClient()
    phone = _register_phone(client)
    store = client.app.state.store

    def broken_write(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "record_outbound_message", broken_write)

    response = _send(client, phone.id)

    assert response.status_code == 500
    assert store.messages == {}
    assert len(store.error_records) == 1
    error = store.error_records[0]
    assert error.error_code == "RECONCILIATION_REQUIRED"
    assert error.context.provider_message_id == "wamid.out1"


def test_production_hides_error_details(base_env: pytest.MonkeyPatch) -> None:
    base_env.setenv("APP_ENV", "production")
    client = TestClient(create_app())
    client.app.state.provider_client = FakeProviderClient(
        ProviderResponse(401, {"error": {"code": 190, "message": "Invalid OAuth access token"}})
    )
    phone = _register_phone(client)

    response = _send(client, phone.id)

    assert response.status_code == 400
    assert response.json() == {"error": "EXTERNAL_API_ERROR"}


def test_caller_must_own_phone_when_auth_enabled(base_env: pytest.MonkeyPatch) -> None:
    base_env.setenv("AUTH_ENABLED", "true")
    base_env.setenv("JWT_SECRET", "test-secret")
    client = TestClient(create_app())
    provider = FakeProviderClient()
    client.app.state.provider_client = provider
    phone = _register_phone(client, owner="owner-1")

    def headers(subject: str, role: str) -> dict[str, str]:
        token = jwt.encode({"sub": subject, "roles": [role]}, "test-secret", algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}

    payload = {
        "phone_id": phone.id,
        "recipient_phone": "15551230000",
        "message_type": "text",
        "content": "hello",
    }
    stranger = client.post("/whatsapp/send-message", json=payload, headers=headers("someone", "user"))
    owner = client.post("/whatsapp/send-message", json=payload, headers=headers("owner-1", "user"))
    admin = client.post("/whatsapp/send-message", json=payload, headers=headers("ops", "admin"))
    anonymous = client.post("/whatsapp/send-message", json=payload)

    assert stranger.status_code == 403
    assert stranger.json()["error"] == "UNAUTHORIZED"
    assert owner.status_code == 201
    assert admin.status_code == 201
    assert anonymous.status_code == 401
    assert len(provider.calls) == 2


def test_sent_message_progresses_through_status_callbacks(client: TestClient) -> None:
    client.app.state.provider_client = FakeProviderClient()
    phone = _register_phone(client)
    _send(client, phone.id)

    for status in ("delivered", "read", "delivered"):
        client.post("/webhooks/whatsapp", json=webhook_body("message_status", status_value("wamid.out1", status)))

    assert client.app.state.store.find_message_by_provider_id("wamid.out1").status == MessageStatus.read


def test_build_meta_payload_shapes() -> None:
    text = build_meta_payload("+1 (555) 123-0000", MessageType.text, "hi")
    structured = build_meta_payload("15551230000", MessageType.interactive, {"type": "button"})
    template = build_meta_payload(
        "15551230000", MessageType.template, {"components": []}, "welcome", "pt_BR"
    )

    assert text == {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": "15551230000",
        "type": "text",
        "text": {"preview_url": False, "body": "hi"},
    }
    assert structured["type"] == "text"
    assert json.loads(structured["text"]["body"]) == {"type": "button"}
    assert template["type"] == "template"
    assert template["template"] == {
        "components": [],
        "name": "welcome",
        "language": {"code": "pt_BR"},
    }


class _FakeResponse:
    def __init__(self, status: int, body: bytes) -> None:
        self.status = status
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *exc_info) -> None:
        return None


def test_graph_client_posts_json_with_bearer_token(monkeypatch: pytest.MonkeyPatch) -> None:
    seen = {}

    def fake_urlopen(req, timeout):
        seen["url"] = req.full_url
        seen["auth"] = req.get_header("Authorization")
        seen["body"] = json.loads(req.data.decode("utf-8"))
        seen["timeout"] = timeout
        return _FakeResponse(200, b'{"messages":[{"id":"wamid.x"}]}')

    monkeypatch.setattr(outbound.request, "urlopen", fake_urlopen)
    client = MetaGraphClient(api_url="https://graph.facebook.com/v18.0/", timeout_seconds=12)

    response = client.send_message(phone_number_id="phoneA", access_token="tok", payload={"to": "1"})

    assert response.ok is True
    assert response.body == {"messages": [{"id": "wamid.x"}]}
    assert seen == {
        "url": "https://graph.facebook.com/v18.0/phoneA/messages",
        "auth": "Bearer tok",
        "body": {"to": "1"},
        "timeout": 12,
    }


def test_graph_client_returns_error_responses(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, timeout):
        raise HTTPError(
            req.full_url, 400, "Bad Request", {}, io.BytesIO(b'{"error":{"code":100}}')
        )

    monkeypatch.setattr(outbound.request, "urlopen", fake_urlopen)
    client = MetaGraphClient(api_url="https://graph.facebook.com/v18.0")

    response = client.send_message(phone_number_id="phoneA", access_token="tok", payload={})

    assert response.ok is False
    assert response.status_code == 400
    assert response.body == {"error": {"code": 100}}


def test_graph_client_wraps_timeouts(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, timeout):
        raise socket.timeout("timed out")

    monkeypatch.setattr(outbound.request, "urlopen", fake_urlopen)
    client = MetaGraphClient(api_url="https://graph.facebook.com/v18.0")

    with pytest.raises(ProviderTransportError):
        client.send_message(phone_number_id="phoneA", access_token="tok", payload={})


def test_invalid_send_payload_is_reported_as_invalid_input(client: TestClient) -> None:
    provider = FakeProviderClient()
    client.app.state.provider_client = provider
    phone = _register_phone(client)

    empty = _send(client, phone.id, content="   ")
    missing = client.post(
        "/whatsapp/send-message",
        json={"phone_id": phone.id, "message_type": "text", "content": "hi"},
    )

    assert empty.status_code == 400
    assert empty.json()["error"] == "INVALID_INPUT"
    assert "content" in empty.json()["details"]
    assert "input" not in empty.json()
    assert missing.status_code == 400
    assert "recipient_phone" in missing.json()["details"]
    assert provider.calls == []


def test_invalid_send_payload_hides_details_in_production(base_env: pytest.MonkeyPatch) -> None:
    base_env.setenv("APP_ENV", "production")
    client = TestClient(create_app())

    response = client.post(
        "/whatsapp/send-message",
        json={"phone_id": "phn_1", "recipient_phone": "15551230000", "message_type": "text", "content": ""},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "INVALID_INPUT"}


def test_validation_outside_whatsapp_routes_keeps_default_shape(client: TestClient) -> None:
    response = client.get("/webhooks/whatsapp/records", params={"state": "bogus"})

    assert response.status_code == 422
    assert "detail" in response.json()
