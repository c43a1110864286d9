from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app
from tests.backend.helpers import TEST_ENCRYPTION_KEY, TEST_WEBHOOK_SECRET


@pytest.fixture()
def base_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("APP_ENV", "development")
    monkeypatch.setenv("CREDENTIAL_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    monkeypatch.setenv("WHATSAPP_WEBHOOK_SECRET", "")
    monkeypatch.setenv("WHATSAPP_VERIFY_TOKEN", "verify-me")
    monkeypatch.setenv("WEBHOOK_MAX_RETRIES", "3")
    monkeypatch.setenv("WEBHOOK_RETRY_BASE_SECONDS", "60")
    return monkeypatch


@pytest.fixture()
def client(base_env: pytest.MonkeyPatch) -> TestClient:
    return TestClient(create_app())


@pytest.fixture()
def signed_client(base_env: pytest.MonkeyPatch) -> TestClient:
    base_env.setenv("WHATSAPP_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    return TestClient(create_app())
