from __future__ import annotations

from backend.app.observability import MetricsRegistry, hash_identifier
from tests.backend.helpers import inbound_value, webhook_body


def test_metrics_endpoint_exposes_counters(client) -> None:
    health = client.get("/health")
    assert health.status_code == 200
    client.post("/webhooks/whatsapp", json=webhook_body("messages", inbound_value()))

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text
    assert "whatsapp_gateway_requests_total" in body
    assert "whatsapp_gateway_requests_5xx_total" in body
    assert 'whatsapp_gateway_events_total{event="webhook_records_created"} 1' in body
    assert 'whatsapp_gateway_events_total{event="webhook_processed"} 1' in body


def test_readiness_endpoint(client) -> None:
    response = client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"


def test_registry_counts_named_events() -> None:
    registry = MetricsRegistry()
    registry.incr("outbound_sent")
    registry.incr("outbound_sent", 2)
    registry.record(route="/health", status_code=503, latency_ms=4.0)

    assert registry.count("outbound_sent") == 3
    assert registry.count("never_seen") == 0
    assert registry.snapshot().requests_5xx == 1
    assert 'route="/health",status="503"' in registry.to_prometheus()


def test_hash_identifier_is_stable_and_short() -> None:
    assert hash_identifier("15551230000") == hash_identifier("15551230000")
    assert hash_identifier("15551230000") != hash_identifier("15551230001")
    assert len(hash_identifier("15551230000")) == 12
