from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from backend.app.observability import MetricsRegistry
from backend.app.services.classifier import classify
from backend.app.services.webhooks import verify_signature
from backend.app.store import InMemoryStore

logger = logging.getLogger("whatsapp_gateway")


@dataclass
class IngestResult:
    status_code: int
    received: bool
    record_ids: list[str] = field(default_factory=list)


def parse_changes(raw_body: bytes) -> Optional[list[tuple[str, dict[str, Any]]]]:
    """Return (business_account_id, change) pairs, or None for a malformed body."""
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    entries = payload.get("entry")
    if not isinstance(entries, list):
        return None
    pairs: list[tuple[str, dict[str, Any]]] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        changes = entry.get("changes")
        if not isinstance(changes, list):
            continue
        for change in changes:
            if isinstance(change, dict) and isinstance(change.get("field"), str):
                pairs.append((str(entry.get("id") or "unknown"), change))
    return pairs


def _event_id(value: dict[str, Any]) -> Optional[str]:
    if value.get("id"):
        return str(value["id"])
    for key in ("messages", "statuses"):
        items = value.get(key)
        if isinstance(items, list) and items and isinstance(items[0], dict) and items[0].get("id"):
            return str(items[0]["id"])
    return None


def ingest_webhook(
    store: InMemoryStore,
    *,
    raw_body: bytes,
    signature_header: Optional[str],
    source_ip: str,
    secret: str,
    max_retries: int = 3,
    metrics: Optional[MetricsRegistry] = None,
) -> IngestResult:
    """Verify, split and persist one provider delivery.

    Nothing is written unless the signature checks out. Malformed but
    authentic bodies are acknowledged without records. Processing is left to
    the caller so the acknowledgment never waits on it.
    """
    if secret and not verify_signature(raw_body, secret, signature_header):
        logger.warning(
            "webhook_signature_rejected source_ip=%s has_signature=%s",
            source_ip,
            bool(signature_header),
        )
        _incr(metrics, "webhook_signature_rejected")
        return IngestResult(status_code=403, received=False)

    changes = parse_changes(raw_body)
    if changes is None:
        logger.warning("webhook_malformed_payload source_ip=%s bytes=%s", source_ip, len(raw_body))
        _incr(metrics, "webhook_malformed")
        return IngestResult(status_code=200, received=False)

    record_ids: list[str] = []
    try:
        for business_account_id, change in changes:
            field_name = change["field"]
            value = change.get("value") if isinstance(change.get("value"), dict) else {}
            record = store.create_webhook_record(
                business_account_id=business_account_id,
                event_type=classify(field_name),
                field=field_name,
                event_id=_event_id(value),
                payload=value,
                max_retries=max_retries,
                source_ip=source_ip,
                signature=signature_header,
            )
            record_ids.append(record.id)
    except Exception:
        logger.exception(
            "webhook_ingest_failed source_ip=%s persisted=%s", source_ip, len(record_ids)
        )
        _incr(metrics, "webhook_ingest_failed")
        return IngestResult(status_code=200, received=False, record_ids=record_ids)

    _incr(metrics, "webhook_records_created", len(record_ids))
    return IngestResult(status_code=200, received=True, record_ids=record_ids)


def _incr(metrics: Optional[MetricsRegistry], name: str, amount: int = 1) -> None:
    if metrics is not None and amount:
        metrics.incr(name, amount)
