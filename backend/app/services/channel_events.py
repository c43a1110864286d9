from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from backend.app.models import (
    SYSTEM_WEBHOOK_USER_ID,
    MessageDirection,
    MessageRecord,
    MessageStatus,
    MessageType,
    TemplateStatus,
    WebhookEventType,
    WebhookRecord,
    utc_now,
)
from backend.app.observability import MetricsRegistry
from backend.app.services.retries import mark_processed, schedule_retry
from backend.app.store import InMemoryStore, StoreConflictError, new_id

logger = logging.getLogger("whatsapp_gateway")

CONTENT_KEYS = ("text", "image", "document")
UNKNOWN_CONTENT = {"body": "Unknown"}


class TransientWebhookError(Exception):
    pass


def _entries(value: dict[str, Any], key: str) -> list[dict[str, Any]]:
    items = value.get(key)
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def _provider_timestamp(raw: object) -> datetime:
    try:
        seconds = int(float(str(raw)))
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return utc_now()


def _message_content(message: dict[str, Any]) -> tuple[MessageType, dict[str, Any]]:
    for key in CONTENT_KEYS:
        content = message.get(key)
        if isinstance(content, dict):
            return MessageType(key), content
    declared = message.get("type")
    try:
        message_type = MessageType(declared)
    except ValueError:
        message_type = MessageType.text
    return message_type, dict(UNKNOWN_CONTENT)


def _failure_reason(status: dict[str, Any]) -> Optional[str]:
    errors = status.get("errors")
    if not isinstance(errors, list) or not errors or not isinstance(errors[0], dict):
        return None
    first = errors[0]
    reason = first.get("title") or first.get("message")
    return str(reason) if reason else None


def process_message_event(store: InMemoryStore, record: WebhookRecord) -> str:
    value = record.payload
    metadata = value.get("metadata") if isinstance(value.get("metadata"), dict) else {}
    phone_number_id = metadata.get("phone_number_id")
    created = 0
    duplicates = 0
    for message in _entries(value, "messages"):
        message_type, content = _message_content(message)
        now = utc_now()
        inbound = MessageRecord(
            id=new_id("msg"),
            business_account_id=record.business_account_id,
            phone_number_id=str(phone_number_id) if phone_number_id else None,
            user_id=SYSTEM_WEBHOOK_USER_ID,
            contact_phone=str(message.get("from") or "") or None,
            provider_message_id=str(message["id"]) if message.get("id") else None,
            direction=MessageDirection.inbound,
            type=message_type,
            content=content,
            status=MessageStatus.delivered,
            timestamp=_provider_timestamp(message.get("timestamp")),
            created_at=now,
            updated_at=now,
        )
        _, was_created = store.record_inbound_message(inbound)
        if was_created:
            created += 1
        else:
            duplicates += 1

    detail = f"messages_created={created} duplicates={duplicates}"
    # Delivery receipts arrive on the "messages" field alongside inbound messages.
    if _entries(value, "statuses"):
        detail = f"{detail} {process_status_event(store, record)}"
    return detail


def process_status_event(store: InMemoryStore, record: WebhookRecord) -> str:
    applied = 0
    missing = 0
    ignored = 0
    for status in _entries(record.payload, "statuses"):
        provider_message_id = status.get("id")
        try:
            incoming = MessageStatus(str(status.get("status", "")).lower())
        except ValueError:
            logger.warning(
                "status_update_unknown_value webhook_id=%s status=%s",
                record.id,
                status.get("status"),
            )
            ignored += 1
            continue
        if not provider_message_id:
            ignored += 1
            continue

        current = store.find_message_by_provider_id(str(provider_message_id))
        if current is None:
            # Status callbacks can beat the message write; those updates are dropped.
            logger.info(
                "status_update_unknown_message webhook_id=%s provider_message_id=%s",
                record.id,
                provider_message_id,
            )
            missing += 1
            continue
        try:
            updated = store.apply_message_status(
                str(provider_message_id),
                incoming,
                failure_reason=_failure_reason(status),
            )
        except StoreConflictError as exc:
            raise TransientWebhookError(str(exc)) from exc
        if updated is not None and updated.version != current.version:
            applied += 1
        else:
            logger.info(
                "status_update_not_applied provider_message_id=%s current=%s incoming=%s",
                provider_message_id,
                current.status.value,
                incoming.value,
            )
            ignored += 1
    return f"statuses_applied={applied} missing={missing} ignored={ignored}"


def process_template_status_event(store: InMemoryStore, record: WebhookRecord) -> str:
    value = record.payload
    template_id = value.get("message_template_id") or value.get("id")
    raw_status = value.get("event") or value.get("status")
    if not template_id or not raw_status:
        return "template_update_ignored"
    try:
        status = TemplateStatus(str(raw_status).upper())
    except ValueError:
        logger.warning(
            "template_status_unknown_value webhook_id=%s status=%s", record.id, raw_status
        )
        return "template_update_ignored"
    updated = store.update_template_status(str(template_id), status)
    if updated is None:
        logger.info("template_status_unknown_template template_id=%s", template_id)
        return "template_missing"
    return f"template_updated:{updated.id}:{status.value}"


PROCESSORS = {
    WebhookEventType.message: process_message_event,
    WebhookEventType.message_status: process_status_event,
    WebhookEventType.template_status: process_template_status_event,
}


def apply_webhook_event(store: InMemoryStore, record: WebhookRecord) -> str:
    processor = PROCESSORS.get(record.event_type)
    if processor is None:
        logger.info(
            "webhook_event_acknowledged webhook_id=%s event_type=%s field=%s",
            record.id,
            record.event_type.value,
            record.field,
        )
        return f"no_processor:{record.event_type.value}"
    return processor(store, record)


def process_webhook_record(
    store: InMemoryStore,
    record_id: str,
    *,
    retry_base_seconds: int = 60,
    metrics: Optional[MetricsRegistry] = None,
) -> str:
    """Run one processing attempt for a stored webhook record.

    A failure in a processor or in marking the record processed goes through
    the retry scheduler. If that write fails as well the error propagates and
    the record is left as it was, so the retry sweep picks it up again. Only
    one attempt per record runs at a time.
    """
    if not store.claim_webhook(record_id):
        logger.info("webhook_processing_in_flight webhook_id=%s", record_id)
        _incr(metrics, "webhook_concurrent_skip")
        return "skipped_in_flight"
    try:
        record = store.get_webhook_record(record_id)
        if record.processed:
            return "already_processed"
        if record.exhausted:
            return "exhausted"
        try:
            detail = apply_webhook_event(store, record)
            mark_processed(store, store.get_webhook_record(record_id))
        except Exception as exc:
            logger.warning(
                "webhook_processing_failed webhook_id=%s event_type=%s attempt=%s error=%s",
                record.id,
                record.event_type.value,
                record.retry_count + 1,
                exc,
            )
            updated = schedule_retry(
                store,
                store.get_webhook_record(record_id),
                str(exc) or type(exc).__name__,
                base_seconds=retry_base_seconds,
            )
            if updated.exhausted:
                logger.error(
                    "webhook_retries_exhausted webhook_id=%s retry_count=%s",
                    updated.id,
                    updated.retry_count,
                )
                _incr(metrics, "webhook_retry_exhausted")
                return "exhausted"
            _incr(metrics, "webhook_retry_scheduled")
            return "retry_scheduled"

        logger.info("webhook_processed webhook_id=%s detail=%s", record_id, detail)
        _incr(metrics, "webhook_processed")
        return "processed"
    finally:
        store.release_webhook(record_id)


def run_due_retries(
    store: InMemoryStore,
    *,
    retry_base_seconds: int = 60,
    metrics: Optional[MetricsRegistry] = None,
    now: Optional[datetime] = None,
) -> dict[str, int]:
    due = store.list_due_webhook_records(now)
    counts = {"due": len(due), "processed": 0, "rescheduled": 0, "exhausted": 0, "skipped": 0}
    for record in due:
        try:
            outcome = process_webhook_record(
                store,
                record.id,
                retry_base_seconds=retry_base_seconds,
                metrics=metrics,
            )
        except Exception:
            logger.exception("webhook_retry_sweep_failed webhook_id=%s", record.id)
            _incr(metrics, "webhook_dispatch_failed")
            outcome = "failed"
        if outcome == "processed":
            counts["processed"] += 1
        elif outcome == "retry_scheduled":
            counts["rescheduled"] += 1
        elif outcome == "exhausted":
            counts["exhausted"] += 1
        else:
            counts["skipped"] += 1
    return counts


def _incr(metrics: Optional[MetricsRegistry], name: str) -> None:
    if metrics is not None:
        metrics.incr(name)
