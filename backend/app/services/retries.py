from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from backend.app.models import WebhookRecord
from backend.app.store import InMemoryStore

EXHAUSTED_PREFIX = "Max retries reached: "


def backoff_delay(retry_count: int, base_seconds: int = 60) -> timedelta:
    return timedelta(seconds=base_seconds * (2 ** retry_count))


def schedule_retry(
    store: InMemoryStore,
    record: WebhookRecord,
    error: str,
    *,
    base_seconds: int = 60,
    now: Optional[datetime] = None,
) -> WebhookRecord:
    """Record a failed processing attempt against ``record``.

    The retry count always increases. Below ``max_retries`` the next attempt
    is pushed out by ``base_seconds * 2**retry_count``; at the cap the record
    becomes terminal and keeps ``processed=False`` with no next attempt.
    """
    moment = now or datetime.utcnow()
    retry_count = record.retry_count + 1
    if retry_count < record.max_retries:
        update = {
            "retry_count": retry_count,
            "next_retry_at": moment + backoff_delay(retry_count, base_seconds),
            "processing_error": error,
            "processed": False,
        }
    else:
        update = {
            "retry_count": retry_count,
            "next_retry_at": None,
            "processing_error": f"{EXHAUSTED_PREFIX}{error}",
            "processed": False,
        }
    return store.update_webhook_record(record.id, expected_version=record.version, update=update)


def mark_processed(
    store: InMemoryStore,
    record: WebhookRecord,
    *,
    now: Optional[datetime] = None,
) -> WebhookRecord:
    return store.update_webhook_record(
        record.id,
        expected_version=record.version,
        update={
            "processed": True,
            "processing_error": None,
            "next_retry_at": None,
            "processed_at": now or datetime.utcnow(),
        },
    )
