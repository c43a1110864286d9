from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import (
    ErrorContext,
    ErrorRecord,
    WebhookEventType,
    WebhookRecord,
)


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class SqlitePersistence:
    """
    SQLAlchemy Core mirror of the store. Works with SQLite and PostgreSQL URLs.

    Webhook records are upserted and error records appended to their own tables,
    everything else travels in the ``state_snapshots`` row.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.state_snapshots = Table(
            "state_snapshots",
            self.metadata,
            Column("id", String(50), primary_key=True),
            Column("payload_json", Text, nullable=False),
            Column("updated_at", DateTime, nullable=False),
        )
        self.webhook_records = Table(
            "webhook_records",
            self.metadata,
            Column("id", String(255), primary_key=True),
            Column("business_account_id", String(255), nullable=False),
            Column("event_type", String(50), nullable=False),
            Column("field", String(120), nullable=False),
            Column("event_id", String(255), nullable=True),
            Column("payload_json", Text, nullable=False),
            Column("processed", Boolean, nullable=False),
            Column("retry_count", Integer, nullable=False),
            Column("max_retries", Integer, nullable=False),
            Column("next_retry_at", DateTime, nullable=True),
            Column("processing_error", Text, nullable=True),
            Column("source_ip", String(120), nullable=False),
            Column("signature", String(255), nullable=True),
            Column("version", Integer, nullable=False),
            Column("received_at", DateTime, nullable=False),
            Column("processed_at", DateTime, nullable=True),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
        )
        self.error_records = Table(
            "error_records",
            self.metadata,
            Column("id", String(255), primary_key=True),
            Column("phone_number_id", String(255), nullable=True),
            Column("error_code", String(120), nullable=False),
            Column("error_message", Text, nullable=False),
            Column("context_json", Text, nullable=False),
            Column("timestamp", DateTime, nullable=False),
            Column("resolved", Boolean, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def save_snapshot(self, payload: dict) -> None:
        with self._lock:
            serialized = json.dumps(payload)
            now = datetime.utcnow()
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.state_snapshots.c.id).where(self.state_snapshots.c.id == "default")
                ).first()
                if existing:
                    conn.execute(
                        self.state_snapshots.update()
                        .where(self.state_snapshots.c.id == "default")
                        .values(payload_json=serialized, updated_at=now)
                    )
                else:
                    conn.execute(
                        self.state_snapshots.insert().values(
                            id="default",
                            payload_json=serialized,
                            updated_at=now,
                        )
                    )

    def load_snapshot(self) -> Optional[dict]:
        with self._lock:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.state_snapshots.c.payload_json).where(
                        self.state_snapshots.c.id == "default"
                    )
                ).first()
            if not row:
                return None
            return json.loads(row[0])

    def upsert_webhook_record(self, record: WebhookRecord) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.webhook_records.c.id).where(self.webhook_records.c.id == record.id)
                ).first()
                payload = {
                    "business_account_id": record.business_account_id,
                    "event_type": record.event_type.value,
                    "field": record.field,
                    "event_id": record.event_id,
                    "payload_json": json.dumps(record.payload),
                    "processed": record.processed,
                    "retry_count": record.retry_count,
                    "max_retries": record.max_retries,
                    "next_retry_at": record.next_retry_at,
                    "processing_error": record.processing_error,
                    "source_ip": record.source_ip,
                    "signature": record.signature,
                    "version": record.version,
                    "received_at": record.received_at,
                    "processed_at": record.processed_at,
                    "created_at": record.created_at,
                    "updated_at": record.updated_at,
                }
                if existing:
                    conn.execute(
                        self.webhook_records.update()
                        .where(self.webhook_records.c.id == record.id)
                        .values(**payload)
                    )
                else:
                    conn.execute(self.webhook_records.insert().values(id=record.id, **payload))

    def list_webhook_records(self) -> list[WebhookRecord]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(self.webhook_records).order_by(self.webhook_records.c.received_at)
                ).all()
        output: list[WebhookRecord] = []
        for row in rows:
            output.append(
                WebhookRecord(
                    id=row.id,
                    business_account_id=row.business_account_id,
                    event_type=WebhookEventType(row.event_type),
                    field=row.field,
                    event_id=row.event_id,
                    payload=json.loads(row.payload_json),
                    processed=bool(row.processed),
                    retry_count=row.retry_count,
                    max_retries=row.max_retries,
                    next_retry_at=row.next_retry_at,
                    processing_error=row.processing_error,
                    source_ip=row.source_ip,
                    signature=row.signature,
                    version=row.version,
                    received_at=row.received_at,
                    processed_at=row.processed_at,
                    created_at=row.created_at or datetime.utcnow(),
                    updated_at=row.updated_at or datetime.utcnow(),
                )
            )
        return output

    def insert_error_record(self, record: ErrorRecord) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(
                    self.error_records.insert().values(
                        id=record.id,
                        phone_number_id=record.phone_number_id,
                        error_code=record.error_code,
                        error_message=record.error_message,
                        context_json=json.dumps(record.context.model_dump()),
                        timestamp=record.timestamp,
                        resolved=record.resolved,
                    )
                )

    def list_error_records(self, limit: int = 500) -> list[ErrorRecord]:
        safe_limit = max(1, min(limit, 5000))
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(self.error_records)
                    .order_by(self.error_records.c.timestamp)
                    .limit(safe_limit)
                ).all()
        return [
            ErrorRecord(
                id=row.id,
                phone_number_id=row.phone_number_id,
                error_code=row.error_code,
                error_message=row.error_message,
                context=ErrorContext.model_validate(json.loads(row.context_json)),
                timestamp=row.timestamp,
                resolved=bool(row.resolved),
            )
            for row in rows
        ]
