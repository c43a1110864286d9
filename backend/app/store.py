from __future__ import annotations

from contextlib import contextmanager
from copy import copy
from datetime import datetime, timedelta
from threading import RLock
from typing import TYPE_CHECKING, Any, Iterator, Optional
from uuid import uuid4

from backend.app.models import (
    AuditLogRecord,
    ContactRecord,
    ErrorRecord,
    MessageDirection,
    MessageRecord,
    MessageStatus,
    MessagingLimit,
    PhoneNumberRecord,
    TemplateRecord,
    TemplateStatus,
    WebhookEventType,
    WebhookRecord,
    WebhookRecordState,
    utc_now,
)
from backend.app.services.workflow import can_transition

if TYPE_CHECKING:
    from backend.app.persistence import SqlitePersistence

DAILY_LIMIT_WINDOW = timedelta(hours=24)

STATE_ATTRS = (
    "webhook_records",
    "messages",
    "phones",
    "contacts",
    "templates",
    "error_records",
    "audit_logs",
    "_message_ids_by_provider_id",
)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


def digits_only(value: Optional[str]) -> str:
    if not value:
        return ""
    return "".join(char for char in value if char.isdigit())


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class InMemoryStore:
    def __init__(self, persistence: Optional["SqlitePersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.webhook_records: dict[str, WebhookRecord] = {}
        self.messages: dict[str, MessageRecord] = {}
        self.phones: dict[str, PhoneNumberRecord] = {}
        self.contacts: dict[str, ContactRecord] = {}
        self.templates: dict[str, TemplateRecord] = {}
        self.error_records: list[ErrorRecord] = []
        self.audit_logs: list[AuditLogRecord] = []
        self._message_ids_by_provider_id: dict[str, str] = {}
        self._inflight_webhooks: set[str] = set()

        if self.persistence:
            snapshot = self.persistence.load_snapshot()
            if snapshot:
                self._hydrate_from_snapshot(snapshot)
            for record in self.persistence.list_webhook_records():
                current = self.webhook_records.get(record.id)
                if not current or current.version < record.version:
                    self.webhook_records[record.id] = record
            if not self.error_records:
                self.error_records = self.persistence.list_error_records()

    @contextmanager
    def _atomic(self) -> Iterator[None]:
        """Hold the lock for one write and undo its in-memory changes if persisting fails."""
        with self._lock:
            saved = {name: copy(getattr(self, name)) for name in STATE_ATTRS}
            try:
                yield
            except Exception:
                for name, value in saved.items():
                    setattr(self, name, value)
                raise

    # Webhook records

    def create_webhook_record(
        self,
        *,
        business_account_id: str,
        event_type: WebhookEventType,
        field: str,
        payload: dict[str, Any],
        event_id: Optional[str] = None,
        max_retries: int = 3,
        source_ip: str = "unknown",
        signature: Optional[str] = None,
    ) -> WebhookRecord:
        with self._atomic():
            now = utc_now()
            record = WebhookRecord(
                id=new_id("whk"),
                business_account_id=business_account_id,
                event_type=event_type,
                field=field,
                event_id=event_id,
                payload=payload,
                processed=False,
                retry_count=0,
                max_retries=max_retries,
                source_ip=source_ip,
                signature=signature,
                received_at=now,
                created_at=now,
                updated_at=now,
            )
            self.webhook_records[record.id] = record
            self._persist_webhook_record(record)
            self._persist_state()
            return record

    def get_webhook_record(self, record_id: str) -> WebhookRecord:
        record = self.webhook_records.get(record_id)
        if not record:
            raise StoreNotFoundError(f"webhook record not found: {record_id}")
        return record

    def update_webhook_record(
        self,
        record_id: str,
        *,
        expected_version: int,
        update: dict[str, Any],
    ) -> WebhookRecord:
        with self._atomic():
            current = self.get_webhook_record(record_id)
            if current.version != expected_version:
                raise StoreConflictError(
                    f"webhook record {record_id} changed: expected version "
                    f"{expected_version}, found {current.version}"
                )
            updated = current.model_copy(
                update={**update, "version": current.version + 1, "updated_at": utc_now()}
            )
            self.webhook_records[record_id] = updated
            self._persist_webhook_record(updated)
            self._persist_state()
            return updated

    def claim_webhook(self, record_id: str) -> bool:
        with self._lock:
            if record_id in self._inflight_webhooks:
                return False
            self._inflight_webhooks.add(record_id)
            return True

    def release_webhook(self, record_id: str) -> None:
        with self._lock:
            self._inflight_webhooks.discard(record_id)

    def list_webhook_records(
        self,
        state: WebhookRecordState = WebhookRecordState.all,
        limit: int = 100,
    ) -> list[WebhookRecord]:
        safe_limit = max(1, min(limit, 500))
        with self._lock:
            records = sorted(
                self.webhook_records.values(),
                key=lambda item: item.received_at,
                reverse=True,
            )
        if state == WebhookRecordState.processed:
            records = [record for record in records if record.processed]
        elif state == WebhookRecordState.exhausted:
            records = [record for record in records if record.exhausted]
        elif state == WebhookRecordState.unprocessed:
            records = [
                record for record in records if not record.processed and not record.exhausted
            ]
        return records[:safe_limit]

    def list_due_webhook_records(
        self,
        now: Optional[datetime] = None,
        *,
        stale_after: timedelta = timedelta(minutes=5),
    ) -> list[WebhookRecord]:
        """Records whose next attempt is due.

        Includes records that never got a first attempt (no retry scheduled)
        once they are older than ``stale_after``, e.g. after a restart between
        the acknowledgment and the background dispatch.
        """
        moment = now or utc_now()
        with self._lock:
            records = sorted(self.webhook_records.values(), key=lambda item: item.received_at)
        return [
            record
            for record in records
            if not record.processed
            and not record.exhausted
            and (
                record.next_retry_at <= moment
                if record.next_retry_at is not None
                else record.received_at + stale_after <= moment
            )
        ]

    # Messages

    def get_message(self, message_id: str) -> MessageRecord:
        message = self.messages.get(message_id)
        if not message:
            raise StoreNotFoundError(f"message not found: {message_id}")
        return message

    def find_message_by_provider_id(self, provider_message_id: str) -> Optional[MessageRecord]:
        with self._lock:
            message_id = self._message_ids_by_provider_id.get(provider_message_id)
            return self.messages.get(message_id) if message_id else None

    def list_messages(self, direction: Optional[MessageDirection] = None) -> list[MessageRecord]:
        with self._lock:
            items = list(self.messages.values())
        if direction:
            items = [item for item in items if item.direction == direction]
        return sorted(items, key=lambda item: item.created_at)

    def record_inbound_message(self, message: MessageRecord) -> tuple[MessageRecord, bool]:
        """Store an inbound message and bump contact/phone counters in one step.

        Returns the stored record and whether it was newly created. A provider
        message id that was already applied returns the existing record and
        leaves every counter untouched.
        """
        with self._atomic():
            if message.provider_message_id:
                existing = self.find_message_by_provider_id(message.provider_message_id)
                if existing:
                    return existing, False

            now = utc_now()
            contact = self.find_contact_by_phone(message.contact_phone)
            if contact:
                message = message.model_copy(update={"contact_id": contact.id})
                statistics = contact.statistics.model_copy(
                    update={
                        "total_messages": contact.statistics.total_messages + 1,
                        "last_message_at": now,
                    }
                )
                self.contacts[contact.id] = contact.model_copy(
                    update={"statistics": statistics, "updated_at": now}
                )

            phone = (
                self.find_phone_by_phone_number_id(message.phone_number_id)
                if message.phone_number_id
                else None
            )
            if phone:
                statistics = phone.statistics.model_copy(
                    update={
                        "total_messages_received": phone.statistics.total_messages_received + 1,
                        "last_activity_at": now,
                    }
                )
                self.phones[phone.id] = phone.model_copy(
                    update={"statistics": statistics, "updated_at": now}
                )

            self._add_message(message)
            self._persist_state()
            return message, True

    def record_outbound_message(
        self,
        message: MessageRecord,
        *,
        phone_id: str,
        is_template: bool = False,
    ) -> MessageRecord:
        """Store a sent message and bump the phone's usage counters together."""
        with self._atomic():
            phone = self.get_phone(phone_id)
            now = utc_now()
            limit = phone.messaging_limit
            if limit.reset_at <= now:
                limit = MessagingLimit(limit=limit.limit, used=0, reset_at=now + DAILY_LIMIT_WINDOW)
            limit = limit.model_copy(update={"used": limit.used + 1})
            statistics = phone.statistics.model_copy(
                update={
                    "total_messages_sent": phone.statistics.total_messages_sent + 1,
                    "total_templates_sent": phone.statistics.total_templates_sent
                    + (1 if is_template else 0),
                    "last_activity_at": now,
                }
            )
            self.phones[phone.id] = phone.model_copy(
                update={"messaging_limit": limit, "statistics": statistics, "updated_at": now}
            )
            self._add_message(message)
            self._persist_state()
            return message

    def apply_message_status(
        self,
        provider_message_id: str,
        status: MessageStatus,
        *,
        failure_reason: Optional[str] = None,
    ) -> Optional[MessageRecord]:
        """Move a message forward to ``status``.

        Returns the updated record, the unchanged record when the update would
        regress or repeat the current status, or None when no local message has
        that provider id.
        """
        with self._lock:
            current = self.find_message_by_provider_id(provider_message_id)
            if not current:
                return None
            if not can_transition(current.status, status):
                return current
            update: dict[str, Any] = {"status": status}
            if status == MessageStatus.failed:
                update["failure_reason"] = failure_reason or "unknown provider failure"
            return self.update_message(current.id, expected_version=current.version, update=update)

    def update_message(
        self,
        message_id: str,
        *,
        expected_version: int,
        update: dict[str, Any],
    ) -> MessageRecord:
        with self._atomic():
            current = self.get_message(message_id)
            if current.version != expected_version:
                raise StoreConflictError(
                    f"message {message_id} changed: expected version "
                    f"{expected_version}, found {current.version}"
                )
            updated = current.model_copy(
                update={**update, "version": current.version + 1, "updated_at": utc_now()}
            )
            self.messages[message_id] = updated
            self._persist_state()
            return updated

    # Phones

    def create_phone(
        self,
        *,
        business_account_id: str,
        user_id: str,
        phone_number: str,
        phone_number_id: str,
        access_token_encrypted: str,
        display_name: Optional[str] = None,
        daily_limit: int = 80,
    ) -> PhoneNumberRecord:
        with self._atomic():
            if self.find_phone_by_phone_number_id(phone_number_id):
                raise StoreConflictError(f"phone number id already registered: {phone_number_id}")
            now = utc_now()
            phone = PhoneNumberRecord(
                id=new_id("phn"),
                business_account_id=business_account_id,
                user_id=user_id,
                phone_number=phone_number,
                phone_number_id=phone_number_id,
                display_name=display_name or phone_number,
                access_token_encrypted=access_token_encrypted,
                messaging_limit=MessagingLimit(
                    limit=daily_limit,
                    used=0,
                    reset_at=now + DAILY_LIMIT_WINDOW,
                ),
                created_at=now,
                updated_at=now,
            )
            self.phones[phone.id] = phone
            self._persist_state()
            return phone

    def get_phone(self, phone_id: str) -> PhoneNumberRecord:
        phone = self.phones.get(phone_id)
        if not phone:
            raise StoreNotFoundError(f"phone not found: {phone_id}")
        return phone

    def find_phone_by_phone_number_id(self, phone_number_id: str) -> Optional[PhoneNumberRecord]:
        with self._lock:
            for phone in self.phones.values():
                if phone.phone_number_id == phone_number_id:
                    return phone
        return None

    def list_phones(self, business_account_id: str) -> list[PhoneNumberRecord]:
        with self._lock:
            return [
                phone
                for phone in self.phones.values()
                if phone.business_account_id == business_account_id
            ]

    # Contacts

    def create_contact(
        self,
        *,
        user_id: str,
        phone_number: str,
        name: Optional[str] = None,
    ) -> ContactRecord:
        with self._atomic():
            now = utc_now()
            contact = ContactRecord(
                id=new_id("ctc"),
                user_id=user_id,
                phone_number=phone_number,
                name=name,
                created_at=now,
                updated_at=now,
            )
            self.contacts[contact.id] = contact
            self._persist_state()
            return contact

    def get_contact(self, contact_id: str) -> ContactRecord:
        contact = self.contacts.get(contact_id)
        if not contact:
            raise StoreNotFoundError(f"contact not found: {contact_id}")
        return contact

    def find_contact_by_phone(self, phone_number: Optional[str]) -> Optional[ContactRecord]:
        normalized = digits_only(phone_number)
        if not normalized:
            return None
        with self._lock:
            for contact in self.contacts.values():
                if digits_only(contact.phone_number) == normalized:
                    return contact
        return None

    # Templates

    def create_template(
        self,
        *,
        business_account_id: str,
        template_id: str,
        name: str,
        language: str = "en_US",
        status: TemplateStatus = TemplateStatus.pending,
    ) -> TemplateRecord:
        with self._atomic():
            now = utc_now()
            template = TemplateRecord(
                id=new_id("tpl"),
                business_account_id=business_account_id,
                template_id=template_id,
                name=name,
                language=language,
                status=status,
                created_at=now,
                updated_at=now,
            )
            self.templates[template.id] = template
            self._persist_state()
            return template

    def find_template_by_template_id(self, template_id: str) -> Optional[TemplateRecord]:
        with self._lock:
            for template in self.templates.values():
                if template.template_id == template_id:
                    return template
        return None

    def update_template_status(
        self, template_id: str, status: TemplateStatus
    ) -> Optional[TemplateRecord]:
        with self._atomic():
            template = self.find_template_by_template_id(template_id)
            if not template:
                return None
            updated = template.model_copy(update={"status": status, "updated_at": utc_now()})
            self.templates[template.id] = updated
            self._persist_state()
            return updated

    # Error and audit sinks

    def append_error_record(
        self,
        *,
        phone_number_id: Optional[str],
        error_code: str,
        error_message: str,
        context: dict[str, Any],
    ) -> ErrorRecord:
        with self._atomic():
            record = ErrorRecord(
                id=new_id("err"),
                phone_number_id=phone_number_id,
                error_code=error_code,
                error_message=error_message,
                context=context,
                timestamp=utc_now(),
                resolved=False,
            )
            self.error_records.append(record)
            self._persist_error_record(record)
            self._persist_state()
            return record

    def list_error_records(self, phone_number_id: Optional[str] = None) -> list[ErrorRecord]:
        with self._lock:
            records = list(self.error_records)
        if phone_number_id:
            records = [record for record in records if record.phone_number_id == phone_number_id]
        return records

    def append_audit_log(
        self,
        *,
        user_id: str,
        action: str,
        resource: str,
        resource_id: str,
        changes: Optional[dict[str, Any]] = None,
        ip_address: str = "unknown",
    ) -> AuditLogRecord:
        with self._atomic():
            record = AuditLogRecord(
                id=new_id("aud"),
                user_id=user_id,
                action=action,
                resource=resource,
                resource_id=resource_id,
                changes=changes or {},
                ip_address=ip_address,
                timestamp=utc_now(),
            )
            self.audit_logs.append(record)
            self._persist_state()
            return record

    def _add_message(self, message: MessageRecord) -> None:
        self.messages[message.id] = message
        if message.provider_message_id:
            self._message_ids_by_provider_id[message.provider_message_id] = message.id

    def _persist_webhook_record(self, record: WebhookRecord) -> None:
        if self.persistence:
            self.persistence.upsert_webhook_record(record)

    def _persist_error_record(self, record: ErrorRecord) -> None:
        if self.persistence:
            self.persistence.insert_error_record(record)

    def _persist_state(self) -> None:
        if not self.persistence:
            return
        with self._lock:
            self.persistence.save_snapshot(self._snapshot_data())

    def _snapshot_data(self) -> dict:
        return {
            "webhook_records": [
                record.model_dump(mode="json") for record in self.webhook_records.values()
            ],
            "messages": [record.model_dump(mode="json") for record in self.messages.values()],
            "phones": [record.model_dump(mode="json") for record in self.phones.values()],
            "contacts": [record.model_dump(mode="json") for record in self.contacts.values()],
            "templates": [record.model_dump(mode="json") for record in self.templates.values()],
            "error_records": [record.model_dump(mode="json") for record in self.error_records],
            "audit_logs": [record.model_dump(mode="json") for record in self.audit_logs],
        }

    def _hydrate_from_snapshot(self, snapshot: dict) -> None:
        self.webhook_records = {
            record["id"]: WebhookRecord.model_validate(record)
            for record in snapshot.get("webhook_records", [])
        }
        self.messages = {
            record["id"]: MessageRecord.model_validate(record)
            for record in snapshot.get("messages", [])
        }
        self._message_ids_by_provider_id = {
            message.provider_message_id: message.id
            for message in self.messages.values()
            if message.provider_message_id
        }
        self.phones = {
            record["id"]: PhoneNumberRecord.model_validate(record)
            for record in snapshot.get("phones", [])
        }
        self.contacts = {
            record["id"]: ContactRecord.model_validate(record)
            for record in snapshot.get("contacts", [])
        }
        self.templates = {
            record["id"]: TemplateRecord.model_validate(record)
            for record in snapshot.get("templates", [])
        }
        self.error_records = [
            ErrorRecord.model_validate(record) for record in snapshot.get("error_records", [])
        ]
        self.audit_logs = [
            AuditLogRecord.model_validate(record) for record in snapshot.get("audit_logs", [])
        ]
