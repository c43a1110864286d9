from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.utcnow()


SYSTEM_WEBHOOK_USER_ID = "webhook"


class Role(str, Enum):
    superadmin = "superadmin"
    admin = "admin"
    supervisor = "supervisor"
    user = "user"


class WebhookEventType(str, Enum):
    message = "message"
    message_status = "message_status"
    template_status = "template_status"
    account_alert = "account_alert"
    phone_quality_update = "phone_number_quality_update"
    unknown = "unknown"


class MessageDirection(str, Enum):
    inbound = "INBOUND"
    outbound = "OUTBOUND"


class MessageType(str, Enum):
    text = "text"
    image = "image"
    template = "template"
    interactive = "interactive"
    document = "document"
    video = "video"
    audio = "audio"


class MessageStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    delivered = "delivered"
    read = "read"
    failed = "failed"


class TemplateStatus(str, Enum):
    approved = "APPROVED"
    pending = "PENDING"
    rejected = "REJECTED"


class QualityRating(str, Enum):
    green = "GREEN"
    yellow = "YELLOW"
    red = "RED"


class ErrorCode(str, Enum):
    not_found = "NOT_FOUND"
    unauthorized = "UNAUTHORIZED"
    invalid_input = "INVALID_INPUT"
    already_exists = "ALREADY_EXISTS"
    external_api_error = "EXTERNAL_API_ERROR"
    reconciliation_required = "RECONCILIATION_REQUIRED"


class WebhookRecordState(str, Enum):
    unprocessed = "unprocessed"
    exhausted = "exhausted"
    processed = "processed"
    all = "all"


# Persisted records


class WebhookRecord(BaseModel):
    id: str
    business_account_id: str
    event_type: WebhookEventType
    field: str
    event_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    processed: bool = False
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=1)
    next_retry_at: Optional[datetime] = None
    processing_error: Optional[str] = None
    source_ip: str = "unknown"
    signature: Optional[str] = None
    version: int = 0
    received_at: datetime
    processed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def exhausted(self) -> bool:
        return not self.processed and self.retry_count >= self.max_retries


class MessageCost(BaseModel):
    currency: str
    unit_price: float
    total: float
    billing_category: str = "STANDARD"


class MessageRecord(BaseModel):
    id: str
    business_account_id: Optional[str] = None
    phone_number_id: Optional[str] = None
    user_id: str
    contact_id: Optional[str] = None
    contact_phone: Optional[str] = None
    provider_message_id: Optional[str] = None
    direction: MessageDirection
    type: MessageType
    content: Union[str, dict[str, Any]]
    status: MessageStatus
    failure_reason: Optional[str] = None
    template_name: Optional[str] = None
    cost: Optional[MessageCost] = None
    version: int = 0
    timestamp: datetime
    created_at: datetime
    updated_at: datetime


class MessagingLimit(BaseModel):
    limit: int = 80
    used: int = 0
    reset_at: datetime


class PhoneStatistics(BaseModel):
    total_messages_sent: int = 0
    total_messages_received: int = 0
    total_templates_sent: int = 0
    last_activity_at: Optional[datetime] = None


class PhoneNumberRecord(BaseModel):
    id: str
    business_account_id: str
    user_id: str
    phone_number: str
    phone_number_id: str
    display_name: str
    quality_rating: QualityRating = QualityRating.yellow
    is_active: bool = True
    access_token_encrypted: str
    messaging_limit: MessagingLimit
    statistics: PhoneStatistics = Field(default_factory=PhoneStatistics)
    created_at: datetime
    updated_at: datetime


class ContactStatistics(BaseModel):
    total_messages: int = 0
    last_message_at: Optional[datetime] = None


class ContactRecord(BaseModel):
    id: str
    user_id: str
    phone_number: str
    name: Optional[str] = None
    statistics: ContactStatistics = Field(default_factory=ContactStatistics)
    created_at: datetime
    updated_at: datetime


class TemplateRecord(BaseModel):
    id: str
    business_account_id: str
    template_id: str
    name: str
    language: str = "en_US"
    status: TemplateStatus = TemplateStatus.pending
    created_at: datetime
    updated_at: datetime


class ErrorContext(BaseModel):
    operation: str
    recipient: Optional[str] = None
    message_type: Optional[str] = None
    provider_message_id: Optional[str] = None


class ErrorRecord(BaseModel):
    id: str
    phone_number_id: Optional[str] = None
    error_code: str
    error_message: str
    context: ErrorContext
    timestamp: datetime
    resolved: bool = False


class AuditLogRecord(BaseModel):
    id: str
    user_id: str
    action: str
    resource: str
    resource_id: str
    changes: dict[str, Any] = Field(default_factory=dict)
    ip_address: str = "unknown"
    timestamp: datetime


# API payloads


class WebhookAckResponse(BaseModel):
    received: bool
    records: list[str] = Field(default_factory=list)


class SendMessageRequest(BaseModel):
    phone_id: str = Field(min_length=1, max_length=120)
    recipient_phone: str = Field(min_length=4, max_length=32)
    message_type: MessageType
    content: Union[str, dict[str, Any]]
    template_name: Optional[str] = Field(default=None, max_length=512)

    @field_validator("content")
    @classmethod
    def content_not_empty(cls, value: Union[str, dict[str, Any]]) -> Union[str, dict[str, Any]]:
        if isinstance(value, str) and not value.strip():
            raise ValueError("content cannot be empty")
        return value


class SendMessageResponse(BaseModel):
    message_id: str
    provider_message_id: str


class PhoneSetupRequest(BaseModel):
    waba_id: str = Field(min_length=1, max_length=120)
    phone_number: str = Field(min_length=8, max_length=20)
    phone_number_id: str = Field(min_length=1, max_length=120)
    access_token: str = Field(min_length=1)
    owner_user_id: Optional[str] = None
    display_name: Optional[str] = Field(default=None, max_length=120)


class PhoneSetupResponse(BaseModel):
    phone_id: str


class PhoneItem(BaseModel):
    phone_id: str
    business_account_id: str
    user_id: str
    phone_number: str
    phone_number_id: str
    display_name: str
    quality_rating: QualityRating
    is_active: bool
    messaging_limit: MessagingLimit
    statistics: PhoneStatistics


class WebhookRecordItem(BaseModel):
    id: str
    business_account_id: str
    event_type: WebhookEventType
    event_id: Optional[str]
    processed: bool
    exhausted: bool
    retry_count: int
    max_retries: int
    next_retry_at: Optional[datetime]
    processing_error: Optional[str]
    received_at: datetime


class RetrySweepResponse(BaseModel):
    due: int
    processed: int
    rescheduled: int
    exhausted: int
    skipped: int
