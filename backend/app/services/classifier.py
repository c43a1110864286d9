from __future__ import annotations

from backend.app.models import WebhookEventType

FIELD_EVENT_TYPES = {
    "messages": WebhookEventType.message,
    "message_status": WebhookEventType.message_status,
    "template_status_update": WebhookEventType.template_status,
    "message_template_status_update": WebhookEventType.template_status,
    "account_alert": WebhookEventType.account_alert,
    "account_alerts": WebhookEventType.account_alert,
    "phone_number_quality_update": WebhookEventType.phone_quality_update,
}


def classify(field_name: str) -> WebhookEventType:
    return FIELD_EVENT_TYPES.get((field_name or "").strip(), WebhookEventType.unknown)
