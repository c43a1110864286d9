"""Outbound WhatsApp messages via the Meta Cloud API.

Recipient numbers and message bodies are never logged; only hashes and sizes.
"""

from __future__ import annotations

import json
import logging
import socket
from dataclasses import dataclass
from typing import Any, Optional, Union
from urllib import request
from urllib.error import HTTPError, URLError

from backend.app.auth import AuthContext, can_access_phone
from backend.app.models import (
    ErrorCode,
    MessageCost,
    MessageDirection,
    MessageRecord,
    MessageStatus,
    MessageType,
    SendMessageRequest,
    utc_now,
)
from backend.app.observability import MetricsRegistry, hash_identifier
from backend.app.services.vault import CredentialDecryptionError, CredentialVault
from backend.app.settings import Settings
from backend.app.store import InMemoryStore, StoreNotFoundError, digits_only, new_id

logger = logging.getLogger("whatsapp_gateway")


class ProviderTransportError(Exception):
    pass


class OutboundDispatchError(Exception):
    def __init__(self, code: ErrorCode, detail: str, status_code: int) -> None:
        super().__init__(detail)
        self.code = code
        self.detail = detail
        self.status_code = status_code


@dataclass(frozen=True)
class ProviderResponse:
    status_code: int
    body: dict[str, Any]

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass(frozen=True)
class SendResult:
    message_id: str
    provider_message_id: str


class MetaGraphClient:
    def __init__(self, *, api_url: str, timeout_seconds: int = 15) -> None:
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def send_message(
        self,
        *,
        phone_number_id: str,
        access_token: str,
        payload: dict[str, Any],
    ) -> ProviderResponse:
        req = request.Request(
            f"{self.api_url}/{phone_number_id}/messages",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {access_token}",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                return ProviderResponse(response.status, _decode_body(response.read()))
        except HTTPError as exc:
            return ProviderResponse(exc.code, _decode_body(exc.read()))
        except (URLError, TimeoutError, socket.timeout) as exc:
            raise ProviderTransportError(f"provider request failed: {exc}") from exc


def _decode_body(raw: bytes) -> dict[str, Any]:
    try:
        decoded = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return {}
    return decoded if isinstance(decoded, dict) else {}


def build_meta_payload(
    recipient_phone: str,
    message_type: MessageType,
    content: Union[str, dict[str, Any]],
    template_name: Optional[str] = None,
    language_code: str = "en_US",
) -> dict[str, Any]:
    base: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": digits_only(recipient_phone),
    }
    if message_type == MessageType.template and template_name:
        template: dict[str, Any] = dict(content) if isinstance(content, dict) else {}
        template.update({"name": template_name, "language": {"code": language_code}})
        return {**base, "type": "template", "template": template}
    if message_type == MessageType.text and isinstance(content, str):
        body = content
    else:
        body = json.dumps(content)
    return {**base, "type": "text", "text": {"preview_url": False, "body": body}}


def _provider_error(body: dict[str, Any]) -> tuple[str, str]:
    error = body.get("error") if isinstance(body.get("error"), dict) else {}
    code = error.get("code")
    message = error.get("message") or "provider rejected the message"
    return (str(code) if code is not None else "UNKNOWN"), str(message)


def _provider_message_id(body: dict[str, Any]) -> Optional[str]:
    messages = body.get("messages")
    if isinstance(messages, list) and messages and isinstance(messages[0], dict):
        message_id = messages[0].get("id")
        return str(message_id) if message_id else None
    return None


def send_message(
    *,
    store: InMemoryStore,
    settings: Settings,
    vault: Optional[CredentialVault],
    client: MetaGraphClient,
    auth: AuthContext,
    payload: SendMessageRequest,
    ip_address: str = "unknown",
    metrics: Optional[MetricsRegistry] = None,
) -> SendResult:
    """Send one message and record exactly one outcome.

    A provider rejection or transport failure appends an ErrorRecord; a
    success stores the MessageRecord and bumps the phone counters. Never both.
    """
    try:
        phone = store.get_phone(payload.phone_id)
    except StoreNotFoundError as exc:
        raise OutboundDispatchError(ErrorCode.not_found, str(exc), 404) from exc

    if not can_access_phone(auth, phone.user_id):
        raise OutboundDispatchError(
            ErrorCode.unauthorized, "caller cannot send from this phone", 403
        )
    if payload.message_type == MessageType.template and not payload.template_name:
        raise OutboundDispatchError(
            ErrorCode.invalid_input, "template messages require template_name", 400
        )
    if vault is None:
        raise OutboundDispatchError(
            ErrorCode.invalid_input, "credential vault is not configured", 400
        )
    try:
        access_token = vault.decrypt(phone.access_token_encrypted)
    except CredentialDecryptionError as exc:
        logger.error("access_token_decrypt_failed phone_id=%s error=%s", phone.id, exc)
        raise OutboundDispatchError(
            ErrorCode.invalid_input, "stored access token could not be decrypted", 400
        ) from exc

    meta_payload = build_meta_payload(
        payload.recipient_phone,
        payload.message_type,
        payload.content,
        payload.template_name,
        settings.template_language_code,
    )
    error_context = {
        "operation": "SEND_MESSAGE",
        "recipient": payload.recipient_phone,
        "message_type": payload.message_type.value,
    }
    log_tag = hash_identifier(meta_payload["to"])

    try:
        response = client.send_message(
            phone_number_id=phone.phone_number_id,
            access_token=access_token,
            payload=meta_payload,
        )
    except ProviderTransportError as exc:
        store.append_error_record(
            phone_number_id=phone.phone_number_id,
            error_code="TRANSPORT_ERROR",
            error_message=str(exc),
            context=error_context,
        )
        logger.error("outbound_transport_failed to_hash=%s error=%s", log_tag, exc)
        _incr(metrics, "outbound_failed")
        raise OutboundDispatchError(ErrorCode.external_api_error, str(exc), 400) from exc

    provider_message_id = _provider_message_id(response.body) if response.ok else None
    if not response.ok or not provider_message_id:
        if response.ok:
            error_code, error_message = "MISSING_MESSAGE_ID", "provider response had no message id"
        else:
            error_code, error_message = _provider_error(response.body)
        store.append_error_record(
            phone_number_id=phone.phone_number_id,
            error_code=error_code,
            error_message=error_message,
            context=error_context,
        )
        logger.warning(
            "outbound_provider_rejected to_hash=%s status=%s code=%s",
            log_tag,
            response.status_code,
            error_code,
        )
        _incr(metrics, "outbound_failed")
        raise OutboundDispatchError(ErrorCode.external_api_error, error_message, 400)

    now = utc_now()
    message = MessageRecord(
        id=new_id("msg"),
        business_account_id=phone.business_account_id,
        phone_number_id=phone.phone_number_id,
        user_id=auth.user_id,
        contact_phone=meta_payload["to"],
        provider_message_id=provider_message_id,
        direction=MessageDirection.outbound,
        type=payload.message_type,
        content=payload.content,
        status=MessageStatus.sent,
        template_name=payload.template_name,
        cost=MessageCost(
            currency=settings.outbound_currency,
            unit_price=settings.outbound_unit_price,
            total=settings.outbound_unit_price,
            billing_category="STANDARD",
        ),
        timestamp=now,
        created_at=now,
        updated_at=now,
    )
    try:
        store.record_outbound_message(
            message,
            phone_id=phone.id,
            is_template=payload.message_type == MessageType.template,
        )
    except Exception as exc:
        # The provider already delivered; leave a trail for reconciliation.
        logger.exception(
            "outbound_local_write_failed provider_message_id=%s", provider_message_id
        )
        try:
            store.append_error_record(
                phone_number_id=phone.phone_number_id,
                error_code=ErrorCode.reconciliation_required.value,
                error_message=str(exc) or type(exc).__name__,
                context={**error_context, "provider_message_id": provider_message_id},
            )
        except Exception:
            logger.critical(
                "reconciliation_record_failed phone_number_id=%s provider_message_id=%s",
                phone.phone_number_id,
                provider_message_id,
                exc_info=True,
            )
        _incr(metrics, "outbound_unrecorded")
        raise OutboundDispatchError(
            ErrorCode.external_api_error, "message sent but not recorded locally", 500
        ) from exc

    try:
        store.append_audit_log(
            user_id=auth.user_id,
            action="SEND_MESSAGE",
            resource="WHATSAPP_MESSAGES",
            resource_id=message.id,
            changes={"phone_id": phone.id, "message_type": payload.message_type.value},
            ip_address=ip_address,
        )
    except Exception:
        logger.warning("audit_log_failed resource_id=%s", message.id, exc_info=True)

    logger.info(
        "outbound_sent message_id=%s provider_message_id=%s to_hash=%s",
        message.id,
        provider_message_id,
        log_tag,
    )
    _incr(metrics, "outbound_sent")
    return SendResult(message_id=message.id, provider_message_id=provider_message_id)


def _incr(metrics: Optional[MetricsRegistry], name: str) -> None:
    if metrics is not None:
        metrics.incr(name)
