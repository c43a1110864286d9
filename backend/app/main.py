from __future__ import annotations

import logging
import re
from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    FastAPI,
    HTTPException,
    Query,
    Request,
    Response,
    status,
)
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from backend.app.auth import AuthContext, get_auth_context, require_roles
from backend.app.models import (
    ErrorCode,
    PhoneItem,
    PhoneSetupRequest,
    PhoneSetupResponse,
    RetrySweepResponse,
    SendMessageRequest,
    SendMessageResponse,
    WebhookAckResponse,
    WebhookRecordItem,
    WebhookRecordState,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import SqlitePersistence
from backend.app.services.channel_events import process_webhook_record, run_due_retries
from backend.app.services.ingestion import ingest_webhook
from backend.app.services.outbound import MetaGraphClient, OutboundDispatchError, send_message
from backend.app.services.vault import CredentialVault, CredentialVaultError
from backend.app.services.webhooks import verify_subscription
from backend.app.settings import Settings, load_settings
from backend.app.store import InMemoryStore, StoreConflictError

logger = logging.getLogger("whatsapp_gateway")

PHONE_NUMBER_PATTERN = re.compile(r"^\+?[0-9]{8,15}$")
INVALID_INPUT_PREFIXES = ("/whatsapp/",)


def create_app() -> FastAPI:
    app = FastAPI(title="WhatsApp Gateway API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    persistence = SqlitePersistence(settings.database_url) if settings.persistence_enabled else None
    app.state.store = InMemoryStore(persistence=persistence)
    app.state.settings = settings
    app.state.metrics = MetricsRegistry()
    app.state.vault = build_vault(settings)
    app.state.provider_client = MetaGraphClient(
        api_url=settings.meta_api_url,
        timeout_seconds=settings.meta_request_timeout_seconds,
    )
    if not settings.whatsapp_webhook_secret:
        logger.warning("webhook_signature_verification_disabled reason=no_secret_configured")

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
        if not request.url.path.startswith(INVALID_INPUT_PREFIXES):
            return await request_validation_exception_handler(request, exc)
        return error_response(
            request.app.state.settings,
            code=ErrorCode.invalid_input,
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=validation_summary(exc),
        )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def build_vault(settings: Settings) -> Optional[CredentialVault]:
    try:
        return CredentialVault(settings.credential_encryption_key)
    except CredentialVaultError as exc:
        logger.warning("credential_vault_unavailable error=%s", exc)
        return None


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",", 1)[0].strip() or "unknown"
    return request.client.host if request.client else "unknown"


def error_response(
    settings: Settings,
    *,
    code: ErrorCode,
    status_code: int,
    detail: Optional[str] = None,
) -> JSONResponse:
    body: dict[str, str] = {"error": code.value}
    if detail and not settings.is_production:
        body["details"] = detail
    return JSONResponse(status_code=status_code, content=body)


def validation_summary(exc: RequestValidationError) -> str:
    """Field paths and messages only; submitted values are never echoed."""
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        parts.append(f"{location or 'body'}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)


def dispatch_webhook_records(
    store: InMemoryStore,
    record_ids: list[str],
    *,
    retry_base_seconds: int,
    metrics: MetricsRegistry,
) -> None:
    for record_id in record_ids:
        try:
            process_webhook_record(
                store,
                record_id,
                retry_base_seconds=retry_base_seconds,
                metrics=metrics,
            )
        except Exception:
            logger.exception("webhook_dispatch_failed webhook_id=%s", record_id)
            metrics.incr("webhook_dispatch_failed")


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(request.app.state.store, "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.get("/webhooks/whatsapp")
    def whatsapp_webhook_verify(
        request: Request,
        hub_mode: Optional[str] = Query(None, alias="hub.mode"),
        hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
        hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
    ) -> Response:
        settings = get_settings(request)
        if verify_subscription(
            mode=hub_mode,
            token=hub_verify_token,
            expected_token=settings.whatsapp_verify_token,
        ):
            logger.info("webhook_subscription_verified")
            return PlainTextResponse(hub_challenge or "", status_code=200)
        logger.warning("webhook_subscription_rejected mode=%s", hub_mode or "missing")
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"error": "forbidden"})

    @router.post("/webhooks/whatsapp")
    async def whatsapp_webhook(request: Request, background_tasks: BackgroundTasks) -> Response:
        store = get_store(request)
        settings = get_settings(request)
        registry = get_metrics(request)
        raw_body = await request.body()
        result = ingest_webhook(
            store,
            raw_body=raw_body,
            signature_header=request.headers.get("x-hub-signature-256"),
            source_ip=client_ip(request),
            secret=settings.whatsapp_webhook_secret,
            max_retries=settings.webhook_max_retries,
            metrics=registry,
        )
        if result.status_code == status.HTTP_403_FORBIDDEN:
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={"error": "invalid signature"},
            )
        if result.record_ids:
            background_tasks.add_task(
                dispatch_webhook_records,
                store,
                list(result.record_ids),
                retry_base_seconds=settings.webhook_retry_base_seconds,
                metrics=registry,
            )
        ack = WebhookAckResponse(received=result.received, records=result.record_ids)
        return JSONResponse(status_code=status.HTTP_200_OK, content=ack.model_dump())

    @router.get("/webhooks/whatsapp/records", response_model=list[WebhookRecordItem])
    def list_webhook_records(
        request: Request,
        state: WebhookRecordState = Query(default=WebhookRecordState.all),
        limit: int = Query(default=100, ge=1, le=500),
        _: AuthContext = Depends(require_roles("superadmin", "admin")),
    ) -> list[WebhookRecordItem]:
        store = get_store(request)
        return [
            WebhookRecordItem(
                id=record.id,
                business_account_id=record.business_account_id,
                event_type=record.event_type,
                event_id=record.event_id,
                processed=record.processed,
                exhausted=record.exhausted,
                retry_count=record.retry_count,
                max_retries=record.max_retries,
                next_retry_at=record.next_retry_at,
                processing_error=record.processing_error,
                received_at=record.received_at,
            )
            for record in store.list_webhook_records(state=state, limit=limit)
        ]

    @router.post("/webhooks/whatsapp/retries/run", response_model=RetrySweepResponse)
    def run_webhook_retries(
        request: Request,
        _: AuthContext = Depends(require_roles("superadmin", "admin")),
    ) -> RetrySweepResponse:
        settings = get_settings(request)
        counts = run_due_retries(
            get_store(request),
            retry_base_seconds=settings.webhook_retry_base_seconds,
            metrics=get_metrics(request),
        )
        return RetrySweepResponse(**counts)

    @router.post(
        "/whatsapp/send-message",
        status_code=status.HTTP_201_CREATED,
        response_model=SendMessageResponse,
    )
    def whatsapp_send_message(
        payload: SendMessageRequest,
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
    ):
        settings = get_settings(request)
        try:
            result = send_message(
                store=get_store(request),
                settings=settings,
                vault=request.app.state.vault,
                client=request.app.state.provider_client,
                auth=auth,
                payload=payload,
                ip_address=client_ip(request),
                metrics=get_metrics(request),
            )
        except OutboundDispatchError as exc:
            return error_response(
                settings,
                code=exc.code,
                status_code=exc.status_code,
                detail=exc.detail,
            )
        except Exception:
            logger.exception("send_message_failed phone_id=%s", payload.phone_id)
            return error_response(
                settings,
                code=ErrorCode.external_api_error,
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        return SendMessageResponse(
            message_id=result.message_id,
            provider_message_id=result.provider_message_id,
        )

    @router.post(
        "/whatsapp/phones",
        status_code=status.HTTP_201_CREATED,
        response_model=PhoneSetupResponse,
    )
    def setup_phone(
        payload: PhoneSetupRequest,
        request: Request,
        auth: AuthContext = Depends(require_roles("superadmin", "admin")),
    ):
        store = get_store(request)
        settings = get_settings(request)
        vault: Optional[CredentialVault] = request.app.state.vault
        if not PHONE_NUMBER_PATTERN.match(payload.phone_number.strip()):
            return error_response(
                settings,
                code=ErrorCode.invalid_input,
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="phone_number must be 8-15 digits with optional leading +",
            )
        if vault is None:
            return error_response(
                settings,
                code=ErrorCode.invalid_input,
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="credential vault is not configured",
            )
        try:
            phone = store.create_phone(
                business_account_id=payload.waba_id,
                user_id=payload.owner_user_id or auth.user_id,
                phone_number=payload.phone_number.strip(),
                phone_number_id=payload.phone_number_id,
                access_token_encrypted=vault.encrypt(payload.access_token),
                display_name=payload.display_name,
            )
        except StoreConflictError as exc:
            return error_response(
                settings,
                code=ErrorCode.already_exists,
                status_code=status.HTTP_409_CONFLICT,
                detail=str(exc),
            )
        store.append_audit_log(
            user_id=auth.user_id,
            action="SETUP_PHONE",
            resource="WHATSAPP_PHONE_NUMBERS",
            resource_id=phone.id,
            changes={"phone_number_id": phone.phone_number_id, "waba_id": payload.waba_id},
            ip_address=client_ip(request),
        )
        return PhoneSetupResponse(phone_id=phone.id)

    @router.get("/whatsapp/phones", response_model=list[PhoneItem])
    def list_phones(
        request: Request,
        waba_id: str = Query(min_length=1),
        _: AuthContext = Depends(require_roles("superadmin", "admin")),
    ) -> list[PhoneItem]:
        store = get_store(request)
        return [
            PhoneItem(
                phone_id=phone.id,
                business_account_id=phone.business_account_id,
                user_id=phone.user_id,
                phone_number=phone.phone_number,
                phone_number_id=phone.phone_number_id,
                display_name=phone.display_name,
                quality_rating=phone.quality_rating,
                is_active=phone.is_active,
                messaging_limit=phone.messaging_limit,
                statistics=phone.statistics,
            )
            for phone in store.list_phones(waba_id)
        ]

    return router


app = create_app()
