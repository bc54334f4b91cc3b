import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from outreach.config import get_settings, settings
from outreach.errors import DeliveryNotRecorded, ErrorCode
from outreach.followups import process_due, schedule_follow_up
from outreach.importer import apply_delivery_event, import_new_replies, ingest_inbound_email
from outreach.jobs import shutdown_scheduler, start_scheduler
from outreach.logging_utils import RequestLoggingMiddleware, log_operation, setup_logging
from outreach.metrics import get_metrics, get_metrics_content_type
from outreach.orchestrator import reply_in_thread, save_draft, send_draft, send_now
from outreach.schemas import (
    DeliveryEventRequest,
    DraftRequest,
    EventResult,
    FollowUpRequest,
    HealthResponse,
    ImportResult,
    InboundEmailWebhook,
    IngestResult,
    MessageResponse,
    OperationResult,
    ReplyRequest,
    ScheduleResult,
    SendRequest,
    SendResult,
    SweepResult,
)
from outreach.storage import check_db_health, get_db, init_db, list_by_user
from outreach.transports import TransportSelector, get_transport_selector
from outreach.utils import verify_hmac_signature


setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

HTTP_STATUS_FOR_ERROR = {
    ErrorCode.VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.NO_PROVIDER_CONFIGURED: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.TRANSPORT_REJECTED: status.HTTP_502_BAD_GATEWAY,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create tables and start background jobs.
    Shutdown: stop background jobs.
    """
    init_db()
    if get_settings().SCHEDULER_ENABLED:
        start_scheduler()
    yield
    shutdown_scheduler()


app = FastAPI(
    title="Outreach Messaging API",
    description="Athlete-to-coach email sending, reply import and follow-up scheduling",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(DeliveryNotRecorded)
async def delivery_not_recorded_handler(request: Request, exc: DeliveryNotRecorded) -> JSONResponse:
    log_operation(request, provider_message_id=exc.provider_message_id, result="not_recorded")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Message was delivered but could not be recorded"},
    )


def _respond(response: Response, result: OperationResult, success_status: int = status.HTTP_200_OK):
    if result.success:
        response.status_code = success_status
    else:
        response.status_code = HTTP_STATUS_FOR_ERROR.get(result.error_code, status.HTTP_400_BAD_REQUEST)
    return result


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. At least one email provider (Gmail OAuth client or SendGrid) is configured
    """
    current = get_settings()
    if not current.SENDGRID_API_KEY and not current.GMAIL_CLIENT_ID:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="No email provider configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Outbound Routes
# =============================================================================

@app.post("/users/{user_id}/messages", response_model=SendResult)
def create_outbound_message(
    user_id: int,
    payload: SendRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    selector: TransportSelector = Depends(get_transport_selector),
) -> SendResult:
    """
    Send a message to a coach now, or store it as a draft when ``is_draft``.

    With ``follow_up_days`` a follow-up is scheduled and a reminder task created.
    """
    if payload.is_draft:
        result = save_draft(db, user_id, DraftRequest(**payload.model_dump(include=set(DraftRequest.model_fields))))
    else:
        result = send_now(db, user_id, payload, selector=selector)

    log_operation(request, user_id=user_id, message_id=result.message_id,
                  result="draft" if payload.is_draft and result.success else
                  ("sent" if result.success else result.error_code.value))
    return _respond(response, result, status.HTTP_201_CREATED)


@app.post("/users/{user_id}/messages/reply", response_model=SendResult)
def create_reply(
    user_id: int,
    payload: ReplyRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    selector: TransportSelector = Depends(get_transport_selector),
) -> SendResult:
    """Reply inside an existing conversation, or store the reply as a draft."""
    if payload.is_draft:
        result = save_draft(db, user_id, DraftRequest(**payload.model_dump(include=set(DraftRequest.model_fields))))
    else:
        result = reply_in_thread(db, user_id, payload, selector=selector)

    log_operation(request, user_id=user_id, message_id=result.message_id,
                  conversation_id=payload.conversation_id,
                  result="sent" if result.success else result.error_code.value)
    return _respond(response, result, status.HTTP_201_CREATED)


@app.post("/users/{user_id}/messages/{message_id}/send", response_model=SendResult)
def send_saved_draft(
    user_id: int,
    message_id: int,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    selector: TransportSelector = Depends(get_transport_selector),
) -> SendResult:
    result = send_draft(db, user_id, message_id, selector=selector)
    log_operation(request, user_id=user_id, message_id=message_id,
                  result="sent" if result.success else result.error_code.value)
    return _respond(response, result)


@app.get("/users/{user_id}/messages", response_model=List[MessageResponse])
def list_messages(
    user_id: int,
    direction: Annotated[Optional[str], Query(pattern="^(outbound|inbound)$")] = None,
    status_filter: Annotated[Optional[str], Query(alias="status")] = None,
    db: Session = Depends(get_db),
) -> List[MessageResponse]:
    """All messages of a user in creation order, optionally by direction/status."""
    messages = list_by_user(db, user_id, direction=direction, status=status_filter)
    return [MessageResponse.model_validate(message) for message in messages]


@app.post("/users/{user_id}/messages/events", response_model=EventResult)
def record_delivery_event(
    user_id: int,
    payload: DeliveryEventRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
) -> EventResult:
    """Apply a delivered/open/bounce event to an outbound message."""
    result = apply_delivery_event(db, user_id, payload.provider_message_id, payload.event)
    log_operation(request, user_id=user_id, message_id=result.message_id,
                  result="ignored" if result.ignored else (result.status or result.error_code.value))
    return _respond(response, result)


# =============================================================================
# Follow-up Routes
# =============================================================================

@app.post("/users/{user_id}/follow-ups", response_model=ScheduleResult)
def create_follow_up(
    user_id: int,
    payload: FollowUpRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
) -> ScheduleResult:
    result = schedule_follow_up(
        db,
        parent_message_id=payload.parent_message_id,
        user_id=user_id,
        counterpart_id=payload.counterpart_id,
        subject=payload.subject,
        body=payload.body,
        delay_days=payload.delay_days,
    )
    log_operation(request, user_id=user_id, message_id=result.message_id,
                  result="scheduled" if result.success else result.error_code.value)
    return _respond(response, result, status.HTTP_201_CREATED)


@app.post("/follow-ups/sweep", response_model=SweepResult)
def sweep_follow_ups(
    request: Request,
    db: Session = Depends(get_db),
    selector: TransportSelector = Depends(get_transport_selector),
) -> SweepResult:
    """Send every follow-up that is due now."""
    result = process_due(db, selector=selector)
    log_operation(request, due=result.due, sent=result.sent, failed=result.failed)
    return result


# =============================================================================
# Inbound Routes
# =============================================================================

@app.post("/users/{user_id}/replies/import", response_model=ImportResult)
def import_replies(
    user_id: int,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    selector: TransportSelector = Depends(get_transport_selector),
) -> ImportResult:
    """Pull new coach replies from the user's Gmail threads."""
    result = import_new_replies(db, user_id, selector=selector)
    log_operation(request, user_id=user_id, imported=result.imported, skipped=result.skipped,
                  errors=result.errors)
    return _respond(response, result)


@app.post(
    "/webhooks/inbound-email",
    response_model=IngestResult,
    responses={
        401: {"description": "Invalid signature"},
        422: {"description": "Validation error"},
    },
)
async def inbound_email_webhook(
    request: Request,
    x_signature: Annotated[Optional[str], Header(alias="X-Signature")] = None,
    db: Session = Depends(get_db),
) -> IngestResult:
    """
    Ingest one inbound email from the inbound-parse webhook.

    - HMAC-SHA256 of the raw body in X-Signature when WEBHOOK_SECRET is set
    - Idempotent: a re-delivered email is reported as a duplicate
    - Processing failures still answer 200 so the source does not retry
    """
    raw_body = await request.body()
    secret = get_settings().WEBHOOK_SECRET

    if secret:
        if not x_signature or not verify_hmac_signature(raw_body, x_signature, secret):
            logger.error("Invalid or missing X-Signature on inbound email webhook")
            log_operation(request, result="invalid_signature")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")

    try:
        payload = InboundEmailWebhook.model_validate(json.loads(raw_body))
    except ValueError as e:
        # Malformed JSON, undecodable bytes and pydantic ValidationError are all ValueErrors
        logger.error(f"Inbound email validation error: {e}")
        log_operation(request, result="validation_error")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    logger.info(
        "Received inbound email webhook",
        extra={"subject": payload.subject, "has_html": bool(payload.html), "has_text": bool(payload.text)},
    )
    result = ingest_inbound_email(db, payload)
    if not result.success:
        logger.warning(f"Failed to process inbound email: {result.error}")

    log_operation(
        request,
        message_id=result.message_id,
        dup=result.skipped,
        correlation=result.correlation,
        result="duplicate" if result.skipped else ("created" if result.success else result.error_code.value),
    )
    return result


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())
