"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the send, reply, draft, follow-up and event operations
- The inbound email webhook payload
- Result models returned by every engine operation
- Response models for stored messages and health checks
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from outreach.errors import ErrorCode


# =============================================================================
# Request Models
# =============================================================================

class SendRequest(BaseModel):
    """A message from the user to one coach."""
    counterpart_id: int = Field(..., description="Coach receiving the message")
    subject: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1, description="HTML body")
    text: Optional[str] = Field(None, description="Plain-text body; derived from HTML when omitted")
    template_id: Optional[int] = None
    follow_up_days: Optional[int] = Field(
        None,
        ge=1,
        description="Schedule an automatic follow-up this many calendar days later"
    )
    is_follow_up: bool = False
    is_draft: bool = Field(False, description="Store as draft instead of sending")


class ReplyRequest(SendRequest):
    """A reply inside an existing conversation."""
    conversation_id: str = Field(..., min_length=1, description="Provider thread id to reply in")


class DraftRequest(BaseModel):
    counterpart_id: int
    subject: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
    text: Optional[str] = None
    template_id: Optional[int] = None
    conversation_id: Optional[str] = None


class FollowUpRequest(BaseModel):
    parent_message_id: int
    counterpart_id: int
    subject: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
    delay_days: int = Field(..., ge=1, description="Calendar days until the follow-up is due")


class InboundEmailWebhook(BaseModel):
    """
    Flattened inbound email, as posted by an inbound-parse webhook.

    ``envelope`` is the provider's JSON string with the SMTP envelope
    addresses; when present it wins over the header addresses.
    """
    from_address: str = Field(..., alias="from")
    to: str
    subject: Optional[str] = None
    html: Optional[str] = ""
    text: Optional[str] = ""
    envelope: Optional[str] = None
    headers: Optional[str] = Field(None, description="Raw header block of the inbound email")
    message_id: Optional[str] = Field(None, description="Unique id assigned by the webhook source")

    model_config = {"populate_by_name": True}


class DeliveryEventRequest(BaseModel):
    provider_message_id: str = Field(..., min_length=1)
    event: str = Field(..., min_length=1, description="delivered, open, bounce or dropped")


# =============================================================================
# Result Models
# =============================================================================

class OperationResult(BaseModel):
    success: bool
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, code: ErrorCode, error: str, **fields):
        return cls(success=False, error_code=code, error=error, **fields)


class SendResult(OperationResult):
    message_id: Optional[int] = None
    follow_up_id: Optional[int] = None
    transport: Optional[str] = None
    provider_message_id: Optional[str] = None
    provider_conversation_id: Optional[str] = None


class ScheduleResult(OperationResult):
    message_id: Optional[int] = None
    scheduled_for: Optional[datetime] = None


class ImportResult(OperationResult):
    imported: int = 0
    skipped: int = 0
    errors: int = 0


class IngestResult(OperationResult):
    message_id: Optional[int] = None
    skipped: bool = False
    counterpart_id: Optional[int] = None
    correlation: Optional[str] = Field(None, description="address or recent_outbound")


class EventResult(OperationResult):
    message_id: Optional[int] = None
    status: Optional[str] = None
    ignored: bool = False


class SweepResult(BaseModel):
    due: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: int = 0
    skipped: int = 0


# =============================================================================
# Response Models
# =============================================================================

class MessageResponse(BaseModel):
    id: int
    user_id: int
    counterpart_id: int
    subject: str
    body: str
    text: Optional[str] = None
    direction: str
    status: str
    transport: Optional[str] = None
    provider_message_id: Optional[str] = None
    provider_conversation_id: Optional[str] = None
    is_follow_up: bool
    has_responded: bool
    parent_message_id: Optional[int] = None
    created_at: datetime
    sent_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    received_at: Optional[datetime] = None
    send_attempts: int = 0

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
