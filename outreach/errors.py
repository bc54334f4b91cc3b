"""
Error taxonomy for the outreach engine.

Expected failures (missing provider, unknown entities, provider rejections)
are carried as an ErrorCode on result models. The exception classes below are
raised internally and converted at the component boundary; InvalidTransition
and DeliveryNotRecorded are programming/consistency errors and propagate.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    NO_PROVIDER_CONFIGURED = "NO_PROVIDER_CONFIGURED"
    TRANSPORT_REJECTED = "TRANSPORT_REJECTED"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"
    DUPLICATE = "DUPLICATE"


class OutreachError(Exception):
    """Base class for failures that map onto an ErrorCode."""

    code: ErrorCode = ErrorCode.VALIDATION

    def __init__(self, detail: str, code: Optional[ErrorCode] = None):
        super().__init__(detail)
        self.detail = detail
        if code is not None:
            self.code = code


class TransportError(OutreachError):
    """A provider could not deliver, or no provider is usable."""

    code = ErrorCode.TRANSPORT_REJECTED


class EnvelopeValidationError(OutreachError):
    code = ErrorCode.VALIDATION


class InvalidTransition(ValueError):
    """A status update would move a message backward in its lifecycle."""

    def __init__(self, message_id: Optional[int], current: str, target: str):
        super().__init__(
            f"Illegal status transition for message {message_id}: {current} -> {target}"
        )
        self.message_id = message_id
        self.current = current
        self.target = target


class DeliveryNotRecorded(RuntimeError):
    """The provider accepted a message but the ledger write failed."""

    def __init__(self, provider_message_id: Optional[str], cause: Exception):
        super().__init__(
            f"Message delivered (provider id {provider_message_id}) but not recorded: {cause}"
        )
        self.provider_message_id = provider_message_id
        self.cause = cause
