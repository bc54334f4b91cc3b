import base64
import logging
from email.mime.text import MIMEText
from typing import Optional

from pydantic import BaseModel, Field

from outreach.errors import EnvelopeValidationError
from outreach.parsing import html_to_text

logger = logging.getLogger(__name__)


class Envelope(BaseModel):
    """
    Transport-ready message.

    For threaded replies the conversation id travels twice: as the
    In-Reply-To/References headers and as ``thread_id``, since providers
    differ in which one they honor.
    """
    sender: str
    recipient: str
    subject: str
    html: str
    text: str
    thread_id: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)

    @property
    def is_reply(self) -> bool:
        return self.thread_id is not None


def build_envelope(
    sender: str,
    recipient: str,
    subject: str,
    html: str,
    text: Optional[str] = None,
    conversation_id: Optional[str] = None,
) -> Envelope:
    """
    Build an envelope from a logical message. Subject and body pass through
    untouched.

    Raises:
        EnvelopeValidationError: recipient or body is empty.
    """
    if not recipient or not recipient.strip():
        raise EnvelopeValidationError("Recipient address is required")
    if not html or not html.strip():
        raise EnvelopeValidationError("Message body is required")

    headers = {}
    if conversation_id:
        headers["In-Reply-To"] = f"<{conversation_id}>"
        headers["References"] = f"<{conversation_id}>"

    return Envelope(
        sender=sender,
        recipient=recipient,
        subject=subject,
        html=html,
        text=text if text is not None else html_to_text(html),
        thread_id=conversation_id or None,
        headers=headers,
    )


def to_raw_message(envelope: Envelope) -> str:
    """Render the envelope as a base64url RFC 822 message for the Gmail API."""
    message = MIMEText(envelope.html, "html", "utf-8")
    message["From"] = envelope.sender
    message["To"] = envelope.recipient
    message["Subject"] = envelope.subject
    for name, value in envelope.headers.items():
        message[name] = value
    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii")
