"""
Delivery transports.

Two interchangeable variants sit behind the Transport interface:

- GmailTransport: the user's own mailbox through the Gmail API. Thread-aware;
  returns a message id and a thread id. Needs the user's OAuth credential.
- SendGridTransport: stateless transactional send. Not thread-aware; never
  returns a conversation id. Needs SENDGRID_API_KEY.

TransportSelector tries them in priority order and only surfaces an error
once every variant is exhausted.
"""

import logging
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any, Callable, List, Optional

import httplib2
import httpx
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from pydantic import BaseModel

from outreach.composer import Envelope, to_raw_message
from outreach.config import Settings, get_settings
from outreach.directory import Credential
from outreach.errors import ErrorCode, TransportError
from outreach.metrics import record_delivery

logger = logging.getLogger(__name__)

GMAIL_SCOPES = [
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.readonly",
]


class Delivery(BaseModel):
    """What a provider reports back after accepting a message."""
    transport: str
    provider_message_id: Optional[str] = None
    provider_conversation_id: Optional[str] = None


class Transport(ABC):
    name: str = "transport"

    @abstractmethod
    def is_available(self, credential: Credential) -> bool:
        """Whether this transport can be attempted for the given user."""

    @abstractmethod
    def send(self, envelope: Envelope, credential: Credential) -> Delivery:
        """Deliver the envelope or raise."""


# =============================================================================
# Gmail
# =============================================================================

def build_gmail_service(credential: Credential, settings: Optional[Settings] = None) -> Any:
    """
    Build a Gmail API client for one user.

    google-auth refreshes an expired access token from the refresh token on
    the first request, so callers do not need to check ``expires_at``.
    """
    settings = settings or get_settings()
    creds = Credentials(
        token=credential.access_token,
        refresh_token=credential.refresh_token,
        token_uri=settings.GMAIL_TOKEN_URI,
        client_id=settings.GMAIL_CLIENT_ID,
        client_secret=settings.GMAIL_CLIENT_SECRET,
        scopes=GMAIL_SCOPES,
        expiry=credential.expires_at,
    )
    http = AuthorizedHttp(creds, http=httplib2.Http(timeout=settings.TRANSPORT_TIMEOUT_SECONDS))
    return build("gmail", "v1", http=http, cache_discovery=False)


class GmailTransport(Transport):
    name = "gmail"

    def __init__(self, service_factory: Callable[[Credential], Any] = build_gmail_service):
        self._service_factory = service_factory

    def is_available(self, credential: Credential) -> bool:
        return credential.has_mailbox

    def send(self, envelope: Envelope, credential: Credential) -> Delivery:
        service = self._service_factory(credential)
        body = {"raw": to_raw_message(envelope)}
        if envelope.thread_id:
            body["threadId"] = envelope.thread_id

        result = service.users().messages().send(userId="me", body=body).execute()
        logger.info(f"Gmail message sent: id={result.get('id')}, thread={result.get('threadId')}")
        return Delivery(
            transport=self.name,
            provider_message_id=result.get("id"),
            provider_conversation_id=result.get("threadId") or envelope.thread_id,
        )

    def fetch_conversation(self, credential: Credential, conversation_id: str) -> List[dict]:
        """All messages of a thread, oldest first, with full payloads."""
        service = self._service_factory(credential)
        thread = service.users().threads().get(userId="me", id=conversation_id, format="full").execute()
        return thread.get("messages") or []


# =============================================================================
# SendGrid
# =============================================================================

class SendGridTransport(Transport):
    name = "sendgrid"

    def __init__(
        self,
        api_key: Optional[str],
        api_url: str = "https://api.sendgrid.com/v3/mail/send",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.timeout = timeout
        self._client = client

    def is_available(self, credential: Credential) -> bool:
        return bool(self.api_key)

    def _payload(self, envelope: Envelope) -> dict:
        content = []
        if envelope.text:
            content.append({"type": "text/plain", "value": envelope.text})
        content.append({"type": "text/html", "value": envelope.html})

        payload = {
            "personalizations": [{"to": [{"email": envelope.recipient}]}],
            "from": {"email": envelope.sender},
            "subject": envelope.subject,
            "content": content,
        }
        if envelope.headers:
            payload["headers"] = dict(envelope.headers)
        return payload

    def send(self, envelope: Envelope, credential: Credential) -> Delivery:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = self._payload(envelope)

        try:
            if self._client is not None:
                response = self._client.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(f"SendGrid request failed: {e}") from e

        if response.status_code >= 400:
            raise TransportError(
                f"SendGrid rejected message ({response.status_code}): {response.text[:500]}"
            )

        message_id = response.headers.get("X-Message-Id")
        logger.info(f"SendGrid accepted message: id={message_id}, to={envelope.recipient}")
        return Delivery(transport=self.name, provider_message_id=message_id)


# =============================================================================
# Selector
# =============================================================================

class TransportSelector:
    """Tries transports in priority order; the last one is the fallback of record."""

    def __init__(self, transports: List[Transport]):
        self.transports = list(transports)

    @property
    def mailbox(self) -> Optional[GmailTransport]:
        for transport in self.transports:
            if isinstance(transport, GmailTransport):
                return transport
        return None

    def deliver(self, envelope: Envelope, credential: Credential) -> Delivery:
        """
        Deliver through the first transport that succeeds.

        Errors from a transport that has a successor are logged, not raised.

        Raises:
            TransportError: NO_PROVIDER_CONFIGURED when the fallback transport
                is not configured and nothing earlier succeeded;
                TRANSPORT_REJECTED when the fallback itself failed.
        """
        errors = []
        for transport in self.transports:
            if not transport.is_available(credential):
                logger.debug(f"Transport {transport.name} unavailable, skipping")
                record_delivery(transport.name, "unavailable")
                continue
            try:
                delivery = transport.send(envelope, credential)
            except Exception as e:
                logger.warning(f"{transport.name} delivery failed, falling back: {e}")
                record_delivery(transport.name, "error")
                errors.append(f"{transport.name}: {e}")
                continue
            record_delivery(transport.name, "success")
            return delivery

        fallback = self.transports[-1] if self.transports else None
        if fallback is None or not fallback.is_available(credential):
            detail = "No email provider configured"
            if errors:
                detail += f" ({'; '.join(errors)})"
            raise TransportError(detail, ErrorCode.NO_PROVIDER_CONFIGURED)
        raise TransportError("; ".join(errors), ErrorCode.TRANSPORT_REJECTED)


@lru_cache()
def get_transport_selector() -> TransportSelector:
    """Default selector: Gmail first, SendGrid as fallback."""
    settings = get_settings()
    return TransportSelector([
        GmailTransport(),
        SendGridTransport(
            api_key=settings.SENDGRID_API_KEY,
            api_url=settings.SENDGRID_API_URL,
            timeout=settings.TRANSPORT_TIMEOUT_SECONDS,
        ),
    ])
