"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any outreach import, so the
cached settings and the engine pick them up.
"""

import json
import os

import httpx
import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_outreach.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "testsecret")
os.environ.setdefault("GMAIL_CLIENT_ID", "test-client-id")
os.environ["SCHEDULER_ENABLED"] = "false"

# Clear settings cache before any app imports to ensure test env vars are used
from outreach.config import get_settings  # noqa: E402
get_settings.cache_clear()

from outreach.models import Coach, User  # noqa: E402
from outreach.storage import Base, SessionLocal, engine  # noqa: E402
from outreach.transports import GmailTransport, SendGridTransport, TransportSelector  # noqa: E402


# =============================================================================
# Provider fakes
# =============================================================================

class _Call:
    def __init__(self, fn):
        self._fn = fn

    def execute(self):
        return self._fn()


class _Threads:
    def __init__(self, service):
        self._service = service

    def get(self, userId, id, format=None):
        def run():
            if id not in self._service.thread_data:
                raise RuntimeError(f"thread {id} not found")
            return {"id": id, "messages": self._service.thread_data[id]}
        return _Call(run)


class FakeGmailService:
    """Stands in for the googleapiclient Gmail resource."""

    def __init__(self, thread_data=None, error=None):
        self.sent = []
        self.thread_data = thread_data or {}
        self.error = error
        self.on_send = None

    def users(self):
        return self

    def messages(self):
        return self

    def threads(self):
        return _Threads(self)

    def send(self, userId, body):
        def run():
            if self.on_send is not None:
                self.on_send(body)
            if self.error is not None:
                raise self.error
            self.sent.append(body)
            n = len(self.sent)
            return {"id": f"gmail-msg-{n}", "threadId": body.get("threadId", f"gmail-thread-{n}")}
        return _Call(run)


class FakeSendGrid:
    """Records SendGrid v3 requests through httpx.MockTransport."""

    def __init__(self, status_code=202):
        self.status_code = status_code
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if self.status_code >= 400:
            return httpx.Response(self.status_code, text="rejected")
        return httpx.Response(self.status_code, headers={"X-Message-Id": f"sg-{len(self.requests)}"})

    def transport(self, api_key="SG.test-key") -> SendGridTransport:
        client = httpx.Client(transport=httpx.MockTransport(self.handler))
        return SendGridTransport(api_key=api_key, client=client)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db():
    """Fresh tables and a session for each test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gmail_service():
    return FakeGmailService()


@pytest.fixture
def sendgrid():
    return FakeSendGrid()


@pytest.fixture
def selector(gmail_service, sendgrid):
    """Gmail first, SendGrid as fallback, both faked."""
    return TransportSelector([
        GmailTransport(service_factory=lambda credential: gmail_service),
        sendgrid.transport(),
    ])


@pytest.fixture
def user(db):
    user = User(
        email="athlete@example.com",
        first_name="Alex",
        last_name="Rivera",
        gmail_access_token="access-token",
        gmail_refresh_token="refresh-token",
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def user_without_mailbox(db):
    user = User(email="nomail@example.com", first_name="Sam", last_name="Lee")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def coach(db):
    coach = Coach(
        email="coach.smith@state.edu",
        first_name="Pat",
        last_name="Smith",
        school="State University",
        sport="Soccer",
    )
    db.add(coach)
    db.commit()
    db.refresh(coach)
    return coach
