"""
Tests for envelope composition.

Tests cover:
- Subject and body pass through verbatim
- Threading headers on replies
- Plain-text derivation
- Validation errors
- Raw RFC 822 rendering for the Gmail API
"""

import base64
import email

import pytest

from outreach.composer import build_envelope, to_raw_message
from outreach.errors import EnvelopeValidationError, ErrorCode


class TestBuildEnvelope:
    """Test build_envelope."""

    def test_subject_and_body_are_verbatim(self):
        subject = "  Interest in the Soccer program – Class of 2026 "
        html = "<p>Hi Coach,</p>\n\n<p>I'd   love to visit. ⚽</p>"

        envelope = build_envelope("athlete@example.com", "coach@state.edu", subject, html)

        assert envelope.subject == subject
        assert envelope.html == html
        assert envelope.sender == "athlete@example.com"
        assert envelope.recipient == "coach@state.edu"

    def test_fresh_message_has_no_threading(self):
        envelope = build_envelope("a@example.com", "c@state.edu", "Hi", "<p>Hello</p>")

        assert envelope.thread_id is None
        assert envelope.headers == {}
        assert envelope.is_reply is False

    def test_reply_carries_conversation_headers_and_thread_id(self):
        envelope = build_envelope(
            "a@example.com", "c@state.edu", "Re: Hi", "<p>Thanks</p>", conversation_id="thread-42"
        )

        assert envelope.thread_id == "thread-42"
        assert envelope.headers["In-Reply-To"] == "<thread-42>"
        assert envelope.headers["References"] == "<thread-42>"
        assert envelope.is_reply is True

    def test_text_derived_from_html_when_omitted(self):
        envelope = build_envelope("a@example.com", "c@state.edu", "Hi", "<p>Hello <b>Coach</b></p>")

        assert envelope.text == "Hello Coach"

    def test_explicit_text_is_kept(self):
        envelope = build_envelope("a@example.com", "c@state.edu", "Hi", "<p>Hello</p>", text="Plain hello")

        assert envelope.text == "Plain hello"

    def test_empty_recipient_rejected(self):
        with pytest.raises(EnvelopeValidationError) as exc_info:
            build_envelope("a@example.com", "  ", "Hi", "<p>Hello</p>")

        assert exc_info.value.code == ErrorCode.VALIDATION

    def test_empty_body_rejected(self):
        with pytest.raises(EnvelopeValidationError):
            build_envelope("a@example.com", "c@state.edu", "Hi", "")


class TestRawMessage:
    """Test to_raw_message."""

    def test_raw_message_round_trips_through_email_parser(self):
        envelope = build_envelope(
            "a@example.com", "c@state.edu", "Re: Visit", "<p>See you Friday</p>", conversation_id="t-1"
        )

        raw = to_raw_message(envelope)
        parsed = email.message_from_bytes(base64.urlsafe_b64decode(raw))

        assert parsed["From"] == "a@example.com"
        assert parsed["To"] == "c@state.edu"
        assert parsed["Subject"] == "Re: Visit"
        assert parsed["In-Reply-To"] == "<t-1>"
        assert parsed.get_content_type() == "text/html"
        assert parsed.get_payload(decode=True).decode("utf-8") == "<p>See you Friday</p>"

    def test_raw_message_is_url_safe(self):
        envelope = build_envelope("a@example.com", "c@state.edu", "Hi", "<p>" + "?>" * 200 + "</p>")

        raw = to_raw_message(envelope)

        assert "+" not in raw
        assert "/" not in raw
