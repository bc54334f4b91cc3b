"""
Helpers for provider message payloads.

Gmail returns messages as a tree of MIME parts (``mimeType``, ``body.data``,
``parts``) nested to arbitrary depth. Every function here is total: a payload
that lacks the expected shape yields an empty result, never an exception.
"""

import base64
import binascii
import re
from typing import Any, Optional

from bs4 import BeautifulSoup

# "On Mon, Jan 1, 2024 at 9:00 AM Coach Smith <c@x.edu> wrote:"
ATTRIBUTION_RE = re.compile(r"^On .+ wrote:$", re.IGNORECASE)
QUOTED_LINE_RE = re.compile(r"^\s*>")

ANGLE_ADDRESS_RE = re.compile(r"<([^>]+)>")
BARE_ADDRESS_RE = re.compile(r"([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})")

QUOTE_SELECTORS = ".gmail_quote, .gmail_quote_container, div.gmail_attr, blockquote"


def decode_body(data: Optional[str]) -> str:
    """Decode a base64url part body; padding is optional on the wire."""
    if not data:
        return ""
    try:
        raw = base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
    except (binascii.Error, ValueError):
        return ""
    return raw.decode("utf-8", errors="replace")


def find_part(payload: Any, mime_type: str) -> Optional[dict]:
    """
    Depth-first search for the first part of ``mime_type`` that carries data.

    Parameters such as ``; charset=UTF-8`` on the declared type are ignored.

    Returns:
        The part's ``body`` dict, or None if no such part exists.
    """
    if not isinstance(payload, dict):
        return None

    declared = (payload.get("mimeType") or "").split(";")[0].strip().lower()
    body = payload.get("body")
    if declared == mime_type and isinstance(body, dict) and body.get("data"):
        return body

    parts = payload.get("parts")
    if isinstance(parts, list):
        for part in parts:
            found = find_part(part, mime_type)
            if found is not None:
                return found
    return None


def html_to_text(html: str) -> str:
    if not html:
        return ""
    return BeautifulSoup(html, "html.parser").get_text()


def extract_text(payload: Any) -> str:
    """Plain-text body; falls back to the HTML part with tags removed."""
    part = find_part(payload, "text/plain")
    if part is not None:
        return decode_body(part["data"])
    part = find_part(payload, "text/html")
    if part is not None:
        return html_to_text(decode_body(part["data"]))
    return ""


def extract_html(payload: Any) -> str:
    """HTML body, or "" for a plain-text-only message."""
    part = find_part(payload, "text/html")
    if part is not None:
        return decode_body(part["data"])
    return ""


def header_value(payload: Any, name: str) -> Optional[str]:
    """Case-insensitive lookup in a payload's ``headers`` list."""
    if not isinstance(payload, dict):
        return None
    for header in payload.get("headers") or []:
        if isinstance(header, dict) and (header.get("name") or "").lower() == name.lower():
            return header.get("value")
    return None


def strip_quoted_html(html: str) -> str:
    """Keep only the newest reply: drop Gmail quote containers and blockquotes."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for element in soup.select(QUOTE_SELECTORS):
        # Nested matches go away with their container
        if not element.decomposed:
            element.decompose()
    root = soup.body if soup.body is not None else soup
    return root.decode_contents().strip()


def strip_quoted_text(text: str) -> str:
    """
    Cut plain text at the first "On ... wrote:" attribution, drop ">" quoted
    lines and trim blank lines at either end.
    """
    if not text:
        return ""

    kept = []
    for raw_line in re.split(r"\r?\n", text):
        line = raw_line.rstrip()
        if ATTRIBUTION_RE.match(line):
            break
        if QUOTED_LINE_RE.match(line):
            continue
        kept.append(raw_line)

    while kept and not kept[0].strip():
        kept.pop(0)
    while kept and not kept[-1].strip():
        kept.pop()
    return "\n".join(kept)


def extract_email_address(value: Optional[str]) -> Optional[str]:
    """
    Pull a lower-cased address out of ``"Name <a@b.c>"`` or a bare address.
    """
    if not value:
        return None
    match = ANGLE_ADDRESS_RE.search(value)
    if match and match.group(1).strip():
        return match.group(1).strip().lower()
    match = BARE_ADDRESS_RE.search(value)
    if match:
        return match.group(1).strip().lower()
    return None
