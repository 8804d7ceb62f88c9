"""Summary: Message parsing for provider payloads and raw RFC 822 mail.

Importance: Normalizes headers and body variants before planning.
Alternatives: Rely solely on provider SDK message objects.
"""

from __future__ import annotations

import base64
import html
from email import message_from_bytes
from email.header import decode_header
from email.message import Message as MimeMessage
from typing import Any

from planpilot.models import Message, MessageHeaders


_HEADER_FIELDS = {
    "from": "from_",
    "to": "to",
    "cc": "cc",
    "reply-to": "reply_to",
    "subject": "subject",
    "date": "date",
    "message-id": "message_id",
    "references": "references",
}


def parse_gmail_message(message: dict[str, Any]) -> Message:
    """Summary: Parse a Gmail API message payload into a Message.

    Importance: Normalizes Gmail payloads into the core message model.
    Alternatives: Store raw Gmail payloads and parse later.
    """

    payload = message.get("payload") or {}
    headers = build_headers(_parse_gmail_headers(payload.get("headers", [])))
    text_plain, text_html = _extract_gmail_bodies(payload)
    return Message(
        message_id=message.get("id", ""),
        thread_id=message.get("threadId", ""),
        headers=headers,
        text_plain=text_plain,
        text_html=text_html,
        label_ids=tuple(message.get("labelIds", []) or []),
        size_estimate=int(message.get("sizeEstimate", 0) or 0),
        snippet=html.unescape(message.get("snippet", "") or "") or text_plain[:200].replace("\n", " "),
    )


def parse_raw_message(raw: bytes, message_id: str = "", thread_id: str = "") -> Message:
    """Summary: Parse raw RFC 822 bytes into a Message.

    Importance: Supports .eml exports and providers that return raw MIME.
    Alternatives: Skip body parsing and keep only headers.
    """

    mime = message_from_bytes(raw)
    headers = build_headers(
        {name: _decode_header_value(value) for name, value in mime.items()}
    )
    text_plain, text_html = _extract_mime_bodies(mime)
    return Message(
        message_id=message_id or headers.message_id,
        thread_id=thread_id or message_id or headers.message_id,
        headers=headers,
        text_plain=text_plain,
        text_html=text_html,
        size_estimate=len(raw),
        snippet=text_plain[:200].replace("\n", " "),
    )


def build_headers(raw_headers: dict[str, str]) -> MessageHeaders:
    """Summary: Map a header dictionary onto MessageHeaders.

    Importance: Header names are case-insensitive on the wire.
    Alternatives: Keep the raw header dictionary on the message.
    """

    values: dict[str, str] = {}
    for name, value in raw_headers.items():
        field_name = _HEADER_FIELDS.get(name.lower())
        if field_name and field_name not in values:
            values[field_name] = value
    return MessageHeaders(**values)


def _parse_gmail_headers(headers: list[dict[str, Any]]) -> dict[str, str]:
    """Summary: Normalize Gmail header list into a dictionary.

    Importance: Simplifies access to header values for parsing.
    Alternatives: Scan header lists inline for each field.
    """

    normalized: dict[str, str] = {}
    for header in headers:
        name = header.get("name")
        value = header.get("value")
        if name and value:
            normalized[name] = value
    return normalized


def _extract_gmail_bodies(payload: dict[str, Any]) -> tuple[str, str]:
    """Summary: Extract plain text and HTML bodies from a Gmail payload.

    Importance: The planner prefers plain text and falls back to HTML.
    Alternatives: Store the snippet only for Gmail messages.
    """

    text_parts: list[str] = []
    html_parts: list[str] = []
    for part in _walk_gmail_parts(payload):
        data = (part.get("body") or {}).get("data")
        if not data:
            continue
        mime_type = part.get("mimeType")
        if mime_type == "text/plain":
            text_parts.append(_decode_base64url(data))
        elif mime_type == "text/html":
            html_parts.append(_decode_base64url(data))
    return _join_parts(text_parts), _join_parts(html_parts)


def _walk_gmail_parts(payload: dict[str, Any]) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = [payload]
    for part in payload.get("parts", []) or []:
        parts.extend(_walk_gmail_parts(part))
    return parts


def _decode_base64url(data: str) -> str:
    """Summary: Decode base64url-encoded Gmail content.

    Importance: Gmail payloads use URL-safe base64 encoding.
    Alternatives: Use a third-party Gmail client library.
    """

    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("utf-8")).decode("utf-8", errors="ignore")


def _extract_mime_bodies(message: MimeMessage) -> tuple[str, str]:
    text_parts: list[str] = []
    html_parts: list[str] = []
    parts = message.walk() if message.is_multipart() else [message]
    for part in parts:
        content_type = part.get_content_type()
        if content_type not in {"text/plain", "text/html"}:
            continue
        payload = part.get_payload(decode=True) or b""
        text = payload.decode(part.get_content_charset() or "utf-8", errors="ignore")
        if content_type == "text/plain":
            text_parts.append(text)
        else:
            html_parts.append(text)
    return _join_parts(text_parts), _join_parts(html_parts)


def _decode_header_value(value: str) -> str:
    """Summary: Decode encoded email header values.

    Importance: Ensures subjects and senders are readable in prompts.
    Alternatives: Store raw header values and decode at display time.
    """

    fragments: list[str] = []
    for part, encoding in decode_header(value):
        if isinstance(part, bytes):
            fragments.append(part.decode(encoding or "utf-8", errors="ignore"))
        else:
            fragments.append(part)
    return "".join(fragments).strip()


def _join_parts(parts: list[str]) -> str:
    return "\n".join(item.strip() for item in parts if item.strip()).strip()


def extract_email_address(value: str) -> str:
    """Summary: Extract the address from a "Name <address>" header value.

    Importance: Replies must be addressed to a bare address.
    Alternatives: Use email.utils.parseaddr everywhere.
    """

    if "<" in value and ">" in value:
        return value[value.index("<") + 1 : value.index(">")].strip()
    return value.strip()
