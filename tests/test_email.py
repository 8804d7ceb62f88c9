"""Summary: Tests for message parsing.

Importance: Ensures provider payloads become consistent messages.
Alternatives: Validate parsing manually with real mailboxes.
"""

from __future__ import annotations

import base64

from planpilot.email import build_headers, extract_email_address, parse_gmail_message, parse_raw_message


def _encode(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("utf-8").rstrip("=")


def test_parse_gmail_message_extracts_bodies() -> None:
    """Summary: Verify Gmail payload parsing extracts headers and both bodies.

    Importance: The planner prefers plain text and falls back to HTML.
    Alternatives: Use the Gmail snippet only.
    """

    payload = {
        "id": "gmail-1",
        "threadId": "thread-1",
        "labelIds": ["INBOX", "UNREAD"],
        "sizeEstimate": 512,
        "snippet": "Hello",
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "Subject", "value": "Gmail Subject"},
                {"name": "From", "value": "Sender <sender@example.com>"},
                {"name": "Message-ID", "value": "<abc@example.com>"},
            ],
            "parts": [
                {"mimeType": "text/plain", "body": {"data": _encode("Hello from Gmail")}},
                {"mimeType": "text/html", "body": {"data": _encode("<p>Hello</p>")}},
            ],
        },
    }
    message = parse_gmail_message(payload)
    assert message.message_id == "gmail-1"
    assert message.thread_id == "thread-1"
    assert message.headers.subject == "Gmail Subject"
    assert message.headers.message_id == "<abc@example.com>"
    assert message.text_plain == "Hello from Gmail"
    assert message.text_html == "<p>Hello</p>"
    assert message.label_ids == ("INBOX", "UNREAD")
    assert message.size_estimate == 512


def test_body_text_falls_back_to_html() -> None:
    """Summary: Verify HTML-only messages still provide body text.

    Importance: Many newsletters ship no plain-text part.
    Alternatives: Skip planning for HTML-only mail.
    """

    payload = {
        "id": "gmail-2",
        "threadId": "thread-2",
        "payload": {"mimeType": "text/html", "body": {"data": _encode("<b>Sale</b>")}},
    }
    message = parse_gmail_message(payload)
    assert message.text_plain == ""
    assert message.body_text == "<b>Sale</b>"


def test_parse_raw_message_decodes_headers() -> None:
    """Summary: Verify raw RFC 822 parsing decodes encoded headers.

    Importance: Subjects must be readable in prompts.
    Alternatives: Keep encoded words as-is.
    """

    raw = (
        b"From: Vendor <billing@vendor.com>\r\n"
        b"Reply-To: ar@vendor.com\r\n"
        b"Subject: =?utf-8?q?Invoice_=2342?=\r\n"
        b"Message-ID: <inv-42@vendor.com>\r\n"
        b"Content-Type: text/plain; charset=utf-8\r\n"
        b"\r\n"
        b"Your invoice is attached.\r\n"
    )
    message = parse_raw_message(raw, thread_id="T1")
    assert message.headers.subject == "Invoice #42"
    assert message.headers.reply_to == "ar@vendor.com"
    assert message.message_id == "<inv-42@vendor.com>"
    assert message.thread_id == "T1"
    assert message.text_plain == "Your invoice is attached."


def test_header_helpers() -> None:
    """Summary: Verify header lookup is case-insensitive and addresses are extracted.

    Importance: Providers disagree on header casing.
    Alternatives: Normalize casing at every call site.
    """

    headers = build_headers({"FROM": "A <a@example.com>", "subject": "Hi", "X-Other": "ignored"})
    assert headers.from_ == "A <a@example.com>"
    assert headers.subject == "Hi"
    assert extract_email_address(headers.from_) == "a@example.com"
    assert extract_email_address(" b@example.com ") == "b@example.com"


def test_parse_gmail_message_unescapes_snippet() -> None:
    """Summary: Verify HTML entities in Gmail snippets are decoded.

    Importance: Gmail escapes quotes and ampersands in snippets.
    Alternatives: Decode snippets in the UI.
    """

    payload = {
        "id": "gmail-2",
        "threadId": "thread-2",
        "snippet": "It&#39;s ready &lt;today&gt;",
        "payload": {
            "mimeType": "text/plain",
            "headers": [{"name": "Subject", "value": "Ready"}],
            "body": {"data": _encode("It's ready today")},
        },
    }
    message = parse_gmail_message(payload)
    assert message.snippet == "It's ready <today>"
