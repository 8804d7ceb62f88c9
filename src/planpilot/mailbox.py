"""Summary: Mailbox client interfaces and implementations.

Importance: Encapsulates reading threads and mutating the live mailbox.
Alternatives: Rely solely on provider SDKs with vendor lock-in.
"""

from __future__ import annotations

import base64
import html
import json
import logging
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import replace
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Callable, TypeVar

from planpilot.email import build_headers, parse_gmail_message
from planpilot.errors import MailboxError, MailboxRateLimited
from planpilot.models import Label, Message, MessageHeaders, Thread


logger = logging.getLogger(__name__)

INBOX_LABEL_ID = "INBOX"
SENT_LABEL_ID = "SENT"

T = TypeVar("T")


class MailboxClient(ABC):
    """Summary: Abstract interface for a user's mailbox.

    Importance: Standardizes reads and mutations across providers and fixtures.
    Alternatives: Use provider-specific classes directly in services.
    """

    @abstractmethod
    def list_threads(self, label_ids: list[str] | None = None, limit: int = 50) -> list[Thread]:
        """Summary: List threads carrying all of the given labels.

        Importance: Drives inbox views and batch planning.
        Alternatives: Fetch threads by cursor or date range instead.
        """

    @abstractmethod
    def get_thread(self, thread_id: str) -> Thread:
        """Summary: Fetch a single thread with all of its messages.

        Importance: Planning and execution always work on a fresh copy.
        Alternatives: Cache threads locally and sync periodically.
        """

    @abstractmethod
    def apply_label(self, message_id: str, label_id: str) -> None:
        """Add a label to a message."""

    @abstractmethod
    def remove_label(self, message_id: str, label_id: str) -> None:
        """Remove a label from a message."""

    @abstractmethod
    def send_reply(self, thread_id: str, headers: MessageHeaders, body: str) -> str:
        """Summary: Send a message into an existing thread and return its id.

        Importance: Backs the REPLY action.
        Alternatives: Create drafts and let the user send them.
        """

    @abstractmethod
    def list_labels(self) -> list[Label]:
        """List the labels defined in the mailbox."""


class FixtureMailboxClient(MailboxClient):
    """Summary: Mailbox backed by a JSON fixture, mutated in memory.

    Importance: Supports offline demos and deterministic tests.
    Alternatives: Use SQLite fixtures or generate synthetic threads.
    """

    def __init__(self, threads: list[Thread], labels: list[Label] | None = None) -> None:
        self._threads: dict[str, Thread] = {thread.thread_id: thread for thread in threads}
        self._labels = list(labels or [])
        self._lock = threading.Lock()
        self.mutations: list[tuple[str, ...]] = []

    @classmethod
    def from_file(cls, fixture_path: Path) -> "FixtureMailboxClient":
        """Summary: Load threads and labels from a fixture file.

        Importance: Provides predictable data for the CLI and API.
        Alternatives: Hardcode sample data in the class.
        """

        data = json.loads(fixture_path.read_text(encoding="utf-8"))
        labels = [
            Label(id=item["id"], name=item["name"], description=item.get("description"))
            for item in data.get("labels", [])
        ]
        threads = [_thread_from_fixture(item) for item in data.get("threads", [])]
        return cls(threads, labels)

    def list_threads(self, label_ids: list[str] | None = None, limit: int = 50) -> list[Thread]:
        wanted = set(label_ids or [])
        with self._lock:
            threads = list(self._threads.values())
        matches = [
            thread
            for thread in threads
            if not wanted or any(wanted <= set(message.label_ids) for message in thread.messages)
        ]
        return matches[:limit]

    def get_thread(self, thread_id: str) -> Thread:
        with self._lock:
            thread = self._threads.get(thread_id)
        if thread is None:
            raise MailboxError(f"Thread {thread_id} not found")
        return thread

    def apply_label(self, message_id: str, label_id: str) -> None:
        self._update_labels(message_id, add=label_id)
        self.mutations.append(("apply_label", message_id, label_id))

    def remove_label(self, message_id: str, label_id: str) -> None:
        self._update_labels(message_id, remove=label_id)
        self.mutations.append(("remove_label", message_id, label_id))

    def send_reply(self, thread_id: str, headers: MessageHeaders, body: str) -> str:
        with self._lock:
            thread = self._threads.get(thread_id)
            if thread is None:
                raise MailboxError(f"Thread {thread_id} not found")
            message_id = f"{thread_id}-reply-{len(thread.messages) + 1}"
            reply = Message(
                message_id=message_id,
                thread_id=thread_id,
                headers=headers,
                text_plain=body,
                label_ids=(SENT_LABEL_ID,),
            )
            self._threads[thread_id] = replace(thread, messages=thread.messages + (reply,))
        self.mutations.append(("send_reply", thread_id, headers.to, body))
        return message_id

    def list_labels(self) -> list[Label]:
        return list(self._labels)

    def _update_labels(self, message_id: str, add: str | None = None, remove: str | None = None) -> None:
        with self._lock:
            for thread_id, thread in self._threads.items():
                for index, message in enumerate(thread.messages):
                    if message.message_id != message_id:
                        continue
                    labels = [label for label in message.label_ids if label != remove]
                    if add and add not in labels:
                        labels.append(add)
                    messages = list(thread.messages)
                    messages[index] = replace(message, label_ids=tuple(labels))
                    self._threads[thread_id] = replace(thread, messages=tuple(messages))
                    return
        raise MailboxError(f"Message {message_id} not found")


class GmailMailboxClient(MailboxClient):
    """Summary: Mailbox client for the Gmail REST API using an OAuth access token.

    Importance: Applies plans to a real Gmail account.
    Alternatives: Use IMAP or the Google API client library.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str,
        rate_limit_pause_seconds: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._pause_seconds = rate_limit_pause_seconds
        self._sleep = sleep

    def list_threads(self, label_ids: list[str] | None = None, limit: int = 50) -> list[Thread]:
        """Summary: List threads page by page, pausing once on rate limits.

        Importance: Keeps paginated reads within provider quotas.
        Alternatives: Fetch a single page and ignore the rest.
        """

        thread_ids: list[str] = []
        page_token: str | None = None
        while len(thread_ids) < limit:
            query: list[tuple[str, str]] = [("maxResults", str(min(limit - len(thread_ids), 100)))]
            query.extend(("labelIds", label_id) for label_id in label_ids or [])
            if page_token:
                query.append(("pageToken", page_token))
            url = f"{self._base_url}/users/me/threads?{urllib.parse.urlencode(query)}"
            page = self._with_rate_limit_retry(lambda: self._request("GET", url))
            thread_ids.extend(item["id"] for item in page.get("threads", []) if item.get("id"))
            page_token = page.get("nextPageToken")
            if not page_token:
                break
        return [
            self._with_rate_limit_retry(lambda thread_id=thread_id: self.get_thread(thread_id))
            for thread_id in thread_ids[:limit]
        ]

    def get_thread(self, thread_id: str) -> Thread:
        payload = self._request("GET", f"{self._base_url}/users/me/threads/{thread_id}?format=full")
        messages = tuple(parse_gmail_message(item) for item in payload.get("messages", []))
        return Thread(
            thread_id=payload.get("id", thread_id),
            messages=messages,
            snippet=html.unescape(payload.get("snippet", "")),
        )

    def apply_label(self, message_id: str, label_id: str) -> None:
        self._request(
            "POST",
            f"{self._base_url}/users/me/messages/{message_id}/modify",
            {"addLabelIds": [label_id]},
        )

    def remove_label(self, message_id: str, label_id: str) -> None:
        self._request(
            "POST",
            f"{self._base_url}/users/me/messages/{message_id}/modify",
            {"removeLabelIds": [label_id]},
        )

    def send_reply(self, thread_id: str, headers: MessageHeaders, body: str) -> str:
        """Summary: Send a reply through the Gmail send endpoint.

        Importance: Gmail threads replies by threadId plus In-Reply-To/References.
        Alternatives: Create a draft instead of sending.
        """

        mime = EmailMessage()
        mime["To"] = headers.to
        if headers.cc:
            mime["Cc"] = headers.cc
        mime["Subject"] = headers.subject
        if headers.message_id:
            mime["In-Reply-To"] = headers.message_id
        if headers.references:
            mime["References"] = headers.references
        mime.set_content(body)
        raw = base64.urlsafe_b64encode(mime.as_bytes()).decode("utf-8")
        payload = self._request(
            "POST",
            f"{self._base_url}/users/me/messages/send",
            {"raw": raw, "threadId": thread_id},
        )
        return payload.get("id", "")

    def list_labels(self) -> list[Label]:
        payload = self._request("GET", f"{self._base_url}/users/me/labels")
        return [
            Label(id=item["id"], name=item["name"])
            for item in payload.get("labels", [])
            if item.get("id") and item.get("name")
        ]

    def _with_rate_limit_retry(self, operation: Callable[[], T]) -> T:
        """Summary: Run an operation, pausing and retrying once on a rate limit.

        Importance: A second rate limit after the pause is fatal for the batch.
        Alternatives: Retry with unbounded exponential backoff.
        """

        try:
            return operation()
        except MailboxRateLimited:
            logger.warning("Gmail rate limit hit; pausing %s seconds.", self._pause_seconds)
            self._sleep(self._pause_seconds)
            return operation()

    def _request(self, method: str, url: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        """Summary: Perform an authenticated Gmail API call.

        Importance: Maps HTTP failures to mailbox errors in one place.
        Alternatives: Use a third-party HTTP client or SDK.
        """

        headers = {"Authorization": f"Bearer {self._access_token}"}
        data = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(url, data=data, headers=headers, method=method)
        try:
            with urllib.request.urlopen(request, timeout=10) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            error_body = exc.read().decode("utf-8", errors="ignore")
            if exc.code == 429 or (exc.code == 403 and "rateLimitExceeded" in error_body):
                raise MailboxRateLimited(f"Gmail rate limit: {error_body or exc.reason}") from exc
            raise MailboxError(f"Gmail API request failed: {error_body or exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise MailboxError(f"Gmail API request failed: {exc}") from exc
        except OSError as exc:
            raise MailboxError(f"Gmail API connection failed: {exc}") from exc
        try:
            return json.loads(raw) if raw else {}
        except json.JSONDecodeError as exc:
            raise MailboxError("Gmail API returned invalid JSON") from exc


def _thread_from_fixture(item: dict[str, Any]) -> Thread:
    messages = tuple(
        Message(
            message_id=message["message_id"],
            thread_id=item["thread_id"],
            headers=build_headers(message.get("headers", {})),
            text_plain=message.get("text_plain", ""),
            text_html=message.get("text_html", ""),
            label_ids=tuple(message.get("label_ids", [INBOX_LABEL_ID])),
            size_estimate=int(message.get("size_estimate", 0)),
            snippet=message.get("snippet", ""),
        )
        for message in item.get("messages", [])
    )
    return Thread(thread_id=item["thread_id"], messages=messages, snippet=item.get("snippet", ""))
