"""Summary: Domain model dataclasses for PlanPilot.

Importance: Defines the core entities shared across planning, execution, and storage.
Alternatives: Use Pydantic models or ORM classes directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
import secrets


class ActionType(str, Enum):
    """Summary: Action kinds a plan can carry.

    Importance: Gives execution an exhaustive set of cases to dispatch on.
    Alternatives: Compare free-form action strings at runtime.
    """

    REPLY = "REPLY"
    ARCHIVE = "ARCHIVE"
    LABEL = "LABEL"
    NONE = "NONE"

    @classmethod
    def parse(cls, value: str) -> "ActionType":
        """Summary: Parse an action name case-insensitively.

        Importance: The model emits lower-case names while storage keeps upper-case.
        Alternatives: Require exact enum values everywhere.
        """

        try:
            return cls(value.strip().upper())
        except ValueError as exc:
            raise ValueError(f"Unknown action: {value!r}") from exc

    @property
    def wire_name(self) -> str:
        return self.value.lower()


class PlanState(str, Enum):
    """Summary: Lifecycle state of planning for one thread.

    Importance: Exposes where a thread sits between planning and execution.
    Alternatives: Derive state ad hoc in each caller.
    """

    UNPLANNED = "UNPLANNED"
    PLANNED = "PLANNED"
    EXECUTED = "EXECUTED"


@dataclass(frozen=True)
class User:
    """Summary: Represents a mailbox owner.

    Importance: Scopes rules, labels, plans, and history to one person.
    Alternatives: Keep a single implicit user without records.
    """

    display_name: str
    email: str


@dataclass(frozen=True)
class MessageHeaders:
    """Summary: Normalized email headers.

    Importance: Gives planning and reply threading a stable header shape.
    Alternatives: Pass raw provider header lists around.
    """

    from_: str = ""
    to: str = ""
    cc: str = ""
    reply_to: str = ""
    subject: str = ""
    date: str = ""
    message_id: str = ""
    references: str = ""


@dataclass(frozen=True)
class Message:
    """Summary: Represents one email within a thread.

    Importance: Core unit the planner reads and the executor acts on.
    Alternatives: Model only threads and store messages as embedded records.
    """

    message_id: str
    thread_id: str
    headers: MessageHeaders
    text_plain: str = ""
    text_html: str = ""
    label_ids: tuple[str, ...] = ()
    size_estimate: int = 0
    snippet: str = ""

    @property
    def body_text(self) -> str:
        return self.text_plain or self.text_html


@dataclass(frozen=True)
class Label:
    """Summary: Represents a mailbox label.

    Importance: Labels are the enumerable targets of the LABEL action.
    Alternatives: Use fixed system labels with limited user customization.
    """

    id: str
    name: str
    description: str | None = None


@dataclass(frozen=True)
class Rule:
    """Summary: Represents a user-defined automation rule.

    Importance: Constrains which actions and labels a plan may use.
    Alternatives: Encode all preferences in a single free-text prompt.
    """

    id: int
    user_id: int
    name: str
    instructions: str
    actions: tuple[ActionType, ...]
    label_names: tuple[str, ...] = ()


@dataclass(frozen=True)
class Plan:
    """Summary: The computed decision for one thread.

    Importance: Unit of caching, display, and execution.
    Alternatives: Store raw model output and interpret it on execution.
    """

    action: ActionType
    label: str | None = None
    response: str | None = None
    rule_id: int | None = None
    rule_name: str | None = None
    plan_id: str = field(default_factory=lambda: secrets.token_hex(8))
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Summary: Serialize the plan for cache storage.

        Importance: Keeps the cache payload format in one place.
        Alternatives: Pickle plan objects directly.
        """

        return {
            "plan_id": self.plan_id,
            "action": self.action.value,
            "label": self.label,
            "response": self.response,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "created_at": self.created_at.isoformat(),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Plan":
        """Summary: Rebuild a plan from its cached form.

        Importance: Mirrors to_dict for cache reads.
        Alternatives: Store plans in dedicated relational columns.
        """

        return Plan(
            action=ActionType.parse(data["action"]),
            label=data.get("label"),
            response=data.get("response"),
            rule_id=data.get("rule_id"),
            rule_name=data.get("rule_name"),
            plan_id=data["plan_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass(frozen=True)
class Thread:
    """Summary: A conversation made of messages, most recent last.

    Importance: Plans are computed and cached per thread.
    Alternatives: Plan each message independently.
    """

    thread_id: str
    messages: tuple[Message, ...]
    snippet: str = ""
    plan: Plan | None = None

    @property
    def latest_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None


@dataclass(frozen=True)
class PlanExecutionHistoryEntry:
    """Summary: Audit record of one plan execution.

    Importance: Proves what was done to the mailbox and guards against repeats.
    Alternatives: Log executions only in observability logs.
    """

    id: int
    user_id: int
    thread_id: str
    message_id: str
    plan_id: str
    rule_id: int | None
    actions: tuple[ActionType, ...]
    data: dict[str, Any]
    automated: bool
    created_at: datetime


@dataclass(frozen=True)
class UsageRecord:
    """Summary: Token consumption of one model invocation.

    Importance: Feeds quota and billing reports.
    Alternatives: Estimate usage from request counts only.
    """

    user_id: int
    tokens_used: int
    model: str
    created_at: datetime


@dataclass(frozen=True)
class PromptHistoryEntry:
    """Summary: One saved version of the user's general planning prompt.

    Importance: Lets users review and roll back their prompt edits.
    Alternatives: Keep only the current prompt and overwrite it.
    """

    id: int
    user_id: int
    prompt: str
    created_at: datetime


@dataclass(frozen=True)
class Completion:
    """Summary: Text and token usage returned by a language model.

    Importance: Normalizes provider responses for the classifier.
    Alternatives: Return provider-specific response objects directly.
    """

    content: str
    tokens_used: int
