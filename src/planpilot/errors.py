"""Summary: Exception taxonomy for PlanPilot.

Importance: Lets callers tell planning, execution, and auth failures apart.
Alternatives: Raise ValueError and RuntimeError everywhere.
"""

from __future__ import annotations


class PlanPilotError(Exception):
    """Base class for PlanPilot errors."""


class NotAuthenticated(PlanPilotError):
    """Raised when a request carries no valid session."""


class ClassificationFailure(PlanPilotError):
    """Summary: Base class for plan computation failures.

    Importance: The orchestrator treats every subclass as "no plan", never cached.
    Alternatives: Return None from the classifier and lose the reason.
    """


class ProviderError(ClassificationFailure):
    """Raised when the language-model service is unavailable or returns an error payload."""


class PlanParseError(ClassificationFailure):
    """Summary: Raised when a completion is not valid plan JSON.

    Importance: Carries the raw text and input length for diagnosis.
    Alternatives: Log and discard the completion silently.
    """

    def __init__(self, message: str, raw_text: str = "", input_length: int = 0) -> None:
        super().__init__(message)
        self.raw_text = raw_text[:500]
        self.input_length = input_length


class MailboxError(PlanPilotError):
    """Raised by mailbox clients when a provider operation fails."""


class MailboxRateLimited(MailboxError):
    """Raised when the mail provider signals a rate limit."""


class ExecutionFailure(PlanPilotError):
    """Summary: Raised when a plan could not be applied to the mailbox.

    Importance: Signals that no mutation was recorded for the thread.
    Alternatives: Propagate raw provider errors to callers.
    """

    def __init__(self, thread_id: str, message: str) -> None:
        super().__init__(message)
        self.thread_id = thread_id
