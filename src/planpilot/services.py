"""Summary: Core application services for PlanPilot.

Importance: Orchestrates plan caching, computation, execution, and auditing.
Alternatives: Build a full service layer with dependency injection framework.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterator

from planpilot.classifier import PlanClassifier
from planpilot.errors import ClassificationFailure, ExecutionFailure, MailboxError
from planpilot.mailbox import INBOX_LABEL_ID, MailboxClient
from planpilot.models import (
    ActionType,
    Label,
    Message,
    MessageHeaders,
    Plan,
    PlanExecutionHistoryEntry,
    PlanState,
    PromptHistoryEntry,
    Rule,
    Thread,
    UsageRecord,
)
from planpilot.email import extract_email_address
from planpilot.rules import resolve_label, resolve_rule
from planpilot.storage.kv_cache import KeyValueCache
from planpilot.storage.sqlite_store import SqliteStore


logger = logging.getLogger(__name__)


class KeyedLocks:
    """Summary: Registry of per-key mutual-exclusion locks.

    Importance: Serializes work on one (user, thread) without blocking other threads.
    Alternatives: Optimistic version checks on every cache write.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, _LockEntry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Summary: Hold the lock for a key, dropping the entry after its last holder.

        Importance: The registry only tracks keys that are in use.
        Alternatives: Keep one lock per key for the process lifetime.
        """

        with self._guard:
            entry = self._locks.setdefault(key, _LockEntry())
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


@dataclass(frozen=True)
class BatchResult:
    """Summary: Outcome of a batch operation over several threads.

    Importance: One thread's failure never hides its siblings' results.
    Alternatives: Abort the batch on the first error.
    """

    succeeded: list[tuple[str, Any]] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PlannedThread:
    """Summary: A cached plan with its rule resolved for display.

    Importance: Powers the planned-threads view.
    Alternatives: Return raw cache entries to clients.
    """

    thread_id: str
    plan: Plan
    rule: Rule | None


@dataclass(frozen=True)
class HistoryView:
    """Summary: A history entry paired with the rule it references.

    Importance: History outlives rule edits; missing rules show as unattributed.
    Alternatives: Copy rule details into every history row.
    """

    entry: PlanExecutionHistoryEntry
    rule: Rule | None


@dataclass(frozen=True)
class PlanCache:
    """Summary: Plan storage keyed by (user, thread) on top of the key-value cache.

    Importance: Holds at most one authoritative plan per thread.
    Alternatives: Store plans as relational rows.
    """

    cache: KeyValueCache
    namespace: str = "plan"

    def cache_key(self, user_id: int, thread_id: str) -> str:
        return f"{self.namespace}:{user_id}:{thread_id}"

    def get(self, user_id: int, thread_id: str) -> Plan | None:
        entry = self.cache.get(self.namespace, f"{user_id}:{thread_id}")
        return Plan.from_dict(entry.value) if entry else None

    def put(self, user_id: int, thread_id: str, plan: Plan) -> int:
        return self.cache.put(self.namespace, f"{user_id}:{thread_id}", plan.to_dict())

    def clear(self, user_id: int, thread_id: str, plan_id: str | None = None) -> bool:
        """Summary: Remove the cached plan, optionally only if it is a given plan.

        Importance: A rejection must not wipe a newer plan computed meanwhile.
        Alternatives: Always delete the key.
        """

        key = f"{user_id}:{thread_id}"
        if plan_id is None:
            return self.cache.delete(self.namespace, key)
        entry = self.cache.get(self.namespace, key)
        if entry is None or entry.value.get("plan_id") != plan_id:
            return False
        return self.cache.delete(self.namespace, key, expected_version=entry.version)

    def list_for_user(self, user_id: int) -> list[tuple[str, Plan]]:
        prefix = f"{user_id}:"
        return [
            (entry.key[len(prefix):], Plan.from_dict(entry.value))
            for entry in self.cache.items(self.namespace, prefix)
        ]


@dataclass(frozen=True)
class RuleService:
    """Summary: Reads and manages the user's automation rules.

    Importance: Rules constrain and attribute plans.
    Alternatives: Load rules from a static configuration file.
    """

    store: SqliteStore
    user_id: int

    def create_rule(
        self,
        name: str,
        instructions: str,
        actions: list[ActionType],
        label_names: list[str] | None = None,
    ) -> int:
        if not actions:
            raise ValueError("A rule must permit at least one action")
        rule_id = self.store.create_rule(self.user_id, name, instructions, actions, label_names)
        logger.info("Created rule %s (%s).", rule_id, name)
        return rule_id

    def list_rules(self) -> list[Rule]:
        return self.store.list_rules(self.user_id)

    def get_rule(self, rule_id: int | None) -> Rule | None:
        return resolve_rule(rule_id, self.list_rules())


@dataclass(frozen=True)
class LabelService:
    """Summary: Reads and manages the user's label catalog.

    Importance: The catalog is the set of labels the planner may choose from.
    Alternatives: Query the mail provider for labels on every plan.
    """

    store: SqliteStore
    user_id: int

    def save_label(self, label_id: str, name: str, description: str | None = None) -> Label:
        label = Label(id=label_id, name=name, description=description)
        self.store.save_label(label, user_id=self.user_id)
        return label

    def list_labels(self) -> list[Label]:
        return self.store.list_labels(self.user_id)

    def sync_from_mailbox(self, mailbox: MailboxClient) -> int:
        """Summary: Import user-visible labels from the mailbox.

        Importance: Keeps the catalog aligned with labels that actually exist.
        Alternatives: Require users to enter label ids by hand.
        """

        existing = {label.id: label for label in self.list_labels()}
        count = 0
        for label in mailbox.list_labels():
            known = existing.get(label.id)
            description = known.description if known else label.description
            self.store.save_label(
                Label(id=label.id, name=label.name, description=description), user_id=self.user_id
            )
            count += 1
        logger.info("Synced %s labels from mailbox.", count)
        return count


@dataclass(frozen=True)
class UsageService:
    """Summary: Records and reports model token usage.

    Importance: Supports quota and billing without affecting planning.
    Alternatives: Read usage from the model provider's dashboard.
    """

    store: SqliteStore
    user_id: int

    def record(self, tokens_used: int, model: str) -> int:
        record = UsageRecord(
            user_id=self.user_id,
            tokens_used=tokens_used,
            model=model,
            created_at=datetime.utcnow(),
        )
        return self.store.add_usage(record)

    def list_usage(self, limit: int = 50) -> list[UsageRecord]:
        return self.store.list_usage(self.user_id, limit=limit)

    def total_tokens(self) -> int:
        return self.store.total_usage(self.user_id)


@dataclass(frozen=True)
class PromptService:
    """Summary: Keeps the history of the user's general planning prompt.

    Importance: The newest saved prompt steers every plan the model computes.
    Alternatives: Read the prompt from configuration only.
    """

    store: SqliteStore
    user_id: int
    default_prompt: str = ""

    def save_prompt(self, prompt: str) -> PromptHistoryEntry:
        entry = self.store.add_prompt(self.user_id, prompt)
        logger.info("Saved general prompt version %s.", entry.id)
        return entry

    def current_prompt(self) -> str:
        latest = self.store.list_prompts(self.user_id, limit=1)
        return latest[0].prompt if latest else self.default_prompt

    def list_history(self, limit: int = 50) -> list[PromptHistoryEntry]:
        return self.store.list_prompts(self.user_id, limit=limit)

    def delete_entry(self, prompt_id: int) -> bool:
        deleted = self.store.delete_prompt(self.user_id, prompt_id)
        if deleted:
            logger.info("Deleted general prompt version %s.", prompt_id)
        return deleted


@dataclass(frozen=True)
class PlanService:
    """Summary: Resolves cached plans and computes new ones on demand.

    Importance: The cache is the primary cost-control mechanism for model calls.
    Alternatives: Call the model every time a thread is displayed.
    """

    store: SqliteStore
    plan_cache: PlanCache
    classifier: PlanClassifier
    usage: UsageService
    user_id: int
    locks: KeyedLocks
    workers: int = 4
    prompts: PromptService | None = None

    def plan_thread(self, thread: Thread, replan: bool = False) -> Plan:
        """Summary: Return the cached plan or compute, cache, and bill a new one.

        Importance: Implements cache-hit, miss, and replan semantics.
        Alternatives: Separate read and compute endpoints.

        Raises ClassificationFailure subclasses; on failure neither the cache
        nor usage is written.
        """

        message = thread.latest_message
        if message is None:
            raise ValueError(f"Thread {thread.thread_id} has no messages")
        cache_key = self.plan_cache.cache_key(self.user_id, thread.thread_id)
        with self.locks.hold(cache_key):
            if not replan:
                cached = self.plan_cache.get(self.user_id, thread.thread_id)
                if cached is not None:
                    logger.info("Plan cache hit for %s.", cache_key)
                    return cached
            labels = self.store.list_labels(self.user_id)
            rules = self.store.list_rules(self.user_id)
            classified = self.classifier.compute_plan(
                subject=message.headers.subject,
                body_text=message.body_text,
                sender=message.headers.from_,
                labels=labels,
                rules=rules,
                general_prompt=self.prompts.current_prompt() if self.prompts else None,
            )
            self.plan_cache.put(self.user_id, thread.thread_id, classified.plan)
            self.usage.record(classified.tokens_used, classified.model)
        logger.info(
            "%s %s: %s.",
            "Replanned" if replan else "Planned",
            cache_key,
            classified.plan.action.value,
        )
        return classified.plan

    def get_or_compute_plan(self, thread: Thread, replan: bool = False) -> Plan | None:
        """Summary: Like plan_thread, but report classification failures as None.

        Importance: Lets callers treat "no plan" uniformly.
        Alternatives: Force every caller to handle planning exceptions.
        """

        try:
            return self.plan_thread(thread, replan=replan)
        except ClassificationFailure as exc:
            logger.warning("Planning failed for thread %s: %s", thread.thread_id, exc)
            return None

    def plan_threads(self, threads: list[Thread], replan: bool = False) -> BatchResult:
        """Summary: Plan many threads concurrently with isolated failures.

        Importance: Backs "replan all" over an inbox view.
        Alternatives: Plan threads one by one.
        """

        return _fan_out(
            threads,
            lambda thread: self.plan_thread(thread, replan=replan),
            workers=self.workers,
            errors=(ClassificationFailure, ValueError),
        )

    def get_cached_plan(self, thread_id: str) -> Plan | None:
        return self.plan_cache.get(self.user_id, thread_id)

    def plan_state(self, thread_id: str) -> PlanState:
        """Summary: Report where a thread sits in the planning lifecycle.

        Importance: Distinguishes pending plans from executed ones.
        Alternatives: Keep an explicit status column per thread.
        """

        plan = self.plan_cache.get(self.user_id, thread_id)
        if plan is None:
            return PlanState.UNPLANNED
        if self.store.find_history_entry(self.user_id, thread_id, plan.plan_id):
            return PlanState.EXECUTED
        return PlanState.PLANNED

    def list_planned(self) -> list[PlannedThread]:
        rules = self.store.list_rules(self.user_id)
        return [
            PlannedThread(thread_id=thread_id, plan=plan, rule=resolve_rule(plan.rule_id, rules))
            for thread_id, plan in self.plan_cache.list_for_user(self.user_id)
        ]


@dataclass(frozen=True)
class ExecutionService:
    """Summary: Applies or rejects plans against the live mailbox.

    Importance: The only component that mutates the mailbox.
    Alternatives: Let clients call the mail provider directly.
    """

    store: SqliteStore
    plan_cache: PlanCache
    mailbox: MailboxClient
    user_id: int
    locks: KeyedLocks
    archive_on_label: bool = False

    def execute(
        self,
        thread: Thread,
        plan: Plan,
        automated: bool = False,
        archive_on_label: bool | None = None,
    ) -> PlanExecutionHistoryEntry:
        """Summary: Apply a plan once and record it in history.

        Importance: Re-running the same plan never repeats a mailbox mutation.
        Alternatives: Rely on the provider to deduplicate operations.

        Raises ExecutionFailure when the mailbox rejects an operation. If an
        earlier mutation of the same plan already went through, a history entry
        flagged partial records it before the failure is raised.
        """

        with self.locks.hold(f"execute:{self.user_id}:{thread.thread_id}"):
            existing = self.store.find_history_entry(self.user_id, thread.thread_id, plan.plan_id)
            if existing is not None:
                logger.info(
                    "Plan %s for thread %s already executed; skipping.",
                    plan.plan_id,
                    thread.thread_id,
                )
                return existing
            message = thread.latest_message
            if message is None:
                raise ExecutionFailure(thread.thread_id, f"Thread {thread.thread_id} has no messages")
            archive = self.archive_on_label if archive_on_label is None else archive_on_label
            steps: list[tuple[str, str, str]] = []
            try:
                actions, data = self._apply(thread, message, plan, archive, steps)
            except MailboxError as exc:
                logger.warning("Execution failed for thread %s: %s", thread.thread_id, exc)
                if steps:
                    self._record_partial(thread, message, plan, automated, steps, exc)
                raise ExecutionFailure(
                    thread.thread_id, f"Mailbox rejected {plan.action.value}: {exc}"
                ) from exc
            entry = self.store.add_history_entry(
                user_id=self.user_id,
                thread_id=thread.thread_id,
                message_id=message.message_id,
                plan_id=plan.plan_id,
                rule_id=plan.rule_id,
                actions=actions,
                data=data,
                automated=automated,
            )
        logger.info(
            "Executed %s on thread %s (%s).",
            ", ".join(action.value for action in actions),
            thread.thread_id,
            "automated" if automated else "manual",
        )
        return entry

    def reject(self, thread: Thread, plan: Plan) -> bool:
        """Summary: Dismiss a plan so the next planning pass starts fresh.

        Importance: A declined plan must not short-circuit future planning.
        Alternatives: Keep the plan and flag it as dismissed.
        """

        cleared = self.plan_cache.clear(self.user_id, thread.thread_id, plan_id=plan.plan_id)
        logger.info(
            "Rejected plan %s for thread %s (cache %s).",
            plan.plan_id,
            thread.thread_id,
            "cleared" if cleared else "unchanged",
        )
        return cleared

    def execute_all(
        self,
        threads: list[Thread],
        automated: bool = True,
        archive_on_label: bool | None = None,
    ) -> BatchResult:
        """Summary: Execute the cached plan of every given thread.

        Importance: Backs "apply to all" with per-thread failure isolation.
        Alternatives: Stop at the first failed thread.
        """

        result = BatchResult()
        for thread in threads:
            plan = self.plan_cache.get(self.user_id, thread.thread_id)
            if plan is None:
                result.skipped.append(thread.thread_id)
                continue
            try:
                entry = self.execute(
                    thread, plan, automated=automated, archive_on_label=archive_on_label
                )
            except ExecutionFailure as exc:
                result.failed.append((thread.thread_id, str(exc)))
                continue
            except Exception as exc:
                logger.exception("Unexpected error executing thread %s.", thread.thread_id)
                result.failed.append((thread.thread_id, f"{type(exc).__name__}: {exc}"))
                continue
            result.succeeded.append((thread.thread_id, entry))
        return result

    def list_history(self, limit: int = 50) -> list[HistoryView]:
        rules = self.store.list_rules(self.user_id)
        return [
            HistoryView(entry=entry, rule=resolve_rule(entry.rule_id, rules))
            for entry in self.store.list_history(self.user_id, limit=limit)
        ]

    def _apply(
        self,
        thread: Thread,
        message: Message,
        plan: Plan,
        archive_on_label: bool,
        steps: list[tuple[str, str, str]],
    ) -> tuple[list[ActionType], dict[str, Any]]:
        handlers: dict[ActionType, Callable[[], tuple[list[ActionType], dict[str, Any]]]] = {
            ActionType.REPLY: lambda: self._reply(thread, message, plan, steps),
            ActionType.ARCHIVE: lambda: self._archive(thread, steps),
            ActionType.LABEL: lambda: self._label(thread, message, plan, archive_on_label, steps),
            ActionType.NONE: lambda: ([ActionType.NONE], {}),
        }
        return handlers[plan.action]()

    def _reply(
        self, thread: Thread, message: Message, plan: Plan, steps: list[tuple[str, str, str]]
    ) -> tuple[list[ActionType], dict[str, Any]]:
        if not plan.response:
            raise ExecutionFailure(thread.thread_id, "Reply plan has no response text")
        headers = build_reply_headers(message.headers)
        sent_id = self.mailbox.send_reply(thread.thread_id, headers, plan.response)
        steps.append(("send_reply", thread.thread_id, sent_id))
        return [ActionType.REPLY], {"to": headers.to, "sent_message_id": sent_id}

    def _archive(
        self, thread: Thread, steps: list[tuple[str, str, str]]
    ) -> tuple[list[ActionType], dict[str, Any]]:
        for message_id in _inbox_message_ids(thread):
            self.mailbox.remove_label(message_id, INBOX_LABEL_ID)
            steps.append(("remove_label", message_id, INBOX_LABEL_ID))
        return [ActionType.ARCHIVE], {}

    def _label(
        self,
        thread: Thread,
        message: Message,
        plan: Plan,
        archive_on_label: bool,
        steps: list[tuple[str, str, str]],
    ) -> tuple[list[ActionType], dict[str, Any]]:
        label = resolve_label(plan.label, self.store.list_labels(self.user_id))
        if label is None:
            raise ExecutionFailure(thread.thread_id, f"Label {plan.label!r} is not in the catalog")
        self.mailbox.apply_label(message.message_id, label.id)
        steps.append(("apply_label", message.message_id, label.id))
        actions = [ActionType.LABEL]
        if archive_on_label:
            self._archive(thread, steps)
            actions.append(ActionType.ARCHIVE)
        return actions, {"label": label.name, "label_id": label.id, "archived": archive_on_label}

    def _record_partial(
        self,
        thread: Thread,
        message: Message,
        plan: Plan,
        automated: bool,
        steps: list[tuple[str, str, str]],
        error: MailboxError,
    ) -> PlanExecutionHistoryEntry:
        """Summary: Record the mutations of a plan that failed partway through.

        Importance: Every mailbox change that happened leaves an audit entry.
        Alternatives: Undo the completed mutations before raising.
        """

        actions: list[ActionType] = []
        for operation, _, _ in steps:
            action = _STEP_ACTIONS[operation]
            if action not in actions:
                actions.append(action)
        logger.warning(
            "Recording partial execution of plan %s on thread %s.", plan.plan_id, thread.thread_id
        )
        return self.store.add_history_entry(
            user_id=self.user_id,
            thread_id=thread.thread_id,
            message_id=message.message_id,
            plan_id=plan.plan_id,
            rule_id=plan.rule_id,
            actions=actions,
            data={"partial": True, "error": str(error), "mutations": [list(step) for step in steps]},
            automated=automated,
        )


_STEP_ACTIONS = {
    "send_reply": ActionType.REPLY,
    "remove_label": ActionType.ARCHIVE,
    "apply_label": ActionType.LABEL,
}


def build_reply_headers(original: MessageHeaders) -> MessageHeaders:
    """Summary: Build headers for a reply to a message.

    Importance: Keeps replies threaded in the recipient's client.
    Alternatives: Let the provider infer threading from the thread id alone.
    """

    subject = original.subject
    if not subject.lower().startswith("re:"):
        subject = f"Re: {subject}"
    references = " ".join(item for item in [original.references, original.message_id] if item)
    return MessageHeaders(
        to=extract_email_address(original.reply_to or original.from_),
        cc=original.cc,
        subject=subject,
        message_id=original.message_id,
        references=references,
    )


def _inbox_message_ids(thread: Thread) -> list[str]:
    ids = [message.message_id for message in thread.messages if INBOX_LABEL_ID in message.label_ids]
    if ids:
        return ids
    latest = thread.latest_message
    return [latest.message_id] if latest else []


def _fan_out(
    threads: list[Thread],
    operation: Callable[[Thread], Any],
    workers: int,
    errors: tuple[type[Exception], ...],
) -> BatchResult:
    """Summary: Run an operation per thread in a worker pool.

    Importance: Results keep input order regardless of completion order.
    Alternatives: Use asyncio tasks.
    """

    outcomes: list[tuple[int, str, Any, str | None]] = []
    with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        future_to_idx = {
            executor.submit(operation, thread): idx for idx, thread in enumerate(threads)
        }
        for future in concurrent.futures.as_completed(future_to_idx):
            idx = future_to_idx[future]
            thread_id = threads[idx].thread_id
            try:
                outcomes.append((idx, thread_id, future.result(), None))
            except errors as exc:
                logger.warning("Thread %s failed in batch: %s", thread_id, exc)
                outcomes.append((idx, thread_id, None, str(exc)))
            except Exception as exc:
                logger.exception("Unexpected error for thread %s in batch.", thread_id)
                outcomes.append((idx, thread_id, None, f"{type(exc).__name__}: {exc}"))
    outcomes.sort(key=lambda item: item[0])
    result = BatchResult()
    for _, thread_id, value, error in outcomes:
        if error is None:
            result.succeeded.append((thread_id, value))
        else:
            result.failed.append((thread_id, error))
    return result
