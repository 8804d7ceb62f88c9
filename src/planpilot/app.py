"""Summary: Application factory wiring core services.

Importance: Centralizes dependency creation for the CLI and API layers.
Alternatives: Instantiate services manually in each entrypoint.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from planpilot.ai import AiProviderFactory, LanguageModel
from planpilot.classifier import PlanClassifier
from planpilot.config import AppConfig
from planpilot.errors import NotAuthenticated
from planpilot.mailbox import FixtureMailboxClient, GmailMailboxClient, MailboxClient
from planpilot.models import User
from planpilot.services import (
    ExecutionService,
    KeyedLocks,
    LabelService,
    PlanCache,
    PlanService,
    PromptService,
    RuleService,
    UsageService,
)
from planpilot.storage.kv_cache import KeyValueCache
from planpilot.storage.sqlite_store import SqliteStore


@dataclass(frozen=True)
class AppContext:
    """Summary: Shared application context for building user services.

    Importance: Reuses storage, the model, the mailbox, and plan locks across requests.
    Alternatives: Rebuild dependencies for every request.
    """

    store: SqliteStore
    plan_cache: PlanCache
    ai_provider: LanguageModel
    mailbox: MailboxClient
    config: AppConfig
    locks: KeyedLocks

    def services_for_user(self, user_id: int) -> "AppServices":
        """Summary: Build user-scoped services from shared context.

        Importance: Keeps each mailbox owner's data behind their own user id.
        Alternatives: Use a multi-tenant database with row-level security.
        """

        if self.store.get_user(user_id) is None:
            raise NotAuthenticated(f"Unknown user {user_id}")
        usage = UsageService(store=self.store, user_id=user_id)
        prompts = PromptService(
            store=self.store, user_id=user_id, default_prompt=self.config.general_prompt
        )
        classifier = PlanClassifier(model=self.ai_provider, config=self.config.planner_config())
        plans = PlanService(
            store=self.store,
            plan_cache=self.plan_cache,
            classifier=classifier,
            usage=usage,
            user_id=user_id,
            locks=self.locks,
            workers=self.config.plan_workers,
            prompts=prompts,
        )
        execution = ExecutionService(
            store=self.store,
            plan_cache=self.plan_cache,
            mailbox=self.mailbox,
            user_id=user_id,
            locks=self.locks,
            archive_on_label=self.config.archive_on_label,
        )
        return AppServices(
            rules=RuleService(store=self.store, user_id=user_id),
            labels=LabelService(store=self.store, user_id=user_id),
            usage=usage,
            prompts=prompts,
            plans=plans,
            execution=execution,
            mailbox=self.mailbox,
            store=self.store,
            user_id=user_id,
        )


@dataclass(frozen=True)
class AppServices:
    """Summary: Bundle of core services for PlanPilot.

    Importance: Simplifies passing dependencies to UI or API layers.
    Alternatives: Use a dependency injection container.
    """

    rules: RuleService
    labels: LabelService
    usage: UsageService
    prompts: PromptService
    plans: PlanService
    execution: ExecutionService
    mailbox: MailboxClient
    store: SqliteStore
    user_id: int


def build_mailbox(config: AppConfig) -> MailboxClient:
    """Summary: Select the mailbox client from configuration.

    Importance: Uses Gmail when a token is configured, else the local fixture.
    Alternatives: Require an explicit provider setting.
    """

    if config.gmail_access_token:
        return GmailMailboxClient(
            config.gmail_access_token,
            config.gmail_base_url,
            rate_limit_pause_seconds=config.rate_limit_pause_seconds,
        )
    fixture_path = Path(config.mailbox_fixture)
    if fixture_path.exists():
        return FixtureMailboxClient.from_file(fixture_path)
    return FixtureMailboxClient([])


def build_context(
    config: AppConfig,
    ai_provider: LanguageModel | None = None,
    mailbox: MailboxClient | None = None,
) -> AppContext:
    """Summary: Build shared context for user-scoped services.

    Importance: Reuses storage and providers across user sessions.
    Alternatives: Construct dependencies separately per request.
    """

    store = SqliteStore(config.db_path)
    store.initialize()
    cache = KeyValueCache(config.db_path)
    cache.initialize()
    return AppContext(
        store=store,
        plan_cache=PlanCache(cache),
        ai_provider=ai_provider or AiProviderFactory(config).build(),
        mailbox=mailbox or build_mailbox(config),
        config=config,
        locks=KeyedLocks(),
    )


def build_services(
    config: AppConfig,
    ai_provider: LanguageModel | None = None,
    mailbox: MailboxClient | None = None,
) -> AppServices:
    """Summary: Build core services for the configured default user.

    Importance: Provides a single construction path for the application.
    Alternatives: Instantiate services directly within the CLI entrypoint.
    """

    context = build_context(config, ai_provider=ai_provider, mailbox=mailbox)
    user = User(display_name=config.default_user_name, email=config.default_user_email)
    user_id = context.store.ensure_user(user)
    return context.services_for_user(user_id)
