"""Summary: FastAPI application for PlanPilot.

Importance: Exposes planning, execution, and history endpoints for UI clients.
Alternatives: Use a CLI-only workflow or a different web framework.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from planpilot.ai import LanguageModel
from planpilot.app import AppServices, build_services
from planpilot.config import AppConfig
from planpilot.errors import (
    ExecutionFailure,
    MailboxError,
    NotAuthenticated,
    PlanParseError,
    ProviderError,
)
from planpilot.mailbox import INBOX_LABEL_ID, MailboxClient
from planpilot.models import ActionType, Plan, PromptHistoryEntry, Thread
from planpilot.services import BatchResult, HistoryView


class LabelCreateRequest(BaseModel):
    """Summary: Request payload for adding a label to the catalog.

    Importance: Lets clients offer new labels to the planner.
    Alternatives: Sync labels only from the mail provider.
    """

    id: str
    name: str
    description: str | None = None


class RuleCreateRequest(BaseModel):
    """Summary: Request payload for rule creation.

    Importance: Enables client-defined rules over HTTP.
    Alternatives: Create rules only through the CLI.
    """

    name: str
    instructions: str
    actions: list[str] = Field(min_length=1)
    label_names: list[str] = Field(default_factory=list)


class PlanRequest(BaseModel):
    """Summary: Request payload for planning one thread.

    Importance: Keeps the replan flag explicit.
    Alternatives: Use separate plan and replan endpoints.
    """

    thread_id: str
    replan: bool = False


class BatchPlanRequest(BaseModel):
    thread_ids: list[str] | None = None
    replan: bool = True
    limit: int = Field(default=50, ge=1, le=500)


class ExecuteRequest(BaseModel):
    """Summary: Request payload for executing a thread's plan.

    Importance: plan_id pins the plan version the user reviewed.
    Alternatives: Always execute whatever is cached.
    """

    thread_id: str
    plan_id: str | None = None
    archive_on_label: bool | None = None


class BatchExecuteRequest(BaseModel):
    thread_ids: list[str] | None = None
    archive_on_label: bool | None = None
    limit: int = Field(default=50, ge=1, le=500)


class RejectRequest(BaseModel):
    thread_id: str
    plan_id: str | None = None


class PromptRequest(BaseModel):
    """Summary: Request payload for saving the general planning prompt.

    Importance: Each save becomes a new prompt history entry.
    Alternatives: Edit the prompt in configuration files.
    """

    prompt: str


def create_app(
    config: AppConfig,
    ai_provider: LanguageModel | None = None,
    mailbox: MailboxClient | None = None,
) -> FastAPI:
    """Summary: Create a FastAPI app wired to PlanPilot services.

    Importance: Ensures the API layer shares the same configuration and storage.
    Alternatives: Instantiate services globally outside the factory.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    app = FastAPI(title="PlanPilot API", version="0.1.0")
    services = build_services(config, ai_provider=ai_provider, mailbox=mailbox)

    @app.exception_handler(NotAuthenticated)
    def not_authenticated(_request: Request, exc: NotAuthenticated) -> JSONResponse:
        return JSONResponse(status_code=401, content={"detail": "Not authenticated"})

    @app.exception_handler(ProviderError)
    def provider_error(_request: Request, exc: ProviderError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": "Planning unavailable"})

    @app.exception_handler(PlanParseError)
    def plan_parse_error(_request: Request, exc: PlanParseError) -> JSONResponse:
        return JSONResponse(status_code=502, content={"detail": "Planning failed"})

    @app.exception_handler(ExecutionFailure)
    def execution_failure(_request: Request, exc: ExecutionFailure) -> JSONResponse:
        return JSONResponse(
            status_code=502, content={"detail": str(exc), "thread_id": exc.thread_id}
        )

    def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
        """Summary: Enforce API key authentication when configured.

        Importance: Adds a minimal security layer for local and private deployments.
        Alternatives: Use OAuth or session-based authentication.
        """

        if not config.api_key:
            return
        if x_api_key != config.api_key:
            raise NotAuthenticated("Invalid API key")

    def _get_thread(thread_id: str) -> Thread:
        try:
            return services.mailbox.get_thread(thread_id)
        except MailboxError as exc:
            raise HTTPException(status_code=404, detail=f"Thread {thread_id} not found") from exc

    def _select_threads(thread_ids: list[str] | None, limit: int) -> list[Thread]:
        if thread_ids:
            return [_get_thread(thread_id) for thread_id in thread_ids]
        return services.mailbox.list_threads([INBOX_LABEL_ID], limit=limit)

    @app.get("/health")
    def health() -> dict[str, str]:
        """Summary: Health check endpoint.

        Importance: Supports uptime checks in local and cloud deployments.
        Alternatives: Use a metrics endpoint only.
        """

        return {"status": "ok"}

    @app.get("/labels", dependencies=[Depends(require_api_key)])
    def list_labels() -> list[dict[str, Any]]:
        return [
            {"id": label.id, "name": label.name, "description": label.description}
            for label in services.labels.list_labels()
        ]

    @app.post("/labels", dependencies=[Depends(require_api_key)])
    def create_label(payload: LabelCreateRequest) -> dict[str, Any]:
        label = services.labels.save_label(payload.id, payload.name, payload.description)
        return {"id": label.id, "name": label.name}

    @app.post("/labels/sync", dependencies=[Depends(require_api_key)])
    def sync_labels() -> dict[str, Any]:
        """Summary: Import labels from the connected mailbox.

        Importance: Keeps the planner's label catalog current.
        Alternatives: Require manual label entry.
        """

        return {"synced": services.labels.sync_from_mailbox(services.mailbox)}

    @app.get("/rules", dependencies=[Depends(require_api_key)])
    def list_rules() -> list[dict[str, Any]]:
        return [
            {
                "id": rule.id,
                "name": rule.name,
                "instructions": rule.instructions,
                "actions": [action.value for action in rule.actions],
                "label_names": list(rule.label_names),
            }
            for rule in services.rules.list_rules()
        ]

    @app.post("/rules", dependencies=[Depends(require_api_key)])
    def create_rule(payload: RuleCreateRequest) -> dict[str, Any]:
        try:
            actions = [ActionType.parse(item) for item in payload.actions]
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        rule_id = services.rules.create_rule(
            payload.name, payload.instructions, actions, payload.label_names
        )
        return {"id": rule_id}

    @app.get("/threads", dependencies=[Depends(require_api_key)])
    def list_threads(limit: int = 50) -> list[dict[str, Any]]:
        """Summary: List inbox threads with their cached plans.

        Importance: Drives the inbox view without triggering model calls.
        Alternatives: Plan every thread on listing.
        """

        threads = services.mailbox.list_threads([INBOX_LABEL_ID], limit=limit)
        return [_thread_payload(thread, services) for thread in threads]

    @app.post("/plan", dependencies=[Depends(require_api_key)])
    def plan_thread(payload: PlanRequest) -> dict[str, Any]:
        """Summary: Return the cached plan for a thread or compute a new one.

        Importance: The main planning entry point for clients.
        Alternatives: Plan threads only in batch.
        """

        thread = _get_thread(payload.thread_id)
        try:
            plan = services.plans.plan_thread(thread, replan=payload.replan)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"thread_id": thread.thread_id, "plan": _plan_payload(plan)}

    @app.post("/plan/batch", dependencies=[Depends(require_api_key)])
    def plan_batch(payload: BatchPlanRequest) -> dict[str, Any]:
        threads = _select_threads(payload.thread_ids, payload.limit)
        result = services.plans.plan_threads(threads, replan=payload.replan)
        return _batch_payload(result, lambda plan: {"plan": _plan_payload(plan)})

    @app.get("/plan/state", dependencies=[Depends(require_api_key)])
    def plan_state(thread_id: str) -> dict[str, Any]:
        return {"thread_id": thread_id, "state": services.plans.plan_state(thread_id).value}

    @app.post("/plan/execute", dependencies=[Depends(require_api_key)])
    def execute_plan(payload: ExecuteRequest) -> dict[str, Any]:
        """Summary: Execute the cached plan of a thread.

        Importance: Applies the reviewed decision to the mailbox exactly once.
        Alternatives: Let clients submit arbitrary actions.
        """

        thread = _get_thread(payload.thread_id)
        plan = services.plans.get_cached_plan(thread.thread_id)
        if plan is None:
            raise HTTPException(status_code=404, detail="No plan for thread")
        if payload.plan_id and payload.plan_id != plan.plan_id:
            raise HTTPException(status_code=409, detail="Plan has been replaced")
        entry = services.execution.execute(
            thread, plan, automated=False, archive_on_label=payload.archive_on_label
        )
        return _history_payload(HistoryView(entry=entry, rule=services.rules.get_rule(entry.rule_id)))

    @app.post("/plan/execute-all", dependencies=[Depends(require_api_key)])
    def execute_all(payload: BatchExecuteRequest) -> dict[str, Any]:
        threads = _select_threads(payload.thread_ids, payload.limit)
        result = services.execution.execute_all(
            threads, automated=True, archive_on_label=payload.archive_on_label
        )
        return _batch_payload(result, lambda entry: {"history_id": entry.id})

    @app.post("/plan/reject", dependencies=[Depends(require_api_key)])
    def reject_plan(payload: RejectRequest) -> dict[str, Any]:
        """Summary: Reject a thread's plan.

        Importance: Clears the cached decision so the next pass replans.
        Alternatives: Hide rejected plans on the client only.
        """

        thread = _get_thread(payload.thread_id)
        plan = services.plans.get_cached_plan(thread.thread_id)
        if plan is None:
            raise HTTPException(status_code=404, detail="No plan for thread")
        if payload.plan_id and payload.plan_id != plan.plan_id:
            raise HTTPException(status_code=409, detail="Plan has been replaced")
        cleared = services.execution.reject(thread, plan)
        return {"status": "ok", "cleared": cleared}

    @app.get("/planned", dependencies=[Depends(require_api_key)])
    def planned() -> list[dict[str, Any]]:
        return [
            {
                "thread_id": item.thread_id,
                "plan": _plan_payload(item.plan),
                "rule": item.rule.name if item.rule else None,
            }
            for item in services.plans.list_planned()
        ]

    @app.get("/history", dependencies=[Depends(require_api_key)])
    def history(limit: int = 50) -> list[dict[str, Any]]:
        """Summary: List execution history, newest first.

        Importance: Shows what automation did and whether it was manual.
        Alternatives: Read history from logs.
        """

        return [_history_payload(view) for view in services.execution.list_history(limit=limit)]

    @app.get("/usage", dependencies=[Depends(require_api_key)])
    def usage(limit: int = 50) -> dict[str, Any]:
        return {
            "total_tokens": services.usage.total_tokens(),
            "records": [
                {
                    "tokens_used": record.tokens_used,
                    "model": record.model,
                    "created_at": record.created_at.isoformat(),
                }
                for record in services.usage.list_usage(limit=limit)
            ],
        }

    @app.get("/prompt", dependencies=[Depends(require_api_key)])
    def get_prompt() -> dict[str, str]:
        return {"prompt": services.prompts.current_prompt()}

    @app.post("/prompt", dependencies=[Depends(require_api_key)])
    def save_prompt(payload: PromptRequest) -> dict[str, Any]:
        return _prompt_payload(services.prompts.save_prompt(payload.prompt))

    @app.get("/prompt-history", dependencies=[Depends(require_api_key)])
    def prompt_history(limit: int = 50) -> list[dict[str, Any]]:
        """Summary: List saved versions of the general prompt, newest first.

        Importance: Lets users restore an earlier prompt.
        Alternatives: Keep only the current prompt.
        """

        return [_prompt_payload(entry) for entry in services.prompts.list_history(limit=limit)]

    @app.delete("/prompt-history/{prompt_id}", dependencies=[Depends(require_api_key)])
    def delete_prompt(prompt_id: int) -> dict[str, bool]:
        if not services.prompts.delete_entry(prompt_id):
            raise HTTPException(status_code=404, detail="Prompt history entry not found")
        return {"success": True}

    return app


def build_default_app() -> FastAPI:
    """Summary: Build the app from environment configuration.

    Importance: Used as the uvicorn factory entrypoint.
    Alternatives: Create a module-level app at import time.
    """

    return create_app(AppConfig.from_env())


def _plan_payload(plan: Plan) -> dict[str, Any]:
    return {
        "plan_id": plan.plan_id,
        "action": plan.action.value,
        "label": plan.label,
        "response": plan.response,
        "rule_id": plan.rule_id,
        "rule_name": plan.rule_name,
        "created_at": plan.created_at.isoformat(),
    }


def _history_payload(view: HistoryView) -> dict[str, Any]:
    entry = view.entry
    return {
        "id": entry.id,
        "thread_id": entry.thread_id,
        "message_id": entry.message_id,
        "plan_id": entry.plan_id,
        "rule": view.rule.name if view.rule else None,
        "actions": [action.value for action in entry.actions],
        "data": entry.data,
        "automated": entry.automated,
        "created_at": entry.created_at.isoformat(),
    }


def _prompt_payload(entry: PromptHistoryEntry) -> dict[str, Any]:
    return {"id": entry.id, "prompt": entry.prompt, "created_at": entry.created_at.isoformat()}


def _thread_payload(thread: Thread, services: AppServices) -> dict[str, Any]:
    latest = thread.latest_message
    plan = services.plans.get_cached_plan(thread.thread_id)
    return {
        "thread_id": thread.thread_id,
        "snippet": thread.snippet,
        "subject": latest.headers.subject if latest else "",
        "from": latest.headers.from_ if latest else "",
        "message_count": len(thread.messages),
        "plan": _plan_payload(plan) if plan else None,
        "state": services.plans.plan_state(thread.thread_id).value,
    }


def _batch_payload(result: BatchResult, render: Any) -> dict[str, Any]:
    return {
        "succeeded": [{"thread_id": thread_id, **render(value)} for thread_id, value in result.succeeded],
        "failed": [{"thread_id": thread_id, "error": error} for thread_id, error in result.failed],
        "skipped": list(result.skipped),
    }
