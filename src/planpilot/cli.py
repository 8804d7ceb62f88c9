"""Summary: Command-line interface for PlanPilot.

Importance: Provides a local-first entry point for planning and execution.
Alternatives: Build a web UI or desktop client first.
"""

from __future__ import annotations

import argparse
import logging

from planpilot.app import AppServices, build_services
from planpilot.config import AppConfig
from planpilot.errors import ClassificationFailure, ExecutionFailure, MailboxError
from planpilot.mailbox import INBOX_LABEL_ID
from planpilot.models import ActionType, Plan, Thread


def build_parser() -> argparse.ArgumentParser:
    """Summary: Build the CLI argument parser.

    Importance: Defines supported commands for local operation.
    Alternatives: Use a CLI framework like Typer or Click.
    """

    parser = argparse.ArgumentParser(description="PlanPilot CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    add_label = subparsers.add_parser("add-label", help="Add a label to the catalog")
    add_label.add_argument("label_id", type=str)
    add_label.add_argument("name", type=str)
    add_label.add_argument("--description", type=str, default=None)

    subparsers.add_parser("list-labels", help="List catalog labels")
    subparsers.add_parser("sync-labels", help="Import labels from the mailbox")

    add_rule = subparsers.add_parser("add-rule", help="Create a rule")
    add_rule.add_argument("name", type=str)
    add_rule.add_argument("instructions", type=str)
    add_rule.add_argument(
        "--action",
        dest="actions",
        action="append",
        required=True,
        choices=[action.wire_name for action in ActionType],
    )
    add_rule.add_argument("--label", dest="label_names", action="append", default=[])

    subparsers.add_parser("list-rules", help="List rules")

    list_threads = subparsers.add_parser("list-threads", help="List inbox threads")
    list_threads.add_argument("--limit", type=int, default=20)

    plan = subparsers.add_parser("plan", help="Plan a thread")
    plan.add_argument("thread_id", type=str)
    plan.add_argument("--replan", action="store_true")

    plan_all = subparsers.add_parser("plan-all", help="Plan every inbox thread")
    plan_all.add_argument("--limit", type=int, default=50)
    plan_all.add_argument("--replan", action="store_true")

    execute = subparsers.add_parser("execute", help="Execute a thread's plan")
    execute.add_argument("thread_id", type=str)
    execute.add_argument("--archive-on-label", action="store_true", default=None)

    execute_all = subparsers.add_parser("execute-all", help="Execute every cached inbox plan")
    execute_all.add_argument("--limit", type=int, default=50)
    execute_all.add_argument("--archive-on-label", action="store_true", default=None)

    reject = subparsers.add_parser("reject", help="Reject a thread's plan")
    reject.add_argument("thread_id", type=str)

    history = subparsers.add_parser("history", help="Show execution history")
    history.add_argument("--limit", type=int, default=20)

    subparsers.add_parser("usage", help="Show model token usage")

    set_prompt = subparsers.add_parser("set-prompt", help="Save a new general planning prompt")
    set_prompt.add_argument("prompt", type=str)

    prompt_history = subparsers.add_parser("prompt-history", help="List saved general prompts")
    prompt_history.add_argument("--limit", type=int, default=20)

    delete_prompt = subparsers.add_parser("delete-prompt", help="Delete a saved general prompt")
    delete_prompt.add_argument("prompt_id", type=int)

    subparsers.add_parser("serve", help="Run the HTTP API")

    return parser


def run_cli(argv: list[str] | None = None) -> None:
    """Summary: Execute CLI commands based on arguments.

    Importance: Drives the workflow without a UI.
    Alternatives: Invoke services via an HTTP API.
    """

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    config = AppConfig.from_env()

    if args.command == "serve":
        import uvicorn

        uvicorn.run(
            "planpilot.api:build_default_app",
            factory=True,
            host=config.api_host,
            port=config.api_port,
        )
        return

    services = build_services(config)

    if args.command == "add-label":
        label = services.labels.save_label(args.label_id, args.name, args.description)
        print(f"Saved label {label.id} ({label.name}).")
        return

    if args.command == "list-labels":
        for label in services.labels.list_labels():
            print(f"{label.id}: {label.name} - {label.description or ''}")
        return

    if args.command == "sync-labels":
        count = services.labels.sync_from_mailbox(services.mailbox)
        print(f"Synced {count} labels.")
        return

    if args.command == "add-rule":
        rule_id = services.rules.create_rule(
            args.name,
            args.instructions,
            [ActionType.parse(item) for item in args.actions],
            args.label_names,
        )
        print(f"Created rule {rule_id} ({args.name}).")
        return

    if args.command == "list-rules":
        for rule in services.rules.list_rules():
            actions = ", ".join(action.value for action in rule.actions)
            print(f"{rule.id}: {rule.name} [{actions}] {rule.instructions}")
        return

    if args.command == "list-threads":
        for thread in services.mailbox.list_threads([INBOX_LABEL_ID], limit=args.limit):
            latest = thread.latest_message
            subject = latest.headers.subject if latest else ""
            state = services.plans.plan_state(thread.thread_id).value
            print(f"{thread.thread_id}: {subject} [{state}]")
        return

    if args.command == "plan":
        thread = _load_thread(services, args.thread_id)
        try:
            plan = services.plans.plan_thread(thread, replan=args.replan)
        except ClassificationFailure as exc:
            print(f"Planning failed: {exc}")
            raise SystemExit(1) from exc
        print(_format_plan(plan))
        return

    if args.command == "plan-all":
        threads = services.mailbox.list_threads([INBOX_LABEL_ID], limit=args.limit)
        result = services.plans.plan_threads(threads, replan=args.replan)
        for thread_id, plan in result.succeeded:
            print(f"{thread_id}: {_format_plan(plan)}")
        for thread_id, error in result.failed:
            print(f"{thread_id}: failed ({error})")
        return

    if args.command == "execute":
        thread = _load_thread(services, args.thread_id)
        plan = services.plans.get_cached_plan(thread.thread_id)
        if plan is None:
            print("No plan for thread.")
            raise SystemExit(1)
        try:
            entry = services.execution.execute(
                thread, plan, automated=False, archive_on_label=args.archive_on_label
            )
        except ExecutionFailure as exc:
            print(f"Execution failed: {exc}")
            raise SystemExit(1) from exc
        print(f"Executed {', '.join(action.value for action in entry.actions)} (history {entry.id}).")
        return

    if args.command == "execute-all":
        threads = services.mailbox.list_threads([INBOX_LABEL_ID], limit=args.limit)
        result = services.execution.execute_all(
            threads, automated=True, archive_on_label=args.archive_on_label
        )
        print(
            f"Executed {len(result.succeeded)}, failed {len(result.failed)}, "
            f"skipped {len(result.skipped)}."
        )
        for thread_id, error in result.failed:
            print(f"{thread_id}: {error}")
        return

    if args.command == "reject":
        thread = _load_thread(services, args.thread_id)
        plan = services.plans.get_cached_plan(thread.thread_id)
        if plan is None:
            print("No plan for thread.")
            return
        services.execution.reject(thread, plan)
        print("Plan rejected.")
        return

    if args.command == "history":
        for view in services.execution.list_history(limit=args.limit):
            entry = view.entry
            actions = ", ".join(action.value for action in entry.actions)
            mode = "Automated" if entry.automated else "Manual"
            rule = view.rule.name if view.rule else "-"
            print(f"{entry.created_at:%Y-%m-%d %H:%M} {entry.thread_id} {actions} {rule} {mode} {entry.data}")
        return

    if args.command == "usage":
        print(f"Total tokens: {services.usage.total_tokens()}")
        for record in services.usage.list_usage(limit=10):
            print(f"{record.created_at:%Y-%m-%d %H:%M} {record.model} {record.tokens_used}")
        return

    if args.command == "set-prompt":
        entry = services.prompts.save_prompt(args.prompt)
        print(f"Saved prompt {entry.id}.")
        return

    if args.command == "prompt-history":
        for entry in services.prompts.list_history(limit=args.limit):
            print(f"{entry.id}: {entry.created_at:%Y-%m-%d %H:%M} {entry.prompt}")
        return

    if args.command == "delete-prompt":
        if not services.prompts.delete_entry(args.prompt_id):
            print(f"Prompt {args.prompt_id} not found.")
            raise SystemExit(1)
        print(f"Deleted prompt {args.prompt_id}.")
        return


def _load_thread(services: AppServices, thread_id: str) -> Thread:
    try:
        return services.mailbox.get_thread(thread_id)
    except MailboxError as exc:
        print(f"Thread {thread_id} not found: {exc}")
        raise SystemExit(1) from exc


def _format_plan(plan: Plan) -> str:
    parts = [plan.action.value]
    if plan.label:
        parts.append(f"label={plan.label}")
    if plan.response:
        parts.append(f"response={plan.response!r}")
    if plan.rule_name:
        parts.append(f"rule={plan.rule_name}")
    return " ".join(parts)


if __name__ == "__main__":
    run_cli()
