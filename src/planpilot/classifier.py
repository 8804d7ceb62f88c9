"""Summary: Plan classification backed by a language model.

Importance: Turns an email and the user's catalog into a validated plan.
Alternatives: Use a keyword rule engine without a model.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError, field_validator, model_validator

from planpilot.ai import LanguageModel
from planpilot.config import PlannerConfig
from planpilot.errors import PlanParseError
from planpilot.models import ActionType, Label, Plan, Rule
from planpilot.rules import check_rule_permits, find_rule_by_name, resolve_label


logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class PlanSchema(BaseModel):
    """Schema for the plan JSON returned by the model."""

    action: ActionType
    label: str | None = None
    response: str | None = None
    rule: str | None = None

    @field_validator("action", mode="before")
    @classmethod
    def parse_action(cls, value: Any) -> ActionType:
        if not isinstance(value, str):
            raise ValueError("action must be a string")
        return ActionType.parse(value)

    @model_validator(mode="after")
    def check_action_fields(self) -> "PlanSchema":
        if self.action is ActionType.REPLY and not (self.response or "").strip():
            raise ValueError("Reply plan without a response")
        if self.action is ActionType.LABEL and not (self.label or "").strip():
            raise ValueError("Label plan without a label")
        return self


@dataclass(frozen=True)
class ClassifiedPlan:
    """Summary: A validated plan plus the cost of producing it.

    Importance: Lets the orchestrator record usage without re-querying the model.
    Alternatives: Return the plan alone and estimate usage later.
    """

    plan: Plan
    tokens_used: int
    model: str


@dataclass(frozen=True)
class PlanClassifier:
    """Summary: Builds the planning prompt, calls the model, and validates output.

    Importance: The only component that talks to the language model.
    Alternatives: Let each caller prompt the model on its own.
    """

    model: LanguageModel
    config: PlannerConfig

    def compute_plan(
        self,
        subject: str,
        body_text: str,
        sender: str,
        labels: list[Label],
        rules: list[Rule] | None = None,
        general_prompt: str | None = None,
    ) -> ClassifiedPlan:
        """Summary: Compute a plan for one email.

        Importance: Produces the decision the user reviews and executes.
        Alternatives: Ask the model for free text and interpret it manually.

        Raises ProviderError when the model service fails and PlanParseError when
        the completion is not a valid plan. Neither has side effects.
        """

        rules = rules or []
        system_prompt = build_system_prompt(labels, rules)
        user_prompts = [
            self.config.general_prompt if general_prompt is None else general_prompt,
            build_email_prompt(subject, sender, body_text, self.config.max_body_chars),
        ]
        completion = self.model.complete(
            system_prompt,
            [prompt for prompt in user_prompts if prompt],
            self.config.max_output_tokens,
        )
        try:
            plan = parse_plan(completion.content, labels, rules)
        except PlanParseError as exc:
            exc.input_length = len(body_text)
            logger.error(
                "Plan parse failed: %s (input length %s, raw %r)",
                exc,
                exc.input_length,
                exc.raw_text,
            )
            raise
        logger.info("Computed %s plan for %r.", plan.action.value, subject[:80])
        return ClassifiedPlan(
            plan=plan, tokens_used=completion.tokens_used, model=self.config.model
        )


def build_system_prompt(labels: list[Label], rules: list[Rule]) -> str:
    """Summary: Build the instruction prompt listing actions, labels, and rules.

    Importance: The model can only pick from what it is shown.
    Alternatives: Fine-tune a model on the user's catalog.
    """

    actions = ", ".join(action.wire_name for action in ActionType)
    lines = [
        "You are an AI assistant that helps people manage their emails by replying, "
        "archiving and labelling emails on the user's behalf.",
        "The user will send emails and it is your job to plan a course of action to handle them.",
        "You will always return valid JSON as a response.",
        "",
        "The JSON should contain the following fields:",
        "",
        f"action: {actions}",
        "label?: LABEL",
        "response?: string",
    ]
    if rules:
        lines.append("rule?: RULE")
    if labels:
        lines.append("")
        lines.append("LABEL can be one of the following:")
        lines.append(
            ", \n".join(
                f"* {label.name}{f' - {label.description}' if label.description else ''}"
                for label in labels
            )
        )
    if rules:
        lines.append("")
        lines.append("RULE can be one of the following:")
        for rule in rules:
            allowed = ", ".join(action.wire_name for action in rule.actions) or "any"
            lines.append(f"* {rule.name} (actions: {allowed}) - {rule.instructions}")
    lines.extend(
        [
            "",
            'If action is "reply", include a "response" field with a response to send.',
            'If action is "label", include a "label" field with the label from the list of labels above.',
            "Do not include any explanations, only provide a RFC8259 compliant JSON response "
            "following this format without deviation.",
        ]
    )
    return "\n".join(lines)


def build_email_prompt(subject: str, sender: str, body_text: str, max_body_chars: int) -> str:
    return (
        "The email:\n"
        f"Subject: {subject}\n"
        f"From: {sender}\n"
        "Body:\n"
        f"{body_text[:max_body_chars]}\n"
    )


def parse_plan(content: str, labels: list[Label], rules: list[Rule]) -> Plan:
    """Summary: Parse and validate a raw completion into a Plan.

    Importance: Nothing unvalidated reaches the cache or the mailbox.
    Alternatives: Check each field of the decoded dict by hand.
    """

    text = (content or "").strip()
    if not text:
        raise PlanParseError("Empty completion", raw_text=content or "")
    fenced = _CODE_FENCE.match(text)
    if fenced:
        text = fenced.group(1)
    try:
        data: Any = json.loads(text)
    except json.JSONDecodeError as exc:
        raise PlanParseError(f"Completion is not JSON: {exc.msg}", raw_text=content) from exc
    try:
        validated = PlanSchema.model_validate(data)
    except ValidationError as exc:
        raise PlanParseError(
            f"Completion does not match the plan schema: {exc.errors()[0]['msg']}",
            raw_text=content,
        ) from exc

    # Catalog and rule checks need the user's context, so they run after the schema.
    label_name: str | None = None
    if validated.action is ActionType.LABEL:
        label = resolve_label(validated.label, labels)
        if label is None:
            raise PlanParseError(
                f"Label {validated.label!r} is not in the catalog", raw_text=content
            )
        label_name = label.name

    rule = find_rule_by_name(validated.rule, rules)
    if rule is not None:
        violation = check_rule_permits(rule, validated.action, label_name)
        if violation:
            raise PlanParseError(violation, raw_text=content)
    elif validated.rule:
        logger.info("Model referenced unknown rule %r; plan left unattributed.", validated.rule)

    return Plan(
        action=validated.action,
        label=label_name,
        response=validated.response if validated.action is ActionType.REPLY else None,
        rule_id=rule.id if rule else None,
        rule_name=rule.name if rule else None,
    )
