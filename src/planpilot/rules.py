"""Summary: Rule and label resolution helpers.

Importance: Connects plans to the user's rules and label catalog.
Alternatives: Resolve rules inline wherever a plan is displayed or executed.
"""

from __future__ import annotations

from planpilot.models import ActionType, Label, Rule


def resolve_rule(rule_id: int | None, rules: list[Rule]) -> Rule | None:
    """Summary: Find a rule by exact id.

    Importance: Attributes plans and history entries to the rule that produced them.
    Alternatives: Store a denormalized copy of the rule on every plan.
    """

    if rule_id is None:
        return None
    for rule in rules:
        if rule.id == rule_id:
            return rule
    return None


def find_rule_by_name(name: str | None, rules: list[Rule]) -> Rule | None:
    """Summary: Find a rule by case-insensitive name.

    Importance: The model refers to rules by the names it was shown.
    Alternatives: Show rule ids to the model and trust it to echo them.
    """

    if not name:
        return None
    wanted = name.strip().lower()
    for rule in rules:
        if rule.name.strip().lower() == wanted:
            return rule
    return None


def resolve_label(name: str | None, labels: list[Label]) -> Label | None:
    """Summary: Find a label by case-insensitive name.

    Importance: Plans carry label names while the mailbox needs label ids.
    Alternatives: Store label ids on plans.
    """

    if not name:
        return None
    wanted = name.strip().lower()
    for label in labels:
        if label.name.strip().lower() == wanted:
            return label
    return None


def check_rule_permits(rule: Rule, action: ActionType, label: str | None) -> str | None:
    """Summary: Check that a rule allows an action and label.

    Importance: Keeps model output inside the constraints the user configured.
    Alternatives: Accept any action the model proposes.
    """

    if rule.actions and action not in rule.actions:
        allowed = ", ".join(item.value for item in rule.actions)
        return f"Rule {rule.name!r} does not permit {action.value} (allowed: {allowed})"
    if action is ActionType.LABEL and rule.label_names and label:
        allowed_labels = {item.strip().lower() for item in rule.label_names}
        if label.strip().lower() not in allowed_labels:
            return f"Rule {rule.name!r} does not permit label {label!r}"
    return None
