"""Summary: Tests for plan classification.

Importance: Ensures model output is validated before it reaches the cache or mailbox.
Alternatives: Trust the model to always return well-formed plans.
"""

from __future__ import annotations

import pytest

from planpilot.ai import MockAiProvider
from planpilot.classifier import PlanClassifier, build_system_prompt, parse_plan
from planpilot.config import PlannerConfig
from planpilot.errors import PlanParseError, ProviderError
from planpilot.models import ActionType, Label, Rule


LABELS = [
    Label(id="Label_finance", name="Finance", description="Invoices and receipts"),
    Label(id="Label_travel", name="Travel"),
]

RECEIPTS_RULE = Rule(
    id=7,
    user_id=1,
    name="Receipts",
    instructions="File invoices and receipts",
    actions=(ActionType.LABEL,),
    label_names=("Finance",),
)


def _classifier(*responses: str | Exception, general_prompt: str = "") -> tuple[PlanClassifier, MockAiProvider]:
    provider = MockAiProvider(responses)
    config = PlannerConfig(model="test-model", general_prompt=general_prompt)
    return PlanClassifier(model=provider, config=config), provider


def test_compute_plan_labels_invoice() -> None:
    """Summary: Verify a label completion becomes a LABEL plan with the catalog name.

    Importance: Plans must carry the canonical label name for execution lookup.
    Alternatives: Store whatever casing the model produced.
    """

    classifier, provider = _classifier('{"action": "label", "label": "finance"}')
    result = classifier.compute_plan(
        subject="Invoice #42",
        body_text="Your invoice is attached.",
        sender="billing@vendor.com",
        labels=LABELS,
    )
    assert result.plan.action is ActionType.LABEL
    assert result.plan.label == "Finance"
    assert result.plan.rule_id is None
    assert result.model == "test-model"
    assert result.tokens_used > 0
    call = provider.calls[0]
    assert call["max_tokens"] == 400
    assert "* Finance - Invoices and receipts" in call["system_prompt"]
    assert "* Travel" in call["system_prompt"]
    assert "Subject: Invoice #42" in call["user_prompts"][-1]
    assert "From: billing@vendor.com" in call["user_prompts"][-1]


def test_compute_plan_truncates_body() -> None:
    """Summary: Ensure the email body is cut to the configured budget.

    Importance: Bounds the prompt size for long emails.
    Alternatives: Summarize long bodies before prompting.
    """

    classifier, provider = _classifier('{"action": "archive"}')
    classifier.compute_plan("Long", "x" * 5000, "a@example.com", LABELS)
    prompt = provider.calls[0]["user_prompts"][-1]
    assert "x" * 3000 in prompt
    assert "x" * 3001 not in prompt


def test_compute_plan_sends_general_prompt_first() -> None:
    """Summary: Verify the user's general prompt precedes the email prompt.

    Importance: Users steer planning with standing instructions.
    Alternatives: Append the general prompt to the system prompt.
    """

    classifier, provider = _classifier('{"action": "none"}', general_prompt="Never reply to newsletters.")
    classifier.compute_plan("Hi", "body", "a@example.com", LABELS)
    prompts = provider.calls[0]["user_prompts"]
    assert prompts[0] == "Never reply to newsletters."
    assert len(prompts) == 2


def test_compute_plan_rejects_non_json() -> None:
    """Summary: Ensure non-JSON output raises PlanParseError with diagnostics.

    Importance: Garbage completions must never become plans.
    Alternatives: Fall back to a NONE plan silently.
    """

    classifier, _ = _classifier("not json")
    with pytest.raises(PlanParseError) as excinfo:
        classifier.compute_plan("Hi", "hello body", "a@example.com", LABELS)
    assert excinfo.value.raw_text == "not json"
    assert excinfo.value.input_length == len("hello body")


def test_compute_plan_propagates_provider_error() -> None:
    """Summary: Verify provider failures surface unchanged.

    Importance: Callers distinguish an unavailable model from bad output.
    Alternatives: Wrap every failure in a generic error.
    """

    classifier, _ = _classifier(ProviderError("service down"))
    with pytest.raises(ProviderError):
        classifier.compute_plan("Hi", "body", "a@example.com", LABELS)


def test_parse_plan_rejects_unknown_label() -> None:
    """Summary: Ensure labels outside the catalog are rejected.

    Importance: Execution can only apply labels that exist.
    Alternatives: Create missing labels on demand.
    """

    with pytest.raises(PlanParseError):
        parse_plan('{"action": "label", "label": "Shopping"}', LABELS, [])


def test_parse_plan_requires_reply_text() -> None:
    """Summary: Ensure reply plans carry a response.

    Importance: An empty reply cannot be sent.
    Alternatives: Generate a default reply body.
    """

    with pytest.raises(PlanParseError):
        parse_plan('{"action": "reply"}', LABELS, [])
    with pytest.raises(PlanParseError):
        parse_plan('{"action": "reply", "response": "   "}', LABELS, [])
    plan = parse_plan('{"action": "reply", "response": "Thursday works."}', LABELS, [])
    assert plan.response == "Thursday works."


def test_parse_plan_rejects_unknown_action() -> None:
    """Summary: Ensure only known actions are accepted.

    Importance: Execution dispatches on a closed set of actions.
    Alternatives: Map unknown actions to NONE.
    """

    with pytest.raises(PlanParseError):
        parse_plan('{"action": "forward"}', LABELS, [])
    with pytest.raises(PlanParseError):
        parse_plan('["archive"]', LABELS, [])


def test_parse_plan_strips_code_fence() -> None:
    """Summary: Verify fenced JSON is accepted.

    Importance: Chat models often wrap JSON in markdown fences.
    Alternatives: Instruct the model harder and reject fences.
    """

    plan = parse_plan('```json\n{"action": "archive"}\n```', LABELS, [])
    assert plan.action is ActionType.ARCHIVE


def test_parse_plan_enforces_rule_constraints() -> None:
    """Summary: Ensure a referenced rule limits actions and labels.

    Importance: Rules are user guardrails on automation.
    Alternatives: Treat rules as hints only.
    """

    with pytest.raises(PlanParseError):
        parse_plan('{"action": "archive", "rule": "Receipts"}', LABELS, [RECEIPTS_RULE])
    with pytest.raises(PlanParseError):
        parse_plan(
            '{"action": "label", "label": "Travel", "rule": "Receipts"}', LABELS, [RECEIPTS_RULE]
        )
    plan = parse_plan(
        '{"action": "label", "label": "Finance", "rule": "receipts"}', LABELS, [RECEIPTS_RULE]
    )
    assert plan.rule_id == 7
    assert plan.rule_name == "Receipts"


def test_parse_plan_leaves_unknown_rule_unattributed() -> None:
    """Summary: Verify an unknown rule name does not fail planning.

    Importance: A renamed rule should not block otherwise valid plans.
    Alternatives: Reject plans that cite unknown rules.
    """

    plan = parse_plan('{"action": "archive", "rule": "Gone"}', LABELS, [RECEIPTS_RULE])
    assert plan.action is ActionType.ARCHIVE
    assert plan.rule_id is None


def test_system_prompt_lists_rules() -> None:
    """Summary: Verify rules appear in the system prompt only when present.

    Importance: The model can only cite rules it was shown.
    Alternatives: Send rules as a separate user turn.
    """

    assert "RULE" not in build_system_prompt(LABELS, [])
    prompt = build_system_prompt(LABELS, [RECEIPTS_RULE])
    assert "* Receipts (actions: label) - File invoices and receipts" in prompt


def test_parse_plan_rejects_schema_violations() -> None:
    """Summary: Ensure completions with mistyped or missing fields are rejected.

    Importance: Only plans matching the schema reach the cache.
    Alternatives: Coerce odd values into the nearest valid plan.
    """

    with pytest.raises(PlanParseError) as excinfo:
        parse_plan('{"action": 3}', LABELS, [])
    assert "plan schema" in str(excinfo.value)
    assert excinfo.value.raw_text == '{"action": 3}'
    with pytest.raises(PlanParseError):
        parse_plan('{"action": "label"}', LABELS, [])
    with pytest.raises(PlanParseError):
        parse_plan('{"action": "archive", "label": 5}', LABELS, [])
    with pytest.raises(PlanParseError):
        parse_plan('{"response": "Hi"}', LABELS, [])


def test_parse_plan_drops_response_for_non_reply() -> None:
    """Summary: Verify only reply plans keep response text.

    Importance: Archive and label plans never send anything.
    Alternatives: Keep stray fields and ignore them at execution.
    """

    plan = parse_plan('{"action": "ARCHIVE", "response": "ignored"}', LABELS, [])
    assert plan.action is ActionType.ARCHIVE
    assert plan.response is None


def test_compute_plan_prefers_explicit_general_prompt() -> None:
    """Summary: Verify a per-call general prompt replaces the configured one.

    Importance: The user's saved prompt history overrides configuration defaults.
    Alternatives: Rebuild the classifier whenever the prompt changes.
    """

    classifier, provider = _classifier('{"action": "none"}', general_prompt="Config prompt.")
    classifier.compute_plan("Hi", "body", "a@example.com", LABELS, general_prompt="Saved prompt.")
    assert provider.calls[0]["user_prompts"][0] == "Saved prompt."
