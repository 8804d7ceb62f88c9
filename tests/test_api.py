"""Summary: API integration tests.

Importance: Validates FastAPI endpoints against core workflows.
Alternatives: Use manual curl testing only.
"""

from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient

from planpilot.ai import MockAiProvider
from planpilot.api import create_app
from planpilot.config import AppConfig
from planpilot.errors import ProviderError
from planpilot.mailbox import FixtureMailboxClient


FIXTURE_PATH = Path(__file__).resolve().parents[1] / "data" / "mock_threads.json"
LABEL_FINANCE = '{"action": "label", "label": "Finance"}'


def _build_config(db_path: str, api_key: str = "") -> AppConfig:
    """Summary: Build an AppConfig for API tests.

    Importance: Ensures tests use isolated storage.
    Alternatives: Load AppConfig from environment variables.
    """

    return AppConfig(
        db_path=db_path,
        ai_provider="mock",
        openai_api_key=None,
        openai_model="gpt-4o-mini",
        ollama_url="http://localhost:11434",
        ollama_model="llama3",
        api_host="127.0.0.1",
        api_port=8000,
        default_user_name="Local User",
        default_user_email="local@planpilot",
        api_key=api_key,
        gmail_access_token=None,
        gmail_base_url="https://gmail.googleapis.com/gmail/v1",
        mailbox_fixture=str(FIXTURE_PATH),
        general_prompt="",
        plan_max_body_chars=3000,
        plan_max_output_tokens=400,
        plan_workers=2,
        archive_on_label=False,
        rate_limit_pause_seconds=30.0,
    )


def _client(tmp_path: Path, provider: MockAiProvider, api_key: str = "") -> tuple[TestClient, FixtureMailboxClient]:
    mailbox = FixtureMailboxClient.from_file(FIXTURE_PATH)
    app = create_app(_build_config(str(tmp_path / "test.db"), api_key), ai_provider=provider, mailbox=mailbox)
    return TestClient(app), mailbox


def test_api_plan_and_execute_flow(tmp_path: Path) -> None:
    """Summary: Verify the plan, execute, and history endpoints work end to end.

    Importance: Confirms the HTTP layer wires planning into execution.
    Alternatives: Validate only the service layer.
    """

    provider = MockAiProvider([LABEL_FINANCE])
    client, mailbox = _client(tmp_path, provider)
    assert client.get("/health").json() == {"status": "ok"}
    assert client.post("/labels/sync").json() == {"synced": 3}

    plan_response = client.post("/plan", json={"thread_id": "T1"})
    assert plan_response.status_code == 200
    plan = plan_response.json()["plan"]
    assert plan["action"] == "LABEL"
    assert plan["label"] == "Finance"
    assert client.post("/plan", json={"thread_id": "T1"}).json()["plan"]["plan_id"] == plan["plan_id"]
    assert len(provider.calls) == 1

    threads = client.get("/threads").json()
    assert threads[0]["thread_id"] == "T1"
    assert threads[0]["state"] == "PLANNED"
    assert threads[1]["plan"] is None

    execute = client.post("/plan/execute", json={"thread_id": "T1", "plan_id": plan["plan_id"]})
    assert execute.status_code == 200
    body = execute.json()
    assert body["actions"] == ["LABEL"]
    assert body["data"]["label_id"] == "Label_finance"
    assert body["automated"] is False
    again = client.post("/plan/execute", json={"thread_id": "T1"})
    assert again.json()["id"] == body["id"]
    assert mailbox.mutations == [("apply_label", "M1", "Label_finance")]

    assert len(client.get("/history").json()) == 1
    assert client.get("/plan/state", params={"thread_id": "T1"}).json()["state"] == "EXECUTED"
    usage = client.get("/usage").json()
    assert usage["total_tokens"] > 0
    assert len(usage["records"]) == 1


def test_api_execute_errors(tmp_path: Path) -> None:
    """Summary: Verify execution rejects unknown threads, missing plans, and stale plans.

    Importance: Clients must never execute a plan they did not review.
    Alternatives: Execute whatever is cached.
    """

    client, _ = _client(tmp_path, MockAiProvider())
    assert client.post("/plan", json={"thread_id": "missing"}).status_code == 404
    assert client.post("/plan/execute", json={"thread_id": "T3"}).status_code == 404
    client.post("/plan", json={"thread_id": "T3"})
    stale = client.post("/plan/execute", json={"thread_id": "T3", "plan_id": "not-the-plan"})
    assert stale.status_code == 409


def test_api_planning_failures(tmp_path: Path) -> None:
    """Summary: Verify provider and parse failures map to distinct statuses.

    Importance: Clients retry an unavailable model but not bad output.
    Alternatives: Return 500 for every failure.
    """

    provider = MockAiProvider([ProviderError("down"), "not json"])
    client, _ = _client(tmp_path, provider)
    unavailable = client.post("/plan", json={"thread_id": "T1"})
    assert unavailable.status_code == 503
    assert unavailable.json()["detail"] == "Planning unavailable"
    failed = client.post("/plan", json={"thread_id": "T1"})
    assert failed.status_code == 502
    assert client.get("/plan/state", params={"thread_id": "T1"}).json()["state"] == "UNPLANNED"
    assert client.get("/usage").json()["total_tokens"] == 0


def test_api_batch_plan_and_execute_all(tmp_path: Path) -> None:
    """Summary: Verify batch planning and batch execution report per-thread outcomes.

    Importance: Backs "plan everything" and "apply to all" in clients.
    Alternatives: Loop over single-thread endpoints client-side.
    """

    client, mailbox = _client(tmp_path, MockAiProvider())
    batch = client.post("/plan/batch", json={"thread_ids": ["T1", "T3"]}).json()
    assert [item["thread_id"] for item in batch["succeeded"]] == ["T1", "T3"]
    assert batch["failed"] == []
    result = client.post("/plan/execute-all", json={}).json()
    assert [item["thread_id"] for item in result["succeeded"]] == ["T1", "T3"]
    assert result["skipped"] == ["T2"]
    assert mailbox.mutations == []
    assert all(item["automated"] for item in client.get("/history").json())
    assert [item["thread_id"] for item in client.get("/planned").json()] == ["T1", "T3"]


def test_api_reject_clears_plan(tmp_path: Path) -> None:
    """Summary: Verify rejecting a plan clears it from the cache.

    Importance: The next planning pass must start fresh.
    Alternatives: Hide rejected plans client-side.
    """

    client, _ = _client(tmp_path, MockAiProvider())
    plan = client.post("/plan", json={"thread_id": "T2"}).json()["plan"]
    response = client.post("/plan/reject", json={"thread_id": "T2", "plan_id": plan["plan_id"]})
    assert response.json() == {"status": "ok", "cleared": True}
    assert client.get("/plan/state", params={"thread_id": "T2"}).json()["state"] == "UNPLANNED"
    assert client.post("/plan/reject", json={"thread_id": "T2"}).status_code == 404


def test_api_rules(tmp_path: Path) -> None:
    """Summary: Verify rule creation validates actions.

    Importance: Stored rules must only name known actions.
    Alternatives: Validate actions at planning time.
    """

    client, _ = _client(tmp_path, MockAiProvider())
    created = client.post(
        "/rules",
        json={"name": "Receipts", "instructions": "File receipts", "actions": ["label"], "label_names": ["Finance"]},
    )
    assert created.status_code == 200
    rules = client.get("/rules").json()
    assert rules[0]["actions"] == ["LABEL"]
    assert client.post("/rules", json={"name": "Bad", "instructions": "x", "actions": ["forward"]}).status_code == 400
    assert client.post("/rules", json={"name": "Empty", "instructions": "x", "actions": []}).status_code == 422


def test_api_requires_key_when_configured(tmp_path: Path) -> None:
    """Summary: Ensure requests without the configured API key are rejected.

    Importance: Protects mailbox mutations on shared hosts.
    Alternatives: Rely on network isolation only.
    """

    client, _ = _client(tmp_path, MockAiProvider(), api_key="secret")
    assert client.get("/health").status_code == 200
    denied = client.get("/labels")
    assert denied.status_code == 401
    assert denied.json()["detail"] == "Not authenticated"
    assert client.get("/labels", headers={"X-API-Key": "secret"}).status_code == 200


def test_api_batch_plan_reports_unexpected_errors(tmp_path: Path) -> None:
    """Summary: Ensure a model timeout fails one thread and the batch still returns.

    Importance: Clients see partial results instead of a server error.
    Alternatives: Fail the whole request.
    """

    client, _ = _client(tmp_path, MockAiProvider([TimeoutError("The read operation timed out")]))
    response = client.post("/plan/batch", json={"thread_ids": ["T1", "T3"]})
    assert response.status_code == 200
    body = response.json()
    assert len(body["succeeded"]) == 1
    assert len(body["failed"]) == 1
    assert "TimeoutError" in body["failed"][0]["error"]


def test_api_prompt_history(tmp_path: Path) -> None:
    """Summary: Verify saving, listing, and deleting general prompt versions.

    Importance: Users can review and prune their standing instructions.
    Alternatives: Keep a single overwritable prompt.
    """

    client, _ = _client(tmp_path, MockAiProvider())
    assert client.get("/prompt").json() == {"prompt": ""}
    first = client.post("/prompt", json={"prompt": "Be brief."}).json()
    second = client.post("/prompt", json={"prompt": "Be brief and polite."}).json()
    assert client.get("/prompt").json() == {"prompt": "Be brief and polite."}
    history = client.get("/prompt-history").json()
    assert [item["id"] for item in history] == [second["id"], first["id"]]
    assert client.delete(f"/prompt-history/{second['id']}").json() == {"success": True}
    assert client.get("/prompt").json() == {"prompt": "Be brief."}
    assert client.delete(f"/prompt-history/{second['id']}").status_code == 404
