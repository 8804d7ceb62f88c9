"""Summary: Application configuration for PlanPilot.

Importance: Centralizes environment, .env, and config defaults for consistent behavior.
Alternatives: Use a dedicated settings library like Pydantic Settings.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from dataclasses import dataclass


@dataclass(frozen=True)
class PlannerConfig:
    """Summary: Budgets and model identity used by the plan classifier.

    Importance: Keeps prompt and token limits explicit so tests can pin them.
    Alternatives: Embed the limits as module constants in the classifier.
    """

    model: str = "gpt-4o-mini"
    max_body_chars: int = 3000
    max_output_tokens: int = 400
    general_prompt: str = ""


@dataclass(frozen=True)
class AppConfig:
    """Summary: Holds configuration values for providers, storage, and planning.

    Importance: Ensures all services derive settings from a single source of truth.
    Alternatives: Store settings in a shared config file and parse at startup.
    """

    db_path: str
    ai_provider: str
    openai_api_key: str | None
    openai_model: str
    ollama_url: str
    ollama_model: str
    api_host: str
    api_port: int
    default_user_name: str
    default_user_email: str
    api_key: str
    gmail_access_token: str | None
    gmail_base_url: str
    mailbox_fixture: str
    general_prompt: str
    plan_max_body_chars: int
    plan_max_output_tokens: int
    plan_workers: int
    archive_on_label: bool
    rate_limit_pause_seconds: float

    @staticmethod
    def from_env() -> "AppConfig":
        """Summary: Build configuration from defaults, .env, and environment.

        Importance: Keeps all variables defined in config defaults while allowing overrides.
        Alternatives: Parse only environment variables without a defaults file.
        """

        defaults = load_defaults(Path("config") / "defaults.json")
        load_dotenv(Path(".env"))
        return AppConfig(
            db_path=os.getenv("PLANPILOT_DB_PATH", defaults["db_path"]),
            ai_provider=os.getenv("PLANPILOT_AI_PROVIDER", defaults["ai_provider"]),
            openai_api_key=os.getenv("OPENAI_API_KEY") or defaults["openai_api_key"] or None,
            openai_model=os.getenv("OPENAI_MODEL", defaults["openai_model"]),
            ollama_url=os.getenv("OLLAMA_URL", defaults["ollama_url"]),
            ollama_model=os.getenv("OLLAMA_MODEL", defaults["ollama_model"]),
            api_host=os.getenv("PLANPILOT_API_HOST", defaults["api_host"]),
            api_port=int(os.getenv("PLANPILOT_API_PORT", defaults["api_port"])),
            default_user_name=os.getenv(
                "PLANPILOT_DEFAULT_USER_NAME", defaults["default_user_name"]
            ),
            default_user_email=os.getenv(
                "PLANPILOT_DEFAULT_USER_EMAIL", defaults["default_user_email"]
            ),
            api_key=os.getenv("PLANPILOT_API_KEY", defaults["api_key"]),
            gmail_access_token=os.getenv("GMAIL_ACCESS_TOKEN") or defaults["gmail_access_token"] or None,
            gmail_base_url=os.getenv("GMAIL_BASE_URL", defaults["gmail_base_url"]),
            mailbox_fixture=os.getenv("PLANPILOT_MAILBOX_FIXTURE", defaults["mailbox_fixture"]),
            general_prompt=os.getenv("PLANPILOT_GENERAL_PROMPT", defaults["general_prompt"]),
            plan_max_body_chars=int(
                os.getenv("PLANPILOT_PLAN_MAX_BODY_CHARS", defaults["plan_max_body_chars"])
            ),
            plan_max_output_tokens=int(
                os.getenv("PLANPILOT_PLAN_MAX_OUTPUT_TOKENS", defaults["plan_max_output_tokens"])
            ),
            plan_workers=int(os.getenv("PLANPILOT_PLAN_WORKERS", defaults["plan_workers"])),
            archive_on_label=_parse_bool(
                os.getenv("PLANPILOT_ARCHIVE_ON_LABEL", defaults["archive_on_label"])
            ),
            rate_limit_pause_seconds=float(
                os.getenv(
                    "PLANPILOT_RATE_LIMIT_PAUSE_SECONDS", defaults["rate_limit_pause_seconds"]
                )
            ),
        )

    @property
    def model_name(self) -> str:
        """Summary: Resolve the model identifier for the configured provider.

        Importance: Usage records and prompts need the concrete model name.
        Alternatives: Store a separate model setting per provider elsewhere.
        """

        if self.ai_provider == "openai":
            return self.openai_model
        if self.ai_provider == "ollama":
            return self.ollama_model
        return "mock"

    def planner_config(self) -> PlannerConfig:
        """Summary: Build the classifier configuration.

        Importance: Passes budgets to the classifier explicitly.
        Alternatives: Let the classifier read AppConfig directly.
        """

        return PlannerConfig(
            model=self.model_name,
            max_body_chars=self.plan_max_body_chars,
            max_output_tokens=self.plan_max_output_tokens,
            general_prompt=self.general_prompt,
        )


def load_defaults(path: Path) -> dict[str, str]:
    """Summary: Load configuration defaults from JSON.

    Importance: Ensures all variables exist in a single config file.
    Alternatives: Inline defaults in the AppConfig initializer.
    """

    if not path.exists():
        raise FileNotFoundError(f"Defaults file not found: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def load_dotenv(path: Path) -> None:
    """Summary: Load key-value pairs from a .env file into the environment.

    Importance: Keeps secrets out of code while supporting local workflows.
    Alternatives: Use python-dotenv or OS-specific secret stores.
    """

    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


def _parse_bool(value: str | bool) -> bool:
    if isinstance(value, bool):
        return value
    return value.strip().lower() in {"1", "true", "yes", "on"}
