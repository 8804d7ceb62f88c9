"""Summary: Language-model service abstraction and implementations.

Importance: Centralizes LLM access so planning can swap providers or use a stub.
Alternatives: Call provider SDKs directly in the classifier.
"""

from __future__ import annotations

import json
import logging
import threading
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterable

from planpilot.config import AppConfig
from planpilot.errors import ProviderError
from planpilot.models import Completion


logger = logging.getLogger(__name__)


class LanguageModel(ABC):
    """Summary: Abstract interface for chat-style completions.

    Importance: Allows switching between local and cloud LLMs without refactors.
    Alternatives: Use a single vendor SDK and accept lock-in risk.
    """

    @abstractmethod
    def complete(
        self, system_prompt: str, user_prompts: list[str], max_tokens: int
    ) -> Completion:
        """Summary: Generate a completion for a system prompt and user turns.

        Importance: Standardizes AI outputs for the classifier.
        Alternatives: Return provider-specific response objects directly.
        """


class MockAiProvider(LanguageModel):
    """Summary: Deterministic language model for local runs and tests.

    Importance: Enables offline workflows and repeatable tests.
    Alternatives: Use a small local LLM for all development tasks.
    """

    DEFAULT_RESPONSE = '{"action": "none"}'

    def __init__(self, responses: Iterable[str | Exception] | None = None) -> None:
        """Summary: Initialize the mock with scripted completions.

        Importance: Tests queue exact model outputs, including provider failures.
        Alternatives: Load fixture responses from files.
        """

        self._responses: list[str | Exception] = list(responses or [])
        self._lock = threading.Lock()
        self.calls: list[dict[str, Any]] = []

    def queue(self, *responses: str | Exception) -> None:
        with self._lock:
            self._responses.extend(responses)

    def complete(
        self, system_prompt: str, user_prompts: list[str], max_tokens: int
    ) -> Completion:
        """Summary: Return the next scripted completion.

        Importance: Allows core flows without external dependencies.
        Alternatives: Echo the prompt back as the completion.
        """

        with self._lock:
            self.calls.append(
                {
                    "system_prompt": system_prompt,
                    "user_prompts": list(user_prompts),
                    "max_tokens": max_tokens,
                }
            )
            response = self._responses.pop(0) if self._responses else self.DEFAULT_RESPONSE
        if isinstance(response, Exception):
            raise response
        prompt_text = system_prompt + "".join(user_prompts)
        return Completion(
            content=response,
            tokens_used=estimate_tokens(prompt_text) + estimate_tokens(response),
        )


class OllamaProvider(LanguageModel):
    """Summary: Language model backed by a local Ollama server.

    Importance: Supports privacy-sensitive workflows on local hardware.
    Alternatives: Use llama.cpp directly with a Python binding.
    """

    def __init__(self, base_url: str, model: str) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model

    def complete(
        self, system_prompt: str, user_prompts: list[str], max_tokens: int
    ) -> Completion:
        """Summary: Generate a completion using the Ollama chat API.

        Importance: Enables local inference for planning.
        Alternatives: Use Ollama's CLI and parse its output.
        """

        payload = {
            "model": self._model,
            "messages": _chat_messages(system_prompt, user_prompts),
            "stream": False,
            "options": {"num_predict": max_tokens},
        }
        raw = _post_json(f"{self._base_url}/api/chat", payload, headers={}, provider="Ollama")
        if raw.get("error"):
            raise ProviderError(f"Ollama returned an error: {raw['error']}")
        content = (raw.get("message") or {}).get("content", "")
        tokens_used = int(raw.get("prompt_eval_count", 0)) + int(raw.get("eval_count", 0))
        return Completion(content=content, tokens_used=tokens_used)


class OpenAiProvider(LanguageModel):
    """Summary: Language model using OpenAI's chat completion API.

    Importance: Enables higher-quality plans when configured.
    Alternatives: Use other cloud providers or a local model.
    """

    def __init__(self, api_key: str, model: str) -> None:
        self._api_key = api_key
        self._model = model

    def complete(
        self, system_prompt: str, user_prompts: list[str], max_tokens: int
    ) -> Completion:
        """Summary: Generate a completion using OpenAI chat completions.

        Importance: Enables cloud-grade reasoning for planning.
        Alternatives: Use the responses API or a different provider.
        """

        payload = {
            "model": self._model,
            "max_tokens": max_tokens,
            "messages": _chat_messages(system_prompt, user_prompts),
        }
        raw = _post_json(
            "https://api.openai.com/v1/chat/completions",
            payload,
            headers={"Authorization": f"Bearer {self._api_key}"},
            provider="OpenAI",
        )
        if raw.get("error"):
            message = raw["error"].get("message") if isinstance(raw["error"], dict) else raw["error"]
            raise ProviderError(f"OpenAI returned an error: {message}")
        choices = raw.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content") or ""
        tokens_used = int((raw.get("usage") or {}).get("total_tokens", 0))
        return Completion(content=content, tokens_used=tokens_used)


@dataclass(frozen=True)
class AiProviderFactory:
    """Summary: Factory for selecting language models from configuration.

    Importance: Keeps provider selection logic centralized.
    Alternatives: Wire providers manually at the application entrypoint.
    """

    config: AppConfig

    def build(self) -> LanguageModel:
        """Summary: Construct the configured language model.

        Importance: Ensures consistent provider selection across services.
        Alternatives: Use dependency injection frameworks.
        """

        if self.config.ai_provider == "ollama":
            return OllamaProvider(self.config.ollama_url, self.config.ollama_model)
        if self.config.ai_provider == "openai":
            if not self.config.openai_api_key:
                raise ValueError("OPENAI_API_KEY is required for openai provider")
            return OpenAiProvider(self.config.openai_api_key, self.config.openai_model)
        return MockAiProvider()


def estimate_tokens(text: str) -> int:
    """Summary: Estimate tokens from text length.

    Importance: Gives the mock provider a plausible usage figure.
    Alternatives: Use provider token counters or tiktoken.
    """

    return max(1, len(text) // 4)


def _chat_messages(system_prompt: str, user_prompts: list[str]) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": system_prompt}]
    messages.extend({"role": "user", "content": prompt} for prompt in user_prompts)
    return messages


def _post_json(
    url: str, payload: dict[str, Any], headers: dict[str, str], provider: str
) -> dict[str, Any]:
    """Summary: POST a JSON payload and decode the JSON reply.

    Importance: Maps transport and HTTP failures to ProviderError in one place.
    Alternatives: Use a third-party HTTP client.
    """

    request = urllib.request.Request(
        url=url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", **headers},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=60) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="ignore")
        logger.warning("%s request failed with HTTP %s.", provider, exc.code)
        raise ProviderError(f"{provider} request failed: {error_body or exc.reason}") from exc
    except urllib.error.URLError as exc:
        raise ProviderError(f"{provider} request failed: {exc}") from exc
    except OSError as exc:
        logger.warning("%s connection failed: %s", provider, exc)
        raise ProviderError(f"{provider} connection failed: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ProviderError(f"{provider} returned invalid JSON") from exc
