"""OpenAI-backed text generation for the continuity services.

:class:`OpenAIUnifiedGenerator` chooses between the Responses API and the
Chat Completions API from the model name. Every call is a single blocking
round-trip with a fixed token budget; the caller decides what to do with an
empty or malformed reply.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Tuple

import openai
from flask import current_app

LOGGER = logging.getLogger(__name__)

GENERATOR_CACHE_KEY = "_TEXT_GENERATOR_INSTANCE"


class LLMRateLimitError(RuntimeError):
    """Raised when the provider reports a rate limit condition."""

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(
            message or "The language model rate limit has been exceeded. Please try again shortly."
        )


def raise_for_rate_limit(exc: Exception) -> None:
    """Re-raise ``exc`` as :class:`LLMRateLimitError` when it reports rate limiting."""

    message = str(exc).lower()
    if (
        isinstance(exc, openai.RateLimitError)
        or getattr(exc, "status_code", None) == 429
        or "rate limit" in message
        or "too many requests" in message
    ):
        LOGGER.warning("Language model provider is rate limiting requests: %s", exc)
        raise LLMRateLimitError() from exc


class OpenAIUnifiedGenerator:
    """Wrapper exposing ``generate_response(prompt, max_new_tokens=...)``.

    - gpt-5 / o3 / o4 / gpt-4.1 families use the Responses API.
    - Everything else (gpt-4o, gpt-4o-mini, OpenAI-compatible servers) uses
      Chat Completions.
    """

    def __init__(
        self,
        model_name: str,
        api_key: str,
        *,
        base_url: Optional[str] = None,
        default_max_tokens: int = 2000,
    ) -> None:
        self.model_name = (model_name or "").strip()
        self.api_key = (api_key or "").strip()
        if not self.model_name:
            raise ValueError("A model name is required.")
        if not self.api_key:
            raise ValueError("An API key is required.")
        self.default_max_tokens = int(default_max_tokens or 2000)
        client_kwargs = {"api_key": self.api_key}
        if base_url:
            client_kwargs["base_url"] = base_url
        self._client = openai.OpenAI(**client_kwargs)

    def _uses_responses_api(self) -> bool:
        name = self.model_name.lower()
        return name.startswith(("gpt-5", "o3", "o4", "gpt-4.1"))

    def generate_response(
        self,
        prompt: str,
        *,
        max_new_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("prompt must be a non-empty string.")
        max_tokens = int(max_new_tokens if max_new_tokens is not None else self.default_max_tokens)
        if max_tokens <= 0:
            raise ValueError("max_new_tokens must be positive.")

        if self._uses_responses_api():
            return self._call_responses(prompt, max_tokens, temperature)
        return self._call_chat(prompt, max_tokens, temperature)

    def signature(self) -> Tuple[str, str]:
        # Never return raw secrets
        redacted = (self.api_key[:4] + "…" + self.api_key[-4:]) if self.api_key else ""
        return (self.model_name, redacted)

    def _call_responses(self, prompt: str, max_tokens: int, temperature: Optional[float]) -> str:
        payload = {
            "model": self.model_name,
            "input": prompt,
            "max_output_tokens": max_tokens,
            "tool_choice": "none",
        }
        if temperature is not None:
            payload["temperature"] = float(temperature)

        resp = self._client.responses.create(**payload)
        return (getattr(resp, "output_text", None) or "").strip()

    def _call_chat(self, prompt: str, max_tokens: int, temperature: Optional[float]) -> str:
        kwargs = {
            "model": self.model_name,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
            "n": 1,
        }
        if temperature is not None:
            kwargs["temperature"] = float(temperature)

        resp = self._client.chat.completions.create(**kwargs)
        return self._extract_text_from_chat(resp).strip()

    def _extract_text_from_chat(self, resp: Any) -> str:
        choices = getattr(resp, "choices", []) or []
        if not choices:
            return ""
        msg = getattr(choices[0], "message", None)
        content = msg.get("content") if isinstance(msg, dict) else getattr(msg, "content", None)
        if isinstance(content, list):
            parts: List[str] = []
            for part in content:
                if isinstance(part, dict) and part.get("type") == "text":
                    parts.append(str(part.get("text") or ""))
            return "\n".join(p for p in parts if p)
        return str(content or "")


def _get_text_generator() -> Optional[OpenAIUnifiedGenerator]:  # pragma: no cover - integration point
    """Return the application's generator, building it on first use.

    ``None`` means no model is configured; callers degrade instead of failing.
    """

    app = current_app
    if GENERATOR_CACHE_KEY in app.config:
        return app.config[GENERATOR_CACHE_KEY]

    api_key = app.config.get("OPENAI_API_KEY")
    if not api_key:
        app.logger.info("OPENAI_API_KEY not configured; continuity checks will run degraded.")
        app.config[GENERATOR_CACHE_KEY] = None
        return None

    model_name = app.config.get("CONTINUITY_MODEL")
    try:
        app.logger.info("Initialising OpenAI generator for model: %s", model_name)
        generator = OpenAIUnifiedGenerator(
            model_name,
            api_key,
            base_url=app.config.get("OPENAI_BASE_URL"),
            default_max_tokens=app.config.get("CONTINUITY_CHECK_MAX_TOKENS", 2000),
        )
    except (ValueError, openai.OpenAIError) as exc:
        app.logger.warning("Failed to initialise OpenAI generator for '%s': %s", model_name, exc)
        generator = None
    app.config[GENERATOR_CACHE_KEY] = generator
    return generator
