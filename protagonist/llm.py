"""Content provider: HTTP connection to a generative backend.

The engine injects a provider matching the protocol:

    async def generate_text(self, model: str, prompt: str, schema: dict | None) -> str: ...
    async def generate_image(self, model: str, prompt: str) -> bytes: ...

`generate_text` returns the raw model output. It may be wrapped in
commentary or code fences; callers run it through `normalize.clean_json()`
before parsing. `schema` is a JSON schema the backend is asked to honour;
providers that cannot enforce it may ignore it.

Two implementations are provided:

    HttpProvider  - real HTTP client for OpenAI-compatible backends
                    (chat completions + image generations).
    EchoProvider  - returns the prompt back unchanged. Useful for smoke-testing
                    the engine wiring without a running model.

Production code constructs an HttpProvider from Settings and passes it to
SessionEngine. Tests use StubProvider (defined in conftest.py) instead.
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol - every provider implementation must match these signatures
# ---------------------------------------------------------------------------

class ContentProvider(Protocol):
    async def generate_text(
        self, model: str, prompt: str, schema: dict[str, Any] | None = None
    ) -> str: ...

    async def generate_image(self, model: str, prompt: str) -> bytes: ...


# ---------------------------------------------------------------------------
# HttpProvider - connects to a real backend
# ---------------------------------------------------------------------------

class HttpProvider:
    """Async HTTP client for OpenAI-compatible backends.

    Endpoints:
      text   - POST /v1/chat/completions
               {"model": ..., "messages": [...], "response_format": {...}}
               Response: {"choices": [{"message": {"content": "..."}}]}
      image  - POST /v1/images/generations
               {"model": ..., "prompt": ..., "response_format": "b64_json"}
               Response: {"data": [{"b64_json": "..."}]}

    Args:
        provider_url: Base URL of the backend, with or without a trailing /v1.
        api_key:      Bearer token, or empty string if not required.
        timeout:      HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(self, provider_url: str, api_key: str = "", timeout: float = 120.0) -> None:
        base = provider_url.strip().rstrip("/")
        if base.endswith("/v1"):
            base = base[: -len("/v1")]
        self._base_url = base
        self._api_key = api_key
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> HttpProvider:
        return cls(settings.provider_url, settings.api_key, timeout=settings.request_timeout)

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _post(self, path: str, body: dict) -> dict:
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(f"Backend returned HTTP {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            raise LLMError(f"Backend timed out after {self._timeout}s") from e
        return resp.json()

    async def generate_text(
        self, model: str, prompt: str, schema: dict[str, Any] | None = None
    ) -> str:
        body: dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
        }
        if schema is not None:
            body["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "response", "schema": schema},
            }
        logger.debug("text call model=%s prompt_len=%d", model, len(prompt))
        data = await self._post("/v1/chat/completions", body)

        choices = data.get("choices")
        if not choices or "content" not in (choices[0].get("message") or {}):
            raise LLMError("Unexpected response format from chat completions backend")
        text = choices[0]["message"]["content"] or ""
        logger.debug("text response model=%s len=%d", model, len(text))
        return text

    async def generate_image(self, model: str, prompt: str) -> bytes:
        body = {"model": model, "prompt": prompt, "response_format": "b64_json", "n": 1}
        logger.debug("image call model=%s prompt_len=%d", model, len(prompt))
        data = await self._post("/v1/images/generations", body)

        items = data.get("data")
        if not items or not items[0].get("b64_json"):
            raise LLMError("No image generated")
        return base64.b64decode(items[0]["b64_json"])


# ---------------------------------------------------------------------------
# EchoProvider - returns the prompt unchanged; useful for wiring smoke tests
# ---------------------------------------------------------------------------

class EchoProvider:
    """Returns the prompt text as-is and an empty image. No network calls.

    The text output won't be valid JSON, so a session driven by EchoProvider
    fails at the parsing step. Use StubProvider in tests when you need
    controlled responses.
    """

    async def generate_text(
        self, model: str, prompt: str, schema: dict[str, Any] | None = None
    ) -> str:
        logger.debug("EchoProvider model=%s prompt_len=%d", model, len(prompt))
        return prompt

    async def generate_image(self, model: str, prompt: str) -> bytes:
        return b""


# ---------------------------------------------------------------------------
# LLMError - raised by HttpProvider for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the backend cannot be reached or returns an error."""
