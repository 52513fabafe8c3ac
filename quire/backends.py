"""Refinement backend adapters.

Every backend turns a prompt into a single completion over HTTP. Local
servers (Ollama, LM Studio) need no credentials; the hosted ones (OpenAI,
Claude, Gemini) need an API key.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import httpx
import openai
from openai import AsyncOpenAI

from .diagnostics import ProviderDebugMixin, safe_dump_response
from .errors import RefinementConfigurationError, RefinementError, RefinementHalted

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0
TEMPERATURE = 0.3

OLLAMA_DEFAULT_URL = "http://localhost:11434"
LM_STUDIO_DEFAULT_URL = "http://localhost:1234"

PROVIDER_ALIASES = {
    "ollama": "ollama",
    "lm_studio": "lm_studio",
    "lm-studio": "lm_studio",
    "lmstudio": "lm_studio",
    "openai": "openai",
    "gpt": "openai",
    "claude": "claude",
    "anthropic": "claude",
    "gemini": "gemini",
    "google": "gemini",
}


def normalise_provider(name: Optional[str]) -> str:
    normalized = (name or "ollama").strip().lower()
    try:
        return PROVIDER_ALIASES[normalized]
    except KeyError:
        raise RefinementConfigurationError(
            f"Unknown refinement provider '{name}'."
        ) from None


class RefinementBackend(ProviderDebugMixin, ABC):
    """Abstract adapter for a refinement service."""

    name = "backend"
    DEFAULT_MODEL = ""

    def __init__(self, *, model: Optional[str] = None, debug: bool = False) -> None:
        self.model = model or self.DEFAULT_MODEL
        self.debug = debug

    @abstractmethod
    async def complete(self, prompt: str) -> str:
        """Send ``prompt`` and return the raw completion text."""

    async def list_models(self) -> List[str]:
        return []

    async def check_connection(self) -> Tuple[bool, str]:
        """Probe the service and return ``(reachable, message)``."""

        try:
            models = await self._probe()
        except RefinementError as exc:
            return False, str(exc)
        if models:
            return True, f"Connected to {self.name}: {len(models)} model(s) available."
        return True, f"Connected to {self.name}."

    async def _probe(self) -> List[str]:
        return await self.list_models()

    async def aclose(self) -> None:
        return None


class HttpBackend(RefinementBackend):
    """Base for backends spoken to with plain JSON requests."""

    def __init__(
        self,
        *,
        model: Optional[str] = None,
        debug: bool = False,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(model=model, debug=debug)
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, Any]:
        if payload is not None:
            self._log_debug(f"{self.name}.request.payload", payload)
        try:
            response = await self._client.request(
                method,
                url,
                json=payload,
                headers=headers,
                params=params,
                timeout=REQUEST_TIMEOUT,
            )
        except httpx.TimeoutException as exc:
            raise RefinementError(f"{self.name} request timed out.") from exc
        except httpx.HTTPError as exc:
            raise RefinementError(f"Network error: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise RefinementError(
                f"Failed to parse JSON response from {self.name} "
                f"(HTTP {response.status_code})."
            ) from exc
        self._log_debug(f"{self.name}.response.raw", data)
        return response.status_code, data

    def _check_status(self, status: int, data: Any) -> None:
        if status < 400:
            return
        message = ""
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict):
                message = str(error.get("message", ""))
            elif error:
                message = str(error)
        raise RefinementError(
            f"{self.name} returned HTTP {status}" + (f": {message}" if message else ".")
        )


class OllamaBackend(HttpBackend):
    name = "ollama"
    DEFAULT_MODEL = "llama3.1"

    def __init__(self, *, url: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        base = (url or OLLAMA_DEFAULT_URL).rstrip("/")
        for suffix in ("/api/generate", "/api"):
            if base.endswith(suffix):
                base = base[: -len(suffix)]
        self.base_url = base

    async def complete(self, prompt: str) -> str:
        status, data = await self._request_json(
            "POST",
            f"{self.base_url}/api/generate",
            payload={"model": self.model, "prompt": prompt, "stream": False},
        )
        self._check_status(status, data)
        if not isinstance(data, dict) or not isinstance(data.get("response"), str):
            raise RefinementError("Ollama response malformed: missing 'response'.")
        return data["response"]

    async def list_models(self) -> List[str]:
        status, data = await self._request_json("GET", f"{self.base_url}/api/tags")
        self._check_status(status, data)
        models = data.get("models", []) if isinstance(data, dict) else []
        return [item["name"] for item in models if isinstance(item, dict) and "name" in item]


class OpenAIBackend(RefinementBackend):
    """Chat-completions refinement through the OpenAI SDK."""

    name = "openai"
    DEFAULT_MODEL = "gpt-4o-mini"

    def __init__(
        self,
        *,
        api_key: Optional[str],
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        debug: bool = False,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(model=model, debug=debug)
        if not api_key:
            raise RefinementConfigurationError(
                "OpenAI API key is not configured. Set OPENAI_API_KEY."
            )
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=REQUEST_TIMEOUT,
            max_retries=0,
            http_client=http_client,
        )

    async def complete(self, prompt: str) -> str:
        request = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": TEMPERATURE,
        }
        self._log_debug(f"{self.name}.request.payload", request)
        try:
            response = await self._client.chat.completions.create(**request)
        except openai.APITimeoutError as exc:
            raise RefinementError(f"{self.name} request timed out.") from exc
        except openai.APIStatusError as exc:
            raise RefinementError(
                f"{self.name} returned HTTP {exc.status_code}: {exc.message}"
            ) from exc
        except openai.APIError as exc:
            raise RefinementError(f"Network error: {exc}") from exc
        self._log_debug(f"{self.name}.response.raw", safe_dump_response(response))

        choices = response.choices or []
        if not choices:
            raise RefinementError(f"{self.name} response contained no choices.")
        return choices[0].message.content or ""

    async def list_models(self) -> List[str]:
        try:
            page = await self._client.models.list()
        except openai.APIStatusError as exc:
            raise RefinementError(
                f"{self.name} returned HTTP {exc.status_code}: {exc.message}"
            ) from exc
        except openai.APIError as exc:
            raise RefinementError(f"Network error: {exc}") from exc
        return [model.id for model in page.data]

    async def aclose(self) -> None:
        await self._client.close()


class LMStudioBackend(OpenAIBackend):
    """LM Studio's local OpenAI-compatible server."""

    name = "lm_studio"
    DEFAULT_MODEL = "default"

    def __init__(
        self,
        *,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            api_key=api_key or "lm-studio",
            base_url=self.api_base(url),
            **kwargs,
        )

    @staticmethod
    def api_base(url: Optional[str]) -> str:
        """Return the ``/v1`` root for a configured server or endpoint URL."""

        base = (url or LM_STUDIO_DEFAULT_URL).rstrip("/")
        if "/v1" in base:
            return base[: base.index("/v1")] + "/v1"
        return base + "/v1"


class ClaudeBackend(HttpBackend):
    name = "claude"
    DEFAULT_MODEL = "claude-3-haiku-20240307"
    ENDPOINT = "https://api.anthropic.com/v1/messages"
    API_VERSION = "2023-06-01"
    MAX_TOKENS = 4096

    def __init__(self, *, api_key: Optional[str], **kwargs: Any) -> None:
        if not api_key:
            raise RefinementConfigurationError(
                "Claude API key is not configured. Set ANTHROPIC_API_KEY."
            )
        super().__init__(**kwargs)
        self._headers = {
            "x-api-key": api_key,
            "anthropic-version": self.API_VERSION,
        }

    async def complete(self, prompt: str) -> str:
        status, data = await self._request_json(
            "POST",
            self.ENDPOINT,
            payload={
                "model": self.model,
                "max_tokens": self.MAX_TOKENS,
                "messages": [{"role": "user", "content": prompt}],
            },
            headers=self._headers,
        )
        self._check_status(status, data)
        try:
            return data["content"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise RefinementError("Claude response malformed: missing content text.") from exc

    async def _probe(self) -> List[str]:
        await self.complete("Reply with OK.")
        return []


class GeminiBackend(HttpBackend):
    """Google Gemini ``generateContent``.

    An ``error`` object in the body halts the whole queue.
    """

    name = "gemini"
    DEFAULT_MODEL = "gemini-1.5-flash"
    ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def __init__(self, *, api_key: Optional[str], **kwargs: Any) -> None:
        if not api_key:
            raise RefinementConfigurationError(
                "Gemini API key is not configured. Set GEMINI_API_KEY."
            )
        super().__init__(**kwargs)
        self._api_key = api_key

    async def complete(self, prompt: str) -> str:
        status, data = await self._request_json(
            "POST",
            self.ENDPOINT.format(model=self.model),
            payload={"contents": [{"parts": [{"text": prompt}]}]},
            params={"key": self._api_key},
        )
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            message = data["error"].get("message") or "unknown error"
            raise RefinementHalted(f"Gemini error: {message}")
        self._check_status(status, data)

        candidates = data.get("candidates") if isinstance(data, dict) else None
        if not candidates:
            raise RefinementError("Gemini returned empty response. Check your API quota.")
        try:
            return candidates[0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise RefinementError("Gemini response malformed: missing text part.") from exc

    async def _probe(self) -> List[str]:
        await self.complete("Reply with OK.")
        return []


def build_backend(
    name: Optional[str],
    *,
    url: Optional[str] = None,
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    debug: bool = False,
    http_client: Optional[httpx.AsyncClient] = None,
) -> RefinementBackend:
    """Factory to create refinement backends by provider name."""

    provider = normalise_provider(name)
    common: Dict[str, Any] = {"model": model, "debug": debug, "http_client": http_client}
    logger.debug("Building %s refinement backend", provider)
    if provider == "ollama":
        return OllamaBackend(url=url, **common)
    if provider == "lm_studio":
        return LMStudioBackend(url=url, api_key=api_key, **common)
    if provider == "openai":
        return OpenAIBackend(api_key=api_key, base_url=url, **common)
    if provider == "claude":
        return ClaudeBackend(api_key=api_key, **common)
    return GeminiBackend(api_key=api_key, **common)
