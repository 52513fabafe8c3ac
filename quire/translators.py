"""Machine translation engine adapters."""

from __future__ import annotations

import asyncio
import logging
import shlex
from abc import ABC, abstractmethod
from typing import Optional, Sequence, Union

import openai
from openai import AsyncOpenAI

from .diagnostics import ProviderDebugMixin, safe_dump_response
from .errors import ConfigurationError, TranslationError

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 600.0


class Translator(ABC):
    """Abstract adapter for a machine translation engine."""

    name = "translator"

    @abstractmethod
    async def translate(self, text: str) -> str:
        """Translate one unit of text, raising ``TranslationError`` on failure."""

    async def aclose(self) -> None:
        return None


class EchoTranslator(Translator):
    """A translator that returns the original text (useful for testing)."""

    name = "echo"

    async def translate(self, text: str) -> str:
        return text


class CommandTranslator(Translator):
    """Runs an external engine that reads source text on stdin.

    The engine writes the translation to stdout and exits with status 0.
    """

    name = "command"

    def __init__(
        self,
        command: Union[str, Sequence[str]],
        *,
        timeout: float = COMMAND_TIMEOUT,
    ) -> None:
        args = shlex.split(command) if isinstance(command, str) else list(command)
        if not args:
            raise ConfigurationError("Translator command is empty.")
        self.args = args
        self.timeout = timeout

    async def translate(self, text: str) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TranslationError(
                f"Could not start translator '{self.args[0]}': {exc}"
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(text.encode("utf-8")),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            await _terminate(process)
            raise TranslationError(
                f"Translator timed out after {self.timeout:g}s."
            ) from exc
        except asyncio.CancelledError:
            await _terminate(process)
            raise

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise TranslationError(
                f"Translator exited with status {process.returncode}"
                + (f": {message}" if message else ".")
            )

        translated = stdout.decode("utf-8", errors="replace")
        # Engines usually terminate their output with a newline of their own.
        if translated.endswith("\n") and not text.endswith("\n"):
            translated = translated[:-1]
        return translated


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        process.kill()
        await process.wait()


class OpenAITranslator(ProviderDebugMixin, Translator):
    """Translator that uses OpenAI chat models."""

    name = "openai"
    DEFAULT_MODEL = "gpt-4o-mini"

    def __init__(
        self,
        *,
        api_key: Optional[str],
        model: Optional[str] = None,
        source_language: str = "English",
        target_language: str = "French",
        debug: bool = False,
        http_client=None,
    ) -> None:
        if not api_key:
            raise ConfigurationError(
                "OpenAI configuration missing. Set OPENAI_API_KEY or choose a "
                "different translator."
            )
        self.model = model or self.DEFAULT_MODEL
        self.source_language = source_language
        self.target_language = target_language
        self.debug = debug
        self._client = AsyncOpenAI(
            api_key=api_key,
            max_retries=0,
            http_client=http_client,
        )

    def system_prompt(self) -> str:
        return (
            "You are a professional translator. "
            f"Translate the user's text from {self.source_language} into "
            f"{self.target_language}. Keep every line break: the translation "
            "must have exactly one output line per input line. "
            "Preserve numbers, placeholders and markup. "
            "Return only the translation. Do not add commentary. "
            "Do not wrap the text in markdown code fences."
        )

    async def translate(self, text: str) -> str:
        if not text.strip():
            return text

        messages = [
            {"role": "system", "content": self.system_prompt()},
            {"role": "user", "content": text},
        ]
        self._log_debug("translator.request.messages", messages)
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                temperature=0,
                messages=messages,
            )
        except openai.APIError as exc:
            raise TranslationError(
                f"Translation service temporarily unavailable: {exc}"
            ) from exc
        self._log_debug("translator.response.raw", safe_dump_response(response))

        choices = response.choices or []
        content = choices[0].message.content if choices else None
        if not content:
            raise TranslationError("Translation service response empty or unrecognised.")
        return self._strip_code_fence(content)

    def _strip_code_fence(self, text: str) -> str:
        """Remove leading/trailing markdown code fences if present."""

        stripped = text.strip()
        if not stripped.startswith("```"):
            return stripped

        # Drop opening fence and optional language hint.
        first_newline = stripped.find("\n")
        if first_newline == -1:
            return stripped
        body = stripped[first_newline + 1 :]
        closing_index = body.rfind("```")
        if closing_index != -1:
            body = body[:closing_index]
        return body.strip()

    async def aclose(self) -> None:
        await self._client.close()


def build_translator(
    name: Optional[str],
    *,
    command: Optional[str] = None,
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    source_language: str = "English",
    target_language: str = "French",
    debug: bool = False,
) -> Translator:
    """Factory to create translators by name."""

    normalized = (name or "echo").strip().lower()
    if normalized in {"echo", "noop", "mock"}:
        return EchoTranslator()
    if normalized in {"command", "cmd", "external"}:
        if not command:
            raise ConfigurationError(
                "Translator 'command' needs TRANSLATOR_COMMAND to be set."
            )
        return CommandTranslator(command)
    if normalized in {"openai", "gpt"}:
        return OpenAITranslator(
            api_key=api_key,
            model=model,
            source_language=source_language,
            target_language=target_language,
            debug=debug,
        )
    raise ConfigurationError(f"Unknown translator '{name}'.")
