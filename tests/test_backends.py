"""
Tests for refinement backend adapters, using mocked HTTP transports.
"""

import asyncio
import json

import httpx
import pytest

from quire.backends import (
    ClaudeBackend,
    GeminiBackend,
    LMStudioBackend,
    OllamaBackend,
    OpenAIBackend,
    build_backend,
    normalise_provider,
)
from quire.errors import RefinementConfigurationError, RefinementError, RefinementHalted


def run_with(handler, factory, action):
    """Build a backend around a mocked client and run ``action`` on it."""

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            backend = factory(client)
            return await action(backend)

    return asyncio.run(scenario())


def chat_completion(content):
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "gpt-4o-mini",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }


class TestOllama:
    def test_generate_request(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": "Bonjour"})

        result = run_with(
            handler,
            lambda client: OllamaBackend(model="mistral", http_client=client),
            lambda backend: backend.complete("Translate"),
        )

        assert result == "Bonjour"
        assert seen["url"] == "http://localhost:11434/api/generate"
        assert seen["body"] == {"model": "mistral", "prompt": "Translate", "stream": False}

    def test_endpoint_url_is_normalised(self):
        backend = OllamaBackend(url="http://gpu-box:11434/api/generate/")

        assert backend.base_url == "http://gpu-box:11434"

    def test_list_models(self):
        def handler(request):
            assert request.url.path == "/api/tags"
            return httpx.Response(200, json={"models": [{"name": "llama3.1"}, {"name": "mistral"}]})

        models = run_with(
            handler,
            lambda client: OllamaBackend(http_client=client),
            lambda backend: backend.list_models(),
        )

        assert models == ["llama3.1", "mistral"]

    def test_http_error(self):
        def handler(request):
            return httpx.Response(500, json={"error": "model not loaded"})

        with pytest.raises(RefinementError, match="model not loaded"):
            run_with(
                handler,
                lambda client: OllamaBackend(http_client=client),
                lambda backend: backend.complete("x"),
            )

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(RefinementError, match="Network error"):
            run_with(
                handler,
                lambda client: OllamaBackend(http_client=client),
                lambda backend: backend.complete("x"),
            )

    def test_check_connection(self):
        def ok(request):
            return httpx.Response(200, json={"models": [{"name": "llama3.1"}]})

        def down(request):
            raise httpx.ConnectError("connection refused", request=request)

        reachable, message = run_with(
            ok,
            lambda client: OllamaBackend(http_client=client),
            lambda backend: backend.check_connection(),
        )
        unreachable, _ = run_with(
            down,
            lambda client: OllamaBackend(http_client=client),
            lambda backend: backend.check_connection(),
        )

        assert reachable is True
        assert "1 model(s)" in message
        assert unreachable is False


class TestOpenAICompatible:
    def test_openai_chat_completion(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=chat_completion("Salut"))

        result = run_with(
            handler,
            lambda client: OpenAIBackend(api_key="sk-test", http_client=client),
            lambda backend: backend.complete("Improve"),
        )

        assert result == "Salut"
        assert seen["path"].endswith("/chat/completions")
        assert seen["body"]["model"] == "gpt-4o-mini"
        assert seen["body"]["temperature"] == 0.3
        assert seen["body"]["messages"] == [{"role": "user", "content": "Improve"}]

    def test_openai_status_error(self):
        def handler(request):
            return httpx.Response(429, json={"error": {"message": "slow down"}})

        with pytest.raises(RefinementError, match="429"):
            run_with(
                handler,
                lambda client: OpenAIBackend(api_key="sk-test", http_client=client),
                lambda backend: backend.complete("x"),
            )

    def test_openai_requires_key(self):
        with pytest.raises(RefinementConfigurationError):
            OpenAIBackend(api_key=None)

    @pytest.mark.parametrize(
        "url, expected",
        [
            (None, "http://localhost:1234/v1"),
            ("http://localhost:1234/", "http://localhost:1234/v1"),
            ("http://host:1234/v1/chat/completions", "http://host:1234/v1"),
        ],
    )
    def test_lm_studio_base_url(self, url, expected):
        assert LMStudioBackend.api_base(url) == expected

    def test_lm_studio_defaults_and_models(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            if request.url.path.endswith("/models"):
                return httpx.Response(
                    200,
                    json={
                        "object": "list",
                        "data": [{"id": "qwen2.5-7b", "object": "model", "created": 0, "owned_by": "local"}],
                    },
                )
            body = json.loads(request.content)
            assert body["model"] == "default"
            return httpx.Response(200, json=chat_completion("Texte"))

        async def action(backend):
            return await backend.list_models(), await backend.complete("x")

        models, text = run_with(handler, lambda client: LMStudioBackend(http_client=client), action)

        assert models == ["qwen2.5-7b"]
        assert text == "Texte"
        assert seen[0] == "http://localhost:1234/v1/models"


class TestClaude:
    def test_messages_request(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"content": [{"type": "text", "text": "Voilà"}]})

        result = run_with(
            handler,
            lambda client: ClaudeBackend(api_key="key-123", http_client=client),
            lambda backend: backend.complete("Improve"),
        )

        assert result == "Voilà"
        assert seen["url"] == "https://api.anthropic.com/v1/messages"
        assert seen["headers"]["x-api-key"] == "key-123"
        assert seen["headers"]["anthropic-version"] == "2023-06-01"
        assert seen["body"]["model"] == "claude-3-haiku-20240307"
        assert seen["body"]["max_tokens"] == 4096

    def test_malformed_response(self):
        def handler(request):
            return httpx.Response(200, json={"content": []})

        with pytest.raises(RefinementError, match="malformed"):
            run_with(
                handler,
                lambda client: ClaudeBackend(api_key="key", http_client=client),
                lambda backend: backend.complete("x"),
            )

    def test_requires_key(self):
        with pytest.raises(RefinementConfigurationError):
            ClaudeBackend(api_key="")


class TestGemini:
    def test_generate_content_request(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["key"] = request.url.params.get("key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"candidates": [{"content": {"parts": [{"text": "Bonjour"}]}}]},
            )

        result = run_with(
            handler,
            lambda client: GeminiBackend(api_key="g-key", http_client=client),
            lambda backend: backend.complete("Improve"),
        )

        assert result == "Bonjour"
        assert seen["path"] == "/v1beta/models/gemini-1.5-flash:generateContent"
        assert seen["key"] == "g-key"
        assert seen["body"] == {"contents": [{"parts": [{"text": "Improve"}]}]}

    def test_error_object_halts(self):
        def handler(request):
            return httpx.Response(429, json={"error": {"code": 429, "message": "Quota exceeded"}})

        with pytest.raises(RefinementHalted, match="Quota exceeded"):
            run_with(
                handler,
                lambda client: GeminiBackend(api_key="g-key", http_client=client),
                lambda backend: backend.complete("x"),
            )

    def test_empty_candidates(self):
        def handler(request):
            return httpx.Response(200, json={"candidates": []})

        with pytest.raises(RefinementError, match="quota"):
            run_with(
                handler,
                lambda client: GeminiBackend(api_key="g-key", http_client=client),
                lambda backend: backend.complete("x"),
            )

    def test_invalid_json(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>bad gateway</html>")

        with pytest.raises(RefinementError, match="JSON"):
            run_with(
                handler,
                lambda client: GeminiBackend(api_key="g-key", http_client=client),
                lambda backend: backend.complete("x"),
            )


class TestFactory:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("Ollama", "ollama"),
            ("lm-studio", "lm_studio"),
            ("LMStudio", "lm_studio"),
            ("anthropic", "claude"),
            ("google", "gemini"),
            (None, "ollama"),
        ],
    )
    def test_aliases(self, name, expected):
        assert normalise_provider(name) == expected

    def test_unknown_provider(self):
        with pytest.raises(RefinementConfigurationError):
            build_backend("watson")

    def test_builds_local_backends_without_keys(self):
        assert isinstance(build_backend("ollama"), OllamaBackend)
        assert isinstance(build_backend("lm_studio"), LMStudioBackend)

    def test_cloud_backend_without_key(self):
        with pytest.raises(RefinementConfigurationError):
            build_backend("gemini")
