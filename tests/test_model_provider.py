"""
Tests for the OpenAI-compatible provider client.

Uses httpx.MockTransport in place of the upstream API.
"""

import asyncio
import json
from collections.abc import AsyncIterator, Callable

import httpx
import pytest

from tokenguard.exceptions import ProviderError, ProviderTimeoutError
from tokenguard.models.domain import ModelCostEntry
from tokenguard.services.model_catalog import BUILTIN_MODELS
from tokenguard.services.model_provider import OpenAICompatibleProvider, strip_reasoning

NANO = BUILTIN_MODELS[2]


def _completion(content: object) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _provider(handler) -> OpenAICompatibleProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAICompatibleProvider("https://llm.test/v1/", "sk-test", http_client=client)


class TestStripReasoning:
    def test_removes_think_block(self):
        assert strip_reasoning("<think>plan\nsteps</think>\nAnswer") == "Answer"

    def test_removes_every_block(self):
        assert strip_reasoning("<think>a</think>One <think>b</think>Two") == "One Two"

    def test_plain_text_untouched(self):
        assert strip_reasoning("  hello  ") == "hello"


class TestComplete:
    """Request shape and response parsing."""

    async def test_sends_upstream_model_and_prompt(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=_completion("Hi there"))

        provider = _provider(handler)
        reply = await provider.complete(NANO, "Hello")

        assert reply == "Hi there"
        request = seen[0]
        assert str(request.url) == "https://llm.test/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["model"] == "mistralai/Mixtral-8x7B-Instruct-v0.1"
        assert body["messages"] == [{"role": "user", "content": "Hello"}]

    async def test_reasoning_stripped_from_reply(self):
        provider = _provider(
            lambda request: httpx.Response(200, json=_completion("<think>hmm</think>Sure."))
        )
        assert await provider.complete(NANO, "q") == "Sure."

    async def test_model_without_api_model_uses_id(self):
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json=_completion("ok"))

        entry = ModelCostEntry(model_id="house", name="House", token_cost=1, ad_reward=1)
        await _provider(handler).complete(entry, "q")

        assert seen[0]["model"] == "house"


class TestFailures:
    """Every upstream failure surfaces as ProviderError."""

    @pytest.mark.parametrize("status_code", [400, 429, 500, 503])
    async def test_http_error_status(self, status_code: int):
        provider = _provider(lambda request: httpx.Response(status_code, json={"error": "x"}))

        with pytest.raises(ProviderError, match=str(status_code)):
            await provider.complete(NANO, "q")

    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderError, match="transport failure"):
            await _provider(handler).complete(NANO, "q")

    async def test_read_timeout_is_provider_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ProviderTimeoutError):
            await _provider(handler).complete(NANO, "q")

    @pytest.mark.parametrize(
        "body",
        [{}, {"choices": []}, {"choices": [{"message": {}}]}, {"choices": None}],
    )
    async def test_malformed_response(self, body: dict):
        provider = _provider(lambda request: httpx.Response(200, json=body))

        with pytest.raises(ProviderError, match="malformed"):
            await provider.complete(NANO, "q")

    async def test_non_json_response(self):
        provider = _provider(lambda request: httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(ProviderError, match="malformed"):
            await provider.complete(NANO, "q")

    async def test_non_text_content(self):
        provider = _provider(lambda request: httpx.Response(200, json=_completion(["a", "b"])))

        with pytest.raises(ProviderError, match="not text"):
            await provider.complete(NANO, "q")


class TestLifecycle:
    async def test_close_releases_client(self):
        provider = _provider(lambda request: httpx.Response(200, json=_completion("ok")))
        await provider.complete(NANO, "q")

        await provider.close()

        assert provider._http_client is None

    async def test_client_created_lazily(self):
        provider = OpenAICompatibleProvider("https://llm.test/v1", "sk-test")
        assert provider._http_client is None

        client = provider.http_client

        assert isinstance(client, httpx.AsyncClient)
        await provider.close()

    async def test_client_bounded_by_provider_timeout(self):
        provider = OpenAICompatibleProvider("https://llm.test/v1", "sk-test", timeout_seconds=12.5)

        timeout = provider.http_client.timeout
        await provider.close()

        assert timeout.read == 12.5
        assert timeout.connect == 12.5

    async def test_default_timeout_from_settings(self):
        provider = OpenAICompatibleProvider("https://llm.test/v1", "sk-test")

        timeout = provider.http_client.timeout
        await provider.close()

        assert provider.timeout_seconds == 10.0
        assert timeout.read == 10.0


@pytest.fixture
async def slow_upstream() -> AsyncIterator[Callable[[float], str]]:
    """Local HTTP server that answers /chat/completions after a delay."""
    delay = {"seconds": 0.0}

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        head = await reader.readuntil(b"\r\n\r\n")
        length = 0
        for line in head.decode("latin-1").split("\r\n"):
            name, _, value = line.partition(":")
            if name.lower() == "content-length":
                length = int(value.strip())
        await reader.readexactly(length)
        await asyncio.sleep(delay["seconds"])
        body = json.dumps(_completion("slow but fine")).encode()
        writer.write(
            b"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n"
            + f"Content-Length: {len(body)}\r\nConnection: close\r\n\r\n".encode()
            + body
        )
        try:
            await writer.drain()
        except ConnectionError:
            pass
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]

    def configure(seconds: float) -> str:
        delay["seconds"] = seconds
        return f"http://127.0.0.1:{port}/v1"

    yield configure

    server.close()
    await server.wait_closed()


class TestSlowUpstream:
    """Real sockets; the configured timeout bounds the whole call."""

    async def test_answer_within_timeout_succeeds(self, slow_upstream):
        provider = OpenAICompatibleProvider(slow_upstream(0.3), "sk-test", timeout_seconds=2.0)

        try:
            assert await provider.complete(NANO, "q") == "slow but fine"
        finally:
            await provider.close()

    async def test_answer_after_timeout_is_provider_timeout(self, slow_upstream):
        provider = OpenAICompatibleProvider(slow_upstream(1.5), "sk-test", timeout_seconds=0.5)

        try:
            with pytest.raises(ProviderTimeoutError) as exc_info:
                await provider.complete(NANO, "q")
        finally:
            await provider.close()

        assert exc_info.value.timeout_seconds == 0.5
