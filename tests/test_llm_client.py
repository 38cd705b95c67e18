import json

import httpx
import pytest

import llm_client
from llm_client import LLMError, call_chat_completion
from relay_config import ModelRoute

MESSAGES = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hello"}]


@pytest.fixture(autouse=True)
def _api_keys(monkeypatch):
    monkeypatch.setattr(llm_client, "OPENAI_API_KEY", "sk-openai-test")
    monkeypatch.setattr(llm_client, "DEEPSEEK_API_KEY", "sk-deepseek-test")


def _completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


@pytest.mark.asyncio
async def test_posts_model_and_messages_to_openai() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion("Hi there"))

    route = ModelRoute(profile="Nevan", upstream_model="chatgpt-4o-latest")
    reply = await call_chat_completion(route, MESSAGES, transport=httpx.MockTransport(handler))

    assert reply == "Hi there"
    assert seen["url"] == llm_client.OPENAI_API_URL
    assert seen["auth"] == "Bearer sk-openai-test"
    assert seen["body"] == {"model": "chatgpt-4o-latest", "messages": MESSAGES}


@pytest.mark.asyncio
async def test_deepseek_route_uses_deepseek_endpoint() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["host"] = request.url.host
        seen["auth"] = request.headers["Authorization"]
        seen["model"] = json.loads(request.content)["model"]
        return httpx.Response(200, json=_completion("ok"))

    route = ModelRoute(profile="DeepSeek", provider="deepseek", upstream_model="deepseek-chat")
    await call_chat_completion(route, MESSAGES, transport=httpx.MockTransport(handler))

    assert seen == {"host": "api.deepseek.com", "auth": "Bearer sk-deepseek-test", "model": "deepseek-chat"}


@pytest.mark.asyncio
async def test_non_200_raises() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(429, json={"error": "rate limited"}))
    route = ModelRoute(profile="Nevan", upstream_model="m")
    with pytest.raises(LLMError) as excinfo:
        await call_chat_completion(route, MESSAGES, transport=transport)
    assert "429" in str(excinfo.value)


@pytest.mark.asyncio
async def test_transport_error_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    route = ModelRoute(profile="Nevan", upstream_model="m")
    with pytest.raises(LLMError):
        await call_chat_completion(route, MESSAGES, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_missing_api_key_raises(monkeypatch) -> None:
    monkeypatch.setattr(llm_client, "OPENAI_API_KEY", "")
    calls = []
    transport = httpx.MockTransport(lambda request: calls.append(request) or httpx.Response(200))
    route = ModelRoute(profile="Nevan", upstream_model="m")
    with pytest.raises(LLMError):
        await call_chat_completion(route, MESSAGES, transport=transport)
    assert calls == []


@pytest.mark.asyncio
async def test_empty_choices_yields_placeholder() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"choices": []}))
    route = ModelRoute(profile="Nevan", upstream_model="m")
    assert await call_chat_completion(route, MESSAGES, transport=transport) == "No reply"


@pytest.mark.asyncio
async def test_non_json_success_body_raises() -> None:
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, text="<html>upstream proxy error</html>")
    )
    route = ModelRoute(profile="Nevan", upstream_model="m")
    with pytest.raises(LLMError) as excinfo:
        await call_chat_completion(route, MESSAGES, transport=transport)
    assert "openai" in str(excinfo.value)
