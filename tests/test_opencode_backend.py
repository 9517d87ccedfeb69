import asyncio
import base64
import json

import httpx
import pytest

from telecode.backend.base import FileAttachment, ModelRef, PromptInput, TokenUsage
from telecode.backend.events import PermissionAsked, QuestionAsked, UnknownEvent
from telecode.backend.opencode import OpenCodeBackend, extract_provider_error, extract_text
from telecode.bridge.guard import CancellationToken
from telecode.config.schema import OpenCodeConfig
from telecode.errors import (
    BackendRequestError,
    ModelCapabilityError,
    ModelFormatError,
    ModelModalitiesError,
    OperationCancelledError,
)

PROVIDERS = {
    "providers": [
        {
            "id": "openai",
            "name": "OpenAI",
            "models": {
                "gpt-5": {
                    "name": "GPT-5",
                    "capabilities": {"input": {"image": True}},
                    "modalities": {"input": ["text", "image", "pdf"]},
                },
                "text-only": {
                    "name": "Text",
                    "capabilities": {"input": {"image": False}},
                    "modalities": {"input": ["text"]},
                },
                "legacy": {"name": "Legacy", "limit": {"context": 8000, "output": 4096}},
            },
        }
    ]
}

IMAGE = FileAttachment(mime="image/png", data_url="data:image/png;base64,AAAA", filename="a.png")
PDF = FileAttachment(mime="application/pdf", data_url="data:application/pdf;base64,AAAA")


class _Server:
    """Records requests and answers them from a route table."""

    def __init__(self, routes: dict[tuple[str, str], object]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"error": "not found"})
        answer = self.routes[key]
        if isinstance(answer, httpx.Response):
            return answer
        return httpx.Response(200, json=answer)

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


def _backend(server: _Server, **config) -> OpenCodeBackend:
    cfg = OpenCodeConfig(server_url="http://opencode.test/", **config)
    return OpenCodeBackend(cfg, transport=httpx.MockTransport(server))


def _reply(text: str, provider: str = "openai", model: str = "gpt-5") -> dict:
    return {
        "info": {"providerID": provider, "modelID": model},
        "parts": [{"type": "step-start"}, {"type": "text", "text": text}],
    }


def test_extract_text_joins_non_empty_parts() -> None:
    parts = [
        {"type": "text", "text": "Hello"},
        {"type": "tool", "text": "ignored"},
        {"type": "text", "text": "  "},
        {"type": "text", "text": "world"},
    ]
    assert extract_text(parts) == "Hello\nworld"


def test_provider_error_prefers_retry_part() -> None:
    response = {
        "parts": [{"type": "retry", "error": {"data": {"message": "Rate limited", "statusCode": 429}}}],
        "info": {"error": {"data": {"message": "other"}}},
    }
    assert extract_provider_error(response) == "OpenCode provider error (429): Rate limited"
    assert extract_provider_error({"info": {"error": {"name": "ProviderAuthError"}}}) == (
        "OpenCode provider error: ProviderAuthError"
    )
    assert extract_provider_error({"parts": []}) is None


async def test_create_session_sends_directory_and_basic_auth() -> None:
    server = _Server({("POST", "/session"): {"id": "ses_1"}})
    backend = _backend(server, server_password="pw")

    assert await backend.create_session("/repo", "Telegram chat 1") == "ses_1"

    request = server.requests[0]
    assert request.url.params["directory"] == "/repo"
    assert server.body() == {"title": "Telegram chat 1"}
    expected = base64.b64encode(b"opencode:pw").decode()
    assert request.headers["authorization"] == f"Basic {expected}"
    await backend.close()


async def test_no_auth_header_without_password() -> None:
    server = _Server({("POST", "/session"): {"id": "ses_1"}})
    backend = _backend(server)

    await backend.create_session("/repo", "t")

    assert "authorization" not in server.requests[0].headers
    await backend.close()


async def test_prompt_returns_reply_and_model() -> None:
    server = _Server({("POST", "/session/ses_1/message"): _reply("Done.")})
    backend = _backend(server)

    result = await backend.prompt(
        "ses_1", "/repo", PromptInput(text="fix it"), model=ModelRef("openai", "gpt-5")
    )

    assert result.reply == "Done."
    assert result.model == ModelRef("openai", "gpt-5")
    assert server.body() == {
        "parts": [{"type": "text", "text": "fix it"}],
        "model": {"providerID": "openai", "modelID": "gpt-5"},
    }
    await backend.close()


async def test_prompt_without_text_reports_provider_error_or_empty_output() -> None:
    server = _Server(
        {
            ("POST", "/session/ses_1/message"): {
                "info": {"error": {"data": {"message": "Insufficient credits", "statusCode": 402}}},
                "parts": [],
            },
            ("POST", "/session/ses_2/message"): {"info": {}, "parts": [{"type": "step-finish"}]},
        }
    )
    backend = _backend(server)

    with pytest.raises(BackendRequestError, match=r"OpenCode provider error \(402\): Insufficient credits"):
        await backend.prompt("ses_1", "/repo", PromptInput(text="hi"))
    with pytest.raises(BackendRequestError, match="OpenCode returned no text output."):
        await backend.prompt("ses_2", "/repo", PromptInput(text="hi"))
    await backend.close()


async def test_http_failure_maps_to_request_error() -> None:
    server = _Server({("POST", "/session"): httpx.Response(500, text="boom")})
    backend = _backend(server)

    with pytest.raises(BackendRequestError, match=r"OpenCode session.create failed \(500\)"):
        await backend.create_session("/repo", "t")
    await backend.close()


async def test_image_prompt_checks_default_model_capabilities() -> None:
    server = _Server(
        {
            ("GET", "/config"): {"model": "openai/gpt-5"},
            ("GET", "/config/providers"): PROVIDERS,
            ("POST", "/session/ses_1/message"): _reply("A cat."),
        }
    )
    backend = _backend(server)

    result = await backend.prompt("ses_1", "/repo", PromptInput(text="what?", files=[IMAGE]))

    assert result.reply == "A cat."
    parts = server.body()["parts"]
    assert parts[1] == {"type": "file", "mime": "image/png", "url": IMAGE.data_url, "filename": "a.png"}
    assert "model" not in server.body()
    await backend.close()


async def test_capability_failures() -> None:
    server = _Server({("GET", "/config/providers"): PROVIDERS, ("GET", "/config"): {}})
    backend = _backend(server)

    with pytest.raises(ModelCapabilityError, match="Model openai/text-only does not support image input."):
        await backend.prompt("s", "/r", PromptInput("x", [IMAGE]), model=ModelRef("openai", "text-only"))
    with pytest.raises(ModelCapabilityError, match="does not support PDF input"):
        await backend.prompt("s", "/r", PromptInput("x", [PDF]), model=ModelRef("openai", "text-only"))
    with pytest.raises(ModelModalitiesError):
        await backend.prompt("s", "/r", PromptInput("x", [PDF]), model=ModelRef("openai", "legacy"))
    with pytest.raises(ModelFormatError, match="no default model"):
        await backend.prompt("s", "/r", PromptInput("x", [PDF]))

    assert not any(r.url.path.endswith("/message") for r in server.requests)
    await backend.close()


async def test_prompt_is_abandoned_when_token_fires() -> None:
    started = asyncio.Event()

    async def _slow(request: httpx.Request) -> httpx.Response:
        started.set()
        await asyncio.sleep(10)
        return httpx.Response(200, json=_reply("late"))

    backend = OpenCodeBackend(
        OpenCodeConfig(server_url="http://opencode.test"), transport=httpx.MockTransport(_slow)
    )
    token = CancellationToken()
    task = asyncio.create_task(backend.prompt("ses_1", "/r", PromptInput("x"), cancel_token=token))
    await started.wait()
    token.cancel()

    with pytest.raises(OperationCancelledError):
        await task
    await backend.close()


async def test_list_models_and_replies() -> None:
    server = _Server(
        {
            ("GET", "/config/providers"): PROVIDERS,
            ("POST", "/permission/per_1/reply"): True,
            ("POST", "/question/que_1/reply"): True,
            ("POST", "/question/que_2/reject"): True,
            ("POST", "/session/ses_1/abort"): False,
        }
    )
    backend = _backend(server)

    providers = await backend.list_models("/r")
    assert providers[0].id == "openai"
    assert providers[0].models["gpt-5"].name == "GPT-5"

    assert await backend.reply_to_permission("per_1", "always", "/r") is True
    assert server.body() == {"reply": "always"}
    assert await backend.reply_to_question("que_1", [["A"], ["x", "y"]], "/r") is True
    assert server.body() == {"answers": [["A"], ["x", "y"]]}
    assert await backend.reject_question("que_2", "/r") is True
    assert await backend.abort_session("ses_1", "/r") is False
    await backend.close()


async def test_latest_assistant_stats_reads_last_assistant_message() -> None:
    messages = [
        {"info": {"role": "user"}, "parts": []},
        {
            "info": {
                "role": "assistant",
                "providerID": "openai",
                "modelID": "legacy",
                "tokens": {"input": 10, "output": 2, "reasoning": 0, "cache": {"read": 0, "write": 0}},
            },
            "parts": [],
        },
        {
            "info": {
                "role": "assistant",
                "providerID": "openai",
                "modelID": "gpt-5",
                "tokens": {"input": 1000, "output": 200, "reasoning": 5, "cache": {"read": 7, "write": 1}},
            },
            "parts": [],
        },
        {"info": {"role": "user"}, "parts": []},
    ]
    server = _Server(
        {
            ("GET", "/session/ses_1/message"): messages,
            ("GET", "/session/ses_2/message"): [{"info": {"role": "user"}}],
            ("GET", "/config/providers"): PROVIDERS,
        }
    )
    backend = _backend(server)

    stats = await backend.get_latest_assistant_stats("ses_1", "/r")
    assert stats.model == ModelRef("openai", "gpt-5")
    assert stats.tokens == TokenUsage(input=1000, output=200, reasoning=5, cache_read=7, cache_write=1)
    assert server.requests[-1].url.params["directory"] == "/r"

    empty = await backend.get_latest_assistant_stats("ses_2", "/r")
    assert empty.model is None
    assert empty.tokens is None

    providers = await backend.list_models("/r")
    assert providers[0].models["legacy"].context_limit == 8000
    assert providers[0].models["gpt-5"].context_limit is None
    await backend.close()


async def test_event_stream_parses_server_sent_events() -> None:
    events = [
        {"directory": "/r", "payload": {"type": "server.connected", "properties": {}}},
        {
            "directory": "/r",
            "payload": {
                "type": "permission.asked",
                "properties": {"id": "per_1", "sessionID": "ses_1", "permission": "edit"},
            },
        },
        {
            "directory": "/r",
            "payload": {
                "type": "question.asked",
                "properties": {"id": "que_1", "sessionID": "ses_1", "questions": []},
            },
        },
    ]
    body = "".join(f"data: {json.dumps(e)}\n\n" for e in events) + "data: not json\n\n"
    server = _Server(
        {("GET", "/global/event"): httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})}
    )
    backend = _backend(server)

    received = [event async for event in backend.open_event_stream()]

    assert [type(e) for e in received] == [UnknownEvent, PermissionAsked, QuestionAsked]
    assert received[1].request.id == "per_1"
    await backend.close()
