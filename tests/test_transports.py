"""Tests for the model transports and their response normalization."""

from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, AsyncIterator

import httpx
import pytest

from quizsmith.ai.cancellation import CancellationToken
from quizsmith.ai.errors import Cancelled, TransportError
from quizsmith.ai.tokens import ApproxCharCounter, TokenCounterRegistry
from quizsmith.ai.transport import (
    GenAITransport,
    GenerateRequest,
    OpenAITransport,
    ProxyTransport,
    create_transport,
    normalize_google_response,
    text_content,
)
from quizsmith.ai.transport.base import CachingBackend, LLMTransport, TokenCountingService
from quizsmith.ai.transport.openai_compat import contents_to_messages
from quizsmith.ai.transport.proxy import build_proxy_body
from quizsmith.services.settings import Settings

TOOLS = [
    {
        "name": "edit_document",
        "description": "Edit the document",
        "parameters": {"type": "object", "properties": {"new_text": {"type": "string"}}},
    }
]


def _request(**overrides: Any) -> GenerateRequest:
    values: dict[str, Any] = {
        "model": "test-model",
        "contents": [text_content("user", "Hello")],
        "system_instruction": "Be brief.",
        "tools": TOOLS,
        "temperature": 0.2,
    }
    values.update(overrides)
    return GenerateRequest(**values)


async def _collect(iterator: AsyncIterator[Any]) -> list[Any]:
    return [item async for item in iterator]


# -----------------------------------------------------------------------------
# normalize_google_response
# -----------------------------------------------------------------------------


def test_normalize_camel_case_payload() -> None:
    payload = {
        "candidates": [
            {
                "content": {
                    "role": "model",
                    "parts": [
                        {"text": "Let me think", "thought": True},
                        {"text": "Hello "},
                        {"text": "there"},
                        {"functionCall": {"name": "edit_document", "args": {"new_text": "x"}, "id": "call-1"}},
                    ],
                },
                "finishReason": "STOP",
            }
        ],
        "usageMetadata": {"promptTokenCount": 12, "candidatesTokenCount": 3, "cachedContentTokenCount": 8},
    }

    chunk = normalize_google_response(payload)

    assert chunk.text == "Hello there"
    assert chunk.thinking == "Let me think"
    assert chunk.function_calls[0].name == "edit_document"
    assert dict(chunk.function_calls[0].args) == {"new_text": "x"}
    assert chunk.function_calls[0].id == "call-1"
    assert chunk.finish_reason == "STOP"
    assert chunk.usage is not None
    assert (chunk.usage.prompt_tokens, chunk.usage.completion_tokens, chunk.usage.total_tokens) == (12, 3, 15)
    assert chunk.usage.cached_tokens == 8


def test_normalize_snake_case_payload_in_envelope() -> None:
    payload = {
        "response": {
            "candidates": [
                {
                    "content": {"parts": [{"function_call": {"name": "read_document"}}]},
                    "finish_reason": "STOP",
                }
            ],
            "usage_metadata": {"prompt_token_count": 4, "candidates_token_count": 1, "total_token_count": 5},
        }
    }

    chunk = normalize_google_response(payload)

    assert chunk.function_calls[0].name == "read_document"
    assert dict(chunk.function_calls[0].args) == {}
    assert chunk.usage is not None and chunk.usage.total_tokens == 5


def test_normalize_empty_payload() -> None:
    chunk = normalize_google_response({})

    assert chunk.is_empty
    assert normalize_google_response({"candidates": [{"content": {"parts": [{"text": ""}]}}]}).is_empty


# -----------------------------------------------------------------------------
# ProxyTransport
# -----------------------------------------------------------------------------


def _sse(*payloads: Any) -> str:
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    return "".join(lines)


def _text_payload(text: str) -> dict[str, Any]:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


def _proxy(handler) -> ProxyTransport:
    client = httpx.AsyncClient(base_url="http://proxy.test", transport=httpx.MockTransport(handler))
    return ProxyTransport(base_url="http://proxy.test", client=client)


def test_proxy_body_uncached() -> None:
    body = build_proxy_body(_request(max_output_tokens=100, include_thoughts=True), stream=True)

    assert body["model"] == "test-model"
    assert body["stream"] is True
    assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert body["tools"] == [{"functionDeclarations": TOOLS}]
    assert body["generationConfig"] == {
        "temperature": 0.2,
        "maxOutputTokens": 100,
        "thinkingConfig": {"includeThoughts": True},
    }
    assert "cachedContent" not in body


def test_proxy_body_cached_omits_prefix() -> None:
    body = build_proxy_body(_request(cached_content="cachedContents/7", temperature=None), stream=False)

    assert body["cachedContent"] == "cachedContents/7"
    assert "systemInstruction" not in body
    assert "tools" not in body
    assert "generationConfig" not in body


@pytest.mark.asyncio
async def test_proxy_streams_event_frames() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = _sse(
            _text_payload("Hel"),
            "{not json",
            _text_payload("lo"),
            {"candidates": [{"content": {"parts": [{"functionCall": {"name": "read_document", "args": {}}}]}}]},
            "[DONE]",
        )
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    transport = _proxy(handler)
    chunks = await _collect(transport.stream_generate(_request()))
    await transport.aclose()

    assert [chunk.text for chunk in chunks] == ["Hel", "lo", ""]
    assert chunks[-1].function_calls[0].name == "read_document"
    request = seen[0]
    assert request.url.path == "/v1/chat/completions"
    assert request.url.params["response_format"] == "google"
    assert json.loads(request.content)["stream"] is True


@pytest.mark.asyncio
async def test_proxy_http_error_becomes_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="upstream exploded")

    transport = _proxy(handler)

    with pytest.raises(TransportError) as excinfo:
        await _collect(transport.stream_generate(_request()))

    assert excinfo.value.status_code == 500
    assert excinfo.value.message == "Proxy error 500: upstream exploded"


@pytest.mark.asyncio
async def test_proxy_connection_failure_becomes_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    transport = _proxy(handler)

    with pytest.raises(TransportError) as excinfo:
        await transport.generate(_request())

    assert "connection refused" in excinfo.value.message
    assert excinfo.value.details["exception_type"] == "ConnectError"


@pytest.mark.asyncio
async def test_proxy_generate_and_list_models() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/models":
            return httpx.Response(200, json={"data": [{"id": "gemini-a", "display_name": "Gemini A"}, {"id": ""}]})
        assert json.loads(request.content)["stream"] is False
        return httpx.Response(200, json=_text_payload("complete answer"))

    transport = _proxy(handler)

    chunk = await transport.generate(_request())
    models = await _collect(transport.list_models())

    assert chunk.text == "complete answer"
    assert [(model.name, model.display_name) for model in models] == [("gemini-a", "Gemini A")]


@pytest.mark.asyncio
async def test_proxy_respects_fired_token() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, text="")

    token = CancellationToken()
    token.cancel()

    with pytest.raises(Cancelled):
        await _collect(_proxy(handler).stream_generate(_request(), cancel=token))
    assert calls == []


# -----------------------------------------------------------------------------
# GenAITransport
# -----------------------------------------------------------------------------


class _FakeGenAIModels:
    def __init__(self, chunks: list[dict[str, Any]] | BaseException) -> None:
        self.chunks = chunks
        self.calls: list[dict[str, Any]] = []

    async def generate_content_stream(self, **kwargs: Any) -> AsyncIterator[dict[str, Any]]:
        self.calls.append(kwargs)
        if isinstance(self.chunks, BaseException):
            raise self.chunks
        return self._replay()

    async def _replay(self) -> AsyncIterator[dict[str, Any]]:
        assert not isinstance(self.chunks, BaseException)
        for chunk in self.chunks:
            yield chunk

    async def generate_content(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(kwargs)
        return _text_payload("one shot")

    async def count_tokens(self, **kwargs: Any) -> SimpleNamespace:
        self.calls.append(kwargs)
        return SimpleNamespace(total_tokens=321)

    async def list(self, **kwargs: Any) -> AsyncIterator[SimpleNamespace]:
        return self._models()

    async def _models(self) -> AsyncIterator[SimpleNamespace]:
        yield SimpleNamespace(name="models/gemini-x", display_name="Gemini X", description="", input_token_limit=1000)


class _FakeGenAICaches:
    def __init__(self) -> None:
        self.created: list[dict[str, Any]] = []
        self.deleted: list[str] = []

    async def create(self, *, model: str, config: Any) -> SimpleNamespace:
        self.created.append({"model": model, "config": config})
        return SimpleNamespace(name="cachedContents/abc")

    async def delete(self, *, name: str) -> None:
        self.deleted.append(name)


def _genai(chunks: list[dict[str, Any]] | BaseException = ()) -> tuple[GenAITransport, SimpleNamespace]:
    models = _FakeGenAIModels(chunks if isinstance(chunks, BaseException) else list(chunks))
    aio = SimpleNamespace(models=models, caches=_FakeGenAICaches())
    return GenAITransport(api_key="unused", client=SimpleNamespace(aio=aio)), aio


@pytest.mark.asyncio
async def test_genai_streams_normalized_chunks() -> None:
    transport, aio = _genai([_text_payload("Hi"), {"candidates": []}, _text_payload(" there")])

    chunks = await _collect(transport.stream_generate(_request(include_thoughts=True)))

    assert [chunk.text for chunk in chunks] == ["Hi", " there"]
    call = aio.models.calls[0]
    assert call["model"] == "test-model"
    assert call["contents"][0].role == "user"
    assert call["contents"][0].parts[0].text == "Hello"
    config = call["config"]
    assert config.system_instruction == "Be brief."
    assert config.tools[0].function_declarations[0].name == "edit_document"
    assert config.thinking_config.include_thoughts is True
    assert config.automatic_function_calling.disable is True


@pytest.mark.asyncio
async def test_genai_cached_request_omits_prefix() -> None:
    transport, aio = _genai([_text_payload("ok")])

    await _collect(transport.stream_generate(_request(cached_content="cachedContents/abc")))

    config = aio.models.calls[0]["config"]
    assert config.cached_content == "cachedContents/abc"
    assert config.system_instruction is None
    assert config.tools is None


@pytest.mark.asyncio
async def test_genai_inline_data_becomes_bytes_part() -> None:
    transport, aio = _genai([_text_payload("ok")])
    contents = [{"role": "user", "parts": [{"text": "see image"}, {"inlineData": {"mimeType": "image/png", "data": "aGVsbG8="}}]}]

    await _collect(transport.stream_generate(_request(contents=contents)))

    part = aio.models.calls[0]["contents"][0].parts[1]
    assert part.inline_data.mime_type == "image/png"
    assert part.inline_data.data == b"hello"


@pytest.mark.asyncio
async def test_genai_network_error_becomes_transport_error() -> None:
    transport, _ = _genai(httpx.ReadTimeout("timed out"))

    with pytest.raises(TransportError) as excinfo:
        await _collect(transport.stream_generate(_request()))

    assert "timed out" in excinfo.value.message


@pytest.mark.asyncio
async def test_genai_generate_count_and_models() -> None:
    transport, _ = _genai()

    assert (await transport.generate(_request())).text == "one shot"
    assert await transport.count_tokens("test-model", [text_content("user", "hi")]) == 321
    models = await _collect(transport.list_models())
    assert models[0].name == "models/gemini-x"
    assert models[0].input_token_limit == 1000


@pytest.mark.asyncio
async def test_genai_cache_lifecycle() -> None:
    transport, aio = _genai()

    name = await transport.create_cache(
        model="test-model",
        system_instruction="Be brief.",
        contents=[text_content("user", "source"), text_content("model", "ok")],
        tools=TOOLS,
        ttl="3600s",
        display_name="quizsmith-test",
    )
    await transport.delete_cache(name)

    assert name == "cachedContents/abc"
    config = aio.caches.created[0]["config"]
    assert config.ttl == "3600s"
    assert config.display_name == "quizsmith-test"
    assert len(config.contents) == 2
    assert aio.caches.deleted == ["cachedContents/abc"]


def test_transports_satisfy_protocols() -> None:
    transport, _ = _genai()

    assert isinstance(transport, LLMTransport)
    assert isinstance(transport, CachingBackend)
    assert isinstance(transport, TokenCountingService)
    assert transport.supports_caching
    assert not ProxyTransport.supports_caching
    assert not OpenAITransport.supports_caching


# -----------------------------------------------------------------------------
# OpenAITransport
# -----------------------------------------------------------------------------


def test_contents_to_messages_maps_roles_and_media() -> None:
    contents = [
        text_content("user", "Question"),
        text_content("model", "Answer"),
        {"role": "user", "parts": [{"text": "look"}, {"inlineData": {"mimeType": "image/png", "data": "AAA="}}]},
        {"role": "user", "parts": [{"inline_data": {"mime_type": "application/pdf", "data": "BBB="}}]},
    ]

    messages = contents_to_messages(contents, "System prompt")

    assert messages[0] == {"role": "system", "content": "System prompt"}
    assert messages[1] == {"role": "user", "content": "Question"}
    assert messages[2] == {"role": "assistant", "content": "Answer"}
    assert messages[3]["content"] == [
        {"type": "text", "text": "look"},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAA="}},
    ]
    assert messages[4]["content"] == [
        {
            "type": "file",
            "file": {"filename": "attachment.pdf", "file_data": "data:application/pdf;base64,BBB="},
        }
    ]


class _FakeOpenAIStream:
    def __init__(self, events: list[Any], completion: Any) -> None:
        self.events = events
        self.completion = completion

    async def __aenter__(self) -> "_FakeOpenAIStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        for event in self.events:
            yield event

    async def get_final_completion(self) -> Any:
        return self.completion


class _FakeCompletions:
    def __init__(self, *, events: list[Any] = (), completion: Any = None) -> None:
        self.events = list(events)
        self.completion = completion
        self.payloads: list[dict[str, Any]] = []

    def stream(self, **payload: Any) -> _FakeOpenAIStream:
        self.payloads.append(payload)
        return _FakeOpenAIStream(self.events, self.completion)

    async def create(self, **payload: Any) -> Any:
        self.payloads.append(payload)
        return self.completion


def _completion(*, content: str | None = None, tool_calls: list[Any] | None = None, finish: str = "stop") -> Any:
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    usage = SimpleNamespace(
        prompt_tokens=10,
        completion_tokens=5,
        total_tokens=15,
        prompt_tokens_details=SimpleNamespace(cached_tokens=4),
    )
    return SimpleNamespace(choices=[SimpleNamespace(finish_reason=finish, message=message)], usage=usage)


def _openai(completions: _FakeCompletions) -> OpenAITransport:
    registry = TokenCounterRegistry()
    registry.register("test-model", ApproxCharCounter(model_name="test-model"))
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAITransport(api_key="unused", client=client, token_registry=registry)


@pytest.mark.asyncio
async def test_openai_stream_emits_text_calls_and_usage() -> None:
    events = [
        SimpleNamespace(type="chunk"),
        SimpleNamespace(type="content.delta", delta="Hel"),
        SimpleNamespace(type="content.delta", delta="lo"),
        SimpleNamespace(type="tool_calls.function.arguments.delta", name="edit_document", arguments_delta="{"),
        SimpleNamespace(
            type="tool_calls.function.arguments.done",
            name="edit_document",
            arguments='{"new_text": "Blue"}',
        ),
        SimpleNamespace(type="content.done", content="Hello"),
    ]
    completions = _FakeCompletions(events=events, completion=_completion(content="Hello", finish="tool_calls"))

    chunks = await _collect(_openai(completions).stream_generate(_request(max_output_tokens=50)))

    assert [chunk.text for chunk in chunks[:2]] == ["Hel", "lo"]
    assert chunks[2].function_calls[0].name == "edit_document"
    assert dict(chunks[2].function_calls[0].args) == {"new_text": "Blue"}
    final = chunks[3]
    assert final.text == "" and final.function_calls == ()
    assert final.finish_reason == "tool_calls"
    assert final.usage is not None and final.usage.cached_tokens == 4
    payload = completions.payloads[0]
    assert payload["stream_options"] == {"include_usage": True}
    assert payload["max_completion_tokens"] == 50
    assert payload["tools"][0]["function"]["name"] == "edit_document"
    assert payload["messages"][0] == {"role": "system", "content": "Be brief."}


@pytest.mark.asyncio
async def test_openai_generate_parses_tool_calls() -> None:
    tool_call = SimpleNamespace(
        id="call-9",
        function=SimpleNamespace(name="edit_document", arguments='{"new_text": "x"}'),
    )
    bad_call = SimpleNamespace(id="call-10", function=SimpleNamespace(name="read_document", arguments="{oops"))
    completions = _FakeCompletions(completion=_completion(content="Done", tool_calls=[tool_call, bad_call]))

    chunk = await _openai(completions).generate(_request(tools=()))

    assert chunk.text == "Done"
    assert [(call.name, dict(call.args), call.id) for call in chunk.function_calls] == [
        ("edit_document", {"new_text": "x"}, "call-9"),
        ("read_document", {}, "call-10"),
    ]
    assert "tools" not in completions.payloads[0]


@pytest.mark.asyncio
async def test_openai_count_tokens_uses_registered_counter() -> None:
    transport = _openai(_FakeCompletions())

    count = await transport.count_tokens("test-model", [text_content("user", "abcdefgh"), text_content("model", "abc")])

    assert count == 3


# -----------------------------------------------------------------------------
# create_transport
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_transport_builds_proxy() -> None:
    transport = create_transport(Settings(provider=" Proxy ", proxy_base_url="http://proxy.test/"))

    assert isinstance(transport, ProxyTransport)
    await transport.aclose()


def test_create_transport_rejects_unknown_provider() -> None:
    with pytest.raises(ValueError, match="Unknown provider 'bogus'"):
        create_transport(Settings(provider="bogus"))
