import base64
import json

import pytest
import respx
from httpx import Response

from chatflow.config import ModelConfig
from chatflow.errors import AbortedError, ProviderError
from chatflow.gemini_client import GeminiClient
from chatflow.lease import CancelToken
from chatflow.llm import (
    CompleteChunk,
    ProviderRegistry,
    RequestOptions,
    StreamCallbacks,
    TokenChunk,
    create_llm_client,
    estimate_tokens,
    stream_with_callbacks,
)
from chatflow.ollama_client import OllamaClient
from chatflow.openai_client import OpenAICompatibleClient
from chatflow.schemas import ChatTurn, ImagePart, TextPart


IMAGE_URL = "data:image/jpeg;base64," + base64.b64encode(b"fake-jpeg").decode("ascii")


def openai_config(**overrides) -> ModelConfig:
    data = {"key": "gpt", "provider": "openai", "model_id": "test-model", "base_url": "http://llm.test/v1", "api_key": "sk-1"}
    data.update(overrides)
    return ModelConfig(**data)


@pytest.mark.asyncio
async def test_openai_chat_payload_shape_and_usage():
    client = OpenAICompatibleClient(openai_config())
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["auth"] = request.headers.get("authorization")
                return Response(
                    200,
                    json={
                        "choices": [{"message": {"content": "ok"}, "finish_reason": "stop"}],
                        "usage": {"prompt_tokens": 7, "completion_tokens": 1, "total_tokens": 8},
                    },
                )

            respx_mock.post("http://llm.test/v1/chat/completions").mock(side_effect=handler)
            resp = await client.chat(
                [ChatTurn(role="system", content="sys"), ChatTurn(role="user", content="hi")],
                RequestOptions(max_tokens=20, temperature=0.5, top_p=0.9),
            )
        assert resp.content == "ok"
        assert resp.finish_reason == "stop"
        assert resp.token_usage.total_tokens == 8
        assert resp.provider == "openai"
        payload = captured["json"]
        assert payload["model"] == "test-model"
        assert payload["max_tokens"] == 20
        assert payload["temperature"] == 0.5
        assert payload["top_p"] == 0.9
        assert payload["stream"] is False
        assert payload["messages"][0] == {"role": "system", "content": "sys"}
        assert captured["auth"] == "Bearer sk-1"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_openai_drops_image_parts_on_assistant_turns():
    client = OpenAICompatibleClient(openai_config())
    messages = [
        ChatTurn(role="assistant", content=[TextPart(text="here it is"), ImagePart(data_url=IMAGE_URL)]),
        ChatTurn(role="user", content=[TextPart(text="what is this"), ImagePart(data_url=IMAGE_URL)]),
    ]
    wire = client._to_wire(messages)
    await client.close()
    assert wire[0] == {"role": "assistant", "content": [{"type": "text", "text": "here it is"}]}
    assert wire[1]["content"][1] == {"type": "image_url", "image_url": {"url": IMAGE_URL}}


@pytest.mark.asyncio
async def test_openai_stream_yields_tokens_then_completion():
    client = OpenAICompatibleClient(openai_config())
    body = (
        'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n'
        'data: {"choices":[{"delta":{"content":"lo"},"finish_reason":"stop"}]}\n\n'
        "data: [DONE]\n\n"
    )
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://llm.test/v1/chat/completions").mock(
                return_value=Response(200, text=body, headers={"content-type": "text/event-stream"})
            )
            chunks = [c async for c in client.stream_chat([ChatTurn(role="user", content="hi")], RequestOptions())]
    finally:
        await client.close()
    tokens = [c.text for c in chunks if isinstance(c, TokenChunk)]
    assert tokens == ["Hel", "lo"]
    assert isinstance(chunks[-1], CompleteChunk)
    assert chunks[-1].response.content == "Hello"
    assert chunks[-1].response.finish_reason == "stop"
    # no usage reported, so it is estimated from text length
    assert chunks[-1].response.token_usage.completion_tokens == estimate_tokens("Hello")


@pytest.mark.asyncio
async def test_openai_context_overflow_is_classified():
    client = OpenAICompatibleClient(openai_config())
    error_body = {"error": {"message": "This model's maximum context length is 4096 tokens."}}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://llm.test/v1/chat/completions").mock(return_value=Response(400, json=error_body))
            with pytest.raises(ProviderError) as info:
                await client.chat([ChatTurn(role="user", content="hi")], RequestOptions())
    finally:
        await client.close()
    assert info.value.status_code == 400
    assert info.value.kind == "context_overflow"


@pytest.mark.asyncio
async def test_openai_stream_error_status_raises_provider_error():
    client = OpenAICompatibleClient(openai_config())
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://llm.test/v1/chat/completions").mock(
                return_value=Response(400, json={"error": {"message": "Unsupported parameter: top_p"}})
            )
            with pytest.raises(ProviderError) as info:
                async for _ in client.stream_chat([ChatTurn(role="user", content="hi")], RequestOptions()):
                    pass
    finally:
        await client.close()
    assert info.value.kind == "unsupported_parameter"


@pytest.mark.asyncio
async def test_cancelled_token_aborts_before_request():
    client = OpenAICompatibleClient(openai_config())
    token = CancelToken()
    token.cancel()
    try:
        with respx.mock(assert_all_called=False) as respx_mock:
            route = respx_mock.post("http://llm.test/v1/chat/completions").mock(return_value=Response(200, json={}))
            with pytest.raises(AbortedError):
                await client.chat([ChatTurn(role="user", content="hi")], RequestOptions(cancel=token))
            assert not route.called
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_openai_image_generation_decodes_b64():
    client = OpenAICompatibleClient(openai_config())
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"data": [{"b64_json": base64.b64encode(b"png-bytes").decode("ascii")}]})

            respx_mock.post("http://llm.test/v1/images/generations").mock(side_effect=handler)
            image = await client.generate_image("a red fox", [], RequestOptions())
    finally:
        await client.close()
    assert image.data == b"png-bytes"
    assert image.mime_type == "image/png"
    assert captured["json"]["prompt"] == "a red fox"
    assert captured["json"]["n"] == 1


@pytest.mark.asyncio
async def test_openai_image_edit_uses_multipart():
    client = OpenAICompatibleClient(openai_config())
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post("http://llm.test/v1/images/edits").mock(
                return_value=Response(200, json={"data": [{"b64_json": base64.b64encode(b"edited").decode("ascii")}]})
            )
            image = await client.generate_image("make it blue", [ImagePart(data_url=IMAGE_URL)], RequestOptions())
    finally:
        await client.close()
    assert image.data == b"edited"
    request = route.calls.last.request
    assert request.headers["content-type"].startswith("multipart/form-data")


@pytest.mark.asyncio
async def test_ollama_chat_sends_images_and_options():
    client = OllamaClient(ModelConfig(key="llama", provider="ollama", model_id="llava", base_url="http://ollama.test"))
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(
                    200,
                    json={"message": {"content": "a cat"}, "done": True, "prompt_eval_count": 12, "eval_count": 3},
                )

            respx_mock.post("http://ollama.test/api/chat").mock(side_effect=handler)
            resp = await client.chat(
                [ChatTurn(role="user", content=[TextPart(text="what is this"), ImagePart(data_url=IMAGE_URL)])],
                RequestOptions(max_tokens=64),
            )
    finally:
        await client.close()
    assert resp.content == "a cat"
    assert resp.token_usage.total_tokens == 15
    message = captured["json"]["messages"][0]
    assert message["images"] == [base64.b64encode(b"fake-jpeg").decode("ascii")]
    assert captured["json"]["options"]["num_predict"] == 64
    assert captured["json"]["stream"] is False


@pytest.mark.asyncio
async def test_ollama_stream_reads_ndjson():
    client = OllamaClient(ModelConfig(key="llama", provider="ollama", model_id="llama3", base_url="http://ollama.test"))
    body = "\n".join(
        [
            json.dumps({"message": {"content": "Hi"}, "done": False}),
            json.dumps({"message": {"content": " there"}, "done": False}),
            json.dumps({"message": {"content": ""}, "done": True, "eval_count": 2, "prompt_eval_count": 4}),
        ]
    )
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(return_value=Response(200, text=body))
            chunks = [c async for c in client.stream_chat([ChatTurn(role="user", content="hi")], RequestOptions())]
    finally:
        await client.close()
    assert [c.text for c in chunks if isinstance(c, TokenChunk)] == ["Hi", " there"]
    assert chunks[-1].response.content == "Hi there"
    assert chunks[-1].response.token_usage.total_tokens == 6


@pytest.mark.asyncio
async def test_ollama_image_generation_is_a_capability_error():
    client = OllamaClient(ModelConfig(key="llama", provider="ollama", model_id="llama3"))
    try:
        with pytest.raises(ProviderError) as info:
            await client.generate_image("a cat", [], RequestOptions())
    finally:
        await client.close()
    assert info.value.kind == "capability"


@pytest.mark.asyncio
async def test_gemini_chat_maps_roles_and_system_instruction():
    client = GeminiClient(
        ModelConfig(key="gem", provider="gemini", model_id="gemini-pro", base_url="http://gemini.test/v1beta", api_key="g-key")
    )
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["key"] = request.url.params.get("key")
                return Response(200, json={"candidates": [{"content": {"parts": [{"text": "pong"}]}, "finishReason": "STOP"}]})

            respx_mock.post(url__startswith="http://gemini.test/v1beta/models/gemini-pro:generateContent").mock(
                side_effect=handler
            )
            resp = await client.chat(
                [
                    ChatTurn(role="system", content="be brief"),
                    ChatTurn(role="user", content="ping"),
                    ChatTurn(role="assistant", content="pong"),
                    ChatTurn(role="user", content="again"),
                ],
                RequestOptions(max_tokens=10),
            )
    finally:
        await client.close()
    assert resp.content == "pong"
    payload = captured["json"]
    assert payload["systemInstruction"] == {"parts": [{"text": "be brief"}]}
    assert [c["role"] for c in payload["contents"]] == ["user", "model", "user"]
    assert payload["generationConfig"]["maxOutputTokens"] == 10
    assert captured["key"] == "g-key"


@pytest.mark.asyncio
async def test_gemini_image_generation_returns_inline_image():
    client = GeminiClient(ModelConfig(key="gem", provider="gemini", model_id="img-model", base_url="http://gemini.test/v1beta"))
    encoded = base64.b64encode(b"gemini-png").decode("ascii")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(
                    200,
                    json={
                        "candidates": [
                            {
                                "content": {
                                    "parts": [
                                        {"text": "Here you go."},
                                        {"inlineData": {"mimeType": "image/png", "data": encoded}},
                                    ]
                                }
                            }
                        ]
                    },
                )

            respx_mock.post(url__startswith="http://gemini.test/v1beta/models/img-model:generateContent").mock(
                side_effect=handler
            )
            image = await client.generate_image("a fox", [ImagePart(data_url=IMAGE_URL)], RequestOptions())
    finally:
        await client.close()
    assert image.data == b"gemini-png"
    assert image.text == "Here you go."
    assert captured["json"]["generationConfig"]["responseModalities"] == ["TEXT", "IMAGE"]
    assert captured["json"]["contents"][0]["parts"][1]["inline_data"]["mime_type"] == "image/jpeg"


def test_factory_selects_client_by_provider():
    assert isinstance(create_llm_client(ModelConfig(key="a", provider="vllm")), OpenAICompatibleClient)
    assert isinstance(create_llm_client(ModelConfig(key="b", provider="lmstudio")), OpenAICompatibleClient)
    assert isinstance(create_llm_client(ModelConfig(key="c", provider="ollama")), OllamaClient)
    assert isinstance(create_llm_client(ModelConfig(key="d", provider="gemini")), GeminiClient)
    with pytest.raises(ValueError):
        create_llm_client(ModelConfig(key="e", provider="mystery"))


@pytest.mark.asyncio
async def test_registry_caches_clients_and_rejects_unknown_keys():
    registry = ProviderRegistry({"gpt": openai_config()})
    first = registry.get("gpt")
    assert registry.get("gpt") is first
    with pytest.raises(KeyError):
        registry.get("missing")
    await registry.close()
    assert registry.clients == {}


@pytest.mark.asyncio
async def test_stream_with_callbacks_fires_exactly_one_terminal_callback():
    client = OpenAICompatibleClient(openai_config())
    seen = {"tokens": [], "complete": 0, "error": 0}

    async def on_token(text):
        seen["tokens"].append(text)

    async def on_complete(response):
        seen["complete"] += 1

    async def on_error(exc):
        seen["error"] += 1

    callbacks = StreamCallbacks(on_token=on_token, on_complete=on_complete, on_error=on_error)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://llm.test/v1/chat/completions").mock(
                side_effect=[
                    Response(200, text='data: {"choices":[{"delta":{"content":"ok"}}]}\n\ndata: [DONE]\n\n'),
                    Response(500, json={"error": {"message": "boom"}}),
                ]
            )
            await stream_with_callbacks(client, [ChatTurn(role="user", content="hi")], callbacks, RequestOptions())
            await stream_with_callbacks(client, [ChatTurn(role="user", content="hi")], callbacks, RequestOptions())
    finally:
        await client.close()
    assert seen == {"tokens": ["ok"], "complete": 1, "error": 1}
