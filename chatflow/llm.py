import math
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from .config import ModelConfig
from .errors import ProviderError, normalize_error_text
from .lease import CancelToken
from .schemas import ChatTurn, GeneratedImage, ImagePart, LLMResponse, TokenUsage


@dataclass
class RequestOptions:
    max_tokens: int = 2048
    temperature: float = 0.7
    top_p: float = 0.95
    cancel: Optional[CancelToken] = None

    def check_cancelled(self) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()


@dataclass
class TokenChunk:
    text: str
    kind: str = "token"


@dataclass
class CompleteChunk:
    response: LLMResponse
    kind: str = "complete"


StreamChunk = Union[TokenChunk, CompleteChunk]


@dataclass
class StreamCallbacks:
    on_token: Callable[[str], Awaitable[None]]
    on_complete: Callable[[LLMResponse], Awaitable[None]]
    on_error: Callable[[BaseException], Awaitable[None]]


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def estimate_usage(messages: List[ChatTurn], completion: str) -> TokenUsage:
    prompt = sum(estimate_tokens(turn.text()) for turn in messages)
    completion_tokens = estimate_tokens(completion)
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion_tokens,
        total_tokens=prompt + completion_tokens,
    )


def split_data_url(data_url: str) -> tuple:
    """Return (mime_type, base64_payload) for a data URL; bare base64 is assumed to be PNG."""
    if data_url.startswith("data:") and "," in data_url:
        header, payload = data_url.split(",", 1)
        mime = header[5:].split(";", 1)[0] or "image/png"
        return mime, payload
    return "image/png", data_url


class BaseLLMClient:
    """Uniform chat contract over one configured backend model."""

    provider = "base"
    accepts_assistant_images = True

    def __init__(self, config: ModelConfig, http_client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = 300.0):
        self.config = config
        self.provider = config.provider or self.provider
        self.base_url = config.resolved_base_url()
        self.model = config.model_id
        self.client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))

    @property
    def supports_multimodal(self) -> bool:
        return self.config.supports_multimodal

    @property
    def supports_image_generation(self) -> bool:
        return self.config.supports_image_generation

    async def chat(self, messages: List[ChatTurn], options: RequestOptions) -> LLMResponse:
        raise NotImplementedError

    def stream_chat(self, messages: List[ChatTurn], options: RequestOptions) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError

    async def generate_image(
        self,
        prompt: str,
        input_images: List[ImagePart],
        options: RequestOptions,
    ) -> GeneratedImage:
        raise ProviderError(
            f"{self.provider} does not support image generation",
            kind="capability",
            provider=self.provider,
        )

    def _response(self, content: str, messages: List[ChatTurn], usage: Optional[Dict[str, Any]] = None, finish_reason: Optional[str] = None) -> LLMResponse:
        if usage:
            token_usage = TokenUsage(
                prompt_tokens=int(usage.get("prompt_tokens") or 0),
                completion_tokens=int(usage.get("completion_tokens") or 0),
                total_tokens=int(usage.get("total_tokens") or 0),
            )
            if not token_usage.total_tokens:
                token_usage.total_tokens = token_usage.prompt_tokens + token_usage.completion_tokens
        else:
            token_usage = estimate_usage(messages, content)
        return LLMResponse(
            content=content,
            token_usage=token_usage,
            model_name=self.model,
            provider=self.provider,
            finish_reason=finish_reason,
        )

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            return normalize_error_text(response.text)
        except (httpx.ResponseNotRead, UnicodeDecodeError):
            return ""

    def _provider_error(self, exc: httpx.HTTPError) -> ProviderError:
        if isinstance(exc, httpx.HTTPStatusError):
            detail = self._extract_error_detail(exc.response) or str(exc)
            return ProviderError(detail, status_code=exc.response.status_code, provider=self.provider)
        return ProviderError(f"{self.provider} request failed: {exc}", provider=self.provider)

    async def _raise_for_stream_status(self, response: httpx.Response) -> None:
        if response.status_code >= 400:
            body = await response.aread()
            detail = normalize_error_text(body.decode("utf-8", errors="replace"))
            raise ProviderError(
                detail or f"HTTP {response.status_code}",
                status_code=response.status_code,
                provider=self.provider,
            )

    async def close(self) -> None:
        await self.client.aclose()


async def stream_with_callbacks(
    client: BaseLLMClient,
    messages: List[ChatTurn],
    callbacks: StreamCallbacks,
    options: RequestOptions,
) -> None:
    """Drive stream_chat through callbacks; exactly one of on_complete/on_error fires."""
    try:
        response: Optional[LLMResponse] = None
        async for chunk in client.stream_chat(messages, options):
            if isinstance(chunk, TokenChunk):
                await callbacks.on_token(chunk.text)
            else:
                response = chunk.response
        if response is None:
            raise ProviderError("Stream ended without a completion.", provider=client.provider)
    except Exception as exc:
        await callbacks.on_error(exc)
        return
    await callbacks.on_complete(response)


def create_llm_client(config: ModelConfig, timeout: Optional[float] = 300.0) -> BaseLLMClient:
    from .gemini_client import GeminiClient
    from .ollama_client import OllamaClient
    from .openai_client import OpenAICompatibleClient

    provider = (config.provider or "").strip().lower()
    if provider in ("openai", "vllm", "lmstudio"):
        return OpenAICompatibleClient(config, timeout=timeout)
    if provider == "ollama":
        return OllamaClient(config, timeout=timeout)
    if provider == "gemini":
        return GeminiClient(config, timeout=timeout)
    raise ValueError(f"Unsupported LLM provider: {config.provider}")


class ProviderRegistry:
    """Caches one client per configured model key."""

    def __init__(
        self,
        models: Dict[str, ModelConfig],
        factory: Callable[[ModelConfig], BaseLLMClient] = create_llm_client,
    ) -> None:
        self.models = models
        self.factory = factory
        self.clients: Dict[str, BaseLLMClient] = {}

    def get(self, key: str) -> BaseLLMClient:
        client = self.clients.get(key)
        if client is not None:
            return client
        config = self.models.get(key)
        if config is None:
            raise KeyError(f"Model not configured: {key}")
        client = self.factory(config)
        self.clients[key] = client
        return client

    async def close(self) -> None:
        clients, self.clients = list(self.clients.values()), {}
        for client in clients:
            await client.close()
