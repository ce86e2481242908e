import base64
import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .errors import ProviderError
from .llm import BaseLLMClient, CompleteChunk, RequestOptions, StreamChunk, TokenChunk, split_data_url
from .schemas import ChatTurn, GeneratedImage, ImagePart, LLMResponse, TextPart


ALLOWED_ROLES = {"system", "user", "assistant"}


class OpenAICompatibleClient(BaseLLMClient):
    """OpenAI chat-completions wire format; also serves vLLM and LM Studio endpoints."""

    provider = "openai"
    # image_url parts are rejected on assistant messages
    accepts_assistant_images = False

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _to_wire(self, messages: List[ChatTurn]) -> List[Dict[str, Any]]:
        wire: List[Dict[str, Any]] = []
        for turn in messages:
            if turn.role not in ALLOWED_ROLES:
                continue
            if isinstance(turn.content, str):
                if not turn.content.strip():
                    continue
                wire.append({"role": turn.role, "content": turn.content})
                continue
            parts: List[Dict[str, Any]] = []
            for part in turn.content:
                if isinstance(part, TextPart):
                    if part.text:
                        parts.append({"type": "text", "text": part.text})
                elif turn.role != "assistant":
                    parts.append({"type": "image_url", "image_url": {"url": part.data_url}})
            if parts:
                wire.append({"role": turn.role, "content": parts})
        return wire

    def _payload(self, messages: List[ChatTurn], options: RequestOptions, stream: bool) -> Dict[str, Any]:
        wire = self._to_wire(messages)
        if not wire:
            raise ValueError("messages must include at least one non-empty entry")
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": wire,
            "temperature": options.temperature,
            "top_p": options.top_p,
            "max_tokens": options.max_tokens,
            "stream": stream,
        }
        return {k: v for k, v in payload.items() if v is not None}

    async def chat(self, messages: List[ChatTurn], options: RequestOptions) -> LLMResponse:
        options.check_cancelled()
        payload = self._payload(messages, options, stream=False)
        try:
            resp = await self.client.post(f"{self.base_url}/chat/completions", json=payload, headers=self._headers())
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise self._provider_error(exc) from exc
        options.check_cancelled()
        data = resp.json()
        choices = data.get("choices") or []
        message = (choices[0].get("message") or {}) if choices else {}
        content = message.get("content") or message.get("reasoning_content") or ""
        finish_reason = choices[0].get("finish_reason") if choices else None
        return self._response(content, messages, data.get("usage"), finish_reason)

    async def stream_chat(self, messages: List[ChatTurn], options: RequestOptions) -> AsyncIterator[StreamChunk]:
        options.check_cancelled()
        payload = self._payload(messages, options, stream=True)
        content = ""
        usage: Optional[Dict[str, Any]] = None
        finish_reason: Optional[str] = None
        try:
            async with self.client.stream(
                "POST", f"{self.base_url}/chat/completions", json=payload, headers=self._headers()
            ) as response:
                await self._raise_for_stream_status(response)
                async for line in response.aiter_lines():
                    options.check_cancelled()
                    if not line.startswith("data:"):
                        continue
                    chunk = line.replace("data:", "", 1).strip()
                    if chunk == "[DONE]":
                        break
                    try:
                        data = json.loads(chunk)
                    except json.JSONDecodeError:
                        continue
                    if data.get("usage"):
                        usage = data["usage"]
                    choices = data.get("choices") or []
                    if not choices:
                        continue
                    delta = (choices[0].get("delta") or {}).get("content")
                    if choices[0].get("finish_reason"):
                        finish_reason = choices[0]["finish_reason"]
                    if delta:
                        content += delta
                        yield TokenChunk(delta)
        except httpx.HTTPError as exc:
            raise self._provider_error(exc) from exc
        yield CompleteChunk(self._response(content, messages, usage, finish_reason))

    async def generate_image(
        self,
        prompt: str,
        input_images: List[ImagePart],
        options: RequestOptions,
    ) -> GeneratedImage:
        options.check_cancelled()
        headers = {}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        try:
            if input_images:
                files = []
                for idx, image in enumerate(input_images):
                    mime, payload = split_data_url(image.data_url)
                    ext = mime.split("/")[-1]
                    files.append(("image[]", (f"image_{idx}.{ext}", base64.b64decode(payload), mime)))
                resp = await self.client.post(
                    f"{self.base_url}/images/edits",
                    data={"model": self.model, "prompt": prompt, "n": "1"},
                    files=files,
                    headers=headers,
                )
            else:
                resp = await self.client.post(
                    f"{self.base_url}/images/generations",
                    json={"model": self.model, "prompt": prompt, "n": 1, "size": "1024x1024"},
                    headers=headers,
                )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise self._provider_error(exc) from exc
        options.check_cancelled()
        items = resp.json().get("data") or []
        if not items:
            raise ProviderError("Image generation returned no data.", provider=self.provider)
        item = items[0]
        if item.get("b64_json"):
            return GeneratedImage(
                data=base64.b64decode(item["b64_json"]),
                mime_type="image/png",
                text=item.get("revised_prompt"),
            )
        if item.get("url"):
            try:
                image_resp = await self.client.get(item["url"])
                image_resp.raise_for_status()
            except httpx.HTTPError as exc:
                raise self._provider_error(exc) from exc
            mime = image_resp.headers.get("content-type", "image/png").split(";")[0]
            return GeneratedImage(data=image_resp.content, mime_type=mime, text=item.get("revised_prompt"))
        raise ProviderError("Image generation returned an unknown payload.", provider=self.provider)
