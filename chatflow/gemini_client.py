import base64
import json
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from .errors import ProviderError
from .llm import BaseLLMClient, CompleteChunk, RequestOptions, StreamChunk, TokenChunk, split_data_url
from .schemas import ChatTurn, GeneratedImage, ImagePart, LLMResponse, TextPart


class GeminiClient(BaseLLMClient):
    provider = "gemini"
    accepts_assistant_images = True

    def _params(self, **extra: str) -> Dict[str, str]:
        params = dict(extra)
        if self.config.api_key:
            params["key"] = self.config.api_key
        return params

    def _parts(self, turn: ChatTurn) -> List[Dict[str, Any]]:
        if isinstance(turn.content, str):
            return [{"text": turn.content}] if turn.content.strip() else []
        parts: List[Dict[str, Any]] = []
        for part in turn.content:
            if isinstance(part, TextPart):
                if part.text:
                    parts.append({"text": part.text})
            else:
                mime, data = split_data_url(part.data_url)
                parts.append({"inline_data": {"mime_type": mime, "data": data}})
        return parts

    def _contents(self, messages: List[ChatTurn]) -> Tuple[List[Dict[str, Any]], Optional[Dict[str, Any]]]:
        contents: List[Dict[str, Any]] = []
        system_texts: List[str] = []
        for turn in messages:
            if turn.role == "system":
                system_texts.append(turn.text())
                continue
            parts = self._parts(turn)
            if not parts:
                continue
            role = "model" if turn.role == "assistant" else "user"
            contents.append({"role": role, "parts": parts})
        system = {"parts": [{"text": "\n\n".join(system_texts)}]} if system_texts else None
        return contents, system

    def _payload(self, messages: List[ChatTurn], options: RequestOptions) -> Dict[str, Any]:
        contents, system = self._contents(messages)
        if not contents:
            raise ValueError("messages must include at least one non-empty entry")
        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": options.temperature,
                "topP": options.top_p,
                "maxOutputTokens": options.max_tokens,
            },
        }
        if system:
            payload["systemInstruction"] = system
        return payload

    def _usage(self, data: Dict[str, Any]) -> Dict[str, int]:
        meta = data.get("usageMetadata") or {}
        if not meta:
            return {}
        return {
            "prompt_tokens": int(meta.get("promptTokenCount") or 0),
            "completion_tokens": int(meta.get("candidatesTokenCount") or 0),
            "total_tokens": int(meta.get("totalTokenCount") or 0),
        }

    def _candidate_parts(self, data: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            if feedback.get("blockReason"):
                raise ProviderError(f"Prompt blocked: {feedback['blockReason']}", provider=self.provider)
            return [], None
        candidate = candidates[0]
        return (candidate.get("content") or {}).get("parts") or [], candidate.get("finishReason")

    async def chat(self, messages: List[ChatTurn], options: RequestOptions) -> LLMResponse:
        options.check_cancelled()
        payload = self._payload(messages, options)
        try:
            resp = await self.client.post(
                f"{self.base_url}/models/{self.model}:generateContent",
                params=self._params(),
                json=payload,
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise self._provider_error(exc) from exc
        options.check_cancelled()
        data = resp.json()
        parts, finish_reason = self._candidate_parts(data)
        content = "".join(part.get("text") or "" for part in parts)
        return self._response(content, messages, self._usage(data), finish_reason)

    async def stream_chat(self, messages: List[ChatTurn], options: RequestOptions) -> AsyncIterator[StreamChunk]:
        options.check_cancelled()
        payload = self._payload(messages, options)
        content = ""
        usage: Dict[str, int] = {}
        finish_reason: Optional[str] = None
        try:
            async with self.client.stream(
                "POST",
                f"{self.base_url}/models/{self.model}:streamGenerateContent",
                params=self._params(alt="sse"),
                json=payload,
            ) as response:
                await self._raise_for_stream_status(response)
                async for line in response.aiter_lines():
                    options.check_cancelled()
                    if not line.startswith("data:"):
                        continue
                    try:
                        data = json.loads(line.replace("data:", "", 1).strip())
                    except json.JSONDecodeError:
                        continue
                    usage = self._usage(data) or usage
                    parts, reason = self._candidate_parts(data)
                    finish_reason = reason or finish_reason
                    for part in parts:
                        delta = part.get("text")
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
        parts: List[Dict[str, Any]] = [{"text": prompt}]
        for image in input_images:
            mime, data = split_data_url(image.data_url)
            parts.append({"inline_data": {"mime_type": mime, "data": data}})
        payload = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }
        try:
            resp = await self.client.post(
                f"{self.base_url}/models/{self.model}:generateContent",
                params=self._params(),
                json=payload,
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise self._provider_error(exc) from exc
        options.check_cancelled()
        out_parts, _ = self._candidate_parts(resp.json())
        texts: List[str] = []
        for part in out_parts:
            inline = part.get("inline_data") or part.get("inlineData")
            if inline and inline.get("data"):
                mime = inline.get("mime_type") or inline.get("mimeType") or "image/png"
                text = "".join(texts).strip() or None
                return GeneratedImage(data=base64.b64decode(inline["data"]), mime_type=mime, text=text)
            if part.get("text"):
                texts.append(part["text"])
        raise ProviderError(
            "The model did not return an image. " + "".join(texts).strip(),
            provider=self.provider,
        )
