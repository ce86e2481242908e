import json
from typing import Any, AsyncIterator, Dict, List

import httpx

from .llm import BaseLLMClient, CompleteChunk, RequestOptions, StreamChunk, TokenChunk, split_data_url
from .schemas import ChatTurn, LLMResponse


class OllamaClient(BaseLLMClient):
    provider = "ollama"
    accepts_assistant_images = True

    def _to_wire(self, messages: List[ChatTurn]) -> List[Dict[str, Any]]:
        wire: List[Dict[str, Any]] = []
        for turn in messages:
            text = turn.text()
            images = [split_data_url(part.data_url)[1] for part in turn.images()]
            if not text.strip() and not images:
                continue
            entry: Dict[str, Any] = {"role": turn.role, "content": text}
            if images:
                entry["images"] = images
            wire.append(entry)
        return wire

    def _payload(self, messages: List[ChatTurn], options: RequestOptions, stream: bool) -> Dict[str, Any]:
        wire = self._to_wire(messages)
        if not wire:
            raise ValueError("messages must include at least one non-empty entry")
        return {
            "model": self.model,
            "messages": wire,
            "stream": stream,
            "options": {
                "temperature": options.temperature,
                "top_p": options.top_p,
                "num_predict": options.max_tokens,
            },
        }

    def _usage(self, data: Dict[str, Any]) -> Dict[str, int]:
        prompt = int(data.get("prompt_eval_count") or 0)
        completion = int(data.get("eval_count") or 0)
        if not prompt and not completion:
            return {}
        return {"prompt_tokens": prompt, "completion_tokens": completion, "total_tokens": prompt + completion}

    async def chat(self, messages: List[ChatTurn], options: RequestOptions) -> LLMResponse:
        options.check_cancelled()
        payload = self._payload(messages, options, stream=False)
        try:
            resp = await self.client.post(f"{self.base_url}/api/chat", json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise self._provider_error(exc) from exc
        options.check_cancelled()
        data = resp.json()
        content = (data.get("message") or {}).get("content") or ""
        return self._response(content, messages, self._usage(data), data.get("done_reason"))

    async def stream_chat(self, messages: List[ChatTurn], options: RequestOptions) -> AsyncIterator[StreamChunk]:
        options.check_cancelled()
        payload = self._payload(messages, options, stream=True)
        content = ""
        usage: Dict[str, int] = {}
        finish_reason = None
        try:
            async with self.client.stream("POST", f"{self.base_url}/api/chat", json=payload) as response:
                await self._raise_for_stream_status(response)
                # newline-delimited JSON, one object per chunk
                async for line in response.aiter_lines():
                    options.check_cancelled()
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    delta = (data.get("message") or {}).get("content")
                    if delta:
                        content += delta
                        yield TokenChunk(delta)
                    if data.get("done"):
                        usage = self._usage(data)
                        finish_reason = data.get("done_reason")
                        break
        except httpx.HTTPError as exc:
            raise self._provider_error(exc) from exc
        yield CompleteChunk(self._response(content, messages, usage, finish_reason))
