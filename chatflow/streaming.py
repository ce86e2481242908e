import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .lease import CancelToken
from .schemas import DeepResearchStep


logger = logging.getLogger("uvicorn.error")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _step_wire(step: DeepResearchStep) -> Dict[str, Any]:
    return {
        "id": step.id,
        "title": step.title,
        "index": step.index,
        "status": step.status,
        "isComplete": step.status == "completed",
    }


class TokenEvent(BaseModel):
    kind: Literal["token"] = "token"
    content: str

    def to_wire(self, message_id: str) -> Dict[str, Any]:
        return {"content": self.content, "messageId": message_id, "done": False}


class PlanEvent(BaseModel):
    kind: Literal["plan"] = "plan"
    content: str
    steps: List[DeepResearchStep]
    sub_questions: List[str] = Field(default_factory=list)
    timestamp: str = Field(default_factory=_timestamp)

    def to_wire(self, message_id: str) -> Dict[str, Any]:
        return {
            "content": self.content,
            "messageId": message_id,
            "deepResearchStream": True,
            "stepType": "plan",
            "stepInfo": {
                "title": "Research plan",
                "isComplete": True,
                "totalSteps": len(self.steps),
                "plannedSteps": [{"id": s.id, "title": s.title, "type": s.step_type} for s in self.steps],
                "subQuestions": list(self.sub_questions),
            },
            "timestamp": self.timestamp,
            "done": False,
        }


class StepEvent(BaseModel):
    """One research step reaching a terminal state; stepType mirrors the step's own type."""

    kind: Literal["step"] = "step"
    step: DeepResearchStep
    total_steps: int
    timestamp: str = Field(default_factory=_timestamp)

    def to_wire(self, message_id: str) -> Dict[str, Any]:
        info = _step_wire(self.step)
        info["totalSteps"] = self.total_steps
        if self.step.error:
            info["error"] = self.step.error
        return {
            "content": self.step.content,
            "messageId": message_id,
            "deepResearchStream": True,
            "stepType": self.step.step_type,
            "stepInfo": info,
            "timestamp": self.timestamp,
            "done": False,
        }


class TitleEvent(BaseModel):
    kind: Literal["title"] = "title"
    title: str
    chat_id: str

    def to_wire(self, message_id: str) -> Dict[str, Any]:
        return {"titleGenerated": True, "title": self.title, "chatId": self.chat_id}


class ErrorEvent(BaseModel):
    kind: Literal["error"] = "error"
    summary: str
    content: str

    def to_wire(self, message_id: str) -> Dict[str, Any]:
        return {"content": self.content, "messageId": message_id, "error": self.summary, "done": False}


class DoneEvent(BaseModel):
    kind: Literal["done"] = "done"
    aborted: bool = False

    def to_wire(self, message_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"content": "", "messageId": message_id, "done": True}
        if self.aborted:
            payload["aborted"] = True
        return payload


StreamEvent = Union[TokenEvent, PlanEvent, StepEvent, TitleEvent, ErrorEvent, DoneEvent]


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


_CLOSE = object()


class StreamController:
    """Single outbound channel for one turn; emit and close are idempotent."""

    def __init__(self, message_id: str, session_id: str, cancel: Optional[CancelToken] = None):
        self.message_id = message_id
        self.session_id = session_id
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.completion_handled = False
        self.done_emitted = False
        self.dropped = 0
        if cancel is not None:
            cancel.on_cancel(self._on_cancel)

    def safe_emit(self, event: StreamEvent) -> bool:
        if self.closed:
            self.dropped += 1
            logger.debug("Stream %s closed; dropping %s event", self.message_id, event.kind)
            return False
        if isinstance(event, DoneEvent):
            if self.done_emitted:
                return False
            self.done_emitted = True
        self.queue.put_nowait(event)
        return True

    def safe_close(self) -> bool:
        if self.closed:
            return False
        self.closed = True
        self.queue.put_nowait(_CLOSE)
        return True

    def claim_completion(self) -> bool:
        """True exactly once per request; every completion path must call this first."""
        if self.completion_handled or self.closed:
            return False
        self.completion_handled = True
        return True

    def finish(self, aborted: bool = False) -> None:
        self.safe_emit(DoneEvent(aborted=aborted))
        self.safe_close()

    def _on_cancel(self) -> None:
        if self.closed:
            return
        logger.info("Stream %s aborted", self.message_id)
        self.completion_handled = True
        self.finish(aborted=True)

    async def events(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self.queue.get()
            if item is _CLOSE:
                return
            yield item

    async def wire_events(self) -> AsyncIterator[Dict[str, Any]]:
        async for event in self.events():
            yield event.to_wire(self.message_id)
