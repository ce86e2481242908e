import json
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, model_validator


Role = Literal["system", "user", "assistant"]
StepStatus = Literal["pending", "in_progress", "completed", "failed"]
StepType = Literal["step", "synthesis", "final"]

_STATUS_RANK = {"pending": 0, "in_progress": 1, "completed": 2, "failed": 2}


class ImageAttachment(BaseModel):
    name: str = "image"
    size: int = 0
    mime_type: str = "image/png"
    data: str

    model_config = {"populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def accept_wire_keys(cls, data: Any) -> Any:
        if isinstance(data, dict) and "mimeType" in data and "mime_type" not in data:
            data = dict(data)
            data["mime_type"] = data.pop("mimeType")
        return data

    def to_envelope(self) -> Dict[str, Any]:
        return {
            "type": "image",
            "name": self.name,
            "size": self.size,
            "mimeType": self.mime_type,
            "data": self.data,
        }


class Message(BaseModel):
    id: str
    session_id: str
    role: Role
    content: str
    created_at: str
    rating: Optional[int] = None


def encode_message_content(text: str, images: List[ImageAttachment]) -> str:
    if not images:
        return text
    return json.dumps(
        {"text": text, "images": [img.to_envelope() for img in images], "hasImages": True},
        ensure_ascii=False,
    )


def parse_message_content(content: str) -> Tuple[str, List[ImageAttachment]]:
    """Split a stored message into text and images; anything that is not an envelope is plain text."""
    if not content or not content.lstrip().startswith("{"):
        return content, []
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        return content, []
    if not isinstance(parsed, dict) or not parsed.get("hasImages"):
        return content, []
    images: List[ImageAttachment] = []
    for item in parsed.get("images") or []:
        if not isinstance(item, dict) or not item.get("data"):
            continue
        try:
            images.append(ImageAttachment(**item))
        except ValueError:
            continue
    return str(parsed.get("text") or ""), images


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image_ref"] = "image_ref"
    data_url: str
    mime_type: str = "image/jpeg"


ContentPart = Union[TextPart, ImagePart]


class ChatTurn(BaseModel):
    role: Role
    content: Union[str, List[ContentPart]]

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n".join(part.text for part in self.content if isinstance(part, TextPart))

    def images(self) -> List[ImagePart]:
        if isinstance(self.content, str):
            return []
        return [part for part in self.content if isinstance(part, ImagePart)]


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class LLMResponse(BaseModel):
    content: str
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    model_name: str = ""
    provider: str = ""
    finish_reason: Optional[str] = None

    model_config = {"protected_namespaces": ()}


class GeneratedImage(BaseModel):
    data: bytes
    mime_type: str = "image/png"
    text: Optional[str] = None


class ModelRef(BaseModel):
    kind: Literal["model", "agent"] = "model"
    id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def parse_prefixed(cls, data: Any) -> Any:
        # "agent:<id>" / "model:<id>" / bare model key
        if isinstance(data, str):
            kind, sep, ident = data.partition(":")
            if sep and kind in ("model", "agent"):
                return {"kind": kind, "id": ident}
            return {"kind": "model", "id": data}
        return data


class ModelCapabilities(BaseModel):
    supports_multimodal: bool = False
    supports_image_generation: bool = False
    accepts_assistant_images: bool = True


class TurnRequest(BaseModel):
    text: str = ""
    images: List[ImageAttachment] = Field(default_factory=list)
    model_ref: ModelRef = Field(default_factory=ModelRef)
    is_regeneration: bool = False
    is_deep_research_active: bool = False
    from_message_id: Optional[str] = None

    model_config = {"protected_namespaces": ()}

    def validate_limits(self, max_images: int = 3, max_chars: int = 4000, max_chars_with_images: int = 500) -> None:
        if not self.text.strip() and not self.images:
            raise ValueError("Message or images are required.")
        if len(self.images) > max_images:
            raise ValueError(f"At most {max_images} images can be attached.")
        limit = max_chars_with_images if self.images else max_chars
        if len(self.text) > limit:
            raise ValueError(f"Message is too long (max {limit} characters).")


class SessionCreateRequest(BaseModel):
    title: Optional[str] = None


class SessionUpdateRequest(BaseModel):
    title: str


class RatingRequest(BaseModel):
    rating: Optional[int] = None


class DeepResearchStep(BaseModel):
    id: str
    title: str
    content: str = ""
    status: StepStatus = "pending"
    step_type: StepType = "step"
    index: int = 0
    error: Optional[str] = None

    def advance(self, status: StepStatus) -> None:
        if _STATUS_RANK[status] < _STATUS_RANK[self.status]:
            raise ValueError(f"Step {self.id} cannot move from {self.status} to {status}")
        if self.status in ("completed", "failed") and status != self.status:
            raise ValueError(f"Step {self.id} is already {self.status}")
        self.status = status
