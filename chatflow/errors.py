import json
from typing import Optional

from pydantic import BaseModel


CONTEXT_OVERFLOW_MARKERS = (
    "context length",
    "context_length",
    "context window",
    "maximum context",
    "too many tokens",
    "token limit",
    "too long",
    "reduce the length",
)
UNSUPPORTED_PARAMETER_MARKERS = (
    "unsupported parameter",
    "unsupported_parameter",
    "unrecognized request argument",
    "unknown parameter",
    "is not supported",
    "not supported with this model",
    "invalid parameter",
)
CAPABILITY_MARKERS = ("multimodal", "vision", "image_url", "image input", "does not support image")

MAX_DETAIL_CHARS = 300


class ChatflowError(Exception):
    pass


class AbortedError(ChatflowError):
    """User-initiated cancellation; never reported as a provider failure."""

    def __init__(self, message: str = "Request aborted.") -> None:
        super().__init__(message)


class ProviderError(ChatflowError):
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        kind: Optional[str] = None,
        provider: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.provider = provider
        self.kind = kind or detect_error_kind(message, status_code)


class ImageGenerationError(ChatflowError):
    pass


class DeepResearchError(ChatflowError):
    pass


class DuplicateSubmissionError(ChatflowError):
    pass


class TurnValidationError(ChatflowError):
    pass


class ErrorSummary(BaseModel):
    kind: str
    summary: str
    detail: str = ""

    def render(self) -> str:
        if not self.detail:
            return self.summary
        return f"{self.summary}\n\n(Details: {self.detail})"


def normalize_error_text(detail: str) -> str:
    """Unwrap JSON error bodies such as {"error": {"message": ...}} down to the message string."""
    text = detail or ""
    for _ in range(3):
        try:
            parsed = json.loads(text)
        except (TypeError, ValueError):
            break
        if isinstance(parsed, dict):
            found = False
            for key in ("error", "detail", "message"):
                val = parsed.get(key)
                if isinstance(val, str) and val.strip():
                    text = val
                    found = True
                    break
                if isinstance(val, dict):
                    text = json.dumps(val)
                    found = True
                    break
            if not found:
                break
        elif isinstance(parsed, str):
            text = parsed
        else:
            break
    return text


def detect_error_kind(message: str, status_code: Optional[int] = None) -> str:
    text = (message or "").lower()
    if status_code == 413:
        return "context_overflow"
    if any(marker in text for marker in CAPABILITY_MARKERS):
        return "capability"
    if any(marker in text for marker in UNSUPPORTED_PARAMETER_MARKERS):
        return "unsupported_parameter"
    if any(marker in text for marker in CONTEXT_OVERFLOW_MARKERS):
        return "context_overflow"
    return "generic"


def _clip(text: str) -> str:
    text = " ".join(str(text).split())
    if len(text) > MAX_DETAIL_CHARS:
        return text[: MAX_DETAIL_CHARS - 3] + "..."
    return text


def classify_error(exc: BaseException) -> ErrorSummary:
    if isinstance(exc, AbortedError):
        return ErrorSummary(kind="aborted", summary="The response was stopped.")
    if isinstance(exc, ProviderError):
        kind = exc.kind
        detail = exc.message
        if exc.status_code:
            detail = f"HTTP {exc.status_code}: {detail}"
    else:
        detail = str(exc) or exc.__class__.__name__
        kind = detect_error_kind(detail)
    if kind == "context_overflow":
        summary = "The message is too long. Please try with shorter text or fewer images."
    elif kind == "capability":
        summary = "This model does not support image analysis. Please try a multimodal model or send text only."
    elif kind == "unsupported_parameter":
        summary = "The model rejected a request parameter. Please check the model configuration."
    elif isinstance(exc, DeepResearchError):
        kind = "deep_research"
        summary = "Deep research could not complete."
    else:
        summary = "An error occurred while generating the response."
    return ErrorSummary(kind=kind, summary=summary, detail=_clip(detail))
