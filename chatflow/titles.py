import re

from . import prompts
from .llm import BaseLLMClient, RequestOptions
from .schemas import ChatTurn


MAX_TITLE_CHARS = 30
FALLBACK_PREFIX_CHARS = 15
MIN_TITLE_CHARS = 2
ANSWER_EXCERPT_CHARS = 200

_QUOTE_RE = re.compile(r"^[\"'`“”‘’]+|[\"'`“”‘’]+$")
_PREFIX_RE = re.compile(r"^\s*title\s*:\s*", re.IGNORECASE)
_PUNCT_RE = re.compile(r"[^\w\s]")


def fallback_title(user_text: str) -> str:
    text = " ".join((user_text or "").split())
    if len(text) > FALLBACK_PREFIX_CHARS:
        return text[:FALLBACK_PREFIX_CHARS] + "..."
    return text or "New chat"


def clean_title(raw: str, user_text: str) -> str:
    title = (raw or "").strip().splitlines()[0] if (raw or "").strip() else ""
    title = _QUOTE_RE.sub("", title.strip())
    title = _PREFIX_RE.sub("", title)
    title = _QUOTE_RE.sub("", title.strip())
    title = _PUNCT_RE.sub("", title)
    title = " ".join(title.split())
    if len(title) > MAX_TITLE_CHARS:
        title = title[: MAX_TITLE_CHARS - 3] + "..."
    if len(title) < MIN_TITLE_CHARS:
        return fallback_title(user_text)
    return title


class TitleGenerator:
    def __init__(self, temperature: float = 0.3, max_tokens: int = 50):
        self.temperature = temperature
        self.max_tokens = max_tokens

    def build_prompt(self, user_text: str, assistant_text: str) -> str:
        answer = assistant_text[:ANSWER_EXCERPT_CHARS]
        if len(assistant_text) > ANSWER_EXCERPT_CHARS:
            answer += "..."
        return prompts.TITLE_PROMPT.strip().format(question=user_text.strip(), answer=answer)

    async def generate(self, client: BaseLLMClient, user_text: str, assistant_text: str) -> str:
        prompt = self.build_prompt(user_text, assistant_text)
        response = await client.chat(
            [ChatTurn(role="user", content=prompt)],
            RequestOptions(max_tokens=self.max_tokens, temperature=self.temperature, top_p=1.0),
        )
        return clean_title(response.content, user_text)
