import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Set

from PIL import UnidentifiedImageError

from .image_heuristics import (
    EDIT_CONTEXT_MAX_SIZE,
    THUMBNAIL_MAX_SIZE,
    IntentClassifier,
    KeywordIntentClassifier,
    attachment_to_part,
    data_url_bytes,
    find_generated_image_urls,
    image_signature,
    most_recent_image,
    shrink_to_part,
)
from .image_store import ImageStore
from .schemas import (
    ChatTurn,
    ContentPart,
    ImageAttachment,
    ImagePart,
    Message,
    ModelCapabilities,
    TextPart,
    parse_message_content,
)


logger = logging.getLogger("uvicorn.error")

HISTORY_WINDOW = 5
HISTORY_WINDOW_WITH_IMAGES = 2
MAX_HISTORY_TEXT_CHARS = 2000
MIN_SYSTEM_PROMPT_CHARS = 3
GENERATED_IMAGE_PREFIX = "[Previously generated image] "


@dataclass
class BuiltContext:
    messages: List[ChatTurn]
    images: List[ImageAttachment]
    history: List[Message]


def truncate_text(text: str, limit: int = MAX_HISTORY_TEXT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def history_window(history: Sequence[Message], has_new_images: bool) -> List[Message]:
    size = HISTORY_WINDOW_WITH_IMAGES if has_new_images else HISTORY_WINDOW
    conversational = [m for m in history if m.role in ("user", "assistant")]
    return conversational[-size:]


class ContextBuilder:
    """Turns persisted history plus the new input into provider-ready chat turns."""

    def __init__(self, store: Optional[ImageStore] = None, classifier: Optional[IntentClassifier] = None):
        self.store = store
        self.classifier = classifier or KeywordIntentClassifier()

    async def build(
        self,
        history: Sequence[Message],
        text: str,
        images: Sequence[ImageAttachment],
        capabilities: ModelCapabilities,
        *,
        is_regeneration: bool = False,
        system_prompt: Optional[str] = None,
    ) -> BuiltContext:
        past = list(history)
        current_images = list(images)
        if is_regeneration and past and past[-1].role == "user":
            active = past.pop()
            if not current_images:
                _, current_images = parse_message_content(active.content)
        window = history_window(past, bool(current_images))
        accepts_images = capabilities.supports_multimodal

        messages: List[ChatTurn] = []
        if system_prompt and len(system_prompt.strip()) >= MIN_SYSTEM_PROMPT_CHARS:
            messages.append(ChatTurn(role="system", content=system_prompt.strip()))

        included: Set[str] = set()
        for message in window:
            if message.role == "user":
                messages.append(await self._user_turn(message, accepts_images, included))
            else:
                messages.append(await self._assistant_turn(message, accepts_images, capabilities, included))

        messages.append(await self._current_turn(text, current_images, past, accepts_images, included))
        return BuiltContext(messages=messages, images=current_images, history=past)

    async def _user_turn(self, message: Message, accepts_images: bool, included: Set[str]) -> ChatTurn:
        text, stored_images = parse_message_content(message.content)
        text = truncate_text(text)
        if not stored_images or not accepts_images:
            return ChatTurn(role="user", content=text)
        parts: List[ContentPart] = [TextPart(text=text)] if text else []
        for image in stored_images:
            part = self._safe_part(image)
            if part is not None:
                included.add(image_signature(data_url_bytes(image.data)))
                parts.append(part)
        return ChatTurn(role="user", content=parts or text)

    async def _assistant_turn(
        self,
        message: Message,
        accepts_images: bool,
        capabilities: ModelCapabilities,
        included: Set[str],
    ) -> ChatTurn:
        text = truncate_text(message.content)
        urls = find_generated_image_urls(message.content)
        if not urls or not accepts_images or self.store is None:
            return ChatTurn(role="assistant", content=text)
        parts: List[ContentPart] = []
        for url in urls:
            found = await self.store.read(url)
            if not found:
                continue
            try:
                part = shrink_to_part(found[0], THUMBNAIL_MAX_SIZE)
            except (UnidentifiedImageError, OSError) as exc:
                logger.warning("Skipping unreadable generated image %s: %s", url, exc)
                continue
            included.add(image_signature(found[0]))
            parts.append(part)
        if not parts:
            return ChatTurn(role="assistant", content=text)
        if capabilities.accepts_assistant_images:
            return ChatTurn(role="assistant", content=[TextPart(text=text), *parts])
        return ChatTurn(role="user", content=[TextPart(text=GENERATED_IMAGE_PREFIX + text), *parts])

    async def _current_turn(
        self,
        text: str,
        images: Sequence[ImageAttachment],
        past: Sequence[Message],
        accepts_images: bool,
        included: Set[str],
    ) -> ChatTurn:
        if images:
            if not accepts_images:
                return ChatTurn(role="user", content=text)
            parts: List[ContentPart] = [TextPart(text=text)]
            for image in images:
                part = self._safe_part(image, EDIT_CONTEXT_MAX_SIZE)
                if part is not None:
                    parts.append(part)
            return ChatTurn(role="user", content=parts)
        if accepts_images:
            continuity = await self._continuity_image(text, past, included)
            if continuity is not None:
                return ChatTurn(role="user", content=[TextPart(text=text), continuity])
        return ChatTurn(role="user", content=text)

    async def _continuity_image(self, text: str, past: Sequence[Message], included: Set[str]) -> Optional[ImagePart]:
        intent = self.classifier.classify(text, past)
        if intent.mode != "edit":
            return None
        try:
            latest = await most_recent_image(past, self.store)
            if latest is None or image_signature(latest) in included:
                return None
            return shrink_to_part(latest, EDIT_CONTEXT_MAX_SIZE)
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            logger.warning("Skipping unreadable continuity image: %s", exc)
            return None

    def _safe_part(self, image: ImageAttachment, max_size: int = THUMBNAIL_MAX_SIZE) -> Optional[ImagePart]:
        try:
            return attachment_to_part(image, max_size)
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            logger.warning("Skipping unreadable image %s: %s", image.name, exc)
            return None
