"""Image intent detection and edit-context collection for image-generation models."""

import base64
import hashlib
import io
import re
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence, Tuple

from PIL import Image

from .image_store import ImageStore
from .llm import split_data_url
from .schemas import ImageAttachment, ImagePart, Message, ModelCapabilities, parse_message_content


EDIT_CONTEXT_MAX_SIZE = 800
THUMBNAIL_MAX_SIZE = 300
JPEG_QUALITIES = (85, 70, 55, 40)
EDIT_RECENCY_LIMIT = 4
HISTORY_SCAN_DEPTH = 3
MAX_EDIT_IMAGES = 3

GENERATED_IMAGE_RE = re.compile(r"!\[[^\]]*\]\(([^)\s]+)\)")

GENERATION_KEYWORDS = (
    "draw",
    "generate",
    "create an image",
    "create a picture",
    "make an image",
    "make a picture",
    "image of",
    "picture of",
    "illustrat",
    "paint",
    "sketch",
    "render",
    "logo",
    "그려",
    "그림",
    "이미지 생성",
    "이미지를 생성",
    "이미지 만들",
    "이미지를 만들",
    "생성해",
)
EDIT_KEYWORDS = (
    "make it",
    "make the",
    "make him",
    "make her",
    "change",
    "edit",
    "modify",
    "turn it",
    "turn the",
    "add ",
    "remove",
    "replace",
    "recolor",
    "color",
    "colour",
    "adjust",
    "brighter",
    "darker",
    "bigger",
    "smaller",
    "background",
    "instead",
    "crop",
    "바꿔",
    "바꾸",
    "변경",
    "수정",
    "추가",
    "제거",
    "지워",
    "없애",
    "색",
    "배경",
    "크게",
    "작게",
    "밝게",
    "어둡게",
)
DEICTIC_PATTERNS = (
    re.compile(r"\b(this|that|these|those|same)\s+(image|picture|photo|drawing|pic|illustration)s?\b"),
    re.compile(r"\b(previous|last|above)\s+(image|picture|photo|drawing)\b"),
    re.compile(r"\bwhat you (just )?(drew|made|generated|created)\b"),
    re.compile(r"\bthe one you (just )?(drew|made|generated|created)\b"),
    re.compile(r"(이|그|저|위|위의)\s?(이미지|사진|그림)"),
    re.compile(r"(방금|아까)\s?(그린|만든|생성한)"),
)
NEW_IMAGE_PATTERNS = (
    re.compile(r"\b(new|another|different|fresh|separate)\s+(image|picture|drawing|illustration|one)\b"),
    re.compile(r"\bfrom scratch\b"),
    re.compile(r"\bstart over\b"),
    re.compile(r"(새로운|새|다른)\s?(이미지|그림|사진)"),
    re.compile(r"새로\s?그려"),
    re.compile(r"처음부터"),
)


@dataclass
class ImageIntent:
    is_image_request: bool
    mode: str = "none"
    reason: str = ""
    deictic: bool = False


@dataclass
class ImageTurnPlan:
    is_image_request: bool
    mode: str = "none"
    input_images: List[ImagePart] = field(default_factory=list)


class IntentClassifier(Protocol):
    def classify(self, text: str, history: Sequence[Message], has_uploads: bool = False) -> ImageIntent:
        ...


def find_generated_image_urls(text: str) -> List[str]:
    return GENERATED_IMAGE_RE.findall(text or "")


def message_has_image(message: Message) -> bool:
    if message.role == "assistant":
        return bool(find_generated_image_urls(message.content))
    _, images = parse_message_content(message.content)
    return bool(images)


def turns_since_last_image(history: Sequence[Message], has_uploads: bool = False) -> Optional[int]:
    """Messages after the newest image-bearing one; 0 when this turn uploads, None when no image exists."""
    if has_uploads:
        return 0
    for distance, message in enumerate(reversed(history)):
        if message_has_image(message):
            return distance
    return None


def _contains_any(text: str, keywords: Sequence[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def _matches_any(text: str, patterns: Sequence[re.Pattern]) -> bool:
    return any(pattern.search(text) for pattern in patterns)


class KeywordIntentClassifier:
    """Rule-ordered keyword heuristic; the first matching rule decides."""

    def classify(self, text: str, history: Sequence[Message], has_uploads: bool = False) -> ImageIntent:
        lowered = (text or "").lower()
        recency = turns_since_last_image(history, has_uploads)
        wants_new = _matches_any(lowered, NEW_IMAGE_PATTERNS)
        has_generation_kw = _contains_any(lowered, GENERATION_KEYWORDS)
        has_edit_kw = _contains_any(lowered, EDIT_KEYWORDS)

        if wants_new:
            return ImageIntent(True, "generate", "explicit request for a new image")
        if recency is not None:
            if _matches_any(lowered, DEICTIC_PATTERNS):
                return ImageIntent(True, "edit", "explicit reference to an existing image", deictic=True)
            # edit keywords within 4 turns, or no generation keyword at all
            if recency <= EDIT_RECENCY_LIMIT and (has_edit_kw or not has_generation_kw):
                reason = "edit keyword on a recent image" if has_edit_kw else "recent image continuity"
                return ImageIntent(True, "edit", reason)
        if has_generation_kw:
            return ImageIntent(True, "generate", "generation keyword")
        return ImageIntent(False, "none", "no image intent")


def data_url_bytes(data_url: str) -> bytes:
    return base64.b64decode(split_data_url(data_url)[1])


def to_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def image_signature(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def downscale_image(data: bytes, max_size: int) -> Tuple[bytes, str]:
    """Shrink to fit max_size and re-encode as JPEG, stepping quality down until it is no larger than the input."""
    with Image.open(io.BytesIO(data)) as img:
        img = img.copy()
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        img = img.convert("RGBA")
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[-1])
        img = background
    elif img.mode != "RGB":
        img = img.convert("RGB")
    if max(img.size) > max_size:
        img.thumbnail((max_size, max_size), Image.LANCZOS)
    best: Optional[bytes] = None
    for quality in JPEG_QUALITIES:
        buffer = io.BytesIO()
        img.save(buffer, format="JPEG", quality=quality, optimize=True)
        encoded = buffer.getvalue()
        if best is None or len(encoded) < len(best):
            best = encoded
        if len(encoded) <= len(data):
            break
    return best, "image/jpeg"


def shrink_to_part(data: bytes, max_size: int) -> ImagePart:
    resized, mime = downscale_image(data, max_size)
    return ImagePart(data_url=to_data_url(resized, mime), mime_type=mime)


def attachment_to_part(image: ImageAttachment, max_size: int) -> ImagePart:
    raw = data_url_bytes(image.data)
    return shrink_to_part(raw, max_size)


async def _generated_images(message: Message, store: Optional[ImageStore]) -> List[bytes]:
    if store is None:
        return []
    images: List[bytes] = []
    for url in find_generated_image_urls(message.content):
        found = await store.read(url)
        if found:
            images.append(found[0])
    return images


async def most_recent_image(history: Sequence[Message], store: Optional[ImageStore]) -> Optional[bytes]:
    for message in reversed(history):
        if message.role == "assistant":
            generated = await _generated_images(message, store)
            if generated:
                return generated[-1]
        else:
            _, images = parse_message_content(message.content)
            if images:
                return data_url_bytes(images[-1].data)
    return None


async def _most_recent_generated(history: Sequence[Message], store: Optional[ImageStore]) -> Optional[bytes]:
    for message in reversed(history):
        if message.role != "assistant":
            continue
        generated = await _generated_images(message, store)
        if generated:
            return generated[-1]
    return None


async def collect_edit_images(
    current_images: Sequence[ImageAttachment],
    history: Sequence[Message],
    store: Optional[ImageStore],
    intent: ImageIntent,
) -> List[ImagePart]:
    """Edit context in priority order: uploads, recent history (uploads then generated), latest generated."""
    raw: List[bytes] = [data_url_bytes(img.data) for img in current_images]
    if intent.deictic and not raw:
        latest = await most_recent_image(history, store)
        raw = [latest] if latest else []
    else:
        recent = list(history)[-HISTORY_SCAN_DEPTH:]
        uploads: List[bytes] = []
        generated: List[bytes] = []
        for message in reversed(recent):
            if message.role == "assistant":
                generated.extend(await _generated_images(message, store))
            else:
                _, images = parse_message_content(message.content)
                uploads.extend(data_url_bytes(img.data) for img in images)
        raw.extend(uploads)
        raw.extend(generated)
    if not raw and intent.mode == "edit":
        latest = await _most_recent_generated(history, store)
        if latest:
            raw = [latest]
    seen = set()
    parts: List[ImagePart] = []
    for data in raw:
        signature = image_signature(data)
        if signature in seen:
            continue
        seen.add(signature)
        parts.append(shrink_to_part(data, EDIT_CONTEXT_MAX_SIZE))
        if len(parts) >= MAX_EDIT_IMAGES:
            break
    return parts


async def analyze_image_turn(
    text: str,
    current_images: Sequence[ImageAttachment],
    history: Sequence[Message],
    capabilities: ModelCapabilities,
    store: Optional[ImageStore],
    classifier: Optional[IntentClassifier] = None,
) -> ImageTurnPlan:
    if not capabilities.supports_image_generation:
        return ImageTurnPlan(False)
    classifier = classifier or KeywordIntentClassifier()
    intent = classifier.classify(text, history, has_uploads=bool(current_images))
    if not intent.is_image_request:
        return ImageTurnPlan(False)
    if intent.mode == "generate":
        return ImageTurnPlan(True, "generate", [])
    images = await collect_edit_images(current_images, history, store, intent)
    return ImageTurnPlan(True, "edit", images)
