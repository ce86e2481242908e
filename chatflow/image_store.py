import asyncio
import mimetypes
import re
import uuid
from pathlib import Path
from typing import Optional, Tuple


EXTENSIONS = {"image/png": ".png", "image/jpeg": ".jpg", "image/webp": ".webp", "image/gif": ".gif"}
_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+\.(png|jpg|jpeg|webp|gif)$")


class ImageStore:
    """Generated images on local disk, addressed by URL under `url_prefix`."""

    def __init__(self, root: Path, url_prefix: str = "/api/images"):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")

    def ensure_dir(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def url_for(self, name: str) -> str:
        return f"{self.url_prefix}/{name}"

    def name_from_url(self, url: str) -> Optional[str]:
        prefix = self.url_prefix + "/"
        if not url.startswith(prefix):
            return None
        name = url[len(prefix):].split("?", 1)[0]
        return name if _SAFE_NAME_RE.match(name) else None

    def path_for(self, name: str) -> Path:
        if not _SAFE_NAME_RE.match(name):
            raise ValueError("Invalid image name.")
        return self.root / name

    async def save(self, data: bytes, mime_type: str) -> str:
        name = f"{uuid.uuid4().hex}{EXTENSIONS.get(mime_type, '.png')}"
        path = self.path_for(name)
        self.ensure_dir()
        await asyncio.to_thread(path.write_bytes, data)
        return self.url_for(name)

    async def read(self, url: str) -> Optional[Tuple[bytes, str]]:
        name = self.name_from_url(url)
        if not name:
            return None
        path = self.path_for(name)
        if not path.exists():
            return None
        data = await asyncio.to_thread(path.read_bytes)
        mime = mimetypes.guess_type(name)[0] or "image/png"
        return data, mime
