import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import quote
from uuid import uuid4

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class UploadedFile:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)


class LocalBlobStore:
    """Writes uploads to a local directory and hands back their public URL."""

    def __init__(self, root_dir: str, base_url: str = "/uploads"):
        self.root_dir = Path(root_dir)
        self.base_url = base_url.rstrip("/")

    async def upload(self, file: UploadedFile, folder: str) -> str:
        safe_folder = "/".join(
            _UNSAFE_CHARS.sub("_", part) for part in folder.strip("/").split("/") if part not in {"", ".", ".."}
        )
        name = f"{uuid4().hex[:8]}_{_UNSAFE_CHARS.sub('_', file.filename) or 'upload'}"
        target_dir = self.root_dir / safe_folder
        target_dir.mkdir(parents=True, exist_ok=True)
        (target_dir / name).write_bytes(file.content)
        return f"{self.base_url}/{quote(safe_folder)}/{quote(name)}"


def blob_store_from_env() -> Optional[LocalBlobStore]:
    root = os.getenv("UPLOADS_DIR", "").strip()
    if not root:
        return None
    return LocalBlobStore(root_dir=root, base_url=os.getenv("UPLOADS_BASE_URL", "/uploads"))
