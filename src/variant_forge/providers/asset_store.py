from __future__ import annotations

import mimetypes
import os
import uuid
from pathlib import Path

from variant_forge.config import settings

_EXTENSIONS = {"image/png": ".png", "image/jpeg": ".jpg", "image/webp": ".webp"}


def _safe_key(key: str) -> str:
    # Keep nested "a/b/c.png" keys, but never let one climb out of the root.
    parts = [p.replace("..", "_") for p in key.replace("\\", "/").split("/") if p not in ("", ".", "..")]
    if not parts:
        raise ValueError("empty asset key")
    return "/".join(parts)


class LocalAssetStore:
    """Writes uploads under <data_dir>/assets and hands back a URL under asset_base_url."""

    def __init__(self, root_dir: Path | None = None, base_url: str | None = None) -> None:
        self.root_dir = Path(root_dir or Path(settings.data_dir) / "assets").resolve()
        self.root_dir.mkdir(parents=True, exist_ok=True)
        self.base_url = (base_url if base_url is not None else settings.asset_base_url).rstrip("/")

    def upload(self, content: bytes, content_type: str, key: str | None = None) -> str:
        if key is None:
            ext = _EXTENSIONS.get(content_type) or mimetypes.guess_extension(content_type) or ".bin"
            key = f"uploads/{uuid.uuid4().hex[:12]}{ext}"
        key = _safe_key(key)
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(content)
        os.replace(tmp, path)
        return f"{self.base_url}/{key}"

    def path_for(self, key: str) -> Path:
        path = (self.root_dir / _safe_key(key)).resolve()
        if not str(path).startswith(str(self.root_dir) + os.sep):
            raise ValueError("Refusing to resolve outside the asset root")
        return path
