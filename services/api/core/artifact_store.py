# services/api/core/artifact_store.py
"""
Local storage for generated files (merged PDFs, batch summaries).

Files are written under `artifact_dir` and served by main.py at
`{public_base_url}/artifacts/{file_name}`.
"""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_file_name(name: str) -> str:
    """Collapse anything outside [A-Za-z0-9._-] into '_' and strip path parts."""
    base = os.path.basename(name or "").strip()
    cleaned = _UNSAFE.sub("_", base).strip("._")
    return cleaned or "file"


class LocalArtifactStore:
    def __init__(self, root: str, public_base_url: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    @property
    def url_prefix(self) -> str:
        return f"{self.public_base_url}/artifacts/"

    def path_for(self, file_name: str) -> Path:
        return self.root / safe_file_name(file_name)

    def url_for(self, file_name: str) -> str:
        return f"{self.url_prefix}{safe_file_name(file_name)}"

    def save(self, file_name: str, data: bytes) -> Tuple[str, int]:
        """Write atomically; returns (public url, size in bytes)."""
        path = self.path_for(file_name)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)
        logger.info("Stored artifact %s (%d bytes)", path.name, len(data))
        return self.url_for(path.name), len(data)

    def local_path(self, url: str) -> Optional[Path]:
        """Map one of our own artifact URLs back to a file on disk, else None."""
        if not url or not url.startswith(self.url_prefix):
            return None
        path = self.path_for(url[len(self.url_prefix):])
        return path if path.is_file() else None

    def read(self, file_name: str) -> bytes:
        return self.path_for(file_name).read_bytes()
