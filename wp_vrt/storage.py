"""
Artifact storage for captures and diff images.

Keys follow one addressing scheme so that any backend honouring it is
interchangeable::

    {phase}/{date}/{site_id}/{url-encoded page_id}.png
    diff/{date}/{site_id}/{threshold}/{page_id}.png
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Iterator, List, Optional, Protocol, Union
from urllib.parse import quote, unquote

from wp_vrt.models import Phase

__all__ = (
    "ArtifactStore",
    "LocalArtifactStore",
    "capture_key",
    "capture_prefix",
    "diff_key",
    "parse_capture_key",
)


class ArtifactStore(Protocol):
    def put(self, key: str, data: bytes) -> str: ...

    def get(self, key: str) -> Optional[bytes]: ...

    def exists(self, key: str) -> bool: ...

    def list(self, prefix: str) -> List[str]: ...


def capture_prefix(phase: Union[Phase, str], date: str, site_id: str) -> str:
    phase_name = phase.value if isinstance(phase, Phase) else str(phase)
    return f"{phase_name}/{date}/{site_id}/"


def capture_key(phase: Union[Phase, str], date: str, site_id: str, page_id: str) -> str:
    return f"{capture_prefix(phase, date, site_id)}{quote(page_id, safe='')}.png"


def diff_key(date: str, site_id: str, threshold: float, page_id: str) -> str:
    return f"diff/{date}/{site_id}/{threshold:g}/{page_id}.png"


def parse_capture_key(key: str) -> tuple[Phase, str, str, str]:
    """Inverse of :func:`capture_key`: ``(phase, date, site_id, page_id)``."""
    parts = key.split("/")
    if len(parts) != 4 or not parts[3].endswith(".png"):
        raise ValueError(f"not a capture key: {key}")
    phase, date, site_id, name = parts
    return Phase(phase), date, site_id, unquote(name[: -len(".png")])


class LocalArtifactStore:
    """Filesystem-backed store rooted at *root*. Writes overwrite."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        if key.startswith("/") or ".." in Path(key).parts:
            raise ValueError(f"invalid storage key: {key}")
        return self.root / key

    def put(self, key: str, data: bytes) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)
        return key

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.is_file():
            return None
        return path.read_bytes()

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def list(self, prefix: str) -> List[str]:
        base = self._path(prefix.rstrip("/")) if prefix else self.root
        if not base.is_dir():
            return []
        return sorted(self._walk(base))

    def _walk(self, base: Path) -> Iterator[str]:
        for path in base.rglob("*"):
            if path.is_file() and not path.name.endswith(".tmp"):
                yield path.relative_to(self.root).as_posix()

    def path_for(self, key: str) -> Path:
        return self._path(key)
