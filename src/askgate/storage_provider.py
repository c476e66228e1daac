"""
File storage abstraction for knowledge-base uploads.
Default implementation uses local filesystem; interface allows cloud backends later.
"""
from __future__ import annotations

from pathlib import Path
from typing import Protocol


class FileStorageProvider(Protocol):
    @property
    def root(self) -> Path:
        ...

    def ensure_ready(self):
        ...

    def save_bytes(self, data: bytes, destination_name: str) -> Path:
        ...

    def save_text(self, text: str, destination_name: str) -> Path:
        ...

    def delete(self, stored_path: str | Path) -> bool:
        ...


class LocalFileStorageProvider:
    def __init__(self, root: Path):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def ensure_ready(self):
        self._root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, destination_name: str) -> Path:
        # Uploaded names are reduced to their final component so nothing escapes the root.
        name = Path(str(destination_name)).name
        if not name or name in {".", ".."}:
            raise ValueError(f"invalid storage name: {destination_name!r}")
        return self._root / name

    def save_bytes(self, data: bytes, destination_name: str) -> Path:
        self.ensure_ready()
        destination = self._resolve(destination_name)
        destination.write_bytes(data)
        return destination

    def save_text(self, text: str, destination_name: str) -> Path:
        self.ensure_ready()
        destination = self._resolve(destination_name)
        destination.write_text(text, encoding="utf-8")
        return destination

    def delete(self, stored_path: str | Path) -> bool:
        path = Path(stored_path)
        if path.parent.resolve() != self._root.resolve():
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True
