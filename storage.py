from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Protocol

from config import get_settings


class StorageError(RuntimeError):
    pass


class AttachmentStorage(Protocol):
    def put(self, key: str, content: bytes) -> None: ...

    def open(self, key: str, chunk_size: int = 1024 * 1024) -> Iterator[bytes]: ...

    def delete(self, key: str) -> None: ...


def safe_filename(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9.-]", "_", name or "file")


def build_storage_key(entity_type: str, filename: str, environment: str) -> str:
    stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
    return f"attachments_{environment}/{entity_type}s/{stamp}_{safe_filename(filename)}"


class LocalAttachmentStorage:
    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {key}")
        return path

    def put(self, key: str, content: bytes) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        except OSError as exc:
            raise StorageError(f"Failed to store {key}") from exc

    def open(self, key: str, chunk_size: int = 1024 * 1024) -> Iterator[bytes]:
        path = self._path(key)
        if not path.exists():
            raise StorageError(f"Attachment not found in storage: {key}")

        def iter_file() -> Iterator[bytes]:
            with open(path, "rb") as f:
                while True:
                    chunk = f.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk

        return iter_file()

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete {key}") from exc


def get_storage() -> AttachmentStorage:
    return LocalAttachmentStorage(get_settings().attachments_dir)
