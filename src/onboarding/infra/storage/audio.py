from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from uuid import uuid4

logger = logging.getLogger("voice")


class AudioStorageBackend(ABC):
    @abstractmethod
    def save_file(self, content: bytes, *, suffix: str) -> str:
        """Persist audio bytes under a fresh name ending in ``suffix`` and return its reference."""

    @abstractmethod
    def read_file(self, ref: str) -> bytes:
        """Return the bytes behind a reference produced by ``save_file``."""

    @abstractmethod
    def delete_file(self, ref: str) -> None:
        """Delete a previously saved file. A missing file is not an error."""

    @abstractmethod
    def exists(self, ref: str) -> bool:
        raise NotImplementedError


class LocalAudioStorageBackend(AudioStorageBackend):
    """Stores uploads as flat files under ``base_dir``.

    References are file names relative to ``base_dir`` so records stay valid
    if the directory is relocated.
    """

    def __init__(self, base_dir: Path) -> None:
        self._base = Path(base_dir)
        self._base.mkdir(parents=True, exist_ok=True)

    def path(self, ref: str) -> Path:
        return self._base / ref

    def save_file(self, content: bytes, *, suffix: str) -> str:
        self._base.mkdir(parents=True, exist_ok=True)
        ref = f"{uuid4().hex}{suffix}"
        self.path(ref).write_bytes(content)
        return ref

    def read_file(self, ref: str) -> bytes:
        return self.path(ref).read_bytes()

    def delete_file(self, ref: str) -> None:
        path = self.path(ref)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError:
            logger.exception("Failed to delete stored audio %s", ref)
            raise

    def exists(self, ref: str) -> bool:
        return self.path(ref).exists()
