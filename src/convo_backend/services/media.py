"""Local storage for uploaded images and voice recordings."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)


class MediaStore:
    """Save and load media under a public root using relative POSIX paths."""

    def __init__(self, root: Path):
        self._root = root.resolve()

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, relative_path: str) -> Path:
        """Map a stored path to a file under the root, refusing escapes."""

        candidate = (self._root / PurePosixPath(relative_path)).resolve()
        if not candidate.is_relative_to(self._root):
            raise ValueError(f"Media path {relative_path!r} escapes the media root")
        return candidate

    async def save(self, relative_path: str, data: bytes) -> str:
        path = self.resolve(relative_path)
        await asyncio.to_thread(self._write, path, data)
        logger.debug("Saved %d bytes to %s", len(data), relative_path)
        return relative_path

    async def read(self, relative_path: str) -> bytes:
        return await asyncio.to_thread(self.resolve(relative_path).read_bytes)

    async def delete(self, relative_path: str) -> bool:
        """Remove a file; missing files are not an error."""

        path = self.resolve(relative_path)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        return True

    async def delete_many(self, relative_paths: list[str]) -> int:
        """Best-effort removal used when a conversation is deleted."""

        removed = 0
        for relative_path in relative_paths:
            try:
                if await self.delete(relative_path):
                    removed += 1
            except (OSError, ValueError):  # pragma: no cover - best-effort cleanup
                logger.warning("Failed to remove media %s", relative_path, exc_info=True)
        return removed

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)


def media_name(directory: str, stem: str, original_filename: str | None) -> str:
    """Build ``<directory>/<stem>[.<ext>]`` keeping the upload's extension."""

    extension = PurePosixPath(original_filename).suffix if original_filename else ""
    return str(PurePosixPath(directory) / f"{stem}{extension}")


__all__ = ["MediaStore", "media_name"]
