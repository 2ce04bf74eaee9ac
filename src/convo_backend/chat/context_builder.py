"""Assemble provider message history for a new user turn."""

from __future__ import annotations

import asyncio
import base64
import io
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from PIL import Image, UnidentifiedImageError

from ..schemas.chat import Role, TextEntry, TurnEntry, VoiceEntry
from ..services.media import MediaStore, media_name

logger = logging.getLogger(__name__)

IMAGE_DIRECTORY = "images"
JPEG_QUALITY = 90


@dataclass(frozen=True)
class UploadedImage:
    data: bytes
    filename: str | None = None


@dataclass
class TurnContext:
    """Messages to send upstream plus the media saved while building them."""

    messages: list[dict[str, Any]]
    image_paths: list[str] = field(default_factory=list)


def entry_text(entry: TurnEntry) -> str:
    """Return the text a stored entry contributes to the history."""

    match entry:
        case TextEntry(content=content):
            return content
        case VoiceEntry(transcription=transcription):
            return transcription or ""


def encode_jpeg_data_url(raw: bytes) -> str:
    """Re-encode image bytes as an RGB JPEG ``data:`` URL."""

    with Image.open(io.BytesIO(raw)) as image:
        rgb = image.convert("RGB")
        buffer = io.BytesIO()
        rgb.save(buffer, format="JPEG", quality=JPEG_QUALITY)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}"


class TurnContextBuilder:
    """Build the ordered message list for the completion provider."""

    def __init__(self, media_store: MediaStore):
        self._media = media_store

    async def build(
        self,
        conversation_id: str,
        history: Sequence[TurnEntry],
        user_text: str,
        images: Sequence[UploadedImage] = (),
    ) -> TurnContext:
        """Save new images and return the provider messages, new turn last."""

        image_paths: list[str] = []
        for index, image in enumerate(images):
            name = media_name(
                IMAGE_DIRECTORY,
                f"{conversation_id}-{len(history)}-{index}",
                image.filename,
            )
            image_paths.append(await self._media.save(name, image.data))

        messages: list[dict[str, Any]] = []
        for entry in history:
            messages.append(
                await self._build_message(entry.role, entry_text(entry), entry.images)
            )
        messages.append(await self._build_message("user", user_text, image_paths))
        return TurnContext(messages=messages, image_paths=image_paths)

    async def _build_message(
        self, role: Role, text: str, images: Sequence[str]
    ) -> dict[str, Any]:
        content: list[dict[str, Any]] = [{"type": "text", "text": text}]
        for path in images:
            data_url = await self._load_image(path)
            if data_url is None:
                continue
            content.append({"type": "image_url", "image_url": {"url": data_url}})
        return {"role": role, "content": content}

    async def _load_image(self, path: str) -> str | None:
        try:
            raw = await self._media.read(path)
            return await asyncio.to_thread(encode_jpeg_data_url, raw)
        except (OSError, ValueError, UnidentifiedImageError) as exc:
            logger.debug("Skipping image %s: %s", path, exc)
            return None


__all__ = [
    "TurnContext",
    "TurnContextBuilder",
    "UploadedImage",
    "encode_jpeg_data_url",
    "entry_text",
]
