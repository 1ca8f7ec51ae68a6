"""
imaging.py — turn a raw photo into a compact, model-friendly ImagePayload.

normalize():
  1. decode whatever the user sent (JPEG, PNG, WebP, anything Pillow can open)
  2. if the long edge exceeds MAX_IMAGE_EDGE, shrink proportionally
     (long edge → MAX_IMAGE_EDGE, short edge → short * max / long rounded half up,
     never below 1px)
  3. always re-encode as JPEG at JPEG_QUALITY, even when no scaling happened

EXIF orientation is intentionally left alone — the model reads rotated text fine.
"""
from __future__ import annotations

import asyncio
import base64
import io
import logging
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

import config
from errors import AcquisitionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImagePayload:
    """An encoded image owned by exactly one wizard slot."""
    mime_type: str
    data: bytes

    def to_data_uri(self) -> str:
        b64 = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{b64}"

    @classmethod
    def from_data_uri(cls, uri: str) -> "ImagePayload":
        """Parse 'data:<mime>;base64,<payload>'. Raises ValueError on anything else."""
        if not uri.startswith("data:") or ";base64," not in uri:
            raise ValueError("not a base64 data URI")
        header, b64 = uri[len("data:"):].split(";base64,", 1)
        return cls(mime_type=header or "application/octet-stream", data=base64.b64decode(b64, validate=True))

    @property
    def size_kb(self) -> float:
        return len(self.data) / 1024


def _scale_edge(short: int, max_edge: int, long_edge: int) -> int:
    # half-up, unlike round()
    return max(1, int(short * max_edge / long_edge + 0.5))


def scaled_size(width: int, height: int, max_edge: int) -> tuple[int, int]:
    """Target dimensions for a width×height image capped at max_edge on the long side."""
    long_edge = max(width, height)
    if long_edge <= max_edge:
        return width, height
    if width >= height:
        return max_edge, _scale_edge(height, max_edge, width)
    return _scale_edge(width, max_edge, height), max_edge


def _pillow_quality(quality: float) -> int:
    # 0–1 scale → Pillow's 1–95 range
    return max(1, min(95, round(quality * 100)))


def normalize(
    raw: bytes,
    max_edge: int = config.MAX_IMAGE_EDGE,
    quality: float = config.JPEG_QUALITY,
) -> ImagePayload:
    """
    Decode, downsample and re-encode raw image bytes.
    Raises AcquisitionError if the bytes cannot be decoded or encoded.
    """
    if not raw:
        raise AcquisitionError("Empty image")

    try:
        im = Image.open(io.BytesIO(raw))
        im.load()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise AcquisitionError(f"Could not read image: {exc}") from exc

    w, h = im.size
    new_w, new_h = scaled_size(w, h, max_edge)

    try:
        if im.mode != "RGB":
            im = im.convert("RGB")
        if (new_w, new_h) != (w, h):
            im = im.resize((new_w, new_h), Image.Resampling.LANCZOS)
        out = io.BytesIO()
        im.save(out, format="JPEG", quality=_pillow_quality(quality))
    except (OSError, ValueError) as exc:
        raise AcquisitionError(f"Could not encode image: {exc}") from exc

    payload = ImagePayload(mime_type="image/jpeg", data=out.getvalue())
    logger.debug("Normalised %dx%d → %dx%d (%.0f KB)", w, h, new_w, new_h, payload.size_kb)
    return payload


async def normalize_async(raw: bytes) -> ImagePayload:
    """normalize() in a worker thread so decoding never stalls the event loop."""
    return await asyncio.to_thread(normalize, raw)
