from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from PIL import Image

from media_errors import EncodeError
from media_manager import SizePreset

logger = logging.getLogger(__name__)

OUTPUT_FORMAT = "WEBP"
OUTPUT_MIME_TYPE = "image/webp"

_RESAMPLING_FILTER = Image.Resampling.LANCZOS


@dataclass(frozen=True)
class RenderedImage:
    data: bytes
    width: int
    height: int
    mime_type: str = OUTPUT_MIME_TYPE


def render_thumbnail(image: Image.Image, preset: Optional[SizePreset], quality: float) -> RenderedImage:
    """Fit ``image`` into the preset box (if any) and encode it as WebP."""

    normalized = normalize_pixel_format(image)
    if preset is not None:
        normalized = fit_to_box(normalized, preset.dimensions)
    data = encode_image(normalized, quality)
    return RenderedImage(data=data, width=normalized.width, height=normalized.height)


def fit_to_box(image: Image.Image, box: Tuple[int, int]) -> Image.Image:
    """Scale down to fit inside ``box`` keeping the aspect ratio; never upscales or crops."""

    if image.width <= box[0] and image.height <= box[1]:
        return image
    resized = image.copy()
    resized.thumbnail(box, _RESAMPLING_FILTER)
    return resized


def normalize_pixel_format(image: Image.Image) -> Image.Image:
    """Reduce any layout to 8-bit RGB or RGBA, the only layouts the WebP encoder takes."""

    mode = image.mode
    if mode in ("RGB", "RGBA"):
        return image
    if mode == "I" or mode.startswith("I;16"):
        values = np.asarray(image).astype(np.int64)
        eight_bit = (np.clip(values, 0, 65535) >> 8).astype(np.uint8)
        return Image.fromarray(eight_bit).convert("RGB")
    if mode == "F":
        values = np.asarray(image, dtype=np.float64)
        eight_bit = np.rint(np.clip(np.nan_to_num(values), 0.0, 1.0) * 255.0).astype(np.uint8)
        return Image.fromarray(eight_bit).convert("RGB")
    if mode == "La":
        return _unpremultiply_la(image)
    target = "RGBA" if "A" in mode or "a" in mode or "transparency" in image.info else "RGB"
    try:
        return image.convert(target)
    except ValueError as exc:
        raise EncodeError(f"Unsupported pixel layout {mode}: {exc}") from exc


def _unpremultiply_la(image: Image.Image) -> Image.Image:
    # Pillow has no La -> RGBA conversion; undo the premultiplied luma by hand
    luma, alpha = image.split()
    premultiplied = np.asarray(luma, dtype=np.float64)
    coverage = np.asarray(alpha, dtype=np.float64)
    straight = np.divide(premultiplied * 255.0, coverage, out=np.zeros_like(premultiplied), where=coverage > 0)
    gray = Image.fromarray(np.rint(np.clip(straight, 0.0, 255.0)).astype(np.uint8))
    return Image.merge("RGBA", (gray, gray, gray, alpha))


def encode_image(image: Image.Image, quality: float) -> bytes:
    if not 0 < quality <= 100:
        raise ValueError(f"quality must be in (0, 100], got {quality}")
    buffer = io.BytesIO()
    try:
        image.save(buffer, format=OUTPUT_FORMAT, quality=float(quality))
    except (OSError, ValueError) as exc:
        logger.warning("WebP encoding failed for %dx%d %s image: %s", image.width, image.height, image.mode, exc)
        raise EncodeError(f"Failed to encode: {exc}") from exc
    return buffer.getvalue()
