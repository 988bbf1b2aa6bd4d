"""Content keys, size presets and per-extension decoding of source files into raster images."""

from __future__ import annotations

import logging
import string
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple, Union

from PIL import Image
from psd_tools import PSDImage

from config_manager import LoadOptions
from keyframe_selector import load_image_from_video
from media_errors import DecodeError, InvalidKeyError, MediaManagerError, NotFoundError

logger = logging.getLogger(__name__)

HASH_KEY_LENGTH = 32
SHARD_PREFIX_LENGTH = 2
HEX_DIGITS = frozenset(string.hexdigits)

VIDEO_EXTENSIONS: set[str] = {
    ".mp4",
    ".webm",
    ".mov",
}
LAYERED_IMAGE_EXTENSIONS: set[str] = {
    ".psd",
}


class SizePreset(Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"

    @classmethod
    def from_query(cls, value: Optional[str]) -> "SizePreset":
        """Map a ``?size=`` value to a preset; anything unknown is Medium."""

        text = (value or "").strip().lower()
        for preset in cls:
            if preset.value == text:
                return preset
        return cls.MEDIUM

    @property
    def dimensions(self) -> Tuple[int, int]:
        return _PRESET_DIMENSIONS[self]


_PRESET_DIMENSIONS = {
    SizePreset.SMALL: (120, 120),
    SizePreset.MEDIUM: (300, 300),
    SizePreset.LARGE: (600, 600),
}


@dataclass(frozen=True)
class SourceFile:
    path: Path
    mtime: float
    size: int


def resolve_key(base_path: Path, key: str) -> Path:
    """Map ``<32 hex>[.<alnum ext>]`` to ``<base>/<first 2 hex>/<key>``.

    The grammar admits no separators or dots besides the single extension
    dot, so the result always stays under ``base_path``.
    """

    hash_part, dot, ext = key.partition(".")
    if len(hash_part) != HASH_KEY_LENGTH or not all(ch in HEX_DIGITS for ch in hash_part):
        logger.debug("Malformed hash key %r", hash_part)
        raise InvalidKeyError(f"malformed key {key}")
    if dot and not (ext and ext.isascii() and ext.isalnum()):
        logger.debug("Malformed ext: key=%r, ext=%r", key, ext)
        raise InvalidKeyError(f"malformed key {key}")
    return Path(base_path) / hash_part[:SHARD_PREFIX_LENGTH] / key


def stat_source(path: Path) -> SourceFile:
    try:
        stat_info = path.stat()
    except FileNotFoundError as exc:
        raise NotFoundError("File not found") from exc
    except OSError as exc:
        logger.warning("Failed to read metadata for %s: %s", path, exc)
        raise MediaManagerError("Failed to read metadata", code="metadata_unavailable", status=500) from exc
    if not path.is_file():
        raise NotFoundError("File not found")
    return SourceFile(path=path, mtime=stat_info.st_mtime, size=stat_info.st_size)


def load_image(
    path: Union[str, Path],
    options: LoadOptions,
    *,
    ffmpeg_path: Optional[str] = None,
    ffprobe_path: Optional[str] = None,
) -> Image.Image:
    """Decode ``path`` into a single raster image, choosing the strategy by extension."""

    path = Path(path)
    ext = path.suffix.lower()
    if ext in VIDEO_EXTENSIONS:
        return load_image_from_video(path, options, ffmpeg_path=ffmpeg_path, ffprobe_path=ffprobe_path)
    if ext in LAYERED_IMAGE_EXTENSIONS:
        return load_image_from_psd(path)
    return load_image_from_file(path)


def load_image_from_file(path: Path) -> Image.Image:
    try:
        with Image.open(path) as img:
            img.load()
            return img.copy()
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"Failed to decode {path.name}: {exc}") from exc


def load_image_from_psd(path: Path) -> Image.Image:
    """Flattened RGBA from the merged-layer preview stored in the PSD."""

    try:
        psd = PSDImage.open(path)
        preview = psd.topil()
    except OSError as exc:
        raise DecodeError(f"Failed to read PSD {path.name}: {exc}") from exc
    except Exception as exc:  # psd-tools raises assorted parser errors on malformed input
        raise DecodeError(f"Failed to parse PSD {path.name}: {exc}") from exc

    if preview is None:
        raise DecodeError(f"PSD {path.name} has no merged preview data")
    if preview.size != (psd.width, psd.height):
        raise DecodeError(
            f"PSD {path.name} preview is {preview.size[0]}x{preview.size[1]}, header says {psd.width}x{psd.height}"
        )
    return preview.convert("RGBA")

