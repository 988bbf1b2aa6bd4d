"""Error kinds raised while turning a media key into an encoded image."""

from __future__ import annotations

from typing import Optional


class MediaManagerError(RuntimeError):
    """Structured exception raised for media operations."""

    default_code = "error"
    default_status = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.status = status or self.default_status


class InvalidKeyError(MediaManagerError):
    """The content key does not match ``<32 hex>[.<alnum ext>]``."""

    default_code = "invalid_key"
    default_status = 404


class NotFoundError(MediaManagerError):
    default_code = "not_found"
    default_status = 404


class DecodeError(MediaManagerError):
    """The source could not be read or no codec could parse it."""

    default_code = "decode_failed"


class NoVideoStreamError(MediaManagerError):
    """The container holds no decodable video track."""

    default_code = "no_video_stream"


class NoSuitableFrameError(MediaManagerError):
    """The video produced no keyframe to score."""

    default_code = "no_suitable_frame"


class EncodeError(MediaManagerError):
    """The output codec rejected the final image."""

    default_code = "encode_failed"
