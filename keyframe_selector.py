"""Pick the single most representative keyframe of a video.

Keyframes are pulled from a :class:`KeyframeSource` one at a time and scored
with :func:`frame_scorer.score_frame`. The first keyframe that clears the
configured score (and, optionally, sharpness) threshold wins immediately;
otherwise the best-scoring keyframe seen before the stream ends or
``max_keyframes`` is reached is returned.

:class:`FFmpegKeyframeSource` is the production source. It locates the video
stream with ``ffprobe`` and streams keyframes as packed RGB24 from an
``ffmpeg`` subprocess that never decodes non-keyframes.
"""

from __future__ import annotations

import abc
import json
import logging
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Dict, Iterator, List, Optional, Union

import numpy as np
from PIL import Image

from config_manager import LoadOptions
from frame_scorer import frame_sharpness, score_frame
from media_errors import DecodeError, NoSuitableFrameError, NoVideoStreamError

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 600


@dataclass(frozen=True)
class VideoFrame:
    index: int
    pixels: np.ndarray
    key_frame: bool = True

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


@dataclass
class FrameCandidate:
    frame: VideoFrame
    score: float
    sharpness: Optional[float] = None

    def to_image(self) -> Image.Image:
        return Image.fromarray(np.ascontiguousarray(self.frame.pixels))


@dataclass
class SelectionState:
    """Best-so-far bookkeeping for one selection run."""

    best: Optional[FrameCandidate] = None
    best_score: float = -1.0
    frames_examined: int = 0

    def offer(self, candidate: FrameCandidate) -> None:
        if candidate.score > self.best_score:
            self.best = candidate
            self.best_score = candidate.score


@dataclass(frozen=True)
class VideoStream:
    index: int
    width: int
    height: int
    codec_name: Optional[str] = None


class KeyframeSource(abc.ABC):
    """A scoped producer of decoded video frames.

    Entering the context opens the container and decoder; leaving it always
    drains and releases the decoder, whichever way the ``with`` block exits.
    """

    label = "video"

    def open(self) -> None:
        pass

    @abc.abstractmethod
    def frames(self) -> Iterator[VideoFrame]:
        """Yield decoded frames in stream order; only valid while the source is open."""

    def close(self) -> None:
        pass

    def __enter__(self) -> "KeyframeSource":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def select_keyframe(source: KeyframeSource, options: LoadOptions) -> Image.Image:
    """Return the chosen keyframe of ``source`` as an RGB image."""

    state = SelectionState()
    with source:
        for frame in source.frames():
            if not frame.key_frame:
                continue
            candidate = FrameCandidate(frame=frame, score=score_frame(frame.pixels))
            logger.debug("%s[%d]: frame score %.4f", source.label, frame.index, candidate.score)

            if candidate.score >= options.score_threshold and _sharp_enough(candidate, options):
                logger.debug(
                    "%s[%d]: accepted after %d keyframes (score=%.4f)",
                    source.label,
                    frame.index,
                    state.frames_examined + 1,
                    candidate.score,
                )
                return candidate.to_image()

            state.offer(candidate)
            state.frames_examined += 1
            if state.frames_examined >= options.max_keyframes:
                logger.debug("%s: keyframe cap %d reached", source.label, options.max_keyframes)
                break

    if state.best is None:
        raise NoSuitableFrameError(f"No suitable frame found in {source.label}")
    logger.debug(
        "%s: no keyframe met the threshold, using best of %d (frame=%d score=%.4f)",
        source.label,
        state.frames_examined,
        state.best.frame.index,
        state.best_score,
    )
    return state.best.to_image()


def _sharp_enough(candidate: FrameCandidate, options: LoadOptions) -> bool:
    if options.sharpness_threshold is None:
        return True
    candidate.sharpness = frame_sharpness(candidate.frame.pixels)
    logger.debug("frame %d sharpness %.4f", candidate.frame.index, candidate.sharpness)
    return candidate.sharpness >= options.sharpness_threshold


def load_image_from_video(
    path: Union[str, Path],
    options: LoadOptions,
    *,
    ffmpeg_path: Optional[str] = None,
    ffprobe_path: Optional[str] = None,
) -> Image.Image:
    source = FFmpegKeyframeSource(
        path,
        max_frames=options.max_keyframes,
        ffmpeg_path=ffmpeg_path,
        ffprobe_path=ffprobe_path,
    )
    return select_keyframe(source, options)


# ----------------------------------------------------------------------
# ffmpeg / ffprobe backed source
# ----------------------------------------------------------------------
def probe_video_stream(path: Union[str, Path], *, ffprobe_path: Optional[str] = None) -> VideoStream:
    """Return the best video stream of ``path`` (largest picture, cover art excluded)."""

    ffprobe = ffprobe_path or shutil.which("ffprobe") or "ffprobe"
    cmd = [
        ffprobe,
        "-v",
        "error",
        "-show_entries",
        "stream=index,codec_type,codec_name,width,height:stream_disposition=attached_pic",
        "-of",
        "json",
        str(path),
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)  # noqa: S603
    except FileNotFoundError as exc:
        raise DecodeError("ffprobe executable was not found. Install FFmpeg or set FFPROBE_PATH.") from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()[-STDERR_TAIL_CHARS:]
        raise DecodeError(f"ffprobe could not read {path}: {stderr or 'exit code %d' % exc.returncode}") from exc

    try:
        payload = json.loads(result.stdout or "{}")
    except json.JSONDecodeError as exc:
        raise DecodeError(f"ffprobe returned invalid JSON for {path}") from exc

    candidates: List[VideoStream] = []
    for entry in payload.get("streams", []):
        if entry.get("codec_type") != "video":
            continue
        if _disposition_flag(entry, "attached_pic"):
            continue
        width = _to_int(entry.get("width"))
        height = _to_int(entry.get("height"))
        index = _to_int(entry.get("index"))
        if index is None or not width or not height:
            continue
        candidates.append(VideoStream(index=index, width=width, height=height, codec_name=entry.get("codec_name")))

    if not candidates:
        raise NoVideoStreamError(f"No video stream found in {path}")
    return max(candidates, key=lambda stream: (stream.width * stream.height, -stream.index))


def _disposition_flag(entry: Dict[str, Any], name: str) -> bool:
    disposition = entry.get("disposition")
    if not isinstance(disposition, dict):
        return False
    return _to_int(disposition.get(name)) == 1


def _to_int(raw_value: Any) -> Optional[int]:
    if raw_value in (None, "N/A", ""):
        return None
    try:
        return int(raw_value)
    except (TypeError, ValueError):
        return None


class FFmpegKeyframeSource(KeyframeSource):
    """Streams RGB24 keyframes of the best video stream from an ffmpeg subprocess."""

    def __init__(
        self,
        path: Union[str, Path],
        *,
        max_frames: Optional[int] = None,
        ffmpeg_path: Optional[str] = None,
        ffprobe_path: Optional[str] = None,
        terminate_timeout: float = 5.0,
    ) -> None:
        self.path = Path(path)
        self.label = self.path.name
        self.stream: Optional[VideoStream] = None
        self._max_frames = max_frames if max_frames and max_frames > 0 else None
        self._ffmpeg_path = ffmpeg_path
        self._ffprobe_path = ffprobe_path
        self._terminate_timeout = terminate_timeout
        self._process: Optional[subprocess.Popen] = None
        self._stderr: Optional[IO[bytes]] = None

    def open(self) -> None:
        self.stream = probe_video_stream(self.path, ffprobe_path=self._ffprobe_path)
        cmd = self.decode_command()
        logger.debug("%s: decoding stream %d (%dx%d)", self.label, self.stream.index, self.stream.width, self.stream.height)
        self._stderr = tempfile.TemporaryFile()
        try:
            self._process = subprocess.Popen(  # noqa: S603
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=self._stderr,
            )
        except OSError as exc:
            self._stderr.close()
            self._stderr = None
            raise DecodeError(f"Unable to start ffmpeg for {self.path}: {exc}") from exc

    def decode_command(self) -> List[str]:
        if self.stream is None:
            raise RuntimeError("decode_command() requires an opened stream")
        ffmpeg = self._ffmpeg_path or shutil.which("ffmpeg") or "ffmpeg"
        cmd = [
            ffmpeg,
            "-hide_banner",
            "-nostdin",
            "-loglevel",
            "error",
            "-noautorotate",
            "-skip_frame",
            "nokey",
            "-i",
            str(self.path),
            "-map",
            f"0:{self.stream.index}",
            "-an",
            "-sn",
            "-dn",
            "-vf",
            "select=key",
            "-fps_mode",
            "passthrough",
        ]
        if self._max_frames:
            cmd.extend(["-frames:v", str(self._max_frames)])
        cmd.extend(["-f", "rawvideo", "-pix_fmt", "rgb24", "pipe:1"])
        return cmd

    def frames(self) -> Iterator[VideoFrame]:
        if self._process is None or self.stream is None:
            raise RuntimeError("frames() called before open()")
        width, height = self.stream.width, self.stream.height
        frame_size = width * height * 3
        stdout = self._process.stdout
        index = 0
        while True:
            chunk = stdout.read(frame_size)
            if len(chunk) < frame_size:
                if chunk:
                    logger.debug("%s: dropping truncated frame (%d of %d bytes)", self.label, len(chunk), frame_size)
                break
            pixels = np.frombuffer(chunk, dtype=np.uint8).reshape(height, width, 3)
            yield VideoFrame(index=index, pixels=pixels)
            index += 1

        returncode = self._process.wait()
        if returncode != 0:
            raise DecodeError(f"ffmpeg failed to decode {self.path}: {self._stderr_tail() or 'exit code %d' % returncode}")

    def close(self) -> None:
        process, self._process = self._process, None
        if process is not None:
            logger.debug("%s: flush remaining frames", self.label)
            try:
                if process.poll() is None:
                    process.terminate()
                if process.stdout is not None:
                    process.stdout.close()
                process.wait(timeout=self._terminate_timeout)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
            except OSError as exc:
                logger.debug("%s: failed to flush: %s", self.label, exc)
        if self._stderr is not None:
            self._stderr.close()
            self._stderr = None

    def _stderr_tail(self) -> str:
        if self._stderr is None:
            return ""
        self._stderr.seek(0)
        text = self._stderr.read().decode("utf-8", errors="replace").strip()
        return text[-STDERR_TAIL_CHARS:]
