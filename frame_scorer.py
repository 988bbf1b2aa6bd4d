"""Brightness/saturation "interestingness" and Laplacian sharpness for RGB frames."""

from __future__ import annotations

import cv2
import numpy as np

from online_stats import OnlineStats

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)
MID_GRAY = 128.0


def _require_rgb(pixels: np.ndarray) -> np.ndarray:
    frame = np.asarray(pixels)
    if frame.ndim != 3 or frame.shape[2] != 3:
        raise ValueError(f"Expected an RGB frame of shape (height, width, 3), got {frame.shape}")
    if frame.dtype != np.uint8:
        frame = np.clip(frame, 0, 255).astype(np.uint8)
    return frame


def score_frame(pixels: np.ndarray) -> float:
    """Return the frame score as a float32 value.

    ``score = stddev(luma) * mean(saturation) * (1 - |mean(luma) - 128| / 128)``

    Frames with textured detail and visible colour score high; flat,
    monochrome, near-black or near-white frames score near zero.
    """

    frame = _require_rgb(pixels)
    brightness = OnlineStats()
    saturation = OnlineStats()
    for row in frame:
        channels = row.astype(np.float64)
        brightness.update_many(channels @ LUMA_WEIGHTS)
        high = channels.max(axis=1)
        spread = high - channels.min(axis=1)
        # (max - min) / max is scale free, so 0..255 channels give the same ratio as 0..1
        row_saturation = np.divide(spread, high, out=np.zeros_like(high), where=high > 0)
        saturation.update_many(row_saturation)

    exposure = 1.0 - abs(brightness.mean() - MID_GRAY) / MID_GRAY
    score = brightness.stddev() * saturation.mean() * exposure
    return float(np.float32(score))


def frame_sharpness(pixels: np.ndarray) -> float:
    """Variance of the Laplacian of the grayscale frame (higher means less blur)."""

    frame = _require_rgb(pixels)
    gray = cv2.cvtColor(frame, cv2.COLOR_RGB2GRAY)
    laplacian = cv2.Laplacian(gray, cv2.CV_64F)
    stats = OnlineStats()
    for row in laplacian:
        stats.update_many(row)
    return stats.variance()
