from __future__ import annotations

import numpy as np
import pytest

YELLOW = (255, 255, 0)
BLUE = (0, 0, 255)


def checkerboard(size: int = 64, block: int = 8, first=YELLOW, second=BLUE) -> np.ndarray:
    ys, xs = np.indices((size, size))
    mask = ((ys // block) + (xs // block)) % 2 == 0
    frame = np.empty((size, size, 3), dtype=np.uint8)
    frame[mask] = first
    frame[~mask] = second
    return frame


def solid(color, size: int = 64) -> np.ndarray:
    return np.full((size, size, 3), color, dtype=np.uint8)


def horizontal_gradient(size: int = 64, start=YELLOW, end=BLUE) -> np.ndarray:
    t = np.linspace(0.0, 1.0, size)[None, :, None]
    row = (1.0 - t) * np.array(start, dtype=np.float64) + t * np.array(end, dtype=np.float64)
    return np.repeat(np.rint(row), size, axis=0).astype(np.uint8)


@pytest.fixture
def frames() -> dict[str, np.ndarray]:
    """Synthetic RGB frames with well separated scores."""

    return {
        "gray": solid((128, 128, 128)),
        "near_black": checkerboard(first=(10, 10, 10), second=(14, 14, 14)),
        "dim_red": checkerboard(first=(100, 60, 60), second=(110, 66, 66)),
        "checker": checkerboard(),
        "gradient": horizontal_gradient(),
    }
