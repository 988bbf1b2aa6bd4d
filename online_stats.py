"""Single-pass running mean/variance (Welford's online algorithm)."""

from __future__ import annotations

import math
from typing import Iterable, Union

import numpy as np


class OnlineStats:
    """Running mean and unbiased sample variance with O(1) memory.

    Values are folded in one at a time with :meth:`update`, or a row at a
    time with :meth:`update_many`; nothing is ever recomputed from scratch.
    """

    __slots__ = ("count", "_mean", "_m2")

    def __init__(self) -> None:
        self.count = 0
        self._mean = 0.0
        self._m2 = 0.0

    def update(self, value: float) -> None:
        self.count += 1
        delta = value - self._mean
        self._mean += delta / self.count
        self._m2 += delta * (value - self._mean)

    def update_many(self, values: Union[np.ndarray, Iterable[float]]) -> None:
        """Fold a batch of values in, combining its moments with the running ones."""

        batch = np.asarray(values, dtype=np.float64).ravel()
        batch_count = int(batch.size)
        if batch_count == 0:
            return
        batch_mean = float(batch.mean())
        batch_m2 = float(np.square(batch - batch_mean).sum())
        if self.count == 0:
            self.count = batch_count
            self._mean = batch_mean
            self._m2 = batch_m2
            return
        total = self.count + batch_count
        delta = batch_mean - self._mean
        self._mean += delta * batch_count / total
        self._m2 += batch_m2 + delta * delta * self.count * batch_count / total
        self.count = total

    def mean(self) -> float:
        return self._mean

    def variance(self) -> float:
        if self.count > 1:
            return self._m2 / (self.count - 1)
        return 0.0

    def stddev(self) -> float:
        return math.sqrt(self.variance())

    def __repr__(self) -> str:
        return f"OnlineStats(count={self.count}, mean={self._mean:.6f}, variance={self.variance():.6f})"
