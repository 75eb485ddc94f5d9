# modelfarm/features/normalization.py
"""
Per-feature z-score normalisation.

Stats are fitted on the training split only and then reused, unchanged,
for validation / test / production inputs.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Sequence

import numpy as np

from .engineering import TrainingSample

STD_FLOOR = 1e-8


@dataclass(frozen=True)
class NormalizationStats:
    means: List[float]
    stds: List[float]

    @property
    def feature_count(self) -> int:
        return len(self.means)

    def to_dict(self) -> dict:
        return {"means": list(self.means), "stds": list(self.stds)}

    @classmethod
    def from_dict(cls, d: dict) -> "NormalizationStats":
        return cls(means=[float(x) for x in d["means"]], stds=[float(x) for x in d["stds"]])


def fit_normalization(samples: Iterable[TrainingSample]) -> NormalizationStats:
    """
    Single-pass Welford; population standard deviation.
    A std below STD_FLOOR becomes 1 so constant features pass through centred.
    """
    count = 0
    mean = None
    m2 = None
    for s in samples:
        x = np.asarray(s.features, dtype=np.float64)
        if mean is None:
            mean = np.zeros_like(x)
            m2 = np.zeros_like(x)
        count += 1
        delta = x - mean
        mean += delta / count
        m2 += delta * (x - mean)

    if count == 0:
        return NormalizationStats(means=[], stds=[])

    std = np.sqrt(m2 / count)
    std = np.where(std < STD_FLOOR, 1.0, std)
    return NormalizationStats(means=mean.tolist(), stds=std.tolist())


def normalize_matrix(X: np.ndarray, stats: NormalizationStats) -> np.ndarray:
    if X.size == 0:
        return X
    return (X - np.asarray(stats.means)) / np.asarray(stats.stds)


def apply_normalization(samples: Sequence[TrainingSample], stats: NormalizationStats) -> List[TrainingSample]:
    means = np.asarray(stats.means, dtype=np.float64)
    stds = np.asarray(stats.stds, dtype=np.float64)
    return [s.with_features((s.features - means) / stds) for s in samples]
