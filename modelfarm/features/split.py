# modelfarm/features/split.py
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Generic, List, Sequence, TypeVar

from modelfarm.utils.errors import InsufficientData, InvalidArgument

T = TypeVar("T")

MIN_TOTAL_SAMPLES = 10
MIN_TRAIN_SAMPLES = 5


@dataclass
class DataSplit(Generic[T]):
    train: List[T]
    validation: List[T]
    test: List[T]

    def sizes(self) -> tuple[int, int, int]:
        return len(self.train), len(self.validation), len(self.test)


def split_temporal(samples: Sequence[T], validation_split: float, test_split: float) -> DataSplit[T]:
    """
    Time-ordered split, no shuffling:
        test  = ceil(n * test_split)        (tail)
        val   = ceil(n * validation_split)  (before test)
        train = remainder                   (head)
    """
    if not (0 <= validation_split < 1 and 0 <= test_split < 1):
        raise InvalidArgument("validation_split and test_split must be in [0, 1)")
    if validation_split + test_split >= 1:
        raise InvalidArgument("validation_split + test_split must be < 1")

    n = len(samples)
    if n < MIN_TOTAL_SAMPLES:
        raise InsufficientData(
            f"Insufficient data: need at least {MIN_TOTAL_SAMPLES} samples to split, got {n}"
        )

    n_test = math.ceil(n * test_split)
    n_val = math.ceil(n * validation_split)
    n_train = n - n_test - n_val
    if n_train < MIN_TRAIN_SAMPLES:
        raise InsufficientData(
            f"Insufficient data: training split has {n_train} samples, need at least {MIN_TRAIN_SAMPLES}"
        )

    items = list(samples)
    return DataSplit(
        train=items[:n_train],
        validation=items[n_train:n_train + n_val],
        test=items[n_train + n_val:],
    )
