# modelfarm/training/preprocessing.py
"""
Preprocessing step of a training job:

    candles → samples → temporal split → fit stats on train → normalise all
"""
from __future__ import annotations

import random
from dataclasses import dataclass
from typing import List, Sequence

from modelfarm.contracts.market import Kline
from modelfarm.contracts.training import TrainingConfiguration
from modelfarm.features.engineering import TrainingSample, prepare_training_data
from modelfarm.features.normalization import NormalizationStats, apply_normalization, fit_normalization
from modelfarm.features.split import split_temporal
from modelfarm.utils.logger import logs


@dataclass
class PreparedData:
    train: List[TrainingSample]
    validation: List[TrainingSample]
    test: List[TrainingSample]
    norm_stats: NormalizationStats
    feature_names: List[str]

    def sizes(self) -> tuple[int, int, int]:
        return len(self.train), len(self.validation), len(self.test)


def preprocess(klines: Sequence[Kline], config: TrainingConfiguration) -> PreparedData:
    stream = prepare_training_data(klines, config.max_lags, config.forecast_horizon)
    names = stream.feature_names
    samples = list(stream)

    split = split_temporal(samples, config.validation_split, config.test_split)
    del samples

    stats = fit_normalization(split.train)
    prepared = PreparedData(
        train=apply_normalization(split.train, stats),
        validation=apply_normalization(split.validation, stats),
        test=apply_normalization(split.test, stats),
        norm_stats=stats,
        feature_names=names,
    )
    logs.info(
        f"[Preprocess] candles={len(klines)} train/val/test={prepared.sizes()} features={len(names)}"
    )
    return prepared


def shuffled(samples: Sequence[TrainingSample], seed: int) -> List[TrainingSample]:
    """
    Deterministic shuffle of the training split for a retry attempt.
    """
    out = list(samples)
    random.Random(seed).shuffle(out)
    return out
