from .engineering import (
    SampleStream,
    TrainingSample,
    feature_names,
    minimum_candles,
    prepare_training_data,
    to_arrays,
)
from .normalization import NormalizationStats, apply_normalization, fit_normalization, normalize_matrix
from .split import DataSplit, split_temporal
