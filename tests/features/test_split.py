#!filepath: tests/features/test_split.py
import pytest

from modelfarm.features import split_temporal
from modelfarm.utils.errors import InsufficientData, InvalidArgument


def test_split_sizes_use_ceiling_and_keep_order():
    items = list(range(100))
    split = split_temporal(items, validation_split=0.2, test_split=0.1)
    assert split.sizes() == (70, 20, 10)
    assert split.train == items[:70]
    assert split.validation == items[70:90]
    assert split.test == items[90:]


def test_ceiling_rounds_up_fractions():
    split = split_temporal(list(range(11)), 0.2, 0.1)
    # ceil(2.2)=3, ceil(1.1)=2
    assert split.sizes() == (6, 3, 2)


def test_zero_splits_keep_everything_in_train():
    split = split_temporal(list(range(10)), 0.0, 0.0)
    assert split.sizes() == (10, 0, 0)


def test_too_few_samples():
    with pytest.raises(InsufficientData):
        split_temporal(list(range(9)), 0.2, 0.1)


def test_train_split_too_small():
    with pytest.raises(InsufficientData):
        split_temporal(list(range(10)), 0.5, 0.3)


@pytest.mark.parametrize("val,test", [(-0.1, 0.1), (1.0, 0.0), (0.6, 0.4)])
def test_invalid_fractions(val, test):
    with pytest.raises(InvalidArgument):
        split_temporal(list(range(100)), val, test)
