# tests/test_batch_sizer.py
import pytest

from dqmodules.data_quality.lib.batch_sizer import AdaptiveBatchSizer


@pytest.fixture
def sizer():
    return AdaptiveBatchSizer(min_batch=50, max_batch=2000)


@pytest.mark.parametrize(
    "current, fraction, expected",
    [
        (200, 0.40, 250),  # ceil(200 * 1.25)
        (313, 0.10, 392),  # ceil(391.25)
        (200, 0.80, 150),  # floor(200 * 0.75)
        (313, 0.95, 234),  # floor(234.75)
        (200, 0.60, 200),
        (200, 0.50, 200),  # boundaries are "unchanged"
        (200, 0.70, 200),
    ],
)
def test_next_batch_size(sizer, current, fraction, expected):
    assert sizer.next_batch_size(current, fraction) == expected


def test_results_are_clamped(sizer):
    assert sizer.next_batch_size(1900, 0.1) == 2000
    assert sizer.next_batch_size(60, 0.9) == 50
    assert sizer.next_batch_size(2000, 0.0) == 2000
    assert sizer.next_batch_size(50, 1.0) == 50


def test_shrink_and_grow_are_strict_inside_bounds():
    sizer = AdaptiveBatchSizer(min_batch=1, max_batch=500)
    for size in range(1, 501):
        grown = sizer.next_batch_size(size, 0.2)
        shrunk = sizer.next_batch_size(size, 0.9)
        assert 1 <= shrunk <= grown <= 500
        if size < 500:
            assert grown > size
        if size > 1:
            assert shrunk < size


def test_growth_sequence_from_initial_batch(sizer):
    sizes = [200]
    while sizes[-1] < 2000:
        sizes.append(sizer.next_batch_size(sizes[-1], 0.4))
    assert sizes == [200, 250, 313, 392, 490, 613, 767, 959, 1199, 1499, 1874, 2000]


@pytest.mark.parametrize("lo, hi", [(0, 10), (10, 5)])
def test_invalid_bounds(lo, hi):
    with pytest.raises(ValueError):
        AdaptiveBatchSizer(min_batch=lo, max_batch=hi)
