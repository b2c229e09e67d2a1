import math

import pytest

from camstages.histogram import Histogram


def test_bins_and_total():
    hist = Histogram([3, 0, 5, 2])
    assert hist.bins() == 4
    assert hist.total() == 10


def test_empty_histogram_rejected():
    with pytest.raises(ValueError):
        Histogram([])


def test_cumulative_freq_limits():
    hist = Histogram([3, 0, 5, 2])
    assert hist.cumulative_freq(-1) == 0
    assert hist.cumulative_freq(0) == 0
    assert hist.cumulative_freq(4) == hist.total()
    assert hist.cumulative_freq(100) == hist.total()


def test_cumulative_freq_monotonic():
    hist = Histogram([2, 7, 1, 4, 9])
    values = [hist.cumulative_freq(b / 4) for b in range(0, 21)]
    assert values == sorted(values)
    assert hist.cumulative_freq(2) <= hist.cumulative_freq(2.5) <= hist.cumulative_freq(3)


def test_quantile_limits_uniform():
    hist = Histogram([1] * 10)
    assert hist.quantile(0) == 0
    assert hist.quantile(1) == hist.bins()


def test_quantile_monotonic():
    hist = Histogram([5, 1, 0, 8, 3, 3])
    qs = [hist.quantile(q / 20) for q in range(21)]
    assert qs == sorted(qs)


def test_quantile_in_single_filled_bin():
    hist = Histogram([0, 0, 0, 10, 0])
    for q in [0.1, 0.3, 0.5, 0.9]:
        assert 3 <= hist.quantile(q) < 4


def test_quantile_rejects_bad_limits():
    hist = Histogram([1, 1, 1])
    with pytest.raises(ValueError):
        hist.quantile(0.5, first=2, last=1)


def test_quantile_rejects_out_of_range():
    hist = Histogram([1, 1, 1])
    with pytest.raises(ValueError):
        hist.quantile(2.0)


def test_inter_quantile_mean_single_bin_is_midpoint():
    hist = Histogram([0, 0, 0, 10, 0])
    assert hist.inter_quantile_mean(0.1, 0.9) == pytest.approx(3.5)


def test_inter_quantile_mean_symmetric():
    hist = Histogram([1, 4, 9, 9, 4, 1])
    assert hist.inter_quantile_mean(0.2, 0.8) == pytest.approx(hist.bins() / 2)
    assert hist.inter_quantile_mean(0.0, 1.0) == pytest.approx(hist.bins() / 2)


def test_inter_quantile_mean_within_quantiles():
    hist = Histogram([2, 9, 4, 0, 7, 1, 3])
    mean = hist.inter_quantile_mean(0.25, 0.75)
    assert hist.quantile(0.25) <= mean <= hist.quantile(0.75) + 1


def test_inter_quantile_mean_rejects_bad_order():
    hist = Histogram([1, 2, 3])
    with pytest.raises(ValueError):
        hist.inter_quantile_mean(0.5, 0.5)


def test_inter_quantile_mean_empty_range_is_nan():
    hist = Histogram([0, 0, 10, 0])
    mean = hist.inter_quantile_mean(0.0, 1e-9)
    assert math.isnan(mean) is True