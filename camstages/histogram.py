"""Histogram with quantile and inter-quantile mean calculations."""

from __future__ import annotations

import math
from itertools import accumulate
from typing import Iterable, Optional


class Histogram:
    """A histogram stored as cumulative frequencies."""

    def __init__(self, counts: Iterable[int]):
        counts = [int(c) for c in counts]
        if not counts:
            raise ValueError("Histogram: at least one bin is required")
        self._cumulative = [0, *accumulate(counts)]

    def bins(self) -> int:
        return len(self._cumulative) - 1

    def total(self) -> int:
        return self._cumulative[-1]

    def cumulative_freq(self, bin: float) -> int:
        """Cumulative frequency up to a fractional point in a bin."""
        if bin <= 0:
            return 0
        if bin >= self.bins():
            return self.total()
        b = int(bin)
        cum = self._cumulative
        return int(cum[b] + (bin - b) * (cum[b + 1] - cum[b]))

    def quantile(self, q: float, first: Optional[int] = None, last: Optional[int] = None) -> float:
        """Fractional bin of the point q (0 <= q <= 1) through the histogram."""
        cum = self._cumulative
        if first is None or first == -1:
            first = 0
        if last is None or last == -1:
            last = len(cum) - 2
        if first > last:
            raise ValueError("Histogram.quantile: first must not exceed last")
        items = max(0, int(q * self.total()))
        while first < last:
            middle = (first + last) // 2
            if cum[middle + 1] > items:
                last = middle
            else:
                first = middle + 1
        if not (cum[first] <= items <= cum[last + 1]):
            raise ValueError(f"Histogram.quantile: quantile {q} out of range")
        width = cum[first + 1] - cum[first]
        frac = 0.0 if width == 0 else (items - cum[first]) / width
        return first + frac

    def inter_quantile_mean(self, q_lo: float, q_hi: float) -> float:
        """Average bin value between two quantiles, using bin mid-points."""
        if not q_hi > q_lo:
            raise ValueError("Histogram.inter_quantile_mean: q_hi must exceed q_lo")
        cum = self._cumulative
        p_lo = self.quantile(q_lo)
        p_hi = self.quantile(q_hi, int(p_lo))
        sum_bin_freq = 0.0
        cumul_freq = 0.0
        p_next = math.floor(p_lo) + 1.0
        while p_next <= math.ceil(p_hi):
            bin_index = math.floor(p_lo)
            freq = (cum[bin_index + 1] - cum[bin_index]) * (min(p_next, p_hi) - p_lo)
            sum_bin_freq += bin_index * freq
            cumul_freq += freq
            p_lo = p_next
            p_next += 1.0
        if cumul_freq == 0:
            return math.nan
        return sum_bin_freq / cumul_freq + 0.5