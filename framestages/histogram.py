"""Cumulative histogram with quantile and inter-quantile mean queries."""

from __future__ import annotations

import math
from itertools import accumulate
from typing import Iterable, Optional


class Histogram:
    """A histogram stored as cumulative frequencies, one entry per bin edge."""

    def __init__(self, counts: Iterable[int]):
        counts = [int(c) for c in counts]
        if not counts:
            raise ValueError("a histogram needs at least one bin")
        self._cumulative = [0, *accumulate(counts)]

    def bins(self) -> int:
        """Number of bins."""
        return len(self._cumulative) - 1

    def total(self) -> int:
        """Sum of all bin counts."""
        return self._cumulative[-1]

    def cumulative_freq(self, bin: float) -> int:
        """Cumulative frequency up to a (fractional) point in a bin."""
        if bin <= 0:
            return 0
        if bin >= self.bins():
            return self.total()
        b = int(bin)
        c = self._cumulative
        return int(c[b] + (bin - b) * (c[b + 1] - c[b]))

    def quantile(self, q: float, first: Optional[int] = None, last: Optional[int] = None) -> float:
        """Return the fractional bin at which quantile ``q`` (0..1) lies.

        ``first`` and ``last`` optionally narrow the range of bins searched.
        """
        c = self._cumulative
        if first is None:
            first = 0
        if last is None:
            last = len(c) - 2
        if first > last:
            raise ValueError(f"first bin {first} is after last bin {last}")
        items = max(0, int(q * self.total()))
        while first < last:
            middle = (first + last) // 2
            if c[middle + 1] > items:
                last = middle
            else:
                first = middle + 1
        span = c[first + 1] - c[first]
        frac = 0.0 if span == 0 else (items - c[first]) / span
        return first + frac

    def inter_quantile_mean(self, q_lo: float, q_hi: float) -> float:
        """Return the mean bin value between two quantiles, measured at bin mid-points."""
        if not q_hi > q_lo:
            raise ValueError("q_hi must be greater than q_lo")
        c = self._cumulative
        p_lo = self.quantile(q_lo)
        p_hi = self.quantile(q_hi, int(p_lo))
        sum_bin_freq = 0.0
        cumul_freq = 0.0
        p_next = math.floor(p_lo) + 1.0
        while p_next <= math.ceil(p_hi):
            b = math.floor(p_lo)
            freq = (c[b + 1] - c[b]) * (min(p_next, p_hi) - p_lo)
            sum_bin_freq += b * freq
            cumul_freq += freq
            p_lo = p_next
            p_next += 1.0
        if cumul_freq == 0:
            return math.nan
        return sum_bin_freq / cumul_freq + 0.5