"""
PeakFinder
==========
Peak detection and boundary resolution on one analysis buffer.

Peak-finder mode, per waveform:
  1. search      — candidate (x, y) pairs from the search primitive
  2. floor       — keep candidates with y > floor; ids are 1-based
  3. limits      — lower/upper limits from the floor crossings
  4. pileup      — peaks sharing a lower limit are flagged

Whole-waveform mode skips all four steps: one peak at the global
maximum, limits spanning the analysis window.

Floor crossings:
  rising   first sample >= floor after a sample below it
  falling  last sample >= floor before a sample below it

so a rectangular pulse over samples [a, b] has rising a and falling b.
A peak whose limit cannot be resolved (pulse truncated at the buffer
edge) keeps its place in the list with that limit clamped to the buffer
edge and ``limits_clamped`` set.
"""

from __future__ import annotations
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Optional
import numpy as np

from waveform_spectra.kernels import search_peaks
from waveform_spectra.settings import PeakFinderSettings, FINDER_MODES

logger = logging.getLogger(__name__)


@dataclass
class Peak:
    peak_id:        int
    position_x:     int
    position_y:     float
    lower_limit:    int  = 0
    upper_limit:    int  = 0
    analyze:        bool = True
    pileup:         bool = False
    psd_reject:     bool = False
    limits_clamped: bool = False


class PeakFinder:
    """
    settings      : PeakFinderSettings (floor, sigma, threshold, window …)
    search        : search primitive, defaults to kernels.search_peaks
    total_peaks   : peaks found across every waveform seen so far
    peaks_clamped : how many of those had a limit clamped to the edge
    """

    def __init__(self, settings: PeakFinderSettings = None,
                  search: Optional[Callable] = None):
        self.settings = settings or PeakFinderSettings()
        self.search   = search or search_peaks
        self.total_peaks:   int = 0
        self.peaks_clamped: int = 0

    def reset(self):
        self.total_peaks   = 0
        self.peaks_clamped = 0

    # ------------------------------------------------------------------ #
    # Entry point
    # ------------------------------------------------------------------ #

    def find_peaks(self, samples, mode: str = None) -> list[Peak]:
        samples = np.asarray(samples, dtype=float)
        mode    = mode or self.settings.mode
        if mode not in FINDER_MODES:
            raise ValueError(f"Unknown peak finder mode '{mode}'. "
                             f"Use one of {FINDER_MODES}.")
        if samples.size == 0:
            return []

        if mode == "whole_waveform":
            peaks = [self.whole_waveform(samples)]
        else:
            s = self.settings
            candidates = self.search(samples, s.sigma, s.threshold,
                                     s.max_peaks, s.smoothing)
            kept  = [(x, y) for x, y in candidates if y > s.floor]
            peaks = [Peak(peak_id=i + 1, position_x=int(x), position_y=float(y))
                     for i, (x, y) in enumerate(kept)]
            if not peaks:
                return []
            self.find_peak_limits(samples, peaks)
            if s.pileup_rejection:
                self.reject_pileup(peaks)

        self.flag_analysis_window(peaks, len(samples))
        self.total_peaks += len(peaks)
        return peaks

    # ------------------------------------------------------------------ #
    # Steps
    # ------------------------------------------------------------------ #

    def analysis_window(self, n_samples: int) -> tuple[int, int]:
        """[lo, hi) analysis window clipped to the buffer."""
        lo = max(0, int(self.settings.analysis_min))
        hi = self.settings.analysis_max
        hi = n_samples if hi is None else min(int(hi), n_samples)
        return lo, max(lo, hi)

    def whole_waveform(self, samples: np.ndarray) -> Peak:
        lo, hi = self.analysis_window(len(samples))
        x = int(np.argmax(samples))
        return Peak(peak_id=1, position_x=x, position_y=float(samples[x]),
                    lower_limit=lo, upper_limit=max(lo, hi - 1))

    @staticmethod
    def find_crossings(samples: np.ndarray, floor: float
                        ) -> tuple[np.ndarray, np.ndarray]:
        above   = np.asarray(samples) >= floor
        rising  = np.flatnonzero(above[1:] & ~above[:-1]) + 1
        falling = np.flatnonzero(above[:-1] & ~above[1:])
        return rising, falling

    def find_peak_limits(self, samples: np.ndarray, peaks: list[Peak]):
        rising, falling = self.find_crossings(samples, self.settings.floor)
        last = len(samples) - 1

        for peak in peaks:
            x = peak.position_x

            if len(rising) == 1:
                lower = int(rising[0])
            else:
                left  = rising[rising <= x]
                lower = int(left[-1]) if len(left) else None

            if len(falling) == 1:
                upper = int(falling[0])
            else:
                right = falling[falling >= x]
                upper = int(right[0]) if len(right) else None

            if lower is None or upper is None:
                peak.limits_clamped = True
                self.peaks_clamped += 1
                logger.debug("Peak %d at x=%d: unresolved %s limit, clamped",
                             peak.peak_id, x,
                             "lower" if lower is None else "upper")
            peak.lower_limit = 0 if lower is None else lower
            peak.upper_limit = last if upper is None else upper

    @staticmethod
    def reject_pileup(peaks: list[Peak]):
        shared = Counter(p.lower_limit for p in peaks)
        for p in peaks:
            p.pileup = shared[p.lower_limit] != 1

    def flag_analysis_window(self, peaks: list[Peak], n_samples: int):
        lo, hi = self.analysis_window(n_samples)
        for p in peaks:
            p.analyze = lo <= p.position_x < hi
