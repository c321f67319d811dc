"""
SpectrumAccumulator
===================
Fills the pulse-height / pulse-area spectrum of one channel.

Per accepted peak:
  height = max(samples[lower_limit … upper_limit])
  area   = Σ samples[lower_limit … upper_limit]

Peaks are skipped when outside the analysis window, PSD-rejected, or
(with pileup rejection on) flagged as pileup.

Both raw values go to the ``heights`` / ``areas`` lists. The selected
quantity is passed through the channel calibration (if any) and filled
only when it lies in [min_threshold, max_threshold).

``rebin`` replays the value lists through the same fill path, so the
spectrum can be re-binned or re-calibrated without re-reading waveforms.
"""

from __future__ import annotations
import logging
from dataclasses import replace
import numpy as np

from waveform_spectra.histogram import Histogram1D
from waveform_spectra.settings import SpectrumSettings, QUANTITIES

logger = logging.getLogger(__name__)


class SpectrumAccumulator:

    def __init__(self, settings: SpectrumSettings = None, channel: int = 0,
                  calibrations=None, pileup_rejection: bool = True):
        self.settings         = settings or SpectrumSettings()
        self.channel          = channel
        self.calibrations     = calibrations
        self.pileup_rejection = pileup_rejection
        self._check_quantity(self.settings.quantity)
        self.spectrum = self.new_spectrum()
        self.heights: list[float] = []
        self.areas:   list[float] = []
        self.peaks_excluded: int = 0

    @staticmethod
    def _check_quantity(quantity):
        if quantity not in QUANTITIES:
            raise ValueError(f"Unknown spectrum quantity '{quantity}'. "
                             f"Use one of {QUANTITIES}.")

    def new_spectrum(self) -> Histogram1D:
        s = self.settings
        return Histogram1D(s.num_bins, s.xmin, s.xmax, name=f"spectrum_ch{self.channel}")

    def reset(self):
        self.spectrum = self.new_spectrum()
        self.heights, self.areas = [], []
        self.peaks_excluded = 0

    # ------------------------------------------------------------------ #
    # Accumulation
    # ------------------------------------------------------------------ #

    def excluded(self, peak) -> bool:
        return (not peak.analyze or peak.psd_reject
                or (self.pileup_rejection and peak.pileup))

    @staticmethod
    def measure(samples: np.ndarray, peak) -> tuple[float, float]:
        """(height, area) over the peak's limits, inclusive."""
        lo = max(0, peak.lower_limit)
        hi = min(len(samples) - 1, peak.upper_limit)
        segment = samples[lo:hi + 1]
        if segment.size == 0:
            return 0.0, 0.0
        return float(segment.max()), float(segment.sum())

    def accumulate(self, samples, peaks: list) -> int:
        """Add every accepted peak; returns how many were filled."""
        samples = np.asarray(samples, dtype=float)
        filled  = 0
        for peak in peaks:
            if self.excluded(peak):
                self.peaks_excluded += 1
                continue
            height, area = self.measure(samples, peak)
            self.heights.append(height)
            self.areas.append(area)
            raw = height if self.settings.quantity == "height" else area
            if self.fill(raw):
                filled += 1
        return filled

    def calibrated(self, raw: float) -> float:
        if self.calibrations is None:
            return raw
        return float(self.calibrations.calibrate(self.channel, raw))

    def in_thresholds(self, value: float) -> bool:
        lo, hi = self.settings.min_threshold, self.settings.max_threshold
        return (lo is None or value >= lo) and (hi is None or value < hi)

    def fill(self, raw: float) -> bool:
        value = self.calibrated(raw)
        if not self.in_thresholds(value):
            return False
        self.spectrum.fill(value)
        return True

    # ------------------------------------------------------------------ #
    # Re-binning
    # ------------------------------------------------------------------ #

    def values(self, quantity: str = None) -> list[float]:
        quantity = quantity or self.settings.quantity
        self._check_quantity(quantity)
        return self.heights if quantity == "height" else self.areas

    def rebin(self, num_bins: int = None, xmin: float = None, xmax: float = None,
               quantity: str = None) -> Histogram1D:
        """Rebuild the spectrum from the raw value lists."""
        changes = {k: v for k, v in (("num_bins", num_bins), ("xmin", xmin),
                                     ("xmax", xmax), ("quantity", quantity))
                   if v is not None}
        if changes:
            self._check_quantity(changes.get("quantity", self.settings.quantity))
            self.settings = replace(self.settings, **changes)
        self.spectrum = self.new_spectrum()
        for raw in self.values():
            self.fill(raw)
        logger.debug("Rebinned ch%d %s spectrum: %d bins [%g, %g), %d entries",
                     self.channel, self.settings.quantity, self.settings.num_bins,
                     self.settings.xmin, self.settings.xmax, self.spectrum.entries)
        return self.spectrum
