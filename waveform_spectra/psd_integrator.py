"""
PSDIntegrator
=============
Pulse-shape discrimination features for each analysed peak.

  total = Σ samples[x + total_start … x + total_stop]
  tail  = Σ samples[x + tail_start  … x + tail_stop]

Both windows are inclusive and clipped to the buffer. In ratio mode the
tail is replaced by tail/total (0 when total is 0). With
``total_in_physical_units`` the total is mapped through the channel's
calibration before the region test.

Region test (per channel, optional): a closed polygon in (total, tail)
space with an accept_inside flag.

  inside  & accept_inside      → accepted
  outside & not accept_inside  → accepted
  anything else                → peak.psd_reject = True

Peaks with total <= threshold, and rejected peaks, are kept out of the
2-D (total, tail) histogram. The region test still runs for them.
"""

from __future__ import annotations
import logging
import numpy as np
from matplotlib.path import Path

from waveform_spectra.histogram import Histogram2D, Histogram1D
from waveform_spectra.settings import PSDSettings

logger = logging.getLogger(__name__)


class PSDRegion:

    def __init__(self, points, accept_inside: bool = True):
        pts = np.asarray(points, dtype=float)
        self.points        = pts
        self.accept_inside = bool(accept_inside)
        self._path = Path(np.vstack([pts, pts[:1]]), closed=True)

    @classmethod
    def from_points(cls, points, accept_inside: bool = True):
        """Close a polygon; None when fewer than 3 vertices are given."""
        pts = np.asarray(points, dtype=float)
        if pts.ndim != 2 or pts.shape[1] != 2 or len(pts) < 3:
            return None
        return cls(pts, accept_inside)

    def contains(self, total: float, tail: float) -> bool:
        return bool(self._path.contains_point((total, tail)))

    def accepts(self, total: float, tail: float) -> bool:
        return self.contains(total, tail) == self.accept_inside

    def to_dict(self) -> dict:
        return {"points": self.points.tolist(), "accept_inside": self.accept_inside}


class PSDIntegrator:
    """
    regions      : dict[int, PSDRegion]     — per-channel accept/reject polygons
    histogram    : Histogram2D (total, tail)
    totals/tails : values filled into the histogram, in fill order
    """

    def __init__(self, settings: PSDSettings = None, channel: int = 0,
                  calibrations=None, regions: dict = None):
        self.settings     = settings or PSDSettings()
        self.channel      = channel
        self.calibrations = calibrations
        self.regions: dict[int, PSDRegion] = dict(regions or {})
        self.histogram = self.new_histogram()
        self.totals: list[float] = []
        self.tails:  list[float] = []
        self.peaks_rejected: int = 0
        self.peaks_below_threshold: int = 0

    def new_histogram(self) -> Histogram2D:
        s = self.settings
        return Histogram2D(s.num_total_bins, s.total_min, s.total_max,
                           s.num_tail_bins, s.tail_min, s.tail_max, name="psd")

    def reset(self):
        self.histogram = self.new_histogram()
        self.totals, self.tails = [], []
        self.peaks_rejected = 0
        self.peaks_below_threshold = 0

    # ------------------------------------------------------------------ #
    # Regions
    # ------------------------------------------------------------------ #

    def set_region(self, channel: int, points, accept_inside: bool = True) -> bool:
        region = PSDRegion.from_points(points, accept_inside)
        if region is None:
            logger.warning("PSD region for ch%d needs at least 3 points; "
                           "region unchanged", channel)
            return False
        self.regions[channel] = region
        return True

    def clear_region(self, channel: int = None):
        if channel is None:
            self.regions.clear()
        else:
            self.regions.pop(channel, None)

    # ------------------------------------------------------------------ #
    # Integration
    # ------------------------------------------------------------------ #

    @staticmethod
    def _window_sum(samples: np.ndarray, lo: int, hi: int) -> float:
        lo = max(0, lo)
        hi = min(len(samples) - 1, hi)
        if hi < lo:
            return 0.0
        return float(np.sum(samples[lo:hi + 1]))

    def integrals(self, samples: np.ndarray, x: int) -> tuple[float, float]:
        s = self.settings
        total = self._window_sum(samples, x + s.total_start, x + s.total_stop)
        tail  = self._window_sum(samples, x + s.tail_start,  x + s.tail_stop)
        if s.ratio:
            tail = tail / total if total != 0 else 0.0
        if s.total_in_physical_units and self.calibrations is not None:
            total = float(self.calibrations.calibrate(self.channel, total))
        return total, tail

    def compute(self, samples, peaks: list) -> list:
        """Set psd_reject on each analysed peak and fill the PSD histogram."""
        samples = np.asarray(samples, dtype=float)
        region  = self.regions.get(self.channel)

        for peak in peaks:
            if not peak.analyze:
                continue
            total, tail = self.integrals(samples, peak.position_x)

            if region is not None and not region.accepts(total, tail):
                peak.psd_reject = True
                self.peaks_rejected += 1

            if total <= self.settings.threshold:
                self.peaks_below_threshold += 1
                continue
            if peak.psd_reject:
                continue
            self.histogram.fill(total, tail)
            self.totals.append(total)
            self.tails.append(tail)
        return peaks

    # ------------------------------------------------------------------ #
    # Slices
    # ------------------------------------------------------------------ #

    def slice(self, axis: str, value: float,
               histogram: Histogram2D = None) -> Histogram1D:
        """
        1-D cut through the PSD histogram.

        axis="total": tail distribution in the total bin containing value
        axis="tail" : total distribution in the tail bin containing value
        """
        h = histogram if histogram is not None else self.histogram
        if axis == "total":
            return h.project_y(h.x_axis.find_bin(value))
        if axis == "tail":
            return h.project_x(h.y_axis.find_bin(value))
        raise ValueError(f"Unknown slice axis '{axis}'. Use 'total' or 'tail'.")
