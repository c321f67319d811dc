"""
WaveformBuilder
===============
Turns one (channel, event) read from a source into an analysis buffer.

Kinds:
  raw                  samples as read
  baseline_subtracted  polarity · (sample − baseline)
  zero_suppressed      baseline-subtracted samples above ``zs_ceiling``,
                       followed by ``zs_buffer`` zero samples

The baseline is the mean over [baseline_min, baseline_max) of the raw
samples. It is recomputed for every waveform; the value used by the most
recent build is left on ``builder.baseline``.

A waveform shorter than the baseline window cannot be baseline-subtracted;
it builds to an empty buffer and is counted in ``builder.short_events``.
"""

from __future__ import annotations
import logging
import numpy as np

from waveform_spectra.settings import WaveformSettings, resolve_kind

logger = logging.getLogger(__name__)


class WaveformBuilder:

    def __init__(self, source, settings: WaveformSettings = None):
        self.source   = source
        self.settings = settings or WaveformSettings()
        self.baseline: float = 0.0
        self.short_events: int = 0

    def build(self, channel: int, index: int, kind: str = None) -> np.ndarray:
        kind = resolve_kind(kind or self.settings.kind)
        raw  = np.asarray(self.source.read_event(channel, index), dtype=float)

        if kind == "raw":
            return raw.copy()
        if raw.size == 0:
            logger.debug("ch%d event %d has no samples", channel, index)
            return raw.copy()
        if raw.size < self.settings.baseline_max:
            self.short_events += 1
            logger.debug("ch%d event %d has %d samples, shorter than the baseline "
                         "window; skipped", channel, index, raw.size)
            return np.array([], dtype=float)

        subtracted = self.subtract_baseline(raw)
        if kind == "baseline_subtracted":
            return subtracted
        return self.zero_suppress(subtracted)

    # ------------------------------------------------------------------ #
    # Steps
    # ------------------------------------------------------------------ #

    def calculate_baseline(self, raw: np.ndarray) -> float:
        lo, hi = self.settings.baseline_min, self.settings.baseline_max
        if not 0 <= lo < hi <= len(raw):
            raise ValueError(
                f"Baseline window [{lo}, {hi}) does not fit a "
                f"{len(raw)}-sample waveform")
        self.baseline = float(np.mean(raw[lo:hi]))
        return self.baseline

    def subtract_baseline(self, raw: np.ndarray) -> np.ndarray:
        baseline = self.calculate_baseline(raw)
        return self.settings.polarity * (raw - baseline)

    def zero_suppress(self, subtracted: np.ndarray) -> np.ndarray:
        kept = subtracted[subtracted > self.settings.zs_ceiling]
        return np.concatenate([kept, np.zeros(self.settings.zs_buffer)])
