"""
AnalysisPipeline
================
One processing context: WaveformBuilder → PeakFinder → PSDIntegrator →
SpectrumAccumulator over a range of events of one channel.

Every run or worker process builds its own pipeline; nothing is shared
between pipelines, so a shard's result depends only on its event range.

Modes:
  histogram     fill the pulse-height/area spectrum (PSD flags applied
                when psd.enabled)
  discriminate  fill the (total, tail) PSD histogram
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
import numpy as np

from waveform_spectra.histogram import Histogram1D, Histogram2D
from waveform_spectra.peak_finder import PeakFinder, Peak
from waveform_spectra.psd_integrator import PSDIntegrator
from waveform_spectra.settings import AnalysisSettings
from waveform_spectra.spectrum_accumulator import SpectrumAccumulator
from waveform_spectra.waveform_builder import WaveformBuilder

logger = logging.getLogger(__name__)

MODES = ("histogram", "discriminate")

COUNTERS = (
    "waveforms_processed",
    "waveforms_empty",
    "waveforms_short",
    "waveforms_without_peaks",
    "peaks_found",
    "peaks_clamped",
    "peaks_pileup",
    "peaks_psd_rejected",
    "peaks_excluded",
    "peaks_accepted",
)


def check_mode(mode: str) -> str:
    if mode not in MODES:
        raise ValueError(f"Unknown processing mode '{mode}'. Use one of {MODES}.")
    return mode


@dataclass
class PartialResult:
    """Everything one shard contributes to the merged result."""
    rank:     int
    start:    int
    end:      int
    spectrum: Histogram1D
    psd:      Histogram2D
    counters: dict = field(default_factory=dict)
    heights:  list = field(default_factory=list)
    areas:    list = field(default_factory=list)
    totals:   list = field(default_factory=list)
    tails:    list = field(default_factory=list)


@dataclass
class WaveformAnalysis:
    channel:  int
    index:    int
    kind:     str
    samples:  np.ndarray
    baseline: float
    peaks:    list
    height:   float
    area:     float


@dataclass
class CountRate:
    waveforms:         int
    total_peaks:       int
    instantaneous_hz:  float
    average_hz:        float


class AnalysisPipeline:

    def __init__(self, source, settings: AnalysisSettings = None,
                  calibrations=None, regions: dict = None, search=None):
        self.source       = source
        self.settings     = settings or AnalysisSettings()
        self.calibrations = calibrations
        self.channel      = self.settings.waveform.channel

        self.builder     = WaveformBuilder(source, self.settings.waveform)
        self.finder      = PeakFinder(self.settings.peak_finder, search=search)
        self.psd         = PSDIntegrator(self.settings.psd, self.channel,
                                         calibrations, regions)
        self.accumulator = SpectrumAccumulator(
            self.settings.spectrum, self.channel, calibrations,
            pileup_rejection=self.settings.peak_finder.pileup_rejection)
        self.counters = dict.fromkeys(COUNTERS, 0)

    def reset(self):
        self.finder.reset()
        self.psd.reset()
        self.accumulator.reset()
        self.counters = dict.fromkeys(COUNTERS, 0)

    # ------------------------------------------------------------------ #
    # Per event
    # ------------------------------------------------------------------ #

    def process_event(self, index: int, mode: str = "histogram") -> list[Peak]:
        short_before = self.builder.short_events
        samples = self.builder.build(self.channel, index)
        self.counters["waveforms_processed"] += 1
        if self.builder.short_events > short_before:
            self.counters["waveforms_short"] += 1
            return []
        if samples.size == 0:
            self.counters["waveforms_empty"] += 1
            return []

        clamped_before = self.finder.peaks_clamped
        peaks = self.finder.find_peaks(samples)
        if not peaks:
            self.counters["waveforms_without_peaks"] += 1
            return peaks

        self.counters["peaks_found"]   += len(peaks)
        self.counters["peaks_clamped"] += self.finder.peaks_clamped - clamped_before
        self.counters["peaks_pileup"]  += sum(p.pileup for p in peaks)

        if mode == "discriminate" or self.settings.psd.enabled:
            rejected_before = self.psd.peaks_rejected
            self.psd.compute(samples, peaks)
            self.counters["peaks_psd_rejected"] += self.psd.peaks_rejected - rejected_before

        if mode == "histogram":
            excluded_before = self.accumulator.peaks_excluded
            accepted_before = len(self.accumulator.heights)
            self.accumulator.accumulate(samples, peaks)
            self.counters["peaks_excluded"] += (self.accumulator.peaks_excluded
                                                - excluded_before)
            self.counters["peaks_accepted"] += (len(self.accumulator.heights)
                                                - accepted_before)
        return peaks

    def process_range(self, start: int, end: int, mode: str = "histogram",
                       rank: int = 0) -> PartialResult:
        """Run events [start, end) from a clean state and package the result."""
        check_mode(mode)
        self.reset()
        for index in range(start, end):
            self.process_event(index, mode)
        logger.debug("rank %d processed events [%d, %d): %d peaks found",
                     rank, start, end, self.counters["peaks_found"])
        return PartialResult(
            rank=rank, start=start, end=end,
            spectrum=self.accumulator.spectrum,
            psd=self.psd.histogram,
            counters=dict(self.counters),
            heights=list(self.accumulator.heights),
            areas=list(self.accumulator.areas),
            totals=list(self.psd.totals),
            tails=list(self.psd.tails),
        )

    # ------------------------------------------------------------------ #
    # Single waveform
    # ------------------------------------------------------------------ #

    def analyze_waveform(self, index: int, kind: str = None) -> WaveformAnalysis:
        kind    = kind or self.settings.waveform.kind
        samples = self.builder.build(self.channel, index, kind)
        peaks   = self.finder.find_peaks(samples) if samples.size else []
        if samples.size and self.settings.psd.enabled:
            self.psd.compute(samples, peaks)
        return WaveformAnalysis(
            channel=self.channel, index=index, kind=kind, samples=samples,
            baseline=self.builder.baseline, peaks=peaks,
            height=float(samples.max()) if samples.size else 0.0,
            area=float(samples.sum()) if samples.size else 0.0)


def calculate_count_rate(pipeline: AnalysisPipeline, n_events: int,
                          pulse_width_us: float, rep_rate_hz: float) -> CountRate:
    """
    Peak count rate over the first ``n_events`` waveforms.

      instantaneous = peaks / (pulse_width · n_events)
      average       = instantaneous · pulse_width · rep_rate

    ``n_events`` is clamped to what the source holds.
    """
    if n_events <= 0:
        raise ValueError("n_events must be positive")
    if pulse_width_us <= 0:
        raise ValueError("pulse_width_us must be positive")
    available = pipeline.source.event_count(pipeline.channel)
    if n_events > available:
        logger.warning("Requested %d events, source has %d; clamping",
                       n_events, available)
        n_events = available
    if n_events == 0:
        raise ValueError(f"Channel {pipeline.channel} has no events")

    before = pipeline.finder.total_peaks
    for index in range(n_events):
        samples = pipeline.builder.build(pipeline.channel, index)
        pipeline.finder.find_peaks(samples)
    total = pipeline.finder.total_peaks - before

    window = pulse_width_us * 1e-6
    inst   = total / (window * n_events)
    rate = CountRate(waveforms=n_events, total_peaks=total,
                     instantaneous_hz=inst, average_hz=inst * window * rep_rate_hz)
    logger.info("Count rate over %d waveforms: %d peaks, %.4g Hz instantaneous, "
                "%.4g Hz average", n_events, total, rate.instantaneous_hz,
                rate.average_hz)
    return rate
