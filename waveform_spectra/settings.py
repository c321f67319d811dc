"""
Settings
========
Processing configuration, grouped by pipeline stage.

Every group is a plain dataclass with working defaults, so a pipeline can
be built with ``AnalysisSettings()`` and tuned field by field. A JSON
settings file mirrors the same nesting:

  {
    "waveform":    {"channel": 0, "polarity": -1, ...},
    "peak_finder": {"floor": 50, "sigma": 2.0, ...},
    "spectrum":    {"quantity": "area", "num_bins": 200, ...},
    "psd":         {...},
    "background":  {...},
    "parallel":    {"workers": 4},
    "calibrations": {"0": {"mode": "fit", "order": 1,
                           "points": [[1000, 477.3], [2500, 1061.7]]}},
    "psd_regions":  {"0": {"points": [[...], ...], "accept_inside": true}}
  }

The calibration and region tables are turned into live objects by
``build_calibrations`` / ``build_psd_regions``.
"""

from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


WAVEFORM_KINDS  = ("raw", "baseline_subtracted", "zero_suppressed")
KIND_ALIASES    = {"bs": "baseline_subtracted", "zs": "zero_suppressed"}
FINDER_MODES    = ("peak_finder", "whole_waveform")
QUANTITIES      = ("height", "area")
BG_DIRECTIONS   = ("increasing", "decreasing")


def resolve_kind(kind: str) -> str:
    kind = KIND_ALIASES.get(kind, kind)
    if kind not in WAVEFORM_KINDS:
        raise ValueError(f"Unknown waveform kind '{kind}'. "
                         f"Use one of {WAVEFORM_KINDS}.")
    return kind


@dataclass
class WaveformSettings:
    channel:       int = 0
    kind:          str = "baseline_subtracted"
    polarity:      int = 1
    baseline_min:  int = 0
    baseline_max:  int = 100
    zs_ceiling:    float = 10.0
    zs_buffer:     int = 10


@dataclass
class PeakFinderSettings:
    mode:             str   = "peak_finder"
    sigma:            float = 2.0       # minimum peak separation (samples)
    threshold:        float = 0.05      # fraction of the tallest candidate
    max_peaks:        int   = 10
    floor:            float = 50.0
    smoothing:        bool  = False
    pileup_rejection: bool  = True
    analysis_min:     int   = 0
    analysis_max:     Optional[int] = None   # None = end of waveform


@dataclass
class SpectrumSettings:
    quantity:      str   = "area"
    num_bins:      int   = 200
    xmin:          float = 0.0
    xmax:          float = 30000.0
    min_threshold: Optional[float] = None
    max_threshold: Optional[float] = None
    events:        Optional[int] = None      # None = every event in the source


@dataclass
class PSDSettings:
    enabled:                 bool  = False
    total_start:             int   = -10
    total_stop:              int   = 100
    tail_start:              int   = 20
    tail_stop:               int   = 100
    threshold:               float = 0.0
    ratio:                   bool  = False
    total_in_physical_units: bool  = False
    num_total_bins:          int   = 150
    total_min:               float = 0.0
    total_max:               float = 30000.0
    num_tail_bins:           int   = 150
    tail_min:                float = 0.0
    tail_max:                float = 10000.0


@dataclass
class BackgroundSettings:
    iterations:      int   = 20
    range_min:       Optional[float] = None
    range_max:       Optional[float] = None
    smoothing:       bool  = True
    direction:       str   = "decreasing"
    filter_order:    int   = 2
    smoothing_width: int   = 3


@dataclass
class ParallelSettings:
    workers:       int = 1
    start_method:  str = "spawn"


_GROUPS = {
    "waveform":    WaveformSettings,
    "peak_finder": PeakFinderSettings,
    "spectrum":    SpectrumSettings,
    "psd":         PSDSettings,
    "background":  BackgroundSettings,
    "parallel":    ParallelSettings,
}


@dataclass
class AnalysisSettings:
    waveform:    WaveformSettings   = field(default_factory=WaveformSettings)
    peak_finder: PeakFinderSettings = field(default_factory=PeakFinderSettings)
    spectrum:    SpectrumSettings   = field(default_factory=SpectrumSettings)
    psd:         PSDSettings        = field(default_factory=PSDSettings)
    background:  BackgroundSettings = field(default_factory=BackgroundSettings)
    parallel:    ParallelSettings   = field(default_factory=ParallelSettings)

    def validate(self) -> "AnalysisSettings":
        self.waveform.kind = resolve_kind(self.waveform.kind)
        if self.waveform.polarity not in (1, -1):
            raise ValueError("polarity must be +1 or -1")
        if not 0 <= self.waveform.baseline_min < self.waveform.baseline_max:
            raise ValueError(
                f"Invalid baseline window [{self.waveform.baseline_min}, "
                f"{self.waveform.baseline_max})")
        if self.peak_finder.mode not in FINDER_MODES:
            raise ValueError(f"Unknown peak finder mode '{self.peak_finder.mode}'.")
        if self.spectrum.quantity not in QUANTITIES:
            raise ValueError(f"Unknown spectrum quantity '{self.spectrum.quantity}'.")
        if self.background.direction not in BG_DIRECTIONS:
            raise ValueError(f"Unknown background direction "
                             f"'{self.background.direction}'.")
        if self.parallel.workers < 1:
            raise ValueError("workers must be >= 1")
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "AnalysisSettings":
        kwargs = {}
        for group, group_cls in _GROUPS.items():
            values = dict(data.get(group, {}))
            known  = {f.name for f in fields(group_cls)}
            unknown = set(values) - known
            if unknown:
                raise ValueError(f"Unknown '{group}' settings: {sorted(unknown)}")
            kwargs[group] = group_cls(**values)
        extra = set(data) - set(_GROUPS) - {"calibrations", "psd_regions"}
        if extra:
            raise ValueError(f"Unknown settings groups: {sorted(extra)}")
        return cls(**kwargs).validate()

    def to_dict(self) -> dict:
        return asdict(self)


# ── Settings file ──────────────────────────────────────────────────────── #

def load_settings(filepath) -> tuple[AnalysisSettings, dict, dict]:
    """
    Read a JSON settings file.

    Returns (settings, calibration_table, region_table); the two tables
    are the raw per-channel dicts, keyed by int channel.
    """
    path = Path(filepath)
    with open(path, "r") as f:
        data = json.load(f)
    settings = AnalysisSettings.from_dict(data)
    calibrations = {int(k): v for k, v in data.get("calibrations", {}).items()}
    regions      = {int(k): v for k, v in data.get("psd_regions", {}).items()}
    logger.info("Loaded settings from %s (%d calibration(s), %d PSD region(s))",
                path, len(calibrations), len(regions))
    return settings, calibrations, regions


def build_calibrations(table: dict):
    """Turn a calibration table into a CalibrationManager."""
    from waveform_spectra.calib_fitter import CalibrationManager

    manager = CalibrationManager()
    for channel, spec in table.items():
        for i, (raw, phys) in enumerate(spec.get("points", [])):
            manager.set_point(channel, i, raw, phys)
        result = manager.set_calibration(channel,
                                         mode=spec.get("mode", "interpolation"),
                                         order=int(spec.get("order", 1)))
        if not result.success:
            logger.warning("Calibration for channel %d not activated: %s",
                           channel, result.reason)
    return manager


def build_psd_regions(table: dict) -> dict:
    """Turn a region table into {channel: PSDRegion}; degenerate entries are skipped."""
    from waveform_spectra.psd_integrator import PSDRegion

    regions = {}
    for channel, spec in table.items():
        region = PSDRegion.from_points(spec.get("points", []),
                                       accept_inside=spec.get("accept_inside", True))
        if region is None:
            logger.warning("PSD region for channel %d has fewer than 3 points; ignored",
                           channel)
            continue
        regions[channel] = region
    return regions
