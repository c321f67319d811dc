"""
BackgroundEngine
================
Operations on an accumulated (usually merged) spectrum:

  estimate_background  background under the spectrum within [range_min,
                       range_max], returned on the full original binning
  subtract             raw − background, variances added, entries reset
                       to the resulting integral
  integrate            counts between two fractional x positions, summed
                       from the bins or from a Gaussian fit over the same
                       range
  derivative           bin-to-bin difference c[i] − c[i−1]
  find_peaks           peak search over the spectrum, in axis units

Gaussian-mode uncertainty: the fitted curve is integrated again with all
parameters shifted by +1σ and by −1σ; the error is the mean of the two
|shifted − nominal| deltas.
"""

from __future__ import annotations
import logging
import numpy as np
from dataclasses import dataclass, field
from typing import Callable, Optional
from scipy.special import erf

from waveform_spectra.histogram import Histogram1D
from waveform_spectra.kernels import (estimate_background as snip_background,
                                      fit_gaussian, search_peaks, GaussianFit)
from waveform_spectra.settings import BackgroundSettings

logger = logging.getLogger(__name__)


@dataclass
class IntegralResult:
    value:    float
    error:    float
    lower:    float
    upper:    float
    success:  bool  = True
    reason:   str   = ""
    fit:      Optional[GaussianFit] = None

    def __str__(self):
        if not self.success:
            return f"Integral [{self.lower:g}, {self.upper:g}]: FAIL ({self.reason})"
        return (f"Integral [{self.lower:g}, {self.upper:g}] = "
                f"{self.value:.6g} ± {self.error:.3g}")


@dataclass
class DerivativeResult:
    x:      np.ndarray
    values: np.ndarray
    errors: np.ndarray = field(default_factory=lambda: np.array([]))


def _gauss_integral(params, lower: float, upper: float) -> float:
    A, mu, sigma = params
    sigma = max(abs(sigma), 1e-12)
    s2 = np.sqrt(2.0) * sigma
    return float(A * sigma * np.sqrt(np.pi / 2.0)
                 * (erf((upper - mu) / s2) - erf((lower - mu) / s2)))


class BackgroundEngine:

    def __init__(self, settings: BackgroundSettings = None,
                  estimator: Optional[Callable] = None,
                  fitter:    Optional[Callable] = None,
                  search:    Optional[Callable] = None):
        self.settings  = settings or BackgroundSettings()
        self.estimator = estimator or snip_background
        self.fitter    = fitter or fit_gaussian
        self.search    = search or search_peaks

    # ------------------------------------------------------------------ #
    # Background
    # ------------------------------------------------------------------ #

    def estimate_background(self, spectrum: Histogram1D,
                             range_min: float = None,
                             range_max: float = None) -> Histogram1D:
        s  = self.settings
        lo = range_min if range_min is not None else s.range_min
        hi = range_max if range_max is not None else s.range_max
        lo = spectrum.xmin if lo is None else lo
        hi = spectrum.xmax if hi is None else hi
        if not hi > lo:
            raise ValueError(f"Background range [{lo}, {hi}] is empty")

        centers = spectrum.centers
        mask    = (centers >= lo) & (centers <= hi)
        counts  = spectrum.contents[1:-1][mask]

        full = np.zeros(spectrum.num_bins)
        if counts.size:
            full[mask] = self.estimator(counts, s.iterations, s.smoothing,
                                        s.direction, s.filter_order,
                                        s.smoothing_width)

        bg = Histogram1D(spectrum.num_bins, spectrum.xmin, spectrum.xmax,
                         name=f"{spectrum.name}_background")
        bg.set_contents(full, np.abs(full))
        bg.entries = bg.integral()
        logger.debug("Background for '%s' over [%g, %g]: %d bins, integral %g",
                     spectrum.name, lo, hi, int(mask.sum()), bg.entries)
        return bg

    @staticmethod
    def subtract(raw: Histogram1D, background: Histogram1D) -> Histogram1D:
        if not raw.same_binning(background):
            raise ValueError(f"Incompatible binning: '{raw.name}' vs '{background.name}'")
        h = raw.clone(name=f"{raw.name}_deconvolved")
        h.contents = raw.contents - background.contents
        h.sumw2    = raw.sumw2 + background.sumw2
        h.entries  = h.integral()
        return h

    # ------------------------------------------------------------------ #
    # Integration
    # ------------------------------------------------------------------ #

    def integrate(self, spectrum: Histogram1D,
                   lower_fraction: float, upper_fraction: float,
                   width_weighted: bool = False,
                   gaussian_fit: bool = False,
                   normalization: float = None) -> IntegralResult:
        if not 0.0 <= lower_fraction < upper_fraction <= 1.0:
            raise ValueError(
                f"Integration fractions must satisfy 0 <= lower < upper <= 1, "
                f"got ({lower_fraction}, {upper_fraction})")
        if normalization is not None and normalization == 0:
            raise ValueError("normalization must be non-zero")

        span  = spectrum.xmax - spectrum.xmin
        lower = spectrum.xmin + lower_fraction * span
        upper = spectrum.xmin + upper_fraction * span

        if gaussian_fit:
            fit = self.fitter(spectrum.centers, spectrum.contents[1:-1], lower, upper)
            if not fit.success:
                return IntegralResult(value=float("nan"), error=float("nan"),
                                      lower=lower, upper=upper, success=False,
                                      reason=fit.reason, fit=fit)
            scale = 1.0 if width_weighted else 1.0 / spectrum.bin_width
            p, dp = fit.params, np.asarray(fit.errors, dtype=float)
            value = _gauss_integral(p, lower, upper) * scale
            high  = _gauss_integral(p + dp, lower, upper) * scale
            low   = _gauss_integral(p - dp, lower, upper) * scale
            error = 0.5 * (abs(high - value) + abs(value - low))
        else:
            fit   = None
            first = min(max(spectrum.find_bin(lower), 1), spectrum.num_bins)
            last  = min(max(spectrum.find_bin(upper), 1), spectrum.num_bins)
            value, error = spectrum.integral_and_error(first, last, width=width_weighted)

        if normalization is not None:
            value /= normalization
            error /= normalization
        return IntegralResult(value=value, error=error, lower=lower, upper=upper, fit=fit)

    # ------------------------------------------------------------------ #
    # Derivative / peaks
    # ------------------------------------------------------------------ #

    @staticmethod
    def derivative(spectrum: Histogram1D, absolute: bool = False) -> DerivativeResult:
        c = spectrum.contents[1:-1]
        d = np.zeros_like(c)
        e = np.zeros_like(c)
        if c.size > 2:
            d[2:] = c[2:] - c[1:-1]
            e[2:] = np.sqrt(np.abs(c[2:] + c[1:-1]))
        if absolute:
            d = np.abs(d)
        return DerivativeResult(x=spectrum.centers, values=d, errors=e)

    def find_peaks(self, spectrum: Histogram1D, sigma: float = 2.0,
                    threshold: float = 0.05, max_peaks: int = 10
                    ) -> list[tuple[float, float]]:
        found = self.search(spectrum.contents[1:-1], sigma, threshold, max_peaks, False)
        return [(spectrum.bin_center(x + 1), y) for x, y in found]
