"""
Kernels
=======
Default numerical primitives behind the waveform and spectrum stages.

  search_peaks         scipy.signal.find_peaks, optional Gaussian smoothing
  estimate_background  SNIP peak clipping (2nd / 4th order clipping filter,
                       optional running-mean smoothing, increasing or
                       decreasing clipping window)
  fit_gaussian         single Gaussian fit over [range_low, range_high]

Each primitive has a fixed calling contract, so PeakFinder and
BackgroundEngine accept drop-in replacements (see their ``search`` /
``estimator`` / ``fitter`` arguments).
"""

from __future__ import annotations
import numpy as np
from dataclasses import dataclass, field
from scipy.ndimage import gaussian_filter1d, uniform_filter1d
from scipy.optimize import curve_fit
from scipy.signal import find_peaks


# ─────────────────────────────────────────────────────────────────────────── #
# Peak search
# ─────────────────────────────────────────────────────────────────────────── #

def search_peaks(samples, sigma: float = 2.0, threshold: float = 0.05,
                  max_peaks: int = 10, smoothing: bool = False
                  ) -> list[tuple[int, float]]:
    """
    Candidate peaks of a sample buffer (or a histogram's bin contents).

    Parameters
    ----------
    sigma     : expected peak width in samples; sets the minimum spacing
                between candidates and the smoothing kernel width
    threshold : candidates lower than threshold * tallest are discarded
    max_peaks : keep at most this many, most prominent first
    smoothing : search a Gaussian-smoothed copy of the buffer

    Returns
    -------
    [(x, y), ...] sorted by x, with y read from the unsmoothed buffer.
    """
    y = np.asarray(samples, dtype=float)
    if y.size < 3:
        return []

    work = gaussian_filter1d(y, sigma) if (smoothing and sigma > 0) else y
    top  = float(work.max())
    if top <= 0:
        return []

    height = threshold * top
    idx, props = find_peaks(
        work,
        height=height,
        prominence=max(height, 1e-9 * top),
        distance=max(1, int(round(sigma))),
    )
    if len(idx) == 0:
        return []

    if max_peaks and len(idx) > max_peaks:
        order = np.argsort(props["prominences"])[::-1][:max_peaks]
        idx   = np.sort(idx[order])

    return [(int(i), float(y[i])) for i in idx]


# ─────────────────────────────────────────────────────────────────────────── #
# Background (SNIP)
# ─────────────────────────────────────────────────────────────────────────── #

def estimate_background(counts, iterations: int = 20, smoothing: bool = True,
                         direction: str = "decreasing", filter_order: int = 2,
                         smoothing_width: int = 3) -> np.ndarray:
    """
    SNIP background under a spectrum.

    At clipping window p every bin is replaced by the lower of its own
    value and the average of its neighbours at distance p. The window
    runs 1 → iterations ("increasing") or iterations → 1 ("decreasing").

    filter_order 4 also considers the neighbours at 2p and keeps the
    larger of the two clipping estimates, which follows curved
    backgrounds more closely.

    With smoothing, the running means over ``smoothing_width`` bins are
    compared instead of single bins.
    """
    if filter_order not in (2, 4):
        raise ValueError(f"filter_order must be 2 or 4, got {filter_order}")
    if direction not in ("increasing", "decreasing"):
        raise ValueError(f"Unknown clipping direction '{direction}'")

    y = np.asarray(counts, dtype=float).copy()
    n = len(y)
    if n == 0 or iterations < 1:
        return y

    width = max(1, int(smoothing_width))
    if width % 2 == 0:
        width += 1

    windows = (range(1, iterations + 1) if direction == "increasing"
               else range(iterations, 0, -1))

    for p in windows:
        if 2 * p >= n:
            continue
        ref = uniform_filter1d(y, size=width, mode="nearest") if smoothing else y

        clip = 0.5 * (ref[:n - 2 * p] + ref[2 * p:])          # bins p … n-p-1
        if filter_order == 4 and 4 * p < n:
            inner = (-ref[:n - 4 * p] + 4.0 * ref[p:n - 3 * p]
                     + 4.0 * ref[3 * p:n - p] - ref[4 * p:]) / 6.0   # bins 2p … n-2p-1
            clip[p:n - 3 * p] = np.maximum(clip[p:n - 3 * p], inner)

        new = y.copy()
        new[p:n - p] = np.minimum(ref[p:n - p], clip)
        y = new

    return y


# ─────────────────────────────────────────────────────────────────────────── #
# Gaussian fit
# ─────────────────────────────────────────────────────────────────────────── #

def _gauss(x, A, mu, sigma):
    return A * np.exp(-0.5 * ((x - mu) / sigma) ** 2)


@dataclass
class GaussianFit:
    amplitude: float
    mean:      float
    sigma:     float
    errors:    tuple = field(default_factory=lambda: (0.0, 0.0, 0.0))
    success:   bool  = True
    reason:    str   = ""

    @property
    def params(self) -> np.ndarray:
        return np.array([self.amplitude, self.mean, self.sigma])

    def evaluate(self, x, params=None):
        p = self.params if params is None else params
        return _gauss(np.asarray(x, dtype=float), *p)


def fit_gaussian(x, y, range_low: float, range_high: float) -> GaussianFit:
    """Fit A·exp(-(x-mu)²/2σ²) to the points with range_low <= x <= range_high."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    mask = (x >= range_low) & (x <= range_high)
    X, Y = x[mask], y[mask]

    def _bad(reason):
        nan = float("nan")
        return GaussianFit(amplitude=nan, mean=nan, sigma=nan,
                           errors=(nan, nan, nan), success=False, reason=reason)

    if len(X) < 4:
        return _bad(f"Only {len(X)} points in fit range (need 4)")

    A0   = float(Y.max())
    mu0  = float(X[np.argmax(Y)])
    sig0 = max((range_high - range_low) / 6.0, 1e-9)
    try:
        popt, pcov = curve_fit(
            _gauss, X, Y, p0=[A0, mu0, sig0],
            bounds=([0.0, range_low, 1e-9],
                    [np.inf, range_high, range_high - range_low]),
            maxfev=20000)
        perr = np.sqrt(np.abs(np.diag(pcov)))
    except (RuntimeError, ValueError) as e:
        return _bad(f"Fit failed: {e}")

    if np.any(np.isnan(perr)):
        return _bad("Covariance NaN, fit unstable")

    A, mu, sigma = popt
    return GaussianFit(amplitude=float(A), mean=float(mu), sigma=float(abs(sigma)),
                       errors=tuple(float(e) for e in perr))
