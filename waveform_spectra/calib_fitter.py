"""
CalibrationFitter
=================
Per-channel mapping from raw pulse units (height or area) to physical
units.

Calibration points are (raw, physical) pairs, edited per channel with
``set_point`` / ``clear``. ``set_calibration`` turns the current points
into an active CalibrationCurve.

Modes:

  interpolation  piecewise linear through the points, extrapolated
                 linearly beyond the first/last point
  fit            least-squares polynomial, order 1 or 2
                   linear     (order 1):  E = P0 + P1·Q
                   quadratic  (order 2):  E = P0 + P1·Q + P2·Q²

Where Q = raw value.

A calibration is NOT activated (result.success False) when:
  - fewer than 2 points are set
  - two points share a raw value
  - a fit has fewer points than parameters, or does not converge
Channels without an active curve keep raw units.
"""

from __future__ import annotations
import logging
import numpy as np
from dataclasses import dataclass, field
from scipy.interpolate import interp1d
from scipy.optimize import curve_fit

logger = logging.getLogger(__name__)


CALIBRATION_MODES = ("interpolation", "fit")
MIN_POINTS        = 2


# ── Models ─────────────────────────────────────────────────────────────── #

def model_linear(Q, P0, P1):
    return P0 + P1 * Q


def model_quadratic(Q, P0, P1, P2):
    return P0 + P1 * Q + P2 * Q * Q


MODELS = {
    "linear": {
        "func":        model_linear,
        "param_names": ["P0", "P1"],
        "n_params":    2,
        "label":       "E = P0 + P1·Q",
    },
    "quadratic": {
        "func":        model_quadratic,
        "param_names": ["P0", "P1", "P2"],
        "n_params":    3,
        "label":       "E = P0 + P1·Q + P2·Q²",
    },
}

ORDER_MODELS = {1: "linear", 2: "quadratic"}


# ── Result ─────────────────────────────────────────────────────────────── #

@dataclass
class CalibrationResult:
    channel_id:      int
    mode:            str
    model_label:     str
    raw_points:      np.ndarray
    physical_points: np.ndarray
    success:         bool
    params:          np.ndarray = field(default_factory=lambda: np.array([]))
    uncertainties:   np.ndarray = field(default_factory=lambda: np.array([]))
    param_names:     list       = field(default_factory=list)
    chi2:            float = float("nan")
    ndf:             int   = 0
    residuals:       np.ndarray = field(default_factory=lambda: np.array([]))
    reason:          str   = ""
    note:            str   = ""

    @property
    def chi2_ndf(self) -> float:
        return self.chi2 / self.ndf if self.ndf > 0 else float("nan")

    def __str__(self):
        lines = [f"Channel {self.channel_id} | {self.model_label}"]
        if not self.success:
            lines.append(f"  NOT ACTIVE: {self.reason}")
            return "\n".join(lines)
        if self.mode == "fit":
            lines.append(f"Chi2/NDF = {self.chi2_ndf:.4f}  "
                         f"(Chi2={self.chi2:.4f}, NDF={self.ndf})")
            for n, v, u in zip(self.param_names, self.params, self.uncertainties):
                lines.append(f"  {n} = {v:+.8e}  ±  {u:.3e}")
        for raw, phys in zip(self.raw_points, self.physical_points):
            lines.append(f"  raw={raw:.3f}  physical={phys:.3f}")
        return "\n".join(lines)


# ── Curve ──────────────────────────────────────────────────────────────── #

class CalibrationCurve:
    """Active raw → physical mapping for one channel. Read-only once built."""

    def __init__(self, channel_id: int, mode: str,
                  raw_points, physical_points,
                  model: str = "", params=None):
        self.channel_id      = channel_id
        self.mode            = mode
        self.raw_points      = np.asarray(raw_points, dtype=float)
        self.physical_points = np.asarray(physical_points, dtype=float)
        self.model           = model
        self.params          = None if params is None else np.asarray(params, dtype=float)
        self._interp         = None

    def __call__(self, raw):
        return self.evaluate(raw)

    def evaluate(self, raw):
        if self.mode == "fit":
            out = MODELS[self.model]["func"](np.asarray(raw, dtype=float), *self.params)
        else:
            if self._interp is None:
                self._interp = interp1d(self.raw_points, self.physical_points,
                                        kind="linear", fill_value="extrapolate",
                                        assume_sorted=True)
            out = self._interp(raw)
        return float(out) if np.ndim(out) == 0 else out

    def __getstate__(self):
        state = self.__dict__.copy()
        state["_interp"] = None
        return state

    def __repr__(self):
        return (f"CalibrationCurve(ch={self.channel_id}, mode='{self.mode}', "
                f"points={len(self.raw_points)})")


# ── Manager ────────────────────────────────────────────────────────────── #

class CalibrationManager:
    """
    points  : dict[int, dict[int, (raw, physical)]]  — editable point slots
    curves  : dict[int, CalibrationCurve]            — active calibrations
    results : dict[int, CalibrationResult]           — last set_calibration
    """

    def __init__(self):
        self.points:  dict[int, dict[int, tuple[float, float]]] = {}
        self.curves:  dict[int, CalibrationCurve]  = {}
        self.results: dict[int, CalibrationResult] = {}

    # ------------------------------------------------------------------ #
    # Point editing
    # ------------------------------------------------------------------ #

    def set_point(self, channel_id: int, index: int, raw: float, physical: float):
        """Set (or replace) point ``index`` of a channel."""
        self.points.setdefault(channel_id, {})[int(index)] = (float(raw), float(physical))

    def get_points(self, channel_id: int) -> tuple[np.ndarray, np.ndarray]:
        slots = self.points.get(channel_id, {})
        pairs = sorted(slots.values())
        if not pairs:
            return np.array([]), np.array([])
        raw  = np.array([p[0] for p in pairs])
        phys = np.array([p[1] for p in pairs])
        return raw, phys

    def clear(self, channel_id: int = None):
        """Drop points and the active curve (one channel, or all)."""
        if channel_id is None:
            self.points.clear()
            self.curves.clear()
            self.results.clear()
        else:
            self.points.pop(channel_id, None)
            self.curves.pop(channel_id, None)
            self.results.pop(channel_id, None)

    # ------------------------------------------------------------------ #
    # Activation
    # ------------------------------------------------------------------ #

    def set_calibration(self, channel_id: int, mode: str = "interpolation",
                         order: int = 1) -> CalibrationResult:
        raw, phys = self.get_points(channel_id)

        if mode not in CALIBRATION_MODES:
            raise ValueError(f"Unknown calibration mode '{mode}'. "
                             f"Use one of {CALIBRATION_MODES}.")
        if mode == "fit" and order not in ORDER_MODELS:
            raise ValueError(f"Calibration fit order must be 1 or 2, got {order}")

        label = ("Piecewise linear interpolation" if mode == "interpolation"
                 else MODELS[ORDER_MODELS[order]]["label"])

        if len(raw) < MIN_POINTS:
            result = self._bad(channel_id, mode, label, raw, phys,
                               f"Need ≥{MIN_POINTS} calibration points, got {len(raw)}.")
        elif len(np.unique(raw)) != len(raw):
            result = self._bad(channel_id, mode, label, raw, phys,
                               "Calibration points must have unique raw values.")
        elif mode == "interpolation":
            result = CalibrationResult(
                channel_id=channel_id, mode=mode, model_label=label,
                raw_points=raw, physical_points=phys, success=True)
            self.curves[channel_id] = CalibrationCurve(channel_id, mode, raw, phys)
        else:
            result = self.fit_channel(channel_id, raw, phys, ORDER_MODELS[order])
            if result.success:
                self.curves[channel_id] = CalibrationCurve(
                    channel_id, mode, raw, phys,
                    model=ORDER_MODELS[order], params=result.params)

        if not result.success:
            self.curves.pop(channel_id, None)
            logger.warning("ch%d calibration not activated: %s",
                           channel_id, result.reason)
        self.results[channel_id] = result
        return result

    def fit_channel(self, channel_id: int, raw_points: np.ndarray,
                     physical_points: np.ndarray,
                     model: str = "linear") -> CalibrationResult:
        info     = MODELS[model]
        func     = info["func"]
        n_params = info["n_params"]
        label    = info["label"]
        n_pts    = len(raw_points)

        if n_pts < n_params:
            return self._bad(channel_id, "fit", label, raw_points, physical_points,
                             f"Need ≥{n_params} calibration points for '{model}', "
                             f"got {n_pts}.")

        p0 = self._initial_guess(raw_points, physical_points, n_params)
        try:
            popt, pcov = curve_fit(func, raw_points, physical_points,
                                   p0=p0, maxfev=100000)
            perr = np.sqrt(np.abs(np.diag(pcov)))
        except (RuntimeError, ValueError) as e:
            return self._bad(channel_id, "fit", label, raw_points, physical_points,
                             f"Fit failed: {e}")

        residuals = physical_points - func(raw_points, *popt)
        ndf       = n_pts - n_params
        note      = ""
        if ndf == 0:
            note = (f"Exact interpolation ({n_pts} pts = {n_params} params). "
                    "Add more points for a χ²/NDF estimate.")

        return CalibrationResult(
            channel_id=channel_id, mode="fit", model_label=label,
            raw_points=raw_points, physical_points=physical_points,
            success=True, params=popt, uncertainties=perr,
            param_names=list(info["param_names"]),
            chi2=float(np.sum(residuals ** 2)), ndf=ndf,
            residuals=residuals, note=note)

    # ------------------------------------------------------------------ #
    # Lookup
    # ------------------------------------------------------------------ #

    def is_calibrated(self, channel_id: int) -> bool:
        return channel_id in self.curves

    def get_curve(self, channel_id: int):
        return self.curves.get(channel_id)

    def calibrate(self, channel_id: int, raw):
        """Physical value for ``raw``; raw units when the channel has no curve."""
        curve = self.curves.get(channel_id)
        return raw if curve is None else curve(raw)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _initial_guess(raw, phys, n_params):
        dQ    = float(raw[-1] - raw[0]) + 1e-9
        slope = float(phys[-1] - phys[0]) / dQ
        inter = float(phys[0]) - slope * float(raw[0])
        return [inter, slope] + [0.0] * (n_params - 2)

    @staticmethod
    def _bad(channel_id, mode, label, raw, phys, reason) -> CalibrationResult:
        return CalibrationResult(
            channel_id=channel_id, mode=mode, model_label=label,
            raw_points=np.asarray(raw, dtype=float),
            physical_points=np.asarray(phys, dtype=float),
            success=False, reason=reason)
