"""
Histogram
=========
Fixed-binning 1-D and 2-D histograms used for spectra and PSD maps.

Bin layout follows the ROOT TH1 convention so that partial results can
be reduced bin-for-bin without losing out-of-range entries:

  bin 0          underflow   (x <  xmin)
  bins 1 … n     in range    (xmin <= x < xmax)
  bin n+1        overflow    (x >= xmax)

Every histogram tracks the sum of squared weights per bin (for error
propagation) and an entry count that callers may overwrite, e.g. after
background subtraction where naive entry bookkeeping no longer holds.
"""

from __future__ import annotations
import numpy as np


class Histogram1D:

    def __init__(self, num_bins: int, xmin: float, xmax: float,
                  name: str = "spectrum"):
        num_bins = int(num_bins)
        if num_bins <= 0:
            raise ValueError("num_bins must be positive")
        if not xmax > xmin:
            raise ValueError(f"xmax ({xmax}) must be greater than xmin ({xmin})")
        self.name     = name
        self.num_bins = num_bins
        self.xmin     = float(xmin)
        self.xmax     = float(xmax)
        self.contents = np.zeros(num_bins + 2, dtype=float)
        self.sumw2    = np.zeros(num_bins + 2, dtype=float)
        self.entries  = 0.0

    # ------------------------------------------------------------------ #
    # Axis
    # ------------------------------------------------------------------ #

    @property
    def bin_width(self) -> float:
        return (self.xmax - self.xmin) / self.num_bins

    @property
    def edges(self) -> np.ndarray:
        return np.linspace(self.xmin, self.xmax, self.num_bins + 1)

    @property
    def centers(self) -> np.ndarray:
        e = self.edges
        return 0.5 * (e[:-1] + e[1:])

    def bin_center(self, b: int) -> float:
        return self.xmin + (b - 0.5) * self.bin_width

    def find_bin(self, x: float) -> int:
        if x < self.xmin:
            return 0
        if not x < self.xmax:
            return self.num_bins + 1
        b = int((x - self.xmin) / self.bin_width) + 1
        return min(b, self.num_bins)

    def same_binning(self, other) -> bool:
        return (self.num_bins == other.num_bins
                and self.xmin == other.xmin and self.xmax == other.xmax)

    # ------------------------------------------------------------------ #
    # Filling
    # ------------------------------------------------------------------ #

    def fill(self, x: float, weight: float = 1.0):
        b = self.find_bin(x)
        self.contents[b] += weight
        self.sumw2[b]    += weight * weight
        self.entries     += 1

    def fill_many(self, values):
        for v in np.asarray(values, dtype=float):
            self.fill(v)

    def set_contents(self, contents, sumw2=None):
        """Replace in-range bin contents (length n) or all bins (length n+2)."""
        contents = np.asarray(contents, dtype=float)
        if contents.shape == (self.num_bins,):
            self.contents[1:-1] = contents
            self.sumw2[1:-1] = contents if sumw2 is None else sumw2
        elif contents.shape == (self.num_bins + 2,):
            self.contents[:] = contents
            self.sumw2[:] = contents if sumw2 is None else sumw2
        else:
            raise ValueError(
                f"Expected {self.num_bins} or {self.num_bins + 2} bins, "
                f"got {contents.shape}")

    def reset(self):
        self.contents[:] = 0.0
        self.sumw2[:]    = 0.0
        self.entries     = 0.0

    # ------------------------------------------------------------------ #
    # Arithmetic
    # ------------------------------------------------------------------ #

    def add(self, other: "Histogram1D", scale: float = 1.0):
        """In-place bin-wise sum, including under/overflow."""
        if not self.same_binning(other):
            raise ValueError(f"Incompatible binning: '{self.name}' vs '{other.name}'")
        self.contents += scale * other.contents
        self.sumw2    += scale * scale * other.sumw2
        self.entries  += other.entries

    def clone(self, name: str = None) -> "Histogram1D":
        h = Histogram1D(self.num_bins, self.xmin, self.xmax,
                        name=name or self.name)
        h.contents = self.contents.copy()
        h.sumw2    = self.sumw2.copy()
        h.entries  = self.entries
        return h

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def integral(self, first: int = 1, last: int = None,
                  width: bool = False) -> float:
        value, _ = self.integral_and_error(first, last, width)
        return value

    def integral_and_error(self, first: int = 1, last: int = None,
                            width: bool = False) -> tuple[float, float]:
        """Sum over bins [first, last] inclusive; bin 0 / n+1 are the flow bins."""
        if last is None:
            last = self.num_bins
        first = max(0, int(first))
        last  = min(self.num_bins + 1, int(last))
        if last < first:
            return 0.0, 0.0
        w = self.bin_width if width else 1.0
        value = float(np.sum(self.contents[first:last + 1])) * w
        error = float(np.sqrt(np.sum(self.sumw2[first:last + 1]))) * w
        return value, error

    @property
    def errors(self) -> np.ndarray:
        return np.sqrt(np.abs(self.sumw2))

    def maximum(self) -> float:
        return float(self.contents[1:-1].max())

    def to_numpy(self) -> tuple[np.ndarray, np.ndarray]:
        """(in-range contents, edges) — the tuple form uproot writes as a TH1."""
        return self.contents[1:-1].copy(), self.edges

    def __repr__(self):
        return (f"Histogram1D('{self.name}', {self.num_bins}, "
                f"{self.xmin}, {self.xmax}, entries={self.entries:g})")


class Histogram2D:

    def __init__(self, nx: int, xmin: float, xmax: float,
                  ny: int, ymin: float, ymax: float,
                  name: str = "psd"):
        self.name   = name
        self.x_axis = Histogram1D(nx, xmin, xmax, name=f"{name}_x")
        self.y_axis = Histogram1D(ny, ymin, ymax, name=f"{name}_y")
        self.contents = np.zeros((nx + 2, ny + 2), dtype=float)
        self.sumw2    = np.zeros((nx + 2, ny + 2), dtype=float)
        self.entries  = 0.0

    @property
    def shape(self) -> tuple[int, int]:
        return self.x_axis.num_bins, self.y_axis.num_bins

    def fill(self, x: float, y: float, weight: float = 1.0):
        i = self.x_axis.find_bin(x)
        j = self.y_axis.find_bin(y)
        self.contents[i, j] += weight
        self.sumw2[i, j]    += weight * weight
        self.entries        += 1

    def same_binning(self, other) -> bool:
        return (self.x_axis.same_binning(other.x_axis)
                and self.y_axis.same_binning(other.y_axis))

    def add(self, other: "Histogram2D", scale: float = 1.0):
        if not self.same_binning(other):
            raise ValueError(f"Incompatible binning: '{self.name}' vs '{other.name}'")
        self.contents += scale * other.contents
        self.sumw2    += scale * scale * other.sumw2
        self.entries  += other.entries

    def clone(self, name: str = None) -> "Histogram2D":
        nx, ny = self.shape
        h = Histogram2D(nx, self.x_axis.xmin, self.x_axis.xmax,
                        ny, self.y_axis.xmin, self.y_axis.xmax,
                        name=name or self.name)
        h.contents = self.contents.copy()
        h.sumw2    = self.sumw2.copy()
        h.entries  = self.entries
        return h

    def integral(self) -> float:
        return float(self.contents[1:-1, 1:-1].sum())

    # ------------------------------------------------------------------ #
    # Slices
    # ------------------------------------------------------------------ #

    def project_x(self, y_bin: int) -> Histogram1D:
        """Distribution along x for one y bin."""
        ax = self.x_axis
        h = Histogram1D(ax.num_bins, ax.xmin, ax.xmax, name=f"{self.name}_px{y_bin}")
        h.set_contents(self.contents[:, y_bin], self.sumw2[:, y_bin])
        h.entries = float(self.contents[:, y_bin].sum())
        return h

    def project_y(self, x_bin: int) -> Histogram1D:
        """Distribution along y for one x bin."""
        ay = self.y_axis
        h = Histogram1D(ay.num_bins, ay.xmin, ay.xmax, name=f"{self.name}_py{x_bin}")
        h.set_contents(self.contents[x_bin, :], self.sumw2[x_bin, :])
        h.entries = float(self.contents[x_bin, :].sum())
        return h

    def to_numpy(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        return (self.contents[1:-1, 1:-1].copy(),
                self.x_axis.edges, self.y_axis.edges)

    def __repr__(self):
        nx, ny = self.shape
        return f"Histogram2D('{self.name}', {nx}x{ny}, entries={self.entries:g})"
