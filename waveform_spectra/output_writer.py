"""
OutputWriter
============
Exports merged results.

  .dat   bin center <TAB> content, one bin per line
  .csv   bin center , content
  .root  TH1D / TH2D objects written with uproot

plus a commented run log (shards, counters) and the raw per-peak value
lists (height, area).
"""

from __future__ import annotations
import logging
import os
from datetime import datetime
from itertools import zip_longest

from waveform_spectra.histogram import Histogram2D

logger = logging.getLogger(__name__)

HISTOGRAM_FORMATS = ("dat", "csv", "root")


class OutputWriter:

    HEADER = (
        "# ============================================================\n"
        "# waveform-spectra — Analysis Results\n"
        "# ============================================================\n"
    )

    @staticmethod
    def _ts() -> str:
        return datetime.now().strftime("%Y-%m-%d  %H:%M:%S")

    @staticmethod
    def _format(out_path: str, fmt: str = None) -> str:
        fmt = (fmt or os.path.splitext(out_path)[1].lstrip(".")).lower()
        if fmt not in HISTOGRAM_FORMATS:
            raise ValueError(f"Unknown output format '{fmt}'. "
                             f"Use one of {HISTOGRAM_FORMATS}.")
        return fmt

    # ------------------------------------------------------------------ #
    # Histograms
    # ------------------------------------------------------------------ #

    @classmethod
    def write_histogram(cls, hist, out_path: str, fmt: str = None):
        fmt = cls._format(out_path, fmt)
        if fmt == "root":
            cls.write_root({hist.name: hist}, out_path)
            return
        sep = "\t" if fmt == "dat" else ","
        with open(out_path, "w") as f:
            if isinstance(hist, Histogram2D):
                counts, _, _ = hist.to_numpy()
                xc, yc = hist.x_axis.centers, hist.y_axis.centers
                for i, x in enumerate(xc):
                    for j, y in enumerate(yc):
                        f.write(f"{x:g}{sep}{y:g}{sep}{counts[i, j]:g}\n")
            else:
                counts, _ = hist.to_numpy()
                for x, c in zip(hist.centers, counts):
                    f.write(f"{x:g}{sep}{c:g}\n")
        logger.info("Wrote %s (%s)", out_path, hist.name)

    @staticmethod
    def write_root(histograms: dict, out_path: str):
        import uproot

        with uproot.recreate(out_path) as f:
            for name, hist in histograms.items():
                f[name] = hist.to_numpy()
        logger.info("Wrote %s (%s)", out_path, ", ".join(histograms))

    # ------------------------------------------------------------------ #
    # Value lists / log
    # ------------------------------------------------------------------ #

    @classmethod
    def write_values(cls, result, out_path: str):
        with open(out_path, "w") as f:
            f.write(cls.HEADER)
            f.write(f"# Date          : {cls._ts()}\n#\n")
            f.write(f"# {'Height':>14s}  {'Area':>14s}\n")
            for h, a in zip_longest(result.heights, result.areas, fillvalue=float("nan")):
                f.write(f"  {h:>14.4f}  {a:>14.4f}\n")

    @classmethod
    def write_log(cls, result, out_path: str, source_file: str = "",
                   settings=None):
        with open(out_path, "w") as f:
            f.write(cls.HEADER)
            f.write(f"# Date          : {cls._ts()}\n")
            if source_file:
                f.write(f"# Source file   : {source_file}\n")
            f.write(f"# Mode          : {result.mode}\n")
            if settings is not None:
                f.write(f"# Channel       : {settings.waveform.channel}\n")
                f.write(f"# Quantity      : {settings.spectrum.quantity}\n")
            f.write(f"# Workers       : {len(result.shards)}\n#\n")

            f.write(f"# {'Rank':>6s}  {'Start':>10s}  {'End':>10s}  {'Events':>10s}\n")
            for s in result.shards:
                f.write(f"  {s.rank:>6d}  {s.start:>10d}  {s.end:>10d}  {s.size:>10d}\n")
            f.write("#\n")

            for key in sorted(result.counters):
                f.write(f"# {key:<24s}: {result.counters[key]}\n")
            f.write(f"# {'spectrum_entries':<24s}: {result.spectrum.entries:g}\n")
            f.write(f"# {'psd_entries':<24s}: {result.psd.entries:g}\n")

    @classmethod
    def write_all(cls, result, output_dir: str, source_file: str = "",
                   prefix: str = "waveform_spectra", fmt: str = "dat",
                   settings=None) -> list:
        os.makedirs(output_dir, exist_ok=True)
        hist = result.spectrum if result.mode == "histogram" else result.psd
        paths = [os.path.join(output_dir, f"{prefix}_{result.mode}.{fmt}"),
                 os.path.join(output_dir, f"{prefix}_log.txt")]
        cls.write_histogram(hist, paths[0], fmt)
        cls.write_log(result, paths[1], source_file, settings)
        if result.mode == "histogram":
            paths.append(os.path.join(output_dir, f"{prefix}_values.txt"))
            cls.write_values(result, paths[2])
        return paths
