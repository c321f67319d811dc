#!/usr/bin/env python3
"""waveform-spectra command line driver."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional

from waveform_spectra.background import BackgroundEngine
from waveform_spectra.output_writer import OutputWriter
from waveform_spectra.parallel_processor import DistributedAggregator
from waveform_spectra.pipeline import AnalysisPipeline, calculate_count_rate
from waveform_spectra.settings import (AnalysisSettings, load_settings,
                                       build_calibrations, build_psd_regions)
from waveform_spectra.waveform_loader import ROOTWaveformLoader, SourceUnavailableError

logger = logging.getLogger("waveform_spectra")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("file", help="ADAQ ROOT file with a WaveformTree")
    common.add_argument("--settings", help="JSON settings file")
    common.add_argument("--channel", type=int, help="Digitizer channel (default from settings)")
    common.add_argument("--events", type=int, help="Number of events to process (default all)")
    common.add_argument("--workers", type=int, help="Worker processes (default from settings)")
    common.add_argument("--out", default="output", help="Output directory (default ./output)")
    common.add_argument("--format", dest="fmt", choices=["dat", "csv", "root"], default="dat",
                        help="Histogram export format (default dat)")
    common.add_argument("--prefix", default="waveform_spectra", help="Output file prefix")
    common.add_argument("-v", "--verbose", action="count", default=0,
                        help="-v for INFO, -vv for DEBUG")

    p = argparse.ArgumentParser(
        prog="waveform-spectra",
        description="Pulse-height / area spectra and PSD histograms from digitized waveforms")
    sub = p.add_subparsers(dest="command", required=True)

    sp = sub.add_parser("spectrum", parents=[common], help="Build a pulse spectrum")
    sp.add_argument("--quantity", choices=["height", "area"], help="Spectrum quantity")
    sp.add_argument("--bins", type=int, help="Number of bins")
    sp.add_argument("--xmin", type=float, help="Spectrum minimum")
    sp.add_argument("--xmax", type=float, help="Spectrum maximum")
    sp.add_argument("--background", action="store_true",
                    help="Estimate and subtract the background")
    sp.add_argument("--derivative", action="store_true", help="Export the spectrum derivative")
    sp.add_argument("--integrate", nargs=2, type=float, metavar=("LO", "HI"),
                    help="Integrate between two fractional x positions (0-1)")
    sp.add_argument("--gaussian", action="store_true",
                    help="Integrate a Gaussian fit instead of the bins")

    pp = sub.add_parser("psd", parents=[common], help="Build a (total, tail) PSD histogram")
    pp.add_argument("--slice-x", dest="slice_x", type=float,
                    help="Export the tail distribution at this total value")
    pp.add_argument("--slice-y", dest="slice_y", type=float,
                    help="Export the total distribution at this tail value")

    wp = sub.add_parser("waveform", parents=[common], help="Analyse one waveform")
    wp.add_argument("--index", type=int, default=0, help="Event index (default 0)")
    wp.add_argument("--kind", choices=["raw", "bs", "zs", "baseline_subtracted",
                                       "zero_suppressed"], help="Waveform kind")

    cp = sub.add_parser("count-rate", parents=[common], help="Peak count rate")
    cp.add_argument("--pulse-width-us", dest="pulse_width_us", type=float, required=True,
                    help="Beam pulse width in microseconds")
    cp.add_argument("--rep-rate-hz", dest="rep_rate_hz", type=float, required=True,
                    help="Beam repetition rate in Hz")

    return p.parse_args(argv)


def _configure_logging(verbosity: int):
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _build_settings(args):
    if args.settings:
        settings, calib_table, region_table = load_settings(args.settings)
    else:
        settings, calib_table, region_table = AnalysisSettings(), {}, {}

    if args.channel is not None:
        settings.waveform.channel = args.channel
    if args.events is not None:
        settings.spectrum.events = args.events
    if args.workers is not None:
        settings.parallel.workers = args.workers
    for attr, field_name in (("quantity", "quantity"), ("bins", "num_bins"),
                             ("xmin", "xmin"), ("xmax", "xmax")):
        value = getattr(args, attr, None)
        if value is not None:
            setattr(settings.spectrum, field_name, value)
    if getattr(args, "kind", None):
        settings.waveform.kind = args.kind
    settings.validate()

    return settings, build_calibrations(calib_table), build_psd_regions(region_table)


# ─────────────────────────────────────────────────────────────────────────── #
# Commands
# ─────────────────────────────────────────────────────────────────────────── #

def _cmd_spectrum(args, source, settings, calibrations, regions) -> int:
    result = DistributedAggregator(source, settings, calibrations, regions).run(
        mode="histogram")
    paths = OutputWriter.write_all(result, args.out, args.file, args.prefix,
                                   args.fmt, settings)

    engine   = BackgroundEngine(settings.background)
    spectrum = result.spectrum
    if args.background:
        bg       = engine.estimate_background(spectrum)
        spectrum = engine.subtract(spectrum, bg)
        for hist in (bg, spectrum):
            path = os.path.join(args.out, f"{args.prefix}_{hist.name}.{args.fmt}")
            OutputWriter.write_histogram(hist, path, args.fmt)
            paths.append(path)

    if args.derivative:
        deriv = engine.derivative(spectrum)
        path  = os.path.join(args.out, f"{args.prefix}_derivative.dat")
        with open(path, "w") as f:
            for x, d, e in zip(deriv.x, deriv.values, deriv.errors):
                f.write(f"{x:g}\t{d:g}\t{e:g}\n")
        paths.append(path)

    if args.integrate:
        integral = engine.integrate(spectrum, args.integrate[0], args.integrate[1],
                                    gaussian_fit=args.gaussian)
        print(integral)

    for path in paths:
        print(path)
    return 0


def _cmd_psd(args, source, settings, calibrations, regions) -> int:
    result = DistributedAggregator(source, settings, calibrations, regions).run(
        mode="discriminate")
    paths = OutputWriter.write_all(result, args.out, args.file, args.prefix,
                                   args.fmt, settings)

    slicer = AnalysisPipeline(source, settings, calibrations, regions).psd
    for axis, value in (("total", args.slice_x), ("tail", args.slice_y)):
        if value is None:
            continue
        hist = slicer.slice(axis, value, histogram=result.psd)
        path = os.path.join(args.out, f"{args.prefix}_slice_{axis}_{value:g}.{args.fmt}")
        OutputWriter.write_histogram(hist, path, args.fmt)
        paths.append(path)

    for path in paths:
        print(path)
    return 0


def _cmd_waveform(args, source, settings, calibrations, regions) -> int:
    pipeline = AnalysisPipeline(source, settings, calibrations, regions)
    wf = pipeline.analyze_waveform(args.index)
    print(f"ch{wf.channel} event {wf.index} ({wf.kind}): {len(wf.samples)} samples, "
          f"baseline {wf.baseline:.3f}, height {wf.height:.3f}, area {wf.area:.3f}")
    for p in wf.peaks:
        flags = [name for name in ("pileup", "psd_reject", "limits_clamped")
                 if getattr(p, name)]
        if not p.analyze:
            flags.append("outside_window")
        print(f"  peak {p.peak_id}: x={p.position_x} y={p.position_y:.3f} "
              f"limits=[{p.lower_limit}, {p.upper_limit}] {' '.join(flags)}")

    os.makedirs(args.out, exist_ok=True)
    path = os.path.join(args.out, f"{args.prefix}_waveform_{args.index}.dat")
    with open(path, "w") as f:
        for i, v in enumerate(wf.samples):
            f.write(f"{i}\t{v:g}\n")
    print(path)
    return 0


def _cmd_count_rate(args, source, settings, calibrations, regions) -> int:
    pipeline = AnalysisPipeline(source, settings, calibrations, regions)
    n = settings.spectrum.events or source.event_count(settings.waveform.channel)
    rate = calculate_count_rate(pipeline, n, args.pulse_width_us, args.rep_rate_hz)
    print(f"Waveforms          : {rate.waveforms}")
    print(f"Peaks              : {rate.total_peaks}")
    print(f"Instantaneous rate : {rate.instantaneous_hz:.6g} Hz")
    print(f"Average rate       : {rate.average_hz:.6g} Hz")
    return 0


COMMANDS = {
    "spectrum":   _cmd_spectrum,
    "psd":        _cmd_psd,
    "waveform":   _cmd_waveform,
    "count-rate": _cmd_count_rate,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    _configure_logging(args.verbose)
    try:
        settings, calibrations, regions = _build_settings(args)
        source = ROOTWaveformLoader(args.file)
        source.open()
        return COMMANDS[args.command](args, source, settings, calibrations, regions)
    except (SourceUnavailableError, ValueError) as e:
        logger.error("%s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
