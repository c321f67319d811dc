import os

import numpy as np
import pytest

from waveform_spectra.histogram import Histogram1D, Histogram2D
from waveform_spectra.output_writer import OutputWriter
from waveform_spectra.parallel_processor import AggregationResult, ProcessingRange


def _result(mode="histogram"):
    spectrum = Histogram1D(4, 0.0, 4.0, name="spectrum")
    spectrum.fill_many([0.5, 1.5, 1.5])
    psd = Histogram2D(2, 0.0, 2.0, 2, 0.0, 2.0, name="psd")
    psd.fill(0.5, 1.5)
    return AggregationResult(
        mode=mode, spectrum=spectrum, psd=psd,
        counters={"peaks_found": 3, "peaks_accepted": 3},
        heights=[0.5, 1.5, 1.5], areas=[5.0, 15.0],
        totals=[0.5], tails=[1.5],
        shards=[ProcessingRange(0, 0, 6), ProcessingRange(1, 6, 10)])


def test_dat_and_csv(tmp_path):
    spectrum = _result().spectrum
    dat = str(tmp_path / "s.dat")
    csv = str(tmp_path / "s.csv")
    OutputWriter.write_histogram(spectrum, dat)
    OutputWriter.write_histogram(spectrum, csv)
    with open(dat) as f:
        assert f.read().splitlines() == ["0.5\t1", "1.5\t2", "2.5\t0", "3.5\t0"]
    with open(csv) as f:
        assert f.read().splitlines()[1] == "1.5,2"


def test_2d_lines(tmp_path):
    path = str(tmp_path / "psd.dat")
    OutputWriter.write_histogram(_result().psd, path)
    with open(path) as f:
        lines = f.read().splitlines()
    assert len(lines) == 4
    assert "0.5\t1.5\t1" in lines


def test_unknown_format(tmp_path):
    with pytest.raises(ValueError):
        OutputWriter.write_histogram(_result().spectrum, str(tmp_path / "s.txt"))


def test_write_all_histogram_mode(tmp_path):
    paths = OutputWriter.write_all(_result(), str(tmp_path / "out"), "run.root",
                                   prefix="run")
    assert [os.path.basename(p) for p in paths] == [
        "run_histogram.dat", "run_log.txt", "run_values.txt"]
    assert all(os.path.isfile(p) for p in paths)

    with open(paths[1]) as f:
        log = f.read()
    assert "run.root" in log
    assert "peaks_found" in log
    with open(paths[2]) as f:
        rows = [line for line in f if not line.startswith("#")]
    assert len(rows) == 3
    assert "nan" in rows[-1]


def test_write_all_discriminate_mode(tmp_path):
    paths = OutputWriter.write_all(_result("discriminate"), str(tmp_path), fmt="csv")
    assert [os.path.basename(p) for p in paths] == [
        "waveform_spectra_discriminate.csv", "waveform_spectra_log.txt"]


def test_root_round_trip(tmp_path):
    uproot = pytest.importorskip("uproot")
    result = _result()
    path = str(tmp_path / "hists.root")
    OutputWriter.write_root({"spectrum": result.spectrum, "psd": result.psd}, path)

    with uproot.open(path) as f:
        counts, edges = f["spectrum"].to_numpy()
        assert np.array_equal(counts, [1, 2, 0, 0])
        assert np.allclose(edges, [0, 1, 2, 3, 4])
        counts2, _, _ = f["psd"].to_numpy()
        assert counts2[0, 1] == 1
