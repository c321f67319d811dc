import numpy as np
import pytest

from waveform_spectra.calib_fitter import CalibrationManager
from waveform_spectra.peak_finder import Peak
from waveform_spectra.psd_integrator import PSDIntegrator, PSDRegion
from waveform_spectra.settings import PSDSettings

UNIT_SQUARE = [(0.0, 0.0), (1.0, 0.0), (1.0, 1.0), (0.0, 1.0)]


@pytest.mark.parametrize("accept_inside", [True, False])
def test_unit_square_accept_modes(accept_inside):
    region = PSDRegion.from_points(UNIT_SQUARE, accept_inside=accept_inside)
    assert region.accepts(0.5, 0.5) is accept_inside
    assert region.accepts(2.0, 2.0) is (not accept_inside)


def test_degenerate_region_is_not_created():
    assert PSDRegion.from_points([(0.0, 0.0), (1.0, 1.0)]) is None
    integrator = PSDIntegrator()
    integrator.set_region(0, UNIT_SQUARE)
    assert integrator.set_region(0, [(5.0, 5.0)]) is False
    assert integrator.regions[0].accepts(0.5, 0.5)


def _psd_settings(**kwargs):
    base = dict(total_start=-5, total_stop=20, tail_start=5, tail_stop=20,
                num_total_bins=50, total_min=0.0, total_max=500.0,
                num_tail_bins=50, tail_min=0.0, tail_max=500.0)
    base.update(kwargs)
    return PSDSettings(**base)


def _event():
    samples = np.zeros(200)
    samples[50:61] = 10.0
    return samples, [Peak(1, 50, 10.0, lower_limit=50, upper_limit=60)]


def test_total_and_tail_integrals():
    samples, _ = _event()
    total, tail = PSDIntegrator(_psd_settings()).integrals(samples, 50)
    assert total == pytest.approx(110.0)
    assert tail == pytest.approx(60.0)


def test_windows_are_clipped_to_the_buffer():
    samples = np.ones(30)
    total, tail = PSDIntegrator(_psd_settings()).integrals(samples, 25)
    assert total == pytest.approx(10.0)     # samples 20 … 29
    assert tail == pytest.approx(0.0)       # starts past the end


def test_ratio_mode():
    samples, _ = _event()
    _, tail = PSDIntegrator(_psd_settings(ratio=True)).integrals(samples, 50)
    assert tail == pytest.approx(60.0 / 110.0)


def test_ratio_mode_zero_total():
    _, tail = PSDIntegrator(_psd_settings(ratio=True)).integrals(np.zeros(100), 50)
    assert tail == 0.0


def test_accepted_peak_fills_histogram():
    samples, peaks = _event()
    integrator = PSDIntegrator(_psd_settings())
    integrator.set_region(0, [(100, 50), (120, 50), (120, 70), (100, 70)])
    integrator.compute(samples, peaks)
    assert not peaks[0].psd_reject
    assert integrator.histogram.entries == 1
    assert integrator.totals == [pytest.approx(110.0)]


def test_rejected_peak_is_flagged_and_not_filled():
    samples, peaks = _event()
    integrator = PSDIntegrator(_psd_settings())
    integrator.set_region(0, [(100, 50), (120, 50), (120, 70), (100, 70)],
                          accept_inside=False)
    integrator.compute(samples, peaks)
    assert peaks[0].psd_reject
    assert integrator.histogram.entries == 0
    assert integrator.peaks_rejected == 1


def test_threshold_gate_still_runs_region_test():
    samples, peaks = _event()
    integrator = PSDIntegrator(_psd_settings(threshold=200.0))
    integrator.set_region(0, [(100, 50), (120, 50), (120, 70), (100, 70)],
                          accept_inside=False)
    integrator.compute(samples, peaks)
    assert peaks[0].psd_reject
    assert integrator.histogram.entries == 0
    assert integrator.peaks_below_threshold == 1


def test_peaks_outside_window_are_skipped():
    samples, peaks = _event()
    peaks[0].analyze = False
    integrator = PSDIntegrator(_psd_settings())
    integrator.set_region(0, [(0, 0), (1, 0), (1, 1)])
    integrator.compute(samples, peaks)
    assert not peaks[0].psd_reject
    assert integrator.histogram.entries == 0


def test_total_in_physical_units():
    samples, peaks = _event()
    calib = CalibrationManager()
    calib.set_point(0, 0, 0.0, 0.0)
    calib.set_point(0, 1, 100.0, 200.0)
    calib.set_calibration(0)
    integrator = PSDIntegrator(_psd_settings(total_in_physical_units=True),
                               calibrations=calib)
    integrator.compute(samples, peaks)
    assert integrator.totals == [pytest.approx(220.0)]


def test_slices():
    samples, peaks = _event()
    integrator = PSDIntegrator(_psd_settings())
    integrator.compute(samples, peaks)
    along_tail = integrator.slice("total", 110.0)
    along_total = integrator.slice("tail", 60.0)
    assert along_tail.integral() == 1
    assert along_tail.find_bin(60.0) == int(np.argmax(along_tail.contents))
    assert along_total.integral() == 1
    with pytest.raises(ValueError):
        integrator.slice("diagonal", 1.0)
