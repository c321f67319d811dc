import numpy as np
import pytest

from waveform_spectra.settings import AnalysisSettings


def _pulse_waveform(n=1000, baseline=100.0, pulses=((400, 450, 500.0),)):
    """Flat baseline with rectangular pulses given as (start, stop, level)."""
    wf = np.full(n, baseline)
    for start, stop, level in pulses:
        wf[start:stop] = level
    return wf


@pytest.fixture
def pulse_waveform():
    return _pulse_waveform


@pytest.fixture
def settings():
    s = AnalysisSettings()
    s.waveform.baseline_min = 0
    s.waveform.baseline_max = 100
    s.waveform.polarity = 1
    s.peak_finder.floor = 50.0
    s.spectrum.quantity = "height"
    s.spectrum.num_bins = 100
    s.spectrum.xmin = 0.0
    s.spectrum.xmax = 1000.0
    return s
