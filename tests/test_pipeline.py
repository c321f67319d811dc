import numpy as np
import pytest

from waveform_spectra.pipeline import AnalysisPipeline, calculate_count_rate, COUNTERS
from waveform_spectra.waveform_loader import ArrayWaveformSource


def _source(pulse_waveform, levels):
    return ArrayWaveformSource({0: [pulse_waveform(pulses=((400, 450, 100.0 + h),))
                                    for h in levels]})


def test_process_range_histogram(pulse_waveform, settings):
    levels   = [200.0, 400.0, 600.0]
    pipeline = AnalysisPipeline(_source(pulse_waveform, levels), settings)
    part = pipeline.process_range(0, 3)

    assert set(part.counters) == set(COUNTERS)
    assert part.counters["waveforms_processed"] == 3
    assert part.counters["peaks_found"] == 3
    assert part.counters["peaks_accepted"] == 3
    assert part.heights == levels
    assert part.spectrum.entries == 3
    assert part.psd.entries == 0


def test_process_range_starts_clean(pulse_waveform, settings):
    pipeline = AnalysisPipeline(_source(pulse_waveform, [300.0] * 4), settings)
    pipeline.process_range(0, 4)
    part = pipeline.process_range(2, 4, rank=1)
    assert part.rank == 1
    assert (part.start, part.end) == (2, 4)
    assert part.counters["waveforms_processed"] == 2
    assert len(part.heights) == 2


def test_discriminate_fills_psd_only(pulse_waveform, settings):
    pipeline = AnalysisPipeline(_source(pulse_waveform, [400.0] * 5), settings)
    part = pipeline.process_range(0, 5, mode="discriminate")
    assert part.spectrum.entries == 0
    assert part.heights == []
    assert part.psd.entries == 5
    assert len(part.totals) == len(part.tails) == 5


def test_empty_waveform_and_no_peaks(settings):
    source = ArrayWaveformSource({0: [np.array([]), np.full(1000, 100.0)]})
    part = AnalysisPipeline(source, settings).process_range(0, 2)
    assert part.counters["waveforms_empty"] == 1
    assert part.counters["waveforms_without_peaks"] == 1
    assert part.counters["peaks_found"] == 0


def test_unknown_mode(pulse_waveform, settings):
    pipeline = AnalysisPipeline(_source(pulse_waveform, [100.0]), settings)
    with pytest.raises(ValueError):
        pipeline.process_range(0, 1, mode="calibrate")


def test_analyze_waveform(pulse_waveform, settings):
    pipeline = AnalysisPipeline(_source(pulse_waveform, [400.0]), settings)
    wf = pipeline.analyze_waveform(0)
    assert wf.baseline == pytest.approx(100.0)
    assert wf.height == pytest.approx(400.0)
    assert wf.area == pytest.approx(400.0 * 50)
    assert len(wf.peaks) == 1

    raw = pipeline.analyze_waveform(0, kind="raw")
    assert raw.height == pytest.approx(500.0)


def test_count_rate(pulse_waveform, settings):
    wf = pulse_waveform(pulses=((300, 330, 500.0), (600, 630, 400.0)))
    pipeline = AnalysisPipeline(ArrayWaveformSource({0: [wf] * 10}), settings)
    rate = calculate_count_rate(pipeline, 10, pulse_width_us=1.0, rep_rate_hz=100.0)
    assert rate.waveforms == 10
    assert rate.total_peaks == 20
    assert rate.instantaneous_hz == pytest.approx(2e6)
    assert rate.average_hz == pytest.approx(200.0)


@pytest.mark.parametrize("n, width", [(0, 1.0), (10, 0.0)])
def test_count_rate_rejects_bad_input(pulse_waveform, settings, n, width):
    pipeline = AnalysisPipeline(_source(pulse_waveform, [100.0]), settings)
    with pytest.raises(ValueError):
        calculate_count_rate(pipeline, n, width, 100.0)


def test_count_rate_clamps_to_available_events(pulse_waveform, settings):
    wf = pulse_waveform(pulses=((300, 330, 500.0), (600, 630, 400.0)))
    pipeline = AnalysisPipeline(ArrayWaveformSource({0: [wf] * 3}), settings)
    rate = calculate_count_rate(pipeline, 5, pulse_width_us=1.0, rep_rate_hz=100.0)
    assert rate.waveforms == 3
    assert rate.total_peaks == 6
    assert rate.instantaneous_hz == pytest.approx(2e6)


def test_short_waveform_is_counted(pulse_waveform, settings):
    source = ArrayWaveformSource({0: [np.full(60, 100.0), pulse_waveform()]})
    part = AnalysisPipeline(source, settings).process_range(0, 2)
    assert part.counters["waveforms_short"] == 1
    assert part.counters["waveforms_empty"] == 0
    assert part.heights == [400.0]
