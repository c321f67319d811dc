import numpy as np
import pytest

from waveform_spectra.histogram import Histogram1D, Histogram2D
from waveform_spectra.parallel_processor import (AggregatorState, DistributedAggregator,
                                                 WorkerFailureError, compute_shards,
                                                 merge_partials)
from waveform_spectra.pipeline import AnalysisPipeline, PartialResult
from waveform_spectra.waveform_loader import ArrayWaveformSource


@pytest.mark.parametrize("workers", range(1, 9))
def test_shards_cover_range_exactly_once(workers):
    for n in range(40):
        shards = compute_shards(n, workers, offset=5)
        assert len(shards) == workers
        assert [s.rank for s in shards] == list(range(workers))
        assert shards[0].start == 5
        assert shards[-1].end == 5 + n
        for a, b in zip(shards, shards[1:]):
            assert a.end == b.start
        assert shards[0].size == n // workers + n % workers
        assert all(s.size == n // workers for s in shards[1:])


def test_shards_reject_bad_input():
    with pytest.raises(ValueError):
        compute_shards(10, 0)
    with pytest.raises(ValueError):
        compute_shards(-1, 2)


def _partial(rank, values):
    spectrum = Histogram1D(10, 0.0, 10.0)
    spectrum.fill_many(values)
    return PartialResult(rank=rank, start=rank * 10, end=rank * 10 + 10,
                         spectrum=spectrum, psd=Histogram2D(5, 0, 5, 5, 0, 5),
                         counters={"peaks_found": len(values)},
                         heights=list(values), areas=[v * 2 for v in values])


def test_merge_is_ordered_by_rank():
    parts = [_partial(0, [1.5, 2.5]), _partial(1, [3.5]), _partial(2, [-1.0, 12.0])]
    forward  = merge_partials(parts)
    backward = merge_partials(parts[::-1])

    for merged in (forward, backward):
        assert merged.heights == [1.5, 2.5, 3.5, -1.0, 12.0]
        assert merged.counters["peaks_found"] == 5
        assert [s.rank for s in merged.shards] == [0, 1, 2]
        assert merged.spectrum.entries == 5
        assert merged.spectrum.contents[0] == 1
        assert merged.spectrum.contents[-1] == 1
    assert np.array_equal(forward.spectrum.contents, backward.spectrum.contents)
    assert np.array_equal(forward.spectrum.sumw2, backward.spectrum.sumw2)


def test_merge_nothing():
    with pytest.raises(ValueError):
        merge_partials([])


@pytest.fixture
def source(pulse_waveform):
    levels = [50.0 + 25.0 * (i % 17) for i in range(30)]
    return ArrayWaveformSource({0: [pulse_waveform(pulses=((400, 450, 100.0 + h),))
                                    for h in levels]})


def test_single_worker_matches_pipeline(source, settings):
    aggregator = DistributedAggregator(source, settings)
    result = aggregator.run(workers=1)
    direct = AnalysisPipeline(source, settings).process_range(0, 30)

    assert aggregator.state is AggregatorState.MERGED
    assert np.array_equal(result.spectrum.contents, direct.spectrum.contents)
    assert result.heights == direct.heights
    assert result.counters == direct.counters
    assert [(s.start, s.end) for s in result.shards] == [(0, 30)]


def test_worker_count_does_not_change_result(source, settings):
    single = DistributedAggregator(source, settings).run(workers=1)
    multi  = DistributedAggregator(source, settings).run(workers=3)

    assert [(s.start, s.end) for s in multi.shards] == [(0, 10), (10, 20), (20, 30)]
    assert np.array_equal(multi.spectrum.contents, single.spectrum.contents)
    assert np.array_equal(multi.spectrum.sumw2, single.spectrum.sumw2)
    assert multi.spectrum.entries == single.spectrum.entries
    assert multi.heights == single.heights
    assert multi.areas == single.areas
    assert multi.counters == single.counters


def test_event_range_is_clamped(source, settings):
    aggregator = DistributedAggregator(source, settings)
    assert aggregator.resolve_range(100) == (0, 30)
    assert aggregator.resolve_range((5, 12)) == (5, 12)
    result = aggregator.run(event_range=(5, 12))
    assert result.counters["waveforms_processed"] == 7
    with pytest.raises(ValueError):
        aggregator.resolve_range((10, 5))


def test_short_event_is_skipped_and_the_rest_merge(pulse_waveform, settings):
    events = [pulse_waveform(pulses=((400, 450, 500.0),))] * 9
    events.insert(4, np.full(60, 100.0))
    aggregator = DistributedAggregator(ArrayWaveformSource({0: events}), settings)
    result = aggregator.run(workers=1)

    assert aggregator.state is AggregatorState.MERGED
    assert result.counters["waveforms_processed"] == 10
    assert result.counters["waveforms_short"] == 1
    assert result.heights == [400.0] * 9
    assert result.spectrum.entries == 9


def test_short_event_in_worker_shard(pulse_waveform, settings):
    events = [pulse_waveform()] * 10
    events[7] = np.full(60, 100.0)
    result = DistributedAggregator(ArrayWaveformSource({0: events}), settings).run(workers=2)
    assert result.counters["waveforms_short"] == 1
    assert len(result.heights) == 9


def test_inline_rank_failure(settings):
    # samples that are not numbers cannot be built
    source = ArrayWaveformSource({0: ["corrupt"] * 4})
    aggregator = DistributedAggregator(source, settings)
    with pytest.raises(WorkerFailureError) as info:
        aggregator.run(workers=1)
    assert info.value.rank == 0
    assert isinstance(info.value.__cause__, ValueError)
    assert aggregator.state is AggregatorState.FAILED


def test_worker_failure_is_not_merged(pulse_waveform, settings):
    events = [pulse_waveform()] * 5 + ["corrupt"] * 5
    aggregator = DistributedAggregator(ArrayWaveformSource({0: events}), settings)
    with pytest.raises(WorkerFailureError) as info:
        aggregator.run(workers=2)
    assert info.value.rank == 1
    assert aggregator.state is AggregatorState.FAILED


def test_failure_raises_without_waiting_for_other_shards(pulse_waveform, settings):
    events = ["corrupt"] * 4 + [pulse_waveform()] * 8
    aggregator = DistributedAggregator(ArrayWaveformSource({0: events}), settings)
    with pytest.raises(WorkerFailureError) as info:
        aggregator.run(workers=3)
    assert info.value.rank == 0
    assert aggregator.state is AggregatorState.FAILED


def test_unknown_mode(source, settings):
    with pytest.raises(ValueError):
        DistributedAggregator(source, settings).run(mode="calibrate")
