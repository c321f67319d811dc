"""
ParallelProcessor
=================
Splits an event range across worker processes and merges their partial
results.

Shards (N events, W workers):
  shard = N // W
  rank 0      [0, shard + N % W)          runs in the calling process
  rank r ≥ 1  the next ``shard`` events    runs in a spawned process

Every rank builds its own AnalysisPipeline from the (picklable) source,
settings, calibration manager and PSD regions. The call returns once all
ranks have finished. Partial results are reduced by rank:

  histograms     summed bin for bin, under/overflow and Σw² included
  counters       summed
  value lists    concatenated in rank order

A failure on any rank cancels the shards that have not started, stops
waiting on the running ones and raises WorkerFailureError; no partial
merge is returned.
"""

from __future__ import annotations
import enum
import logging
import multiprocessing
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field

from waveform_spectra.histogram import Histogram1D, Histogram2D
from waveform_spectra.pipeline import AnalysisPipeline, PartialResult, check_mode
from waveform_spectra.settings import AnalysisSettings

logger = logging.getLogger(__name__)


class AggregatorState(enum.Enum):
    IDLE            = "idle"
    SHARDS_ASSIGNED = "shards_assigned"
    WORKERS_RUNNING = "workers_running"
    REDUCING        = "reducing"
    MERGED          = "merged"
    FAILED          = "failed"


class WorkerFailureError(RuntimeError):

    def __init__(self, rank: int, cause: BaseException):
        super().__init__(f"Worker rank {rank} failed: "
                         f"{type(cause).__name__}: {cause}")
        self.rank = rank


@dataclass(frozen=True)
class ProcessingRange:
    rank:  int
    start: int
    end:   int

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass
class AggregationResult:
    mode:     str
    spectrum: Histogram1D
    psd:      Histogram2D
    counters: dict
    heights:  list
    areas:    list
    totals:   list
    tails:    list
    shards:   list = field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────────── #
# Partition / reduction
# ─────────────────────────────────────────────────────────────────────────── #

def compute_shards(n_events: int, workers: int, offset: int = 0) -> list[ProcessingRange]:
    if workers < 1:
        raise ValueError(f"workers must be >= 1, got {workers}")
    if n_events < 0:
        raise ValueError(f"n_events must be >= 0, got {n_events}")

    shard = n_events // workers
    first = shard + n_events % workers
    ranges = [ProcessingRange(0, offset, offset + first)]
    start  = offset + first
    for rank in range(1, workers):
        ranges.append(ProcessingRange(rank, start, start + shard))
        start += shard
    return ranges


def merge_partials(partials: list[PartialResult], mode: str = "histogram") -> AggregationResult:
    if not partials:
        raise ValueError("Nothing to merge")
    ordered = sorted(partials, key=lambda p: p.rank)

    spectrum = ordered[0].spectrum.clone(name="spectrum")
    psd      = ordered[0].psd.clone(name="psd")
    counters = dict(ordered[0].counters)
    heights, areas, totals, tails = [], [], [], []
    for i, part in enumerate(ordered):
        if i > 0:
            spectrum.add(part.spectrum)
            psd.add(part.psd)
            for key, value in part.counters.items():
                counters[key] = counters.get(key, 0) + value
        heights.extend(part.heights)
        areas.extend(part.areas)
        totals.extend(part.totals)
        tails.extend(part.tails)

    return AggregationResult(
        mode=mode, spectrum=spectrum, psd=psd, counters=counters,
        heights=heights, areas=areas, totals=totals, tails=tails,
        shards=[ProcessingRange(p.rank, p.start, p.end) for p in ordered])


def _process_shard(source, settings, calibrations, regions,
                    shard: ProcessingRange, mode: str) -> PartialResult:
    pipeline = AnalysisPipeline(source, settings, calibrations, regions)
    return pipeline.process_range(shard.start, shard.end, mode, rank=shard.rank)


# ─────────────────────────────────────────────────────────────────────────── #
# Aggregator
# ─────────────────────────────────────────────────────────────────────────── #

class DistributedAggregator:

    def __init__(self, source, settings: AnalysisSettings = None,
                  calibrations=None, regions: dict = None):
        self.source       = source
        self.settings     = settings or AnalysisSettings()
        self.calibrations = calibrations
        self.regions      = dict(regions or {})
        self.state        = AggregatorState.IDLE
        self.shards: list[ProcessingRange] = []

    def resolve_range(self, event_range=None) -> tuple[int, int]:
        """(start, end) from None, an event count, or a (start, end) pair."""
        available = self.source.event_count(self.settings.waveform.channel)
        if event_range is None:
            event_range = self.settings.spectrum.events
        if event_range is None:
            start, end = 0, available
        elif isinstance(event_range, int):
            start, end = 0, event_range
        else:
            start, end = (int(v) for v in event_range)
        if not 0 <= start <= end:
            raise ValueError(f"Invalid event range [{start}, {end})")
        if end > available:
            logger.warning("Requested %d events, source has %d; clamping",
                           end, available)
            end = max(start, available)
        return start, end

    def run(self, event_range=None, workers: int = None,
             mode: str = "histogram") -> AggregationResult:
        check_mode(mode)
        workers = workers or self.settings.parallel.workers
        self.state = AggregatorState.IDLE
        try:
            start, end  = self.resolve_range(event_range)
            self.shards = compute_shards(end - start, workers, offset=start)
            self.state  = AggregatorState.SHARDS_ASSIGNED
            logger.info("%d events over %d worker(s): %s", end - start, workers,
                        ", ".join(f"r{s.rank}=[{s.start},{s.end})" for s in self.shards))

            self.state = AggregatorState.WORKERS_RUNNING
            if workers == 1:
                partials = [self._run_rank(self.shards[0], mode)]
            else:
                partials = self._run_pool(mode, workers)

            self.state = AggregatorState.REDUCING
            result = merge_partials(partials, mode)
            self.state = AggregatorState.MERGED
        except Exception:
            self.state = AggregatorState.FAILED
            raise

        logger.info("Merged %d shard(s): %d waveforms, %d peaks found, %d accepted",
                    len(partials), result.counters.get("waveforms_processed", 0),
                    result.counters.get("peaks_found", 0),
                    result.counters.get("peaks_accepted", 0))
        return result

    def _run_rank(self, shard: ProcessingRange, mode: str) -> PartialResult:
        try:
            return _process_shard(self.source, self.settings, self.calibrations,
                                  self.regions, shard, mode)
        except Exception as exc:
            raise WorkerFailureError(shard.rank, exc) from exc

    def _run_pool(self, mode: str, workers: int) -> list[PartialResult]:
        ctx = multiprocessing.get_context(self.settings.parallel.start_method)
        executor = ProcessPoolExecutor(mp_context=ctx, max_workers=workers - 1)
        future_map = {
            executor.submit(_process_shard, self.source, self.settings,
                            self.calibrations, self.regions, shard, mode): shard.rank
            for shard in self.shards[1:]
        }
        try:
            partials = [self._run_rank(self.shards[0], mode)]
            for future in as_completed(future_map):
                rank = future_map[future]
                try:
                    partials.append(future.result())
                except Exception as exc:
                    raise WorkerFailureError(rank, exc) from exc
                logger.debug("rank %d finished", rank)
        except WorkerFailureError as exc:
            logger.error("%s; cancelling remaining shards", exc)
            # shards already running finish in the background; nothing waits on them
            executor.shutdown(wait=False, cancel_futures=True)
            raise
        executor.shutdown(wait=True)
        return partials
