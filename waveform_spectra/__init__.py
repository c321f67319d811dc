from waveform_spectra.histogram            import Histogram1D, Histogram2D
from waveform_spectra.settings             import AnalysisSettings, load_settings
from waveform_spectra.waveform_loader      import ROOTWaveformLoader, ArrayWaveformSource, SourceUnavailableError
from waveform_spectra.waveform_builder     import WaveformBuilder
from waveform_spectra.peak_finder          import PeakFinder, Peak
from waveform_spectra.calib_fitter         import CalibrationManager, CalibrationCurve, CalibrationResult
from waveform_spectra.psd_integrator       import PSDIntegrator, PSDRegion
from waveform_spectra.spectrum_accumulator import SpectrumAccumulator
from waveform_spectra.background           import BackgroundEngine, IntegralResult, DerivativeResult
from waveform_spectra.pipeline             import AnalysisPipeline, PartialResult, calculate_count_rate
from waveform_spectra.parallel_processor   import (DistributedAggregator, AggregationResult, AggregatorState,
                                                   WorkerFailureError, compute_shards, merge_partials)
from waveform_spectra.output_writer        import OutputWriter
