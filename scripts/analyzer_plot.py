"""
Analyzer plot data: every series the characterization report draws, built in
one analysis pass and shared with a reader thread.

A pass holds the lock for its whole duration and publishes its results only
once everything has been computed. Readers use try_snapshot(), which never
waits: while a pass is running it returns None and the reader skips that
frame. A cancelled or failed pass leaves the previously published data in
place.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from analysis_core import (
    FitAccumulator,
    FitMetrics,
    acceleration_fit_series,
    best_fit_line,
    decimation_step,
    sample_interval_series,
    sample_values,
    simulate_time_domain,
    time_series,
    velocity_fit_series,
)
from feedforward_sim import FeedforwardGains, create_sim
from prepared_data import (
    AnalysisAborted,
    InsufficientDataError,
    Storage,
    get_abbreviation,
    get_mean_time_delta,
    rejected_input,
    validate_analysis_inputs,
)

logger = logging.getLogger(__name__)

# Point budget shared by the series drawn from one dataset
MAX_SIZE = 2048

CHART_TITLES = (
    'Quasistatic Velocity vs. Velocity-Portion Voltage',
    'Dynamic Acceleration vs. Acceleration-Portion Voltage',
    'Quasistatic Velocity vs. Time',
    'Quasistatic Acceleration vs. Time',
    'Dynamic Velocity vs. Time',
    'Dynamic Acceleration vs. Time',
    'Timesteps vs. Time',
)

VELOCITY_FIT, ACCELERATION_FIT, SLOW_VELOCITY, SLOW_ACCELERATION, \
    FAST_VELOCITY, FAST_ACCELERATION, TIMESTEPS = CHART_TITLES

RAW_TITLES = (SLOW_VELOCITY, SLOW_ACCELERATION, FAST_VELOCITY, FAST_ACCELERATION)

ZERO_LINE = ((0.0, 0.0), (0.0, 0.0))


def _empty_series(titles=CHART_TITLES):
    return {title: [] for title in titles}


@dataclass
class PlotData:
    """One published set of analysis results. Treat as read-only."""
    filtered_data: dict = field(default_factory=_empty_series)
    raw_data: dict = field(default_factory=lambda: _empty_series(RAW_TITLES))
    kv_fit: tuple = ZERO_LINE
    ka_fit: tuple = ZERO_LINE
    dt_mean_line: list = field(default_factory=list)
    quasistatic_sim: list = field(default_factory=list)
    dynamic_sim: list = field(default_factory=list)
    metrics: Optional[FitMetrics] = None
    velocity_label: str = 'Velocity'
    acceleration_label: str = 'Acceleration'


def graph_labels(unit):
    """Velocity and acceleration axis labels for a unit name."""
    abbreviation = get_abbreviation(unit)
    return f'Velocity ({abbreviation} / s)', f'Acceleration ({abbreviation} / s^2)'


class AnalyzerPlot:
    """Owns the published plot data and the lock guarding it."""

    def __init__(self, max_size=MAX_SIZE):
        self.max_size = max_size
        self._lock = threading.Lock()
        self._data = PlotData()

    def reset_data(self):
        """Clear every series, fit line and metric."""
        with self._lock:
            self._data = PlotData()
        logger.debug("Plot data reset")

    def try_snapshot(self) -> Optional[PlotData]:
        """Published data, or None if a pass currently holds the lock."""
        if not self._lock.acquire(blocking=False):
            logger.debug("Analysis in progress, skipping read")
            return None
        try:
            return self._data
        finally:
            self._lock.release()

    def get_metrics(self) -> FitMetrics:
        """RMSE and R² of the last completed pass.

        Never waits on a running pass: published PlotData is replaced whole,
        so the committed reference is read without the lock.
        """
        metrics = self._data.metrics
        if metrics is None:
            raise InsufficientDataError("No fit metrics: no analysis has completed since reset")
        return metrics

    def _raw_time_data(self, data, raw_slow, raw_fast, abort):
        raw_slow_step = decimation_step(len(raw_slow), self.max_size)
        raw_fast_step = decimation_step(len(raw_fast), self.max_size)
        data.raw_data[SLOW_VELOCITY] = time_series(raw_slow, 'velocity', raw_slow_step, abort)
        data.raw_data[SLOW_ACCELERATION] = time_series(raw_slow, 'acceleration', raw_slow_step, abort)
        data.raw_data[FAST_VELOCITY] = time_series(raw_fast, 'velocity', raw_fast_step, abort)
        data.raw_data[FAST_ACCELERATION] = time_series(raw_fast, 'acceleration', raw_fast_step, abort)

    def set_raw_data(self, raw_storage, unit, abort=None) -> bool:
        """Publish only the raw time-domain series.

        Returns False if the pass was cancelled; the previous data stays.
        """
        data = PlotData()
        data.velocity_label, data.acceleration_label = graph_labels(unit)
        raw_slow, raw_fast = raw_storage
        with self._lock:
            try:
                self._raw_time_data(data, raw_slow, raw_fast, abort)
            except AnalysisAborted:
                logger.debug("Raw data pass cancelled")
                return False
            self._data = data
        logger.info(f"Published raw data: {len(raw_slow)} slow, {len(raw_fast)} fast samples")
        return True

    def set_data(self, raw_storage, filtered_storage, unit, ff_gains,
                 start_times, analysis_type, abort=None) -> bool:
        """Run a full analysis pass and publish its results.

        Args:
            raw_storage: Unfiltered Storage, used for raw series and simulation
            filtered_storage: Filtered Storage, used for fit scatter and timesteps
            unit: Unit name for axis labels
            ff_gains: [Ks, Kv, Ka(, Kg | Kcos)]
            start_times: The 4 test-start timestamps
            analysis_type: 'simple', 'elevator' or 'arm'
            abort: threading.Event checked on every loop iteration

        Returns:
            True if results were published, False if the pass was cancelled.

        Raises:
            MalformedInputError: input rejected before anything was computed
            InsufficientDataError: simulation produced no points to score
        """
        validate_analysis_inputs(filtered_storage, ff_gains, start_times, analysis_type)
        raw_slow, raw_fast = raw_storage
        if not raw_slow or not raw_fast:
            raise rejected_input("Raw datasets must not be empty")

        gains = FeedforwardGains.from_list(ff_gains, analysis_type)
        # One simulator per dataset, kind resolved here once
        sims = (create_sim(gains), create_sim(gains))
        slow, fast = filtered_storage
        data = PlotData()
        data.velocity_label, data.acceleration_label = graph_labels(unit)

        logger.info(f"Analyzing {analysis_type}: {len(slow)} slow, {len(fast)} fast samples, "
                    f"gains={gains.as_list()}")
        with self._lock:
            try:
                self._analyze(data, raw_slow, raw_fast, slow, fast, gains, sims,
                              start_times, abort)
            except AnalysisAborted:
                logger.debug("Analysis pass cancelled, keeping previous results")
                return False
            self._data = data

        logger.info(f"Published analysis: RMSE={data.metrics.rmse:.4f}, "
                    f"R²={data.metrics.r_squared:.4f} over {data.metrics.num_points} points")
        return True

    def _analyze(self, data, raw_slow, raw_fast, slow, fast, gains, sims, start_times, abort):
        slow_step = decimation_step(len(slow), self.max_size)
        fast_step = decimation_step(len(fast), self.max_size)

        data.kv_fit = tuple(best_fit_line(gains.kv, sample_values(slow, 'velocity', abort)))
        data.ka_fit = tuple(best_fit_line(gains.ka, sample_values(fast, 'acceleration', abort)))

        series = data.filtered_data
        series[VELOCITY_FIT] = velocity_fit_series(slow, gains, slow_step, abort)
        series[SLOW_VELOCITY] = time_series(slow, 'velocity', slow_step, abort)
        series[SLOW_ACCELERATION] = time_series(slow, 'acceleration', slow_step, abort)
        series[ACCELERATION_FIT] = acceleration_fit_series(fast, gains, fast_step, abort)
        series[FAST_VELOCITY] = time_series(fast, 'velocity', fast_step, abort)
        series[FAST_ACCELERATION] = time_series(fast, 'acceleration', fast_step, abort)
        series[TIMESTEPS] = (
            sample_interval_series(slow, start_times, slow_step, abort)
            + sample_interval_series(fast, start_times, fast_step, abort))

        try:
            dt_mean_ms = get_mean_time_delta(Storage(slow=slow, fast=fast)) * 1000.0
        except InsufficientDataError:
            logger.warning("No positive sample intervals, omitting mean dt line")
        else:
            min_time = min(slow[0].timestamp, fast[0].timestamp)
            max_time = max(slow[-1].timestamp, fast[-1].timestamp)
            data.dt_mean_line = [(min_time, dt_mean_ms), (max_time, dt_mean_ms)]

        self._raw_time_data(data, raw_slow, raw_fast, abort)

        accumulator = FitAccumulator()
        data.quasistatic_sim = simulate_time_domain(
            raw_slow, start_times, sims[0], accumulator, abort)
        data.dynamic_sim = simulate_time_domain(
            raw_fast, start_times, sims[1], accumulator, abort)
        data.metrics = accumulator.metrics()
