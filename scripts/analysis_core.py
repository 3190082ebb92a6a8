"""
Analysis core: voltage decomposition, resampling, best-fit lines and
time-domain simulation scoring.

Everything here works on lists of PreparedData and returns plain lists of
(x, y) tuples so a plotting layer can consume the output directly.
"""

import math
from dataclasses import dataclass

from feedforward_sim import sgn
from prepared_data import (
    AnalysisAborted,
    InsufficientDataError,
    is_test_start,
    split_at_test_starts,
)


def check_abort(abort):
    """Raise AnalysisAborted if the cancellation flag is set."""
    if abort is not None and abort.is_set():
        raise AnalysisAborted("Analysis pass cancelled")


# ============================================================================
# RESAMPLING
# ============================================================================

def decimation_step(n, max_size, series_per_dataset=4):
    """Stride that keeps up to ``series_per_dataset`` series from one dataset
    within a total budget of ``max_size`` points: ceil(n / max_size * 4).
    """
    if max_size <= 0:
        raise ValueError(f"Point budget must be positive, got {max_size}")
    step = -(-n * series_per_dataset // max_size)
    return max(1, step)


def decimate(samples, step):
    """Every ``step``-th sample, starting with the first."""
    return samples[::step]


# ============================================================================
# VOLTAGE DECOMPOSITION
# ============================================================================

def velocity_portion(sample, gains):
    """Voltage left for the Kv*v term once static, acceleration and gravity
    terms are removed."""
    return (sample.voltage - gains.ks * sgn(sample.velocity)
            - gains.ka * sample.acceleration - gains.gravity_voltage(sample.cos))


def acceleration_portion(sample, gains):
    """Voltage left for the Ka*a term once static, velocity and gravity
    terms are removed."""
    return (sample.voltage - gains.ks * sgn(sample.velocity)
            - gains.kv * sample.velocity - gains.gravity_voltage(sample.cos))


def velocity_fit_series(slow, gains, step=1, abort=None):
    """(velocity-portion voltage, velocity) scatter for the quasistatic data."""
    points = []
    for sample in decimate(slow, step):
        check_abort(abort)
        points.append((velocity_portion(sample, gains), sample.velocity))
    return points


def acceleration_fit_series(fast, gains, step=1, abort=None):
    """(acceleration-portion voltage, acceleration) scatter for the dynamic data."""
    points = []
    for sample in decimate(fast, step):
        check_abort(abort)
        points.append((acceleration_portion(sample, gains), sample.acceleration))
    return points


# ============================================================================
# TIME SERIES
# ============================================================================

def sample_values(samples, attribute, abort=None):
    """sample.<attribute> for every sample."""
    values = []
    for sample in samples:
        check_abort(abort)
        values.append(getattr(sample, attribute))
    return values


def time_series(samples, attribute, step=1, abort=None):
    """(timestamp, sample.<attribute>) for every step-th sample."""
    points = []
    for sample in decimate(samples, step):
        check_abort(abort)
        points.append((sample.timestamp, getattr(sample, attribute)))
    return points


def sample_interval_series(samples, start_times, step=1, abort=None):
    """(timestamp, dt in ms) for every step-th sample.

    The first sample, samples with no interval and test starts are skipped;
    the gap before a test start is not a real sample interval.
    """
    points = []
    for i in range(0, len(samples), step):
        check_abort(abort)
        sample = samples[i]
        if i > 0 and sample.dt > 0 and not is_test_start(sample.timestamp, start_times):
            points.append((sample.timestamp, sample.dt * 1000.0))
    return points


# ============================================================================
# BEST-FIT LINES
# ============================================================================

def best_fit_line(gain, values):
    """Two points (gain*min, min) and (gain*max, max) spanning ``values``."""
    if not values:
        raise InsufficientDataError("Cannot build a fit line from no data")
    lo = min(values)
    hi = max(values)
    return [(gain * lo, lo), (gain * hi, hi)]


# ============================================================================
# FIT QUALITY
# ============================================================================

@dataclass(frozen=True)
class FitMetrics:
    rmse: float
    r_squared: float
    num_points: int


class FitAccumulator:
    """Running sums for simulated-vs-measured velocity error.

    One accumulator belongs to one analysis pass.
    """

    def __init__(self):
        self.squared_error_sum = 0.0
        self.squared_variation_sum = 0.0
        self.num_points = 0

    def add(self, measured, simulated):
        self.squared_error_sum += (measured - simulated) ** 2
        self.squared_variation_sum += measured ** 2
        self.num_points += 1

    def metrics(self) -> FitMetrics:
        """RMSE and R² = 1 - RMSE / RMS(measured velocity)."""
        if self.num_points == 0:
            raise InsufficientDataError("No simulated points to score the fit against")
        rmse = math.sqrt(self.squared_error_sum / self.num_points)
        rms_velocity = math.sqrt(self.squared_variation_sum / self.num_points)
        if rms_velocity == 0:
            raise InsufficientDataError(
                "Measured velocity is zero everywhere, R² is undefined")
        return FitMetrics(rmse, 1.0 - rmse / rms_velocity, self.num_points)


def simulate_time_domain(data, start_times, sim, accumulator=None, abort=None):
    """Re-simulate each test run from its first sample and score it.

    The simulator is reset at the start of the data and at every test start.
    Within a run it is stepped with the previous sample's voltage and dt and
    compared against the current sample's measured velocity.

    Returns one list of (timestamp, simulated velocity) per test run.
    """
    runs = []
    for run_index, run in enumerate(split_at_test_starts(data, start_times)):
        check_abort(abort)
        first = run[0]
        sim.reset(first.position, first.velocity)
        points = [(first.timestamp, first.velocity)] if run_index == 0 else []
        for pre, now in zip(run, run[1:]):
            check_abort(abort)
            sim.update(pre.voltage, pre.dt)
            simulated = sim.get_velocity()
            points.append((now.timestamp, simulated))
            if accumulator is not None:
                accumulator.add(now.velocity, simulated)
        runs.append(points)
    return runs
