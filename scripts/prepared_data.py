"""
Prepared Characterization Data
==============================

Data model shared by the analysis scripts: one cleaned sample per measured
instant (``PreparedData``), the quasistatic/dynamic pair of datasets
(``Storage``), the supported mechanism kinds, unit labels and the error
types raised when input can't be analyzed.

Raw logs are turned into prepared samples with ``prepare_samples`` which
derives dt, next velocity and acceleration while respecting test-start
boundaries.
"""

import logging
import math
from dataclasses import dataclass, field, replace

import numpy as np
from scipy.signal import savgol_filter

logger = logging.getLogger(__name__)

SIMPLE_MOTOR = 'simple'
ELEVATOR = 'elevator'
ARM = 'arm'
ANALYSIS_TYPES = (SIMPLE_MOTOR, ELEVATOR, ARM)

# Number of feedforward gains each mechanism kind is fitted with
GAIN_COUNTS = {SIMPLE_MOTOR: 3, ELEVATOR: 4, ARM: 4}

NUM_START_TIMES = 4

UNIT_ABBREVIATIONS = {
    'Meters': 'm',
    'Feet': 'ft',
    'Inches': 'in',
    'Radians': 'rad',
    'Rotations': 'rot',
    'Degrees': 'deg',
}


class SysIdError(Exception):
    """Base class for characterization analysis errors."""


class MalformedInputError(SysIdError, ValueError):
    """Input rejected before any simulation starts."""


class InsufficientDataError(SysIdError):
    """No simulated points were available to compute fit metrics."""


class ConfigError(SysIdError):
    """Analysis configuration file is missing a key or has a bad value."""


class AnalysisAborted(SysIdError):
    """Raised inside a pass when its cancellation flag is set."""


def rejected_input(message) -> MalformedInputError:
    """Log rejected input at WARNING and return the error to raise."""
    logger.warning(message)
    return MalformedInputError(message)


@dataclass
class PreparedData:
    """One measured instant after cleaning and derivation.

    Attributes:
        timestamp: Sample time [s]
        voltage: Applied voltage [V]
        position: Mechanism position [units]
        velocity: Mechanism velocity [units/s]
        next_velocity: Velocity of the following sample in the same test
        dt: Gap to the following sample in the same test [s], 0 at test end
        acceleration: (next_velocity - velocity) / dt [units/s²]
        cos: cos(position), only populated for arms
    """
    timestamp: float
    voltage: float
    position: float
    velocity: float
    next_velocity: float = 0.0
    dt: float = 0.0
    acceleration: float = 0.0
    cos: float = 0.0


@dataclass
class Storage:
    """Quasistatic (slow) and dynamic (fast) datasets."""
    slow: list[PreparedData] = field(default_factory=list)
    fast: list[PreparedData] = field(default_factory=list)

    def __iter__(self):
        # Allows ``slow, fast = storage``
        return iter((self.slow, self.fast))


def get_abbreviation(unit: str) -> str:
    """Return the axis abbreviation for a unit name (e.g. 'Meters' -> 'm')."""
    try:
        return UNIT_ABBREVIATIONS[unit]
    except KeyError:
        raise rejected_input(
            f"Unknown unit '{unit}', expected one of {list(UNIT_ABBREVIATIONS)}") from None


def is_test_start(timestamp, start_times) -> bool:
    """True if ``timestamp`` exactly equals one of the test-start times.

    Matching is exact float equality. A start time that differs from every
    sample timestamp by round-off never matches.
    """
    return timestamp in start_times


def prepare_samples(timestamps, voltages, positions, velocities,
                    start_times=(), analysis_type=SIMPLE_MOTOR) -> list[PreparedData]:
    """Build prepared samples from parallel raw arrays.

    Derived fields look one sample ahead. The look-ahead stops at the end of
    the data and at every test-start timestamp so no dt or acceleration
    spans two independent tests.
    """
    t = np.asarray(timestamps, dtype=float)
    volts = np.asarray(voltages, dtype=float)
    pos = np.asarray(positions, dtype=float)
    vel = np.asarray(velocities, dtype=float)
    if not (len(t) == len(volts) == len(pos) == len(vel)):
        raise rejected_input(
            f"Raw arrays differ in length: t={len(t)}, V={len(volts)}, "
            f"x={len(pos)}, v={len(vel)}")

    samples = []
    for i in range(len(t)):
        sample = PreparedData(
            timestamp=float(t[i]),
            voltage=float(volts[i]),
            position=float(pos[i]),
            velocity=float(vel[i]),
            cos=math.cos(pos[i]) if analysis_type == ARM else 0.0,
        )
        if i + 1 < len(t) and not is_test_start(float(t[i + 1]), start_times):
            dt = float(t[i + 1] - t[i])
            if dt < 0:
                raise rejected_input(
                    f"Timestamps go backwards at t={t[i]:.6f}s (dt={dt:.6f}s)")
            sample.dt = dt
            sample.next_velocity = float(vel[i + 1])
            if dt > 0:
                sample.acceleration = (sample.next_velocity - sample.velocity) / dt
        samples.append(sample)
    return samples


def split_at_test_starts(samples, start_times) -> list[list[PreparedData]]:
    """Split a sample sequence into runs, each new run beginning at a test start.

    The first sample always begins the first run, whether or not it is a
    test start itself.
    """
    runs = []
    current = []
    for i, sample in enumerate(samples):
        if i > 0 and is_test_start(sample.timestamp, start_times):
            runs.append(current)
            current = []
        current.append(sample)
    if current:
        runs.append(current)
    return runs


def filter_velocity(samples, start_times=(), window=9, polyorder=3,
                    analysis_type=SIMPLE_MOTOR) -> list[PreparedData]:
    """Smooth velocity per test run and re-derive dt/acceleration.

    Uses a Savitzky-Golay filter. Runs shorter than the window are kept
    unfiltered.
    """
    if window < 3 or window % 2 == 0:
        raise rejected_input(f"Filter window must be odd and >= 3, got {window}")

    filtered = []
    for run in split_at_test_starts(samples, start_times):
        v = np.array([s.velocity for s in run])
        if len(v) >= window:
            v = savgol_filter(v, window, min(polyorder, window - 1))
        else:
            logger.debug(f"Run of {len(run)} samples shorter than filter window {window}")
        filtered.extend(replace(s, velocity=float(vs)) for s, vs in zip(run, v))

    return prepare_samples(
        [s.timestamp for s in filtered],
        [s.voltage for s in filtered],
        [s.position for s in filtered],
        [s.velocity for s in filtered],
        start_times=start_times,
        analysis_type=analysis_type,
    )


def filter_storage(storage: Storage, start_times=(), window=9,
                   analysis_type=SIMPLE_MOTOR) -> Storage:
    """Apply ``filter_velocity`` to both datasets."""
    return Storage(
        slow=filter_velocity(storage.slow, start_times, window,
                             analysis_type=analysis_type),
        fast=filter_velocity(storage.fast, start_times, window,
                             analysis_type=analysis_type),
    )


def get_mean_time_delta(storage: Storage) -> float:
    """Mean of the positive sample intervals over both datasets [s]."""
    dts = [s.dt for s in storage.slow if s.dt > 0]
    dts += [s.dt for s in storage.fast if s.dt > 0]
    if not dts:
        raise InsufficientDataError("No positive sample intervals to average")
    return float(np.mean(dts))


def validate_analysis_inputs(storage: Storage, gains, start_times, analysis_type):
    """Reject malformed input before any simulation starts."""
    if analysis_type not in ANALYSIS_TYPES:
        raise rejected_input(
            f"Unknown analysis type '{analysis_type}', expected one of {ANALYSIS_TYPES}")
    if not storage.slow:
        raise rejected_input("Quasistatic (slow) dataset is empty")
    if not storage.fast:
        raise rejected_input("Dynamic (fast) dataset is empty")
    expected = GAIN_COUNTS[analysis_type]
    if len(gains) != expected:
        raise rejected_input(
            f"{analysis_type} analysis needs {expected} gains, got {len(gains)}")
    if len(start_times) != NUM_START_TIMES:
        raise rejected_input(
            f"Expected {NUM_START_TIMES} test start times, got {len(start_times)}")
