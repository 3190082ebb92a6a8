import logging
import math

import numpy as np
import pytest

from conftest import START_TIMES
from prepared_data import (
    ARM,
    ELEVATOR,
    SIMPLE_MOTOR,
    InsufficientDataError,
    MalformedInputError,
    PreparedData,
    Storage,
    filter_velocity,
    get_abbreviation,
    get_mean_time_delta,
    prepare_samples,
    validate_analysis_inputs,
)


def test_prepare_samples_derives_fields():
    samples = prepare_samples([0.0, 0.5, 1.0], [1.0, 2.0, 3.0], [0.0, 0.1, 0.3],
                              [0.0, 1.0, 3.0])
    first, middle, last = samples
    assert first.dt == 0.5
    assert first.next_velocity == 1.0
    assert first.acceleration == 2.0
    assert middle.acceleration == 4.0
    assert last.dt == 0.0
    assert last.next_velocity == 0.0
    assert last.acceleration == 0.0
    assert all(s.cos == 0.0 for s in samples)


def test_prepare_samples_stops_at_test_start():
    samples = prepare_samples([2.9, 2.95, 3.0, 3.05], [1.0] * 4, [0.0] * 4,
                              [1.0, 1.0, 9.0, 9.5], start_times=START_TIMES)
    assert samples[1].dt == 0.0
    assert samples[1].acceleration == 0.0
    assert samples[2].dt == pytest.approx(0.05)


def test_prepare_samples_cos_only_for_arm():
    positions = [0.0, math.pi / 3]
    arm = prepare_samples([0.0, 0.01], [0.0, 0.0], positions, [0.0, 0.0], analysis_type=ARM)
    elevator = prepare_samples([0.0, 0.01], [0.0, 0.0], positions, [0.0, 0.0],
                               analysis_type=ELEVATOR)
    assert arm[0].cos == 1.0
    assert arm[1].cos == pytest.approx(0.5)
    assert [s.cos for s in elevator] == [0.0, 0.0]


def test_prepare_samples_rejects_backwards_time():
    with pytest.raises(MalformedInputError):
        prepare_samples([0.0, 0.2, 0.1], [0.0] * 3, [0.0] * 3, [0.0] * 3)


def test_prepare_samples_rejects_mismatched_lengths():
    with pytest.raises(MalformedInputError):
        prepare_samples([0.0, 0.1], [0.0], [0.0, 0.0], [0.0, 0.0])


def test_prepared_data_equality_is_field_wise():
    a = PreparedData(timestamp=1.0, voltage=2.0, position=3.0, velocity=4.0, dt=0.01)
    b = PreparedData(timestamp=1.0, voltage=2.0, position=3.0, velocity=4.0, dt=0.01)
    assert a == b
    b.acceleration = 1e-12
    assert a != b


def test_storage_unpacks():
    storage = Storage(slow=[1], fast=[2])
    slow, fast = storage
    assert slow == [1]
    assert fast == [2]


def test_abbreviations():
    assert get_abbreviation('Meters') == 'm'
    assert get_abbreviation('Rotations') == 'rot'
    with pytest.raises(MalformedInputError):
        get_abbreviation('Furlongs')


def test_mean_time_delta_ignores_gaps():
    slow = prepare_samples([0.0, 0.01, 0.02], [0.0] * 3, [0.0] * 3, [0.0] * 3)
    fast = prepare_samples([6.0, 6.03], [0.0] * 2, [0.0] * 2, [0.0] * 2)
    assert get_mean_time_delta(Storage(slow, fast)) == pytest.approx((0.01 + 0.01 + 0.03) / 3)


def test_mean_time_delta_without_intervals():
    single = prepare_samples([0.0], [0.0], [0.0], [0.0])
    with pytest.raises(InsufficientDataError):
        get_mean_time_delta(Storage(single, single))


def test_filter_velocity_preserves_polynomial_signal():
    t = np.arange(40) * 0.01
    v = 2.0 * t + 0.5
    samples = prepare_samples(t, np.ones(40), np.zeros(40), v)
    filtered = filter_velocity(samples, window=9)
    assert len(filtered) == 40
    assert [s.velocity for s in filtered] == pytest.approx(list(v), abs=1e-9)
    assert filtered[5].acceleration == pytest.approx(2.0, abs=1e-6)


def test_filter_velocity_leaves_short_runs_alone():
    t = [0.0, 0.01, 0.02, 3.0, 3.01]
    v = [0.0, 5.0, 0.0, 1.0, 2.0]
    samples = prepare_samples(t, [0.0] * 5, [0.0] * 5, v, start_times=START_TIMES)
    filtered = filter_velocity(samples, START_TIMES, window=9)
    assert [s.velocity for s in filtered] == v
    assert filtered[2].dt == 0.0


def test_filter_velocity_rejects_even_window():
    with pytest.raises(MalformedInputError):
        filter_velocity([], window=8)


def _storage():
    samples = prepare_samples([0.0, 0.01], [1.0, 1.0], [0.0, 0.0], [0.0, 0.1])
    return Storage(slow=samples, fast=list(samples))


@pytest.mark.parametrize('storage, gains, start_times, analysis_type', [
    (Storage(slow=[], fast=[PreparedData(0.0, 0.0, 0.0, 0.0)]), [1, 2, 3], START_TIMES, SIMPLE_MOTOR),
    (Storage(slow=[PreparedData(0.0, 0.0, 0.0, 0.0)], fast=[]), [1, 2, 3], START_TIMES, SIMPLE_MOTOR),
    (_storage(), [1, 2, 3], START_TIMES, ELEVATOR),
    (_storage(), [1, 2, 3, 4], START_TIMES, SIMPLE_MOTOR),
    (_storage(), [1, 2, 3], START_TIMES[:3], SIMPLE_MOTOR),
    (_storage(), [1, 2, 3], START_TIMES, 'turret'),
])
def test_validate_rejects_malformed_input(storage, gains, start_times, analysis_type):
    with pytest.raises(MalformedInputError):
        validate_analysis_inputs(storage, gains, start_times, analysis_type)


def test_validate_accepts_good_input():
    validate_analysis_inputs(_storage(), [1, 2, 3, 4], START_TIMES, ARM)


def test_validate_logs_rejection(caplog):
    with caplog.at_level(logging.WARNING, logger='prepared_data'):
        with pytest.raises(MalformedInputError):
            validate_analysis_inputs(_storage(), [1, 2, 3], START_TIMES[:3], SIMPLE_MOTOR)
    assert 'Expected 4 test start times' in caplog.text
