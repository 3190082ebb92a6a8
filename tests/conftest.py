import matplotlib
import numpy as np
import pytest

matplotlib.use('Agg')

from feedforward_sim import ArmSim, ElevatorSim, SimpleMotorSim
from prepared_data import ARM, ELEVATOR, SIMPLE_MOTOR, Storage, prepare_samples

START_TIMES = [0.0, 3.0, 6.0, 8.0]

GAINS = {
    SIMPLE_MOTOR: [0.3, 2.0, 0.4],
    ELEVATOR: [0.3, 2.0, 0.4, 0.8],
    ARM: [0.3, 2.0, 0.4, 0.6],
}


def make_sim(analysis_type, gains):
    if analysis_type == ELEVATOR:
        return ElevatorSim(*gains)
    if analysis_type == ARM:
        return ArmSim(*gains)
    return SimpleMotorSim(*gains)


def simulate_records(sim, t0, voltages, dt=0.01, position=0.0, velocity=0.0):
    """Records whose measured velocity is exactly what ``sim`` produces."""
    t = t0 + dt * np.arange(len(voltages))
    sim.reset(position, velocity)
    records = [{'time': float(t[0]), 'voltage': float(voltages[0]),
                'position': position, 'velocity': velocity}]
    for i in range(1, len(voltages)):
        sim.update(float(voltages[i - 1]), float(t[i] - t[i - 1]))
        records.append({'time': float(t[i]), 'voltage': float(voltages[i]),
                        'position': sim.get_position(), 'velocity': sim.get_velocity()})
    return records


def characterization_records(analysis_type, gains=None, n=200):
    """Two quasistatic ramps and two dynamic steps, one per start time."""
    sim = make_sim(analysis_type, gains or GAINS[analysis_type])
    ramp = 0.05 + 3.0 * np.arange(n) / n
    step = np.full(n, 4.0)
    slow = (simulate_records(sim, START_TIMES[0], ramp)
            + simulate_records(sim, START_TIMES[1], -ramp))
    fast = (simulate_records(sim, START_TIMES[2], step)
            + simulate_records(sim, START_TIMES[3], -step))
    return {'slow': slow, 'fast': fast}


def records_to_storage(data, analysis_type, start_times=START_TIMES):
    def prepare(records):
        return prepare_samples(
            [r['time'] for r in records],
            [r['voltage'] for r in records],
            [r['position'] for r in records],
            [r['velocity'] for r in records],
            start_times=start_times,
            analysis_type=analysis_type,
        )
    return Storage(slow=prepare(data['slow']), fast=prepare(data['fast']))


@pytest.fixture
def start_times():
    return list(START_TIMES)


@pytest.fixture
def simple_storage():
    return records_to_storage(characterization_records(SIMPLE_MOTOR), SIMPLE_MOTOR)
