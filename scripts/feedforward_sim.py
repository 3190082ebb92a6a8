"""
Feedforward mechanism simulators.

Each simulator integrates the feedforward voltage model forward in time:

    V = Ks*sgn(v) + Kv*v + Ka*a                 (simple motor)
    V = Ks*sgn(v) + Kv*v + Ka*a + Kg            (elevator)
    V = Ks*sgn(v) + Kv*v + Ka*a + Kcos*cos(x)   (arm)

All three expose reset(position, velocity), update(voltage, dt) and
get_velocity(), so callers never need to know which kind they hold.
"""

import functools
import math
from dataclasses import dataclass

import numpy as np
from scipy.integrate import solve_ivp
from scipy.linalg import expm

from prepared_data import (
    ARM,
    ELEVATOR,
    GAIN_COUNTS,
    SIMPLE_MOTOR,
    SysIdError,
    rejected_input,
)

# Arm integration tolerance. Loose on purpose: ill-conditioned data with sharp
# acceleration spikes otherwise drives the step size toward zero.
ARM_MAX_ERROR = 1e-4

# Distinct sample intervals kept per process; captures repeat a handful of dts
DISCRETIZATION_CACHE_SIZE = 256


def sgn(x):
    """Sign of x: -1.0, 0.0 or 1.0."""
    return float(np.sign(x))


@dataclass(frozen=True)
class FeedforwardGains:
    """Fitted feedforward gains for one mechanism kind."""
    analysis_type: str
    ks: float
    kv: float
    ka: float
    kg: float = 0.0
    kcos: float = 0.0

    @classmethod
    def from_list(cls, gains, analysis_type):
        """Build from the ordered list [Ks, Kv, Ka(, Kg | Kcos)]."""
        if analysis_type not in GAIN_COUNTS:
            raise rejected_input(f"Unknown analysis type '{analysis_type}'")
        expected = GAIN_COUNTS[analysis_type]
        if len(gains) != expected:
            raise rejected_input(
                f"{analysis_type} analysis needs {expected} gains, got {len(gains)}")
        ks, kv, ka = (float(g) for g in gains[:3])
        if analysis_type == ELEVATOR:
            return cls(analysis_type, ks, kv, ka, kg=float(gains[3]))
        if analysis_type == ARM:
            return cls(analysis_type, ks, kv, ka, kcos=float(gains[3]))
        return cls(analysis_type, ks, kv, ka)

    def as_list(self):
        gains = [self.ks, self.kv, self.ka]
        if self.analysis_type == ELEVATOR:
            gains.append(self.kg)
        elif self.analysis_type == ARM:
            gains.append(self.kcos)
        return gains

    def gravity_voltage(self, cos=0.0):
        """Voltage spent holding against gravity (0 for a simple motor)."""
        if self.analysis_type == ELEVATOR:
            return self.kg
        if self.analysis_type == ARM:
            return self.kcos * cos
        return 0.0


@functools.lru_cache(maxsize=DISCRETIZATION_CACHE_SIZE)
def discretize_motor(kv, ka, dt):
    """Zero-order-hold (Ad, Bd) of the linear motor model over dt.

    The returned arrays are shared between callers and must not be modified.
    """
    A = np.array([[0.0, 1.0], [0.0, -kv / ka]])
    B = np.array([[0.0], [1.0 / ka]])
    M = np.zeros((3, 3))
    M[:2, :2] = A * dt
    M[:2, 2:] = B * dt
    phi = expm(M)
    return phi[:2, :2], phi[:2, 2]


class SimpleMotorSim:
    """Linear motor model dx/dt = Ax + B(u - Ks*sgn(v)), x = [position, velocity].

    Discretized exactly for each dt with a zero-order hold on the input.
    """

    def __init__(self, ks, kv, ka, initial_position=0.0, initial_velocity=0.0):
        if ka <= 0:
            raise rejected_input(f"Ka must be positive to simulate, got {ka}")
        self.ks = ks
        self.kv = kv
        self.ka = ka
        self._x = np.zeros(2)
        self.reset(initial_position, initial_velocity)

    def _opposing_voltage(self):
        return self.ks * sgn(self.get_velocity())

    def reset(self, position, velocity):
        self._x = np.array([float(position), float(velocity)])

    def update(self, voltage, dt):
        """Advance the state by dt seconds under a constant voltage."""
        if dt < 0:
            raise ValueError(f"dt must be non-negative, got {dt}")
        Ad, Bd = discretize_motor(self.kv, self.ka, dt)
        u = voltage - self._opposing_voltage()
        self._x = Ad @ self._x + Bd * u

    def get_position(self):
        return float(self._x[0])

    def get_velocity(self):
        return float(self._x[1])


class ElevatorSim(SimpleMotorSim):
    """Simple motor plus a constant gravity voltage Kg."""

    def __init__(self, ks, kv, ka, kg, initial_position=0.0, initial_velocity=0.0):
        self.kg = kg
        super().__init__(ks, kv, ka, initial_position, initial_velocity)

    def _opposing_voltage(self):
        return self.ks * sgn(self.get_velocity()) + self.kg


class ArmSim:
    """Arm model with gravity torque Kcos*cos(position).

    The cosine term makes the dynamics nonlinear, so each update integrates
    with an adaptive Dormand-Prince (RK45) solver.
    """

    def __init__(self, ks, kv, ka, kcos, initial_position=0.0, initial_velocity=0.0):
        if ka <= 0:
            raise rejected_input(f"Ka must be positive to simulate, got {ka}")
        self.ks = ks
        self.kv = kv
        self.ka = ka
        self.kcos = kcos
        self._x = np.zeros(2)
        self.reset(initial_position, initial_velocity)

    def _dynamics(self, t, x, voltage):
        position, velocity = x
        accel = (voltage - self.ks * sgn(velocity) - self.kv * velocity
                 - self.kcos * math.cos(position)) / self.ka
        return [velocity, accel]

    def reset(self, position, velocity):
        self._x = np.array([float(position), float(velocity)])

    def update(self, voltage, dt):
        """Advance the state by dt seconds under a constant voltage."""
        if dt < 0:
            raise ValueError(f"dt must be non-negative, got {dt}")
        if dt == 0:
            return
        sol = solve_ivp(self._dynamics, (0.0, dt), self._x, method='RK45',
                        args=(voltage,), rtol=ARM_MAX_ERROR, atol=ARM_MAX_ERROR)
        if not sol.success:
            raise SysIdError(f"Arm simulation failed over dt={dt}: {sol.message}")
        self._x = sol.y[:, -1]

    def get_position(self):
        return float(self._x[0])

    def get_velocity(self):
        return float(self._x[1])


def create_sim(gains: FeedforwardGains):
    """Construct the simulator matching the gains' mechanism kind."""
    if gains.analysis_type == ELEVATOR:
        return ElevatorSim(gains.ks, gains.kv, gains.ka, gains.kg)
    if gains.analysis_type == ARM:
        return ArmSim(gains.ks, gains.kv, gains.ka, gains.kcos)
    if gains.analysis_type == SIMPLE_MOTOR:
        return SimpleMotorSim(gains.ks, gains.kv, gains.ka)
    raise rejected_input(f"Unknown analysis type '{gains.analysis_type}'")
