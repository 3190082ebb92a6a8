"""
Ordinary least-squares fit of feedforward gains from prepared data.

Model (no intercept):

    V = Ks*sgn(v) + Kv*v + Ka*a [+ Kg | + Kcos*cos(x)]
"""

import logging
from dataclasses import dataclass

import numpy as np
from sklearn.linear_model import LinearRegression
from sklearn.metrics import r2_score

from prepared_data import ARM, ELEVATOR, GAIN_COUNTS, InsufficientDataError, rejected_input

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GainFit:
    gains: list
    r_squared: float
    num_points: int


def build_features(samples, analysis_type) -> np.ndarray:
    """Feature matrix with one column per gain, in gain order.

    Features:
        1. sgn(v)     -> Ks (static friction)
        2. v          -> Kv
        3. a          -> Ka
        4. 1 | cos(x) -> Kg (elevator) or Kcos (arm)
    """
    v = np.array([s.velocity for s in samples])
    a = np.array([s.acceleration for s in samples])
    columns = [np.sign(v), v, a]
    if analysis_type == ELEVATOR:
        columns.append(np.ones_like(v))
    elif analysis_type == ARM:
        columns.append(np.array([s.cos for s in samples]))
    return np.column_stack(columns)


def fit_feedforward_gains(storage, analysis_type) -> GainFit:
    """Fit gains over both datasets.

    Samples with no following sample in their test (dt == 0) carry no
    acceleration information and are left out.
    """
    if analysis_type not in GAIN_COUNTS:
        raise rejected_input(f"Unknown analysis type '{analysis_type}'")
    samples = [s for s in list(storage.slow) + list(storage.fast) if s.dt > 0]
    n_gains = GAIN_COUNTS[analysis_type]
    if len(samples) < n_gains:
        raise InsufficientDataError(
            f"Need at least {n_gains} samples with a valid acceleration, got {len(samples)}")

    X = build_features(samples, analysis_type)
    y = np.array([s.voltage for s in samples])

    model = LinearRegression(fit_intercept=False)
    model.fit(X, y)
    r2 = r2_score(y, model.predict(X))

    gains = [float(c) for c in model.coef_]
    logger.info(f"Fitted {analysis_type} gains {gains} (R²={r2:.4f}, {len(samples)} samples)")
    return GainFit(gains=gains, r_squared=float(r2), num_points=len(samples))
