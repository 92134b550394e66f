"""
Adaptive Contrast Threshold Calibration

If ON and OFF thresholds are mismatched, the integrated log intensity
drifts in the direction of the larger one. The calibrator estimates the
per-pixel ON and OFF event densities with leaky counters and rebalances the
OFF threshold so that, summed over the sensor,

    S_on · θ⁺ + S_off · θ⁻ ≈ 0

which drives L towards zero mean.

Leaky counters (per pixel, per polarity):
    C ← exp(−λ·δ) · C + 1,   δ = t − T,   T ← t

    λ = −ln(0.05) / retention_duration, i.e. a constant event rate
    reaches 95% of its steady state count in ``retention_duration`` seconds.
    Events older than the stored T (δ < 0) are ignored.

Recalibration (periodic):
    1. Decay every counter to time t and set every T to t.
    2. If S_on + S_off > E_min:  θ⁻ ← −S_on / (S_off + ε) · θ⁺
    θ⁺ is fixed by convention and never updated.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Tuple

import numpy as np

from eventcomb.config import CalibrationParams
from eventcomb.core.integrator import ContrastThresholds

logger = logging.getLogger(__name__)


class ContrastThresholdCalibrator:
    """
    Leaky event counters and ON/OFF threshold rebalancing.

    Args:
        height: Sensor height.
        width: Sensor width.
        params: Calibration constants.

    Attributes:
        count_on, count_off: Leaky event counters E_on, E_off.
        ts_on, ts_off: Last update time of each counter (s).
        threshold_on: Adaptive θ⁺ (constant).
        threshold_off: Adaptive θ⁻ (non-positive).
        n_recalibrations: Number of rebalances applied.
    """

    def __init__(
        self,
        height: int,
        width: int,
        params: Optional[CalibrationParams] = None
    ) -> None:
        self.params = params if params is not None else CalibrationParams()
        self.decay_rate = self.params.decay_rate

        shape = (height, width)
        self.count_on = np.zeros(shape, dtype=np.float64)
        self.count_off = np.zeros(shape, dtype=np.float64)
        self.ts_on = np.zeros(shape, dtype=np.float64)
        self.ts_off = np.zeros(shape, dtype=np.float64)

        self.threshold_on = self.params.contrast_threshold_on
        self.threshold_off = -self.params.contrast_threshold_on
        self.n_recalibrations = 0

    @property
    def thresholds(self) -> ContrastThresholds:
        """Current adaptive (θ⁺, θ⁻) pair."""
        return ContrastThresholds(self.threshold_on, self.threshold_off)

    def update(self, x: int, y: int, polarity: bool, t: float) -> bool:
        """
        Count one event in its pixel's leaky counter.

        Returns:
            False if the event was older than the counter and ignored.
        """
        if polarity:
            count, ts = self.count_on, self.ts_on
        else:
            count, ts = self.count_off, self.ts_off

        delta_t = t - ts[y, x]
        if delta_t < 0:
            return False

        count[y, x] = math.exp(-self.decay_rate * delta_t) * count[y, x] + 1
        ts[y, x] = t
        return True

    def decay_to(self, t: float) -> None:
        """Decay every counter to time ``t`` and sync its timestamp."""
        self.count_on *= np.exp(-self.decay_rate * (t - self.ts_on))
        self.count_off *= np.exp(-self.decay_rate * (t - self.ts_off))
        self.ts_on.fill(t)
        self.ts_off.fill(t)

    def totals(self) -> Tuple[float, float]:
        """Summed counter mass (S_on, S_off)."""
        return float(self.count_on.sum()), float(self.count_off.sum())

    def recalibrate(self, t: float) -> bool:
        """
        Global decay and threshold rebalance.

        Args:
            t: Time of the recalibration (s).

        Returns:
            True if θ⁻ was updated.
        """
        self.decay_to(t)
        sum_on, sum_off = self.totals()

        if sum_on + sum_off <= self.params.event_density_min:
            return False

        self.threshold_off = -sum_on / (sum_off + self.params.epsilon) * self.threshold_on
        self.n_recalibrations += 1
        logger.debug(
            f"Recalibrated at t={t:.6f}s: S_on={sum_on:.4g} S_off={sum_off:.4g} "
            f"threshold_off={self.threshold_off:.5f}"
        )
        return True


__all__ = ["ContrastThresholdCalibrator"]
