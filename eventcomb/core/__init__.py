"""Filter state: integrator, delay lines, comb filter and calibrator."""

from eventcomb.core.calibration import ContrastThresholdCalibrator
from eventcomb.core.comb import CombFilter
from eventcomb.core.integrator import ContrastThresholds, LogIntensityIntegrator, select_thresholds
from eventcomb.core.ring_buffer import DelayLine, buffer_length, lag_ticks

__all__ = [
    "ContrastThresholdCalibrator",
    "CombFilter",
    "ContrastThresholds",
    "LogIntensityIntegrator",
    "select_thresholds",
    "DelayLine",
    "buffer_length",
    "lag_ticks",
]
