"""
Log Intensity Integrator

Each event reports that the log brightness at one pixel moved by one
contrast threshold. Summing those signed steps per pixel gives an estimate
of the log intensity field L (x₀ of the comb filter):

    L[y, x] += θ⁺   for an ON event
    L[y, x] += θ⁻   for an OFF event (θ⁻ < 0)

Events on the first row and first column, and anything outside the sensor,
are dropped: the accepted region is the open interval 0 < x < W, 0 < y < H.

Additions are queued and applied with one scatter-add the next time L is
read. Addition is commutative, so the observed L is exactly the sum of all
accepted steps; queuing only avoids a tensor write per event.

Example:
    >>> integrator = LogIntensityIntegrator(height=4, width=4)
    >>> integrator.integrate(1, 2, True, ContrastThresholds(0.1, -0.1))
    True
    >>> integrator.state[2, 1].item()
    0.1
"""

from __future__ import annotations

from typing import List, NamedTuple, Optional, Union

import torch

from eventcomb.config import ReconstructionOptions


class ContrastThresholds(NamedTuple):
    """Signed ON/OFF contrast thresholds (``off`` is negative)."""
    on: float
    off: float

    def step(self, polarity: bool) -> float:
        """Signed log intensity step of one event."""
        return self.on if polarity else self.off


def select_thresholds(
    options: ReconstructionOptions,
    adaptive: ContrastThresholds
) -> ContrastThresholds:
    """
    Pick the threshold pair the integrator consumes.

    Args:
        options: Current runtime options.
        adaptive: Thresholds maintained by the calibrator.

    Returns:
        ``adaptive`` when automatic detection is on, otherwise the
        user-defined pair from ``options``.
    """
    if options.auto_detect_contrast_thresholds:
        return adaptive
    return ContrastThresholds(options.contrast_threshold_on, options.contrast_threshold_off)


class LogIntensityIntegrator:
    """
    Per-pixel accumulator of signed contrast steps.

    Args:
        height: Sensor height H.
        width: Sensor width W.
        device: Torch device holding L.
    """

    def __init__(
        self,
        height: int,
        width: int,
        device: Optional[Union[str, torch.device]] = None
    ) -> None:
        if height <= 0 or width <= 0:
            raise ValueError(f"sensor size must be positive, got {height}x{width}")
        self.height = height
        self.width = width
        self._state = torch.zeros((height, width), dtype=torch.float64, device=device)
        self._pending_index: List[int] = []
        self._pending_step: List[float] = []
        self.n_integrated = 0

    def in_bounds(self, x: int, y: int) -> bool:
        return 0 < x < self.width and 0 < y < self.height

    def integrate(
        self,
        x: int,
        y: int,
        polarity: bool,
        thresholds: ContrastThresholds
    ) -> bool:
        """
        Add one event's contrast step to L.

        Args:
            x: Column.
            y: Row.
            polarity: True for ON, False for OFF.
            thresholds: Threshold pair in force for this event.

        Returns:
            False if the event was outside the accepted region and dropped.
        """
        if not self.in_bounds(x, y):
            return False
        self._pending_index.append(y * self.width + x)
        self._pending_step.append(thresholds.step(polarity))
        self.n_integrated += 1
        return True

    @property
    def n_pending(self) -> int:
        return len(self._pending_index)

    def flush(self) -> None:
        """Apply all queued steps to L."""
        if not self._pending_index:
            return
        index = torch.tensor(self._pending_index, dtype=torch.long, device=self._state.device)
        steps = torch.tensor(self._pending_step, dtype=self._state.dtype, device=self._state.device)
        self._state.view(-1).index_add_(0, index, steps)
        self._pending_index.clear()
        self._pending_step.clear()

    @property
    def state(self) -> torch.Tensor:
        """L with every accepted event applied."""
        self.flush()
        return self._state

    def reset(self) -> None:
        self._pending_index.clear()
        self._pending_step.clear()
        self._state.zero_()
        self.n_integrated = 0


__all__ = ["ContrastThresholds", "select_thresholds", "LogIntensityIntegrator"]
