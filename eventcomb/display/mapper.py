"""
Display Mapping

Converts the filtered log intensity Y into an 8-bit image.

Pipeline:
    1. img = exp(Y + ln 1.5) − 1       log space → roughly [0, 1]
    2. β = exp(−α·τ), τ = t − t_last   low-pass factor, α = −ln(0.05) / fade
    3. Bounds (I_lo, I_hi):
         adaptive range: robust min / max of img (percentile clipped)
         fixed range:    I ← β·I + (1 − β)·I_user
    4. out = clip((img − I_lo) · 255 / (I_hi − I_lo), 0, 255) as uint8

Bounds are only updated when τ ≥ 0. A frame whose range I_hi − I_lo is
not larger than ``range_epsilon`` is not rendered.

The bounds and t_last belong to the mapper instance and persist across
frames; they start at the user-defined intensity range.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Tuple, Union

import numpy as np
import torch

from eventcomb.config import DisplayParams, ReconstructionOptions

logger = logging.getLogger(__name__)

ImageLike = Union[np.ndarray, torch.Tensor]


def to_numpy(image: ImageLike) -> np.ndarray:
    """Float64 host array of a tensor or array."""
    if isinstance(image, torch.Tensor):
        return image.detach().to("cpu", torch.float64).numpy()
    return np.asarray(image, dtype=np.float64)


def robust_index_bounds(n_pixels: int, percentage: float) -> Tuple[int, int]:
    """
    Sorted positions of the robust min and max.

    Args:
        n_pixels: Number of values.
        percentage: Total percentage of values discarded (half at each end).

    Returns:
        (index_min, index_max), clamped into [0, n_pixels − 1].
    """
    fraction = 0.5 * percentage / 100
    index_min = int(fraction * n_pixels)
    index_max = int((1 - fraction) * n_pixels)
    last = n_pixels - 1
    return min(index_min, last), min(index_max, last)


def robust_min_max(image: np.ndarray, percentage: float) -> Tuple[float, float]:
    """
    Percentile-clipped minimum and maximum.

    Equivalent to sorting the flattened image and reading the values at
    ``floor(p/2/100 · n)`` and ``floor((1 − p/2/100) · n)``.

    Example:
        >>> robust_min_max(np.arange(1000.0), percentage=0.5)
        (2.0, 997.0)
    """
    flat = np.asarray(image, dtype=np.float64).ravel()
    if flat.size == 0:
        raise ValueError("image must not be empty")
    index_min, index_max = robust_index_bounds(flat.size, percentage)
    part = np.partition(flat, (index_min, index_max))
    return float(part[index_min]), float(part[index_max])


class DisplayMapper:
    """
    Stateful log intensity → 8-bit mapper.

    Args:
        intensity_min: Initial lower bound (user-defined target).
        intensity_max: Initial upper bound (user-defined target).
        params: Display constants.

    Attributes:
        lower_bound, upper_bound: Current display bounds (I_lo, I_hi).
        t_last: Time of the previous render (s).
    """

    def __init__(
        self,
        intensity_min: float = 0.0,
        intensity_max: float = 1.0,
        params: Optional[DisplayParams] = None
    ) -> None:
        self.params = params if params is not None else DisplayParams()
        self.lower_bound = float(intensity_min)
        self.upper_bound = float(intensity_max)
        self.t_last = 0.0

    def to_linear(self, y: ImageLike) -> np.ndarray:
        """Map log intensity to roughly [0, 1]."""
        return np.exp(to_numpy(y) + self.params.log_intensity_offset) - 1

    def _update_bounds(
        self,
        image: np.ndarray,
        beta: float,
        options: ReconstructionOptions
    ) -> None:
        p = self.params
        if options.auto_adjust_dynamic_range:
            robust_min, robust_max = robust_min_max(image, p.percentage_pixels_to_discard)
            if p.low_pass_adaptive_bounds:
                self.lower_bound = min(
                    beta * self.lower_bound + (1 - beta) * (robust_min - p.extend_range),
                    p.expected_mean - 0.2,
                )
                self.upper_bound = max(
                    beta * self.upper_bound + (1 - beta) * (robust_max + p.extend_range),
                    p.expected_mean + 0.2,
                )
            else:
                self.lower_bound = robust_min
                self.upper_bound = robust_max
        else:
            self.lower_bound = beta * self.lower_bound + (1 - beta) * options.intensity_min
            self.upper_bound = beta * self.upper_bound + (1 - beta) * options.intensity_max

    def render(
        self,
        y: ImageLike,
        t: float,
        options: Optional[ReconstructionOptions] = None
    ) -> Optional[np.ndarray]:
        """
        Render the filter output at time ``t``.

        Args:
            y: Filtered log intensity Y, shape (H, W).
            t: Render time (s).
            options: Runtime options (range mode and user bounds).

        Returns:
            uint8 image of shape (H, W), or None if the display range
            is degenerate.
        """
        if options is None:
            options = ReconstructionOptions()

        image = self.to_linear(y)
        delta_t = t - self.t_last
        if delta_t >= 0:
            beta = math.exp(-delta_t * self.params.alpha)
            self._update_bounds(image, beta, options)
        self.t_last = t

        intensity_range = self.upper_bound - self.lower_bound
        if intensity_range <= self.params.range_epsilon:
            logger.warning(
                f"Degenerate display range [{self.lower_bound:.6g}, {self.upper_bound:.6g}] "
                f"at t={t:.6f}s, frame skipped"
            )
            return None

        scaled = (image - self.lower_bound) * (255.0 / intensity_range)
        return np.clip(np.rint(scaled), 0, 255).astype(np.uint8)


__all__ = ["to_numpy", "robust_index_bounds", "robust_min_max", "DisplayMapper"]
