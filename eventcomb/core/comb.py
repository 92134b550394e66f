"""
Comb Filter on a Fixed Time Grid

Naive event integration drifts: per-pixel thresholds are mismatched, so
L(t) accumulates a bias that grows without bound. The comb filter removes
DC and slowly varying components with a 4-tap IIR difference equation
evaluated on a uniform grid of period Δ:

    y₀ = x₀ − x_d1 − ρ₂·x_d2 + ρ₂·x_d12 + ρ₁·y_d1 + y_d2 − ρ₁·y_d12

where x is the integrated log intensity L, y the filter output Y, and
``_dj`` denotes the value j ticks ago (d12 = d1 + d2). The past values come
from a DelayLine holding both fields under one cursor.

Scheduling:
    Ticks are not timer driven. ``advance_to(t)`` runs every tick whose
    deadline lies strictly before the event time t, back to back. All ticks
    of a catch-up burst see the L that includes every event integrated so
    far, including those later in time than the tick itself.

    The first deadline is aligned to the first event time seen, so the
    first event never ticks on its own.

Before N ticks have elapsed, delayed reads return the zero-initialised
slots; no warm-up gating is applied.

Example:
    >>> from eventcomb.config import FilterParams
    >>> comb = CombFilter(4, 4, FilterParams(tick=1e-3, d1=3e-3, d2=1e-3))
    >>> x0 = torch.zeros(4, 4, dtype=torch.float64)
    >>> comb.advance_to(0.0, x0)      # aligns the grid, no tick
    0
    >>> comb.advance_to(0.0025, x0)   # deadlines 0.0, 0.001, 0.002
    3
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple, Union

import torch

from eventcomb.config import FilterParams
from eventcomb.core.ring_buffer import DelayLine, buffer_length, lag_ticks

logger = logging.getLogger(__name__)

# Delay line rows
INPUT_LINE = 0
OUTPUT_LINE = 1


class CombFilter:
    """
    Fixed-grid comb filter with ring buffer delay lines.

    Args:
        height: Sensor height.
        width: Sensor width.
        params: Grid period, delays and gains.
        device: Torch device for the filter state.

    Attributes:
        lags: Tuple (i1, i2, i12) of delays in ticks.
        t_next_store: Deadline of the next tick, None until aligned.
    """

    def __init__(
        self,
        height: int,
        width: int,
        params: Optional[FilterParams] = None,
        device: Optional[Union[str, torch.device]] = None
    ) -> None:
        self.params = params if params is not None else FilterParams()
        self.height = height
        self.width = width

        p = self.params
        self.lags: Tuple[int, int, int] = (
            lag_ticks(p.d1, p.tick),
            lag_ticks(p.d2, p.tick),
            lag_ticks(p.d12, p.tick),
        )
        self.delay_line = DelayLine(
            buffer_length(p.d12, p.tick), height, width, n_lines=2, device=device
        )
        self._output = torch.zeros((height, width), dtype=torch.float64, device=device)
        self.t_next_store: Optional[float] = None

        logger.debug(
            f"Comb filter {height}x{width}: tick={p.tick:g}s lags={self.lags} "
            f"ring length={self.delay_line.length}"
        )

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def output(self) -> torch.Tensor:
        """Current filter output Y."""
        return self._output

    @property
    def cursor(self) -> int:
        return self.delay_line.cursor

    @property
    def ticks(self) -> int:
        return self.delay_line.ticks

    @property
    def buffer_length(self) -> int:
        return self.delay_line.length

    def grab_delay(self, lag: int, line: int = INPUT_LINE) -> torch.Tensor:
        return self.delay_line.grab_delay(lag, line)

    # -------------------------------------------------------------------------
    # Difference equation
    # -------------------------------------------------------------------------

    def step(self, x0: torch.Tensor) -> torch.Tensor:
        """
        Run one tick of the difference equation.

        Args:
            x0: Current integrated log intensity L.

        Returns:
            The new output Y (also stored in the delay line).
        """
        i1, i2, i12 = self.lags
        rho1, rho2 = self.params.rho1, self.params.rho2
        line = self.delay_line

        x_d1 = line.grab_delay(i1, INPUT_LINE)
        x_d2 = line.grab_delay(i2, INPUT_LINE)
        x_d12 = line.grab_delay(i12, INPUT_LINE)
        y_d1 = line.grab_delay(i1, OUTPUT_LINE)
        y_d2 = line.grab_delay(i2, OUTPUT_LINE)
        y_d12 = line.grab_delay(i12, OUTPUT_LINE)

        y0 = x0 - x_d1 - rho2 * x_d2 + rho2 * x_d12 + rho1 * y_d1 + y_d2 - rho1 * y_d12
        self._output = y0

        line.store(x0, y0)
        line.advance()
        return y0

    def due(self, t: float) -> bool:
        """True if ``advance_to(t)`` has work to do (alignment or a tick)."""
        return self.t_next_store is None or t > self.t_next_store

    def advance_to(self, t: float, x0: torch.Tensor) -> int:
        """
        Run every tick whose deadline lies before ``t``.

        The first call only sets the first deadline to ``t`` and returns 0.
        This differs from the ROS node (comb.cpp), which aligns the deadline
        inside its loop and so ticks once on the very first event. Here the
        tick for that first deadline runs with the next later event, which
        keeps Y at zero after a single event and gives exactly two ticks for
        events at 0 and 2Δ.

        Args:
            t: Current event time (s).
            x0: Current integrated log intensity L.

        Returns:
            Number of ticks performed.
        """
        if self.t_next_store is None:
            self.t_next_store = t

        n = 0
        while t > self.t_next_store:
            self.step(x0)
            self.t_next_store += self.params.tick
            n += 1
        return n

    def release(self) -> bool:
        return self.delay_line.release()


__all__ = ["CombFilter", "INPUT_LINE", "OUTPUT_LINE"]
