"""
Ring Buffer Delay Lines

The comb filter needs delayed copies of two image fields (the integrated
log intensity and the filter output) at three fixed lags. Both fields are
kept in one circular array of preallocated image slots indexed by a single
write cursor, so reading a lag is a modular index computation and writing
never reallocates.

Layout:
    storage[slot, line, y, x]
        slot  - position in the ring, 0 <= slot < length
        line  - which field (0 = input history, 1 = output history)

Invariants:
    - The cursor advances exactly once per stored tick.
    - ``length`` strictly exceeds the largest lag read, so a lag of ``i``
      ticks always returns the snapshot stored ``i`` ticks ago (once that
      many ticks have happened; before that, the zero initialisation).

Example:
    >>> line = DelayLine(length=5, height=4, width=4, n_lines=2)
    >>> line.store(torch.ones(4, 4, dtype=torch.float64), torch.zeros(4, 4, dtype=torch.float64))
    >>> line.advance()
    >>> line.grab_delay(1, line=0).sum().item()
    16.0
"""

from __future__ import annotations

import math
from typing import Optional, Union

import torch

from eventcomb.errors import PipelineShutdownError


# Guard against round-off in delay / tick, e.g. 0.01 / 1e-5 = 999.9999999999999
_ROUND_OFF = 1e-9


# =============================================================================
# LAG ARITHMETIC
# =============================================================================


def lag_ticks(delay: float, tick: float) -> int:
    """
    Number of whole ticks in ``delay``.

    Args:
        delay: Delay in seconds (non-negative).
        tick: Grid period in seconds (positive).

    Returns:
        ``floor(delay / tick)``, robust to floating point round-off.
    """
    if tick <= 0:
        raise ValueError(f"tick must be positive, got {tick}")
    if delay < 0:
        raise ValueError(f"delay must be non-negative, got {delay}")
    return int(math.floor(delay / tick + _ROUND_OFF))


def buffer_length(longest_delay: float, tick: float) -> int:
    """
    Ring length needed to serve lags up to ``longest_delay``.

    Returns:
        ``ceil(longest_delay / tick) + 1``, always greater than
        ``lag_ticks(longest_delay, tick)``.
    """
    if tick <= 0:
        raise ValueError(f"tick must be positive, got {tick}")
    if longest_delay < 0:
        raise ValueError(f"longest_delay must be non-negative, got {longest_delay}")
    return max(int(math.ceil(longest_delay / tick - _ROUND_OFF)), 0) + 1


# =============================================================================
# DELAY LINE
# =============================================================================


class DelayLine:
    """
    Circular store of past image states sharing one write cursor.

    Args:
        length: Number of slots N.
        height: Image height.
        width: Image width.
        n_lines: Number of parallel fields stored per slot.
        device: Torch device for the storage.
        dtype: Storage dtype (float64 by default).

    Attributes:
        length: Number of slots.
        cursor: Slot the next ``store`` writes to.
        ticks: Total number of ``advance`` calls since construction.
    """

    def __init__(
        self,
        length: int,
        height: int,
        width: int,
        n_lines: int = 2,
        device: Optional[Union[str, torch.device]] = None,
        dtype: torch.dtype = torch.float64
    ) -> None:
        for value, name in ((length, "length"), (height, "height"),
                            (width, "width"), (n_lines, "n_lines")):
            if not isinstance(value, int):
                raise TypeError(f"{name} must be an integer, got {type(value).__name__}")
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")

        self.length = length
        self.n_lines = n_lines
        self.cursor = 0
        self.ticks = 0
        self._storage: Optional[torch.Tensor] = torch.zeros(
            (length, n_lines, height, width), dtype=dtype, device=device
        )

    @property
    def released(self) -> bool:
        return self._storage is None

    @property
    def storage(self) -> torch.Tensor:
        if self._storage is None:
            raise PipelineShutdownError("delay line has been released")
        return self._storage

    def slot_index(self, lag: int) -> int:
        """Slot holding the snapshot stored ``lag`` ticks before the cursor."""
        return (self.cursor - lag) % self.length

    def grab_delay(self, lag: int, line: int = 0) -> torch.Tensor:
        """
        Read the snapshot of ``line`` stored ``lag`` ticks ago.

        The returned tensor is a view into the ring; it stays valid until
        that slot is overwritten.
        """
        if lag < 0:
            raise ValueError(f"lag must be non-negative, got {lag}")
        if lag >= self.length:
            raise ValueError(f"lag {lag} exceeds ring length {self.length}")
        return self.storage[self.slot_index(lag), line]

    def latest(self, line: int = 0) -> torch.Tensor:
        """Most recently stored snapshot of ``line``."""
        return self.grab_delay(1, line)

    def store(self, *images: torch.Tensor) -> None:
        """Copy one image per line into the slot under the cursor."""
        if len(images) != self.n_lines:
            raise ValueError(f"expected {self.n_lines} images, got {len(images)}")
        slot = self.storage[self.cursor]
        for line, image in enumerate(images):
            slot[line].copy_(image)

    def advance(self) -> None:
        self.cursor += 1
        if self.cursor >= self.length:
            self.cursor = 0
        self.ticks += 1

    def release(self) -> bool:
        """
        Free the storage.

        Returns:
            True if storage was freed by this call, False if already released.
        """
        if self._storage is None:
            return False
        self._storage = None
        return True

    def __len__(self) -> int:
        return self.length

    def __repr__(self) -> str:
        return (
            f"DelayLine(length={self.length}, n_lines={self.n_lines}, "
            f"cursor={self.cursor}, ticks={self.ticks}, released={self.released})"
        )


__all__ = ["lag_ticks", "buffer_length", "DelayLine"]
