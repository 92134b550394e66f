"""
Runtime faults raised or logged by the reconstruction pipeline.

Configuration problems live in :mod:`eventcomb.config` (``ConfigError``).
The faults below concern the event stream itself; the pipeline logs them
and keeps running, so they only propagate from the lower-level components.
"""

from __future__ import annotations

from typing import Tuple


class ReconstructionError(Exception):
    """Base exception for runtime reconstruction faults."""
    pass


class DimensionMismatchError(ReconstructionError):
    """Raised when a batch's sensor size differs from the initialised one."""

    def __init__(self, expected: Tuple[int, int], got: Tuple[int, int]) -> None:
        self.expected = expected
        self.got = got
        super().__init__(
            f"Batch dimensions {got[0]}x{got[1]} do not match "
            f"initialised sensor {expected[0]}x{expected[1]}"
        )


class PipelineShutdownError(ReconstructionError):
    """Raised when a released component is used after shutdown."""
    pass


__all__ = [
    "ReconstructionError",
    "DimensionMismatchError",
    "PipelineShutdownError",
]
