"""
eventcomb: intensity reconstruction from event camera streams.

Signed brightness-change events are integrated into a log intensity
estimate, high-pass filtered by a comb-structured IIR filter running on a
fixed time grid, and mapped to 8-bit display frames.

Example:
    >>> from eventcomb import CombReconstructor, ListFrameSink, load_events, iter_batches
    >>> sink = ListFrameSink()
    >>> events = load_events("recording.h5", height=180, width=240)
    >>> with CombReconstructor(sink=sink) as reconstructor:
    ...     for batch in iter_batches(events, batch_duration=1e-3):
    ...         reconstructor.process_batch(batch)
"""

from eventcomb.config import (
    CalibrationParams,
    ConfigError,
    DisplayParams,
    FilterParams,
    ReconstructionOptions,
    load_config,
)
from eventcomb.data.events import EventBatch, iter_batches, load_events
from eventcomb.errors import DimensionMismatchError, PipelineShutdownError, ReconstructionError
from eventcomb.io.sinks import CallbackFrameSink, Frame, ImageSequenceWriter, ListFrameSink
from eventcomb.pipeline import CombReconstructor

__version__ = "0.1.0"

__all__ = [
    "CalibrationParams",
    "ConfigError",
    "DisplayParams",
    "FilterParams",
    "ReconstructionOptions",
    "load_config",
    "EventBatch",
    "iter_batches",
    "load_events",
    "DimensionMismatchError",
    "PipelineShutdownError",
    "ReconstructionError",
    "CallbackFrameSink",
    "Frame",
    "ImageSequenceWriter",
    "ListFrameSink",
    "CombReconstructor",
]
