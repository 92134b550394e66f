"""
Event Batches and Event File Loading for eventcomb.

An event camera driver publishes events in batches. Each batch carries the
sensor size and a time-ordered list of (x, y, t, polarity) events; the
first batch fixes the sensor size for the lifetime of a pipeline.

This module provides:
    - EventBatch: array container for one batch (timestamps in seconds)
    - Loaders for recorded streams (.npy, .h5/.hdf5, .mat, .txt)
    - iter_batches: replay a recording as driver-sized batches

File formats:
    .npy   (N, 4) array with [x, y, p, t] columns
    .h5    datasets x/y/p/t (common aliases accepted), optionally in a group
    .mat   TD struct with x/y/p/ts fields (EBSSA style), v7.3 or older
    .txt   one event per line: "t x y p" (optional "width height" header line)

Example:
    >>> from eventcomb.data.events import load_events, iter_batches
    >>>
    >>> events = load_events("recording.h5", height=180, width=240)
    >>> for batch in iter_batches(events, batch_duration=1e-3):
    ...     reconstructor.process_batch(batch)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple, Union

import h5py
import numpy as np
import scipy.io as sio


# =============================================================================
# CONSTANTS
# =============================================================================

# Integer timestamps in recorded files are microseconds unless stated
MICROSECONDS = 1e-6

# DAVIS240C sensor
DEFAULT_RESOLUTION = (180, 240)  # (height, width)


# =============================================================================
# EVENT BATCH
# =============================================================================


@dataclass
class EventBatch:
    """
    Container for one batch of events.

    Attributes:
        x: X coordinates (column), shape (N,)
        y: Y coordinates (row), shape (N,)
        t: Timestamps in seconds, shape (N,), non-decreasing
        p: Polarity, True for ON, shape (N,)
        height: Sensor height in pixels
        width: Sensor width in pixels
    """
    x: np.ndarray
    y: np.ndarray
    t: np.ndarray
    p: np.ndarray
    height: int
    width: int

    def __post_init__(self):
        """Validate and normalise dtypes."""
        self.x = np.asarray(self.x).astype(np.int64, copy=False)
        self.y = np.asarray(self.y).astype(np.int64, copy=False)
        self.t = np.asarray(self.t).astype(np.float64, copy=False)
        p = np.asarray(self.p)
        # 0/1 and -1/+1 encodings both map to ON = True
        self.p = p if p.dtype == bool else p > 0

        n = len(self.x)
        if len(self.y) != n:
            raise ValueError(f"y length {len(self.y)} != x length {n}")
        if len(self.t) != n:
            raise ValueError(f"t length {len(self.t)} != x length {n}")
        if len(self.p) != n:
            raise ValueError(f"p length {len(self.p)} != x length {n}")
        if self.height <= 0 or self.width <= 0:
            raise ValueError(f"sensor size must be positive, got {self.height}x{self.width}")

    def __len__(self) -> int:
        return len(self.x)

    @property
    def n_events(self) -> int:
        return len(self.x)

    @property
    def shape(self) -> Tuple[int, int]:
        """Sensor size (height, width)."""
        return (self.height, self.width)

    @property
    def duration(self) -> float:
        """Duration in seconds."""
        if len(self.t) == 0:
            return 0.0
        return float(self.t[-1] - self.t[0])

    @property
    def event_rate(self) -> float:
        """Events per second."""
        d = self.duration
        return self.n_events / d if d > 0 else 0.0

    @property
    def is_time_ordered(self) -> bool:
        return bool(np.all(np.diff(self.t) >= 0))

    def to_array(self) -> np.ndarray:
        """Convert to (N, 4) array [x, y, p, t]."""
        return np.column_stack([self.x, self.y, self.p.astype(np.int64), self.t])

    @classmethod
    def empty(cls, height: int, width: int) -> "EventBatch":
        return cls(
            x=np.zeros(0, dtype=np.int64),
            y=np.zeros(0, dtype=np.int64),
            t=np.zeros(0, dtype=np.float64),
            p=np.zeros(0, dtype=bool),
            height=height,
            width=width
        )

    @classmethod
    def from_array(
        cls,
        events: np.ndarray,
        height: int,
        width: int,
        time_scale: float = 1.0
    ) -> "EventBatch":
        """Create from (N, 4) array [x, y, p, t]; ``t * time_scale`` is seconds."""
        events = np.asarray(events)
        if events.ndim != 2 or events.shape[1] < 4:
            raise ValueError(f"Expected (N, 4) array, got shape {events.shape}")
        return cls(
            x=events[:, 0],
            y=events[:, 1],
            t=events[:, 3].astype(np.float64) * time_scale,
            p=events[:, 2] > 0,
            height=height,
            width=width
        )

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, np.ndarray],
        height: int,
        width: int,
        time_scale: float = 1.0
    ) -> "EventBatch":
        """Create from dictionary with x, y, p, t keys."""
        return cls(
            x=data['x'],
            y=data['y'],
            t=np.asarray(data['t'], dtype=np.float64) * time_scale,
            p=np.asarray(data['p']) > 0,
            height=height,
            width=width
        )

    def slice(self, start: int, stop: int) -> "EventBatch":
        """Events with index in [start, stop)."""
        return EventBatch(
            x=self.x[start:stop],
            y=self.y[start:stop],
            t=self.t[start:stop],
            p=self.p[start:stop],
            height=self.height,
            width=self.width
        )

    def filter_by_time(
        self,
        t_start: float,
        t_end: float
    ) -> "EventBatch":
        """Filter events within time range [t_start, t_end) in seconds."""
        mask = (self.t >= t_start) & (self.t < t_end)
        return EventBatch(
            x=self.x[mask],
            y=self.y[mask],
            t=self.t[mask],
            p=self.p[mask],
            height=self.height,
            width=self.width
        )


# =============================================================================
# BATCH ITERATION
# =============================================================================


def iter_batches(
    events: EventBatch,
    batch_size: Optional[int] = None,
    batch_duration: Optional[float] = None
) -> Iterator[EventBatch]:
    """
    Split a recording into consecutive batches.

    Exactly one of ``batch_size`` (events per batch) or ``batch_duration``
    (seconds per batch, aligned to the first event) must be given.
    Empty time windows produce no batch.
    """
    if (batch_size is None) == (batch_duration is None):
        raise ValueError("exactly one of batch_size or batch_duration must be given")

    n = len(events)
    if n == 0:
        return

    if batch_size is not None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        for start in range(0, n, batch_size):
            yield events.slice(start, min(start + batch_size, n))
        return

    if batch_duration <= 0:
        raise ValueError(f"batch_duration must be positive, got {batch_duration}")
    window = np.floor((events.t - events.t[0]) / batch_duration).astype(np.int64)
    boundaries = np.flatnonzero(np.diff(window)) + 1
    starts = np.concatenate([[0], boundaries])
    stops = np.concatenate([boundaries, [n]])
    for start, stop in zip(starts, stops):
        yield events.slice(int(start), int(stop))


# =============================================================================
# FILE LOADERS
# =============================================================================


def resolve_resolution(
    height: Optional[int] = None,
    width: Optional[int] = None
) -> Tuple[int, int]:
    """Fill a missing sensor dimension from DEFAULT_RESOLUTION."""
    return (
        height if height is not None else DEFAULT_RESOLUTION[0],
        width if width is not None else DEFAULT_RESOLUTION[1],
    )


def load_events_npy(
    filepath: Union[str, Path],
    height: Optional[int] = None,
    width: Optional[int] = None,
    time_scale: float = MICROSECONDS
) -> EventBatch:
    """
    Load events from NumPy .npy file.

    Expected format: (N, 4) array with [x, y, p, t] columns.
    """
    height, width = resolve_resolution(height, width)
    events = np.load(filepath)
    return EventBatch.from_array(events, height, width, time_scale)


def load_events_h5(
    filepath: Union[str, Path],
    recording_name: Optional[str] = None,
    height: Optional[int] = None,
    width: Optional[int] = None,
    time_scale: float = MICROSECONDS
) -> EventBatch:
    """
    Load events from HDF5 file.

    Args:
        filepath: Path to .h5 file.
        recording_name: Specific group to load (for combined files).
        height: Sensor height.
        width: Sensor width.
        time_scale: Seconds per timestamp unit.

    Returns:
        EventBatch with all events of the recording.
    """
    height, width = resolve_resolution(height, width)
    with h5py.File(filepath, 'r') as f:
        if recording_name is not None:
            grp = f[recording_name]
        else:
            # Use first group or root
            keys = list(f.keys())
            if len(keys) == 1 and isinstance(f[keys[0]], h5py.Group):
                grp = f[keys[0]]
            else:
                grp = f

        # Try common field names
        x_key = 'x' if 'x' in grp else 'X'
        y_key = 'y' if 'y' in grp else 'Y'
        p_key = 'p' if 'p' in grp else ('pol' if 'pol' in grp else 'polarity')
        t_key = 't' if 't' in grp else ('ts' if 'ts' in grp else 'timestamp')

        x = np.array(grp[x_key]).flatten()
        y = np.array(grp[y_key]).flatten()
        p = np.array(grp[p_key]).flatten()
        t = np.array(grp[t_key]).flatten().astype(np.float64) * time_scale

    return EventBatch(x=x, y=y, t=t, p=p, height=height, width=width)


def load_events_mat(
    filepath: Union[str, Path],
    height: Optional[int] = None,
    width: Optional[int] = None,
    time_scale: float = MICROSECONDS
) -> EventBatch:
    """
    Load events from MATLAB .mat file.

    Files contain a TD structure with fields TD.x, TD.y, TD.p, TD.ts,
    or the fields at top level.
    """
    filepath = Path(filepath)
    height, width = resolve_resolution(height, width)

    try:
        # MATLAB v7.3 files are HDF5
        with h5py.File(filepath, 'r') as f:
            td = f['TD'] if 'TD' in f else f
            x = np.array(td['x']).flatten()
            y = np.array(td['y']).flatten()
            p = np.array(td['p']).flatten()
            t = np.array(td['ts'] if 'ts' in td else td['t']).flatten()
    except (OSError, KeyError):
        mat = sio.loadmat(filepath)

        if 'TD' in mat:
            td = mat['TD']
            # Handle structured array
            if hasattr(td, 'dtype') and td.dtype.names:
                x = td['x'][0, 0].flatten()
                y = td['y'][0, 0].flatten()
                p = td['p'][0, 0].flatten()
                t = td['ts'][0, 0].flatten()
            else:
                x = td[0, 0]['x'].flatten()
                y = td[0, 0]['y'].flatten()
                p = td[0, 0]['p'].flatten()
                t = td[0, 0]['ts'].flatten()
        else:
            x = mat['x'].flatten()
            y = mat['y'].flatten()
            p = mat['p'].flatten()
            t_key = 'ts' if 'ts' in mat else 't'
            t = mat[t_key].flatten()

    t = t.astype(np.float64) * time_scale
    return EventBatch(x=x, y=y, t=t, p=p, height=height, width=width)


def load_events_txt(
    filepath: Union[str, Path],
    height: Optional[int] = None,
    width: Optional[int] = None,
    time_scale: float = 1.0
) -> EventBatch:
    """
    Load events from a text file with one "t x y p" event per line.

    A first line with exactly two integers is read as "width height" and
    used when ``height``/``width`` are not given. Missing dimensions
    otherwise fall back to DEFAULT_RESOLUTION.
    """
    filepath = Path(filepath)
    with open(filepath, 'r') as f:
        first = f.readline().split()

    skip = 0
    if len(first) == 2:
        skip = 1
        width = width if width is not None else int(first[0])
        height = height if height is not None else int(first[1])
    height, width = resolve_resolution(height, width)

    data = np.loadtxt(filepath, skiprows=skip, ndmin=2)
    if data.shape[0] == 0:
        return EventBatch.empty(height, width)
    if data.shape[1] < 4:
        raise ValueError(f"Expected 4 columns (t x y p), got {data.shape[1]}")

    return EventBatch(
        x=data[:, 1],
        y=data[:, 2],
        t=data[:, 0] * time_scale,
        p=data[:, 3],
        height=height,
        width=width
    )


def load_events(
    filepath: Union[str, Path],
    height: Optional[int] = None,
    width: Optional[int] = None,
    time_scale: Optional[float] = None
) -> EventBatch:
    """
    Load events from file (auto-detect format).

    Supported formats: .mat, .h5, .hdf5, .npy, .txt

    Args:
        filepath: Path to event file.
        height: Sensor height. None reads the header of text files and
                falls back to DEFAULT_RESOLUTION otherwise.
        width: Sensor width, resolved like ``height``.
        time_scale: Seconds per timestamp unit. Defaults to microseconds
                    for binary formats and seconds for text.

    Returns:
        EventBatch with all events of the file.
    """
    filepath = Path(filepath)
    suffix = filepath.suffix.lower()

    if suffix == '.txt':
        scale = time_scale if time_scale is not None else 1.0
        return load_events_txt(filepath, height, width, scale)

    scale = time_scale if time_scale is not None else MICROSECONDS
    if suffix == '.mat':
        return load_events_mat(filepath, height, width, scale)
    elif suffix in ['.h5', '.hdf5']:
        return load_events_h5(filepath, height=height, width=width, time_scale=scale)
    elif suffix == '.npy':
        return load_events_npy(filepath, height, width, scale)
    else:
        raise ValueError(f"Unsupported file format: {suffix}")


__all__ = [
    "EventBatch",
    "iter_batches",
    "load_events",
    "load_events_npy",
    "load_events_h5",
    "load_events_mat",
    "load_events_txt",
    "resolve_resolution",
    "MICROSECONDS",
    "DEFAULT_RESOLUTION",
]
