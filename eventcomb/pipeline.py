"""
Comb filter reconstruction pipeline.

Consumes event batches in arrival order and keeps a continuously updated
intensity image. All work is driven by event timestamps; there are no
timers, so nothing advances while events stop arriving.

Per event (in order):
    1. bounds check (0 < x < W, 0 < y < H), otherwise dropped
    2. leaky counter update          (adaptive thresholds only)
    3. integrator update
    4. zero or more comb filter ticks (every Δ of event time)
    5. publish if the publish deadline has been reached

Per batch, after the events:
    6. threshold recalibration at 20 Hz of event time (adaptive only)

Deadlines are moved after their action runs: a burst that skips several
publish periods yields one frame, and the next deadline is measured from
the event that triggered it.

Example:
    >>> from eventcomb import CombReconstructor, ReconstructionOptions, ListFrameSink, iter_batches
    >>> sink = ListFrameSink()
    >>> reconstructor = CombReconstructor(ReconstructionOptions(publish_framerate=30), sink=sink)
    >>> for batch in iter_batches(events, batch_duration=1e-3):
    ...     reconstructor.process_batch(batch)
    >>> reconstructor.shutdown()
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

import torch

from eventcomb.config import (
    CalibrationParams,
    DisplayParams,
    FilterParams,
    ReconstructionOptions,
    get_calibration_params,
    get_display_params,
    get_filter_params,
    get_reconstruction_options,
)
from eventcomb.core.calibration import ContrastThresholdCalibrator
from eventcomb.core.comb import CombFilter
from eventcomb.core.integrator import LogIntensityIntegrator, select_thresholds
from eventcomb.data.events import EventBatch
from eventcomb.display.mapper import DisplayMapper
from eventcomb.display.smoothing import postprocess
from eventcomb.errors import DimensionMismatchError, PipelineShutdownError
from eventcomb.io.sinks import Frame, FrameSink, ImageSequenceWriter

logger = logging.getLogger(__name__)


class CombReconstructor:
    """
    Event stream → intensity image reconstructor.

    State (integrator, comb filter, calibrator) is allocated lazily from the
    sensor size of the first batch.

    Args:
        options: Runtime options; may be swapped later with ``reconfigure``.
        filter_params: Comb filter grid and delays.
        calibration_params: Adaptive threshold constants.
        display_params: Display mapping constants.
        sink: Receives every published frame.
        device: Torch device for the filter state.
    """

    def __init__(
        self,
        options: Optional[ReconstructionOptions] = None,
        filter_params: Optional[FilterParams] = None,
        calibration_params: Optional[CalibrationParams] = None,
        display_params: Optional[DisplayParams] = None,
        sink: Optional[FrameSink] = None,
        device: Optional[Union[str, torch.device]] = None
    ) -> None:
        self._options = options if options is not None else ReconstructionOptions()
        self.filter_params = filter_params if filter_params is not None else FilterParams()
        self.calibration_params = (
            calibration_params if calibration_params is not None else CalibrationParams()
        )
        self.device = torch.device(device) if device is not None else torch.device("cpu")
        self.sink = sink

        self.display = DisplayMapper(
            self._options.intensity_min, self._options.intensity_max, display_params
        )
        self.writer = self._make_writer(self._options)

        self.height: Optional[int] = None
        self.width: Optional[int] = None
        self.integrator: Optional[LogIntensityIntegrator] = None
        self.comb: Optional[CombFilter] = None
        self.calibrator: Optional[ContrastThresholdCalibrator] = None

        self.t_next_publish = 0.0
        self.t_next_recalibrate = 0.0
        self.frames_published = 0
        self.batches_rejected = 0
        self._shutdown = False

        logger.debug(f"Publish framerate: {self._options.publish_framerate}")

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        sink: Optional[FrameSink] = None,
        device: Optional[Union[str, torch.device]] = None
    ) -> "CombReconstructor":
        """Build from a configuration dictionary (see ``load_config``)."""
        return cls(
            options=get_reconstruction_options(config),
            filter_params=get_filter_params(config),
            calibration_params=get_calibration_params(config),
            display_params=get_display_params(config),
            sink=sink,
            device=device,
        )

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    @property
    def options(self) -> ReconstructionOptions:
        return self._options

    def reconfigure(
        self,
        options: Optional[Union[ReconstructionOptions, Dict[str, Any]]] = None,
        **changes: Any
    ) -> ReconstructionOptions:
        """
        Swap the runtime options; effective from the next event.

        Args:
            options: Complete new options, or a dict of changes.
            **changes: Individual option changes (aliases accepted).

        Returns:
            The options now in force.
        """
        if isinstance(options, ReconstructionOptions):
            new = options.replace(**changes) if changes else options
        else:
            new = self._options.replace(**{**(options or {}), **changes})

        old = self._options
        if (new.save_dir, new.working_dir) != (old.save_dir, old.working_dir):
            self.writer = self._make_writer(new)
        self._options = new
        return new

    @staticmethod
    def _make_writer(options: ReconstructionOptions) -> Optional[ImageSequenceWriter]:
        if not options.save_dir:
            return None
        return ImageSequenceWriter(options.working_dir, options.save_dir)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def initialised(self) -> bool:
        return self.integrator is not None

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    @property
    def log_intensity(self) -> torch.Tensor:
        """Integrated log intensity L."""
        self._require_initialised()
        return self.integrator.state

    @property
    def output(self) -> torch.Tensor:
        """Filtered log intensity Y."""
        self._require_initialised()
        return self.comb.output

    def _require_initialised(self) -> None:
        if self.integrator is None:
            raise RuntimeError("reconstructor has not received a batch yet")

    def initialise(self, height: int, width: int) -> None:
        """Allocate image states and ring buffers for an H×W sensor."""
        self.height = height
        self.width = width
        self.integrator = LogIntensityIntegrator(height, width, device=self.device)
        self.comb = CombFilter(height, width, self.filter_params, device=self.device)
        self.calibrator = ContrastThresholdCalibrator(height, width, self.calibration_params)

        self.t_next_publish = 0.0
        self.t_next_recalibrate = 0.0

        logger.info(
            f"Initialised {height}x{width} sensor, ring buffer length "
            f"{self.comb.buffer_length} on {self.device}"
        )

    # -------------------------------------------------------------------------
    # Event processing
    # -------------------------------------------------------------------------

    def process_batch(self, batch: EventBatch) -> List[Frame]:
        """
        Process one batch of time-ordered events.

        Args:
            batch: Events of one driver message.

        Returns:
            Frames published while processing the batch.

        Raises:
            PipelineShutdownError: If called after ``shutdown``.
        """
        if self._shutdown:
            raise PipelineShutdownError("cannot process events after shutdown")

        if not self.initialised:
            self.initialise(batch.height, batch.width)
        elif (batch.height, batch.width) != (self.height, self.width):
            error = DimensionMismatchError((self.height, self.width), (batch.height, batch.width))
            logger.warning(f"{error}; batch rejected")
            self.batches_rejected += 1
            return []

        if len(batch) == 0:
            return []

        integrator = self.integrator
        comb = self.comb
        calibrator = self.calibrator
        frames: List[Frame] = []

        for x, y, t, polarity in zip(batch.x.tolist(), batch.y.tolist(),
                                     batch.t.tolist(), batch.p.tolist()):
            options = self._options

            if not integrator.in_bounds(x, y):
                continue

            if options.auto_detect_contrast_thresholds:
                calibrator.update(x, y, polarity, t)

            integrator.integrate(x, y, polarity, select_thresholds(options, calibrator.thresholds))

            if comb.due(t):
                comb.advance_to(t, integrator.state)

            period = options.publish_period
            if period is not None and t >= self.t_next_publish:
                frame = self.publish(t, options)
                if frame is not None:
                    frames.append(frame)
                self.t_next_publish = t + period

        t_last = float(batch.t[-1])
        if self._options.auto_detect_contrast_thresholds and t_last > self.t_next_recalibrate:
            calibrator.recalibrate(t_last)
            self.t_next_recalibrate = t_last + 1.0 / self.calibration_params.recalibration_frequency

        return frames

    def publish(self, t: float, options: Optional[ReconstructionOptions] = None) -> Optional[Frame]:
        """
        Render the current output and hand it to the sink and writer.

        Returns:
            The published frame, or None if the display range was degenerate.
        """
        self._require_initialised()
        if options is None:
            options = self._options

        image = self.display.render(self.comb.output, t, options)
        if image is None:
            return None

        image, encoding = postprocess(image, options)
        frame = Frame(image=image, encoding=encoding, timestamp=t)

        if self.sink is not None:
            self.sink.publish(frame)
        if self.writer is not None:
            self.writer.write(frame)
        self.frames_published += 1
        return frame

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    def shutdown(self) -> bool:
        """
        Close the sink and release the ring buffers.

        Safe to call more than once.

        Returns:
            True if this call performed the shutdown.
        """
        if self._shutdown:
            return False
        self._shutdown = True

        if self.sink is not None:
            self.sink.close()
        if self.comb is not None:
            self.comb.release()

        logger.info(f"Shut down after {self.frames_published} published frames")
        return True

    def __enter__(self) -> "CombReconstructor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()


__all__ = ["CombReconstructor"]
