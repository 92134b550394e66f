"""
Frame sinks.

A sink receives every published display frame. The pipeline talks to any
object with ``publish(frame)`` and ``close()``; this module provides an
in-memory collector, a callback adapter and the PNG sequence writer used
when a save directory is configured.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Union

import cv2
import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class Frame:
    """
    One published display image.

    Attributes:
        image: uint8 image, (H, W) for mono8 or (H, W, 3) for bgr8.
        encoding: "mono8" or "bgr8".
        timestamp: Time of the event that triggered the publish (s).
    """
    image: np.ndarray
    encoding: str
    timestamp: float

    @property
    def shape(self):
        return self.image.shape


class FrameSink(Protocol):
    def publish(self, frame: Frame) -> None:
        ...

    def close(self) -> None:
        ...


class ListFrameSink:
    """Keeps every published frame in memory."""

    def __init__(self) -> None:
        self.frames: List[Frame] = []
        self.closed = False

    def publish(self, frame: Frame) -> None:
        self.frames.append(frame)

    def close(self) -> None:
        self.closed = True

    def __len__(self) -> int:
        return len(self.frames)


class CallbackFrameSink:
    """Forwards frames to a callable."""

    def __init__(self, callback: Callable[[Frame], None]) -> None:
        self.callback = callback

    def publish(self, frame: Frame) -> None:
        self.callback(frame)

    def close(self) -> None:
        pass


def resolve_save_dir(working_dir: Union[str, Path], save_dir: Union[str, Path]) -> Path:
    """``save_dir`` relative to ``working_dir`` unless already absolute."""
    save_dir = Path(os.path.expanduser(str(save_dir)))
    if save_dir.is_absolute() or not str(working_dir):
        return save_dir
    return Path(os.path.expanduser(str(working_dir))) / save_dir


class ImageSequenceWriter:
    """
    Writes frames as ``<working_dir>/<save_dir>/imageN.png``.

    N starts at 0 and increases by one per written frame; the counter
    belongs to the writer, so two writers never share a sequence.

    If the directory cannot be created the writer logs an error and stays
    disabled; frames are then dropped silently.

    Args:
        working_dir: Base directory.
        save_dir: Directory for the images, relative to ``working_dir``.
    """

    def __init__(self, working_dir: Union[str, Path], save_dir: Union[str, Path]) -> None:
        self.directory: Optional[Path] = resolve_save_dir(working_dir, save_dir)
        self.image_counter = 0

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Error creating save directory {self.directory}: {e}")
            self.directory = None
            return

        logger.info(f"Saving images to: {self.directory}")

    @property
    def enabled(self) -> bool:
        return self.directory is not None

    def path_for(self, index: int) -> Path:
        return self.directory / f"image{index}.png"

    def write(self, frame: Frame) -> Optional[Path]:
        """
        Write one frame.

        Returns:
            Path written, or None if saving is disabled or the write failed.
        """
        if self.directory is None:
            return None

        path = self.path_for(self.image_counter)
        if not cv2.imwrite(str(path), frame.image):
            logger.warning(f"Failed to write {path}")
            return None
        self.image_counter += 1
        return path

    def publish(self, frame: Frame) -> None:
        self.write(frame)

    def close(self) -> None:
        pass


__all__ = [
    "Frame",
    "FrameSink",
    "ListFrameSink",
    "CallbackFrameSink",
    "ImageSequenceWriter",
    "resolve_save_dir",
]
