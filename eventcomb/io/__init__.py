from eventcomb.io.sinks import (
    CallbackFrameSink,
    Frame,
    FrameSink,
    ImageSequenceWriter,
    ListFrameSink,
)

__all__ = [
    "CallbackFrameSink",
    "Frame",
    "FrameSink",
    "ImageSequenceWriter",
    "ListFrameSink",
]
