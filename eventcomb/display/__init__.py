"""Display mapping and spatial post-processing."""

from eventcomb.display.mapper import DisplayMapper, robust_min_max
from eventcomb.display.smoothing import SmoothingMethod, demosaic, postprocess, smooth

__all__ = [
    "DisplayMapper",
    "robust_min_max",
    "SmoothingMethod",
    "demosaic",
    "postprocess",
    "smooth",
]
