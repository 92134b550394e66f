"""
Spatial post-processing of display images.

Colour sensors deliver a Bayer mosaic; demosaicing happens on the 8-bit
display image and always before smoothing. Smoothing uses a 5×5 support:
a Gaussian with the configured sigma, or a bilateral filter whose colour
and space sigmas are both 25·sigma.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Tuple

import cv2
import numpy as np

from eventcomb.config import ReconstructionOptions


KERNEL_SIZE = 5
BILATERAL_SIGMA_SCALE = 25.0


class SmoothingMethod(IntEnum):
    GAUSSIAN = 0
    BILATERAL = 1


def demosaic(image: np.ndarray) -> np.ndarray:
    """Edge-aware BayerBG → BGR conversion of a uint8 mosaic."""
    return cv2.cvtColor(image, cv2.COLOR_BayerBG2BGR_EA)


def smooth(
    image: np.ndarray,
    sigma: float,
    method: SmoothingMethod = SmoothingMethod.GAUSSIAN
) -> np.ndarray:
    """
    Smooth a uint8 display image.

    Args:
        image: (H, W) or (H, W, 3) uint8 image.
        sigma: Gaussian sigma; ``<= 0`` returns ``image`` unchanged.
        method: Gaussian or bilateral.

    Returns:
        Smoothed image with the same shape and dtype.
    """
    if sigma <= 0:
        return image
    if method == SmoothingMethod.BILATERAL:
        bilateral_sigma = sigma * BILATERAL_SIGMA_SCALE
        return cv2.bilateralFilter(image, KERNEL_SIZE, bilateral_sigma, bilateral_sigma)
    return cv2.GaussianBlur(image, (KERNEL_SIZE, KERNEL_SIZE), sigma, sigma)


def postprocess(
    image: np.ndarray,
    options: ReconstructionOptions
) -> Tuple[np.ndarray, str]:
    """
    Apply the optional demosaic and smoothing stages.

    Returns:
        (image, encoding) where encoding is "bgr8" for colour output and
        "mono8" otherwise.
    """
    if options.color_display:
        image = demosaic(image)
        encoding = "bgr8"
    else:
        encoding = "mono8"

    method = SmoothingMethod.BILATERAL if options.bilateral_filter else SmoothingMethod.GAUSSIAN
    image = smooth(image, options.spatial_filter_sigma, method)
    return image, encoding


__all__ = ["SmoothingMethod", "demosaic", "smooth", "postprocess", "KERNEL_SIZE"]
