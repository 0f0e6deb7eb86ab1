"""
Frame Compositor.

Blends the original frame with a background using the segmentation mask
as foreground opacity:

    output = foreground * mask + background * (1 - mask)

Modes, in priority order:
1. replace: background is a solid color
2. blur: background is a blurred copy of the original frame
3. neither: the frame is returned unchanged

All functions are pure and operate on RGB working buffers.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray
import cv2

from bgfilter.core.config import FilterConfiguration


def kernel_size(amount: int) -> int:
    """Odd Gaussian kernel size for a blur radius."""
    return 2 * amount + 1


def refine_mask_edges(
    mask: NDArray[np.float32],
    smoothing_amount: int,
) -> NDArray[np.float32]:
    """
    Soften mask edges with a Gaussian blur.

    Args:
        mask: Foreground confidence (H x W) float32
        smoothing_amount: Blur radius; <= 0 leaves the mask untouched

    Returns:
        Smoothed mask
    """
    if smoothing_amount <= 0:
        return mask

    k = kernel_size(smoothing_amount)
    return cv2.GaussianBlur(mask, (k, k), 0)


def blend(
    foreground: NDArray[np.uint8],
    background: NDArray[np.uint8],
    mask: NDArray[np.float32],
) -> NDArray[np.uint8]:
    """
    Linear alpha blend of two RGB images.

    Args:
        foreground: RGB image shown where mask is 1
        background: RGB image shown where mask is 0
        mask: Per-pixel foreground opacity (H x W) in [0, 1]

    Returns:
        Blended RGB image
    """
    if mask.shape != foreground.shape[:2]:
        raise ValueError(f"Mask shape {mask.shape} does not match frame {foreground.shape[:2]}")

    alpha = np.clip(mask, 0.0, 1.0).astype(np.float32)[:, :, np.newaxis]
    result = foreground.astype(np.float32) * alpha + background.astype(np.float32) * (1.0 - alpha)

    return np.clip(np.rint(result), 0, 255).astype(np.uint8)


def solid_background(
    shape: tuple,
    rgb: tuple[int, int, int],
) -> NDArray[np.uint8]:
    """An RGB image of the given shape filled with one color."""
    background = np.empty(shape, dtype=np.uint8)
    background[:] = rgb
    return background


def blurred_background(
    frame: NDArray[np.uint8],
    blur_amount: int,
) -> NDArray[np.uint8]:
    """Gaussian blurred copy of the original frame."""
    k = kernel_size(blur_amount)
    return cv2.GaussianBlur(frame, (k, k), 0)


def composite(
    foreground: NDArray[np.uint8],
    mask: NDArray[np.float32],
    config: FilterConfiguration,
) -> NDArray[np.uint8]:
    """
    Recompose a frame according to the filter configuration.

    Args:
        foreground: Original RGB frame (H x W x 3)
        mask: Foreground confidence (H x W) in [0, 1]
        config: Active configuration

    Returns:
        Output RGB frame
    """
    if config.replace_background:
        background = solid_background(foreground.shape, config.replacement_rgb)
    elif config.blur_background:
        background = blurred_background(foreground, config.blur_amount)
    else:
        return foreground.copy()

    return blend(foreground, background, mask)
