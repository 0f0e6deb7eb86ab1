"""
Wire format <-> working colorspace conversion.

The working colorspace is RGB, uint8, H x W x 3. Supported wire formats:
- I420: Y plane, U plane, V plane (4:2:0)
- NV12: Y plane, interleaved UV plane (4:2:0)
- RGBA: packed, alpha preserved on the way back

Any other format is reported as unsupported, which the pipeline treats as
a passthrough rather than an error.
"""

from __future__ import annotations

from typing import Optional
import numpy as np
from numpy.typing import NDArray
import cv2

from bgfilter.core.contracts import ConversionResult, Frame, PixelFormat
from bgfilter.core.errors import UnsupportedFormatError


_TO_RGB = {
    PixelFormat.I420: cv2.COLOR_YUV2RGB_I420,
    PixelFormat.NV12: cv2.COLOR_YUV2RGB_NV12,
}


def to_working_colorspace(frame: Frame) -> ConversionResult:
    """
    Convert a wire frame to RGB.

    Args:
        frame: Frame in any PixelFormat

    Returns:
        ConversionResult with an (H x W x 3) RGB buffer, or unsupported=True
    """
    if not frame.format.is_supported:
        return _unsupported(frame.format)

    w, h = frame.width, frame.height

    try:
        if frame.format in _TO_RGB:
            yuv = frame.data.reshape(h * 3 // 2, w)
            rgb = cv2.cvtColor(yuv, _TO_RGB[frame.format])
        else:
            rgba = frame.data.reshape(h, w, 4)
            rgb = cv2.cvtColor(rgba, cv2.COLOR_RGBA2RGB)
    except (cv2.error, ValueError) as e:
        return ConversionResult(success=False, error_message=f"{frame.format.value} -> RGB failed: {e}")

    return ConversionResult(buffer=rgb)


def from_working_colorspace(
    rgb: NDArray[np.uint8],
    target_format: PixelFormat,
    alpha: Optional[NDArray[np.uint8]] = None,
) -> ConversionResult:
    """
    Convert an RGB image back to a wire format.

    Args:
        rgb: RGB image (H x W x 3) uint8
        target_format: Wire format to produce
        alpha: Alpha channel (H x W) to restore for RGBA; opaque if None

    Returns:
        ConversionResult with a flat uint8 buffer of the format's size
    """
    if not target_format.is_supported:
        return _unsupported(target_format)

    try:
        if target_format == PixelFormat.I420:
            buffer = cv2.cvtColor(rgb, cv2.COLOR_RGB2YUV_I420).reshape(-1)
        elif target_format == PixelFormat.NV12:
            buffer = _rgb_to_nv12(rgb)
        else:
            rgba = cv2.cvtColor(rgb, cv2.COLOR_RGB2RGBA)
            if alpha is not None:
                rgba[:, :, 3] = alpha
            buffer = rgba.reshape(-1)
    except (cv2.error, ValueError) as e:
        return ConversionResult(success=False, error_message=f"RGB -> {target_format.value} failed: {e}")

    return ConversionResult(buffer=buffer)


def extract_alpha(frame: Frame) -> Optional[NDArray[np.uint8]]:
    """Alpha channel of an RGBA frame, None for other formats."""
    if frame.format != PixelFormat.RGBA:
        return None
    return frame.data.reshape(frame.height, frame.width, 4)[:, :, 3].copy()


def _rgb_to_nv12(rgb: NDArray[np.uint8]) -> NDArray[np.uint8]:
    # Go through I420 and interleave the chroma planes
    h, w = rgb.shape[:2]
    i420 = cv2.cvtColor(rgb, cv2.COLOR_RGB2YUV_I420).reshape(-1)

    luma_size = w * h
    chroma_size = luma_size // 4

    nv12 = np.empty_like(i420)
    nv12[:luma_size] = i420[:luma_size]
    nv12[luma_size::2] = i420[luma_size:luma_size + chroma_size]
    nv12[luma_size + 1::2] = i420[luma_size + chroma_size:]
    return nv12


def _unsupported(pixel_format: PixelFormat) -> ConversionResult:
    error = UnsupportedFormatError(pixel_format.value)
    return ConversionResult(
        unsupported=True,
        success=False,
        error=error,
        error_message=str(error),
    )
