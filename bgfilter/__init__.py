"""
AI Background Filter for Live Video

Separates the foreground subject of each live video frame from its
background and recomposes the frame: the background is replaced with a
solid color, blurred, or left untouched.

Top Priorities (strict order):
1. Never load an unvetted model artifact
2. Never crash or corrupt the host's video (fail to passthrough)
3. Bounded per-frame latency (drop work, never queue it)
4. Exact adherence to the model's tensor contract
"""

from bgfilter.core.config import FilterConfiguration
from bgfilter.core.contracts import Frame, PixelFormat
from bgfilter.pipeline.coordinator import BackgroundFilter

__version__ = "1.0.0"
__author__ = "Background Filter Team"

__all__ = [
    "BackgroundFilter",
    "FilterConfiguration",
    "Frame",
    "PixelFormat",
]
