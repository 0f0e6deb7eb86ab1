"""
Core data contracts for the background filter.

Pipeline execution order (NEVER REORDER):
1. Convert the wire frame to the working colorspace (RGB)
2. Run segmentation inference to get a confidence mask
3. Refine mask edges
4. Composite foreground over the chosen background
5. Convert back to the wire format, in place
"""

from .contracts import (
    Frame,
    PixelFormat,
    EngineState,
    SecurityReason,
    TrustTier,
    ModelDirectory,
    ModelInfo,
    SecurityVerdict,
    LoadResult,
    InferenceResult,
    ConversionResult,
)
from .config import FilterConfiguration, FilterState
from .errors import (
    BackgroundFilterError,
    SecurityError,
    ModelLoadError,
    UnsupportedFormatError,
    InferenceError,
    ConfigurationError,
)
