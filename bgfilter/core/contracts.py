"""
Core data contracts for the background filter.

All components must adhere to these contracts for:
- Explicit success/failure at every pipeline stage
- Fixed tensor and buffer shapes
- Passthrough on any failure
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Optional, List, Tuple, TYPE_CHECKING
import numpy as np
from numpy.typing import NDArray

if TYPE_CHECKING:
    from .errors import BackgroundFilterError


# ============================================================
# ENUMERATIONS
# ============================================================

class PixelFormat(Enum):
    """Wire pixel formats a host can deliver."""
    I420 = "i420"   # planar Y, U, V (4:2:0)
    NV12 = "nv12"   # planar Y, interleaved UV (4:2:0)
    RGBA = "rgba"   # packed 8-bit RGBA
    # Known host formats the filter passes through untouched
    YUY2 = "yuy2"
    UYVY = "uyvy"
    BGRA = "bgra"
    Y800 = "y800"

    @property
    def is_supported(self) -> bool:
        return self in SUPPORTED_FORMATS

    def buffer_size(self, width: int, height: int) -> int:
        """Number of bytes a frame of this format occupies."""
        if self in (PixelFormat.I420, PixelFormat.NV12):
            return width * height * 3 // 2
        if self in (PixelFormat.RGBA, PixelFormat.BGRA):
            return width * height * 4
        if self in (PixelFormat.YUY2, PixelFormat.UYVY):
            return width * height * 2
        return width * height


SUPPORTED_FORMATS = frozenset({PixelFormat.I420, PixelFormat.NV12, PixelFormat.RGBA})


class EngineState(Enum):
    """Lifecycle of the inference engine's model handle."""
    UNLOADED = auto()
    LOADING = auto()
    LOADED = auto()
    FAILED = auto()


class SecurityReason(Enum):
    """Why a candidate model path was rejected."""
    TRAVERSAL = "traversal"
    OUTSIDE_WHITELIST = "outside_whitelist"
    NOT_FOUND = "not_found"
    NOT_REGULAR_FILE = "not_regular_file"
    OVERSIZED = "oversized"
    BAD_EXTENSION = "bad_extension"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    CHECKSUM_REQUIRED = "checksum_required"
    UNREADABLE = "unreadable"


class TrustTier(Enum):
    """Trust level of a whitelisted model directory."""
    USER = "user"       # user-writable
    SYSTEM = "system"   # installed with the application


# ============================================================
# CORE DATA STRUCTURES
# ============================================================

@dataclass
class Frame:
    """
    A video frame as delivered by the host.

    The buffer is a flat uint8 array laid out in the wire format. The
    filter writes its output back into the same buffer.
    """
    width: int
    height: int
    format: PixelFormat
    data: NDArray[np.uint8]

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Invalid frame size {self.width}x{self.height}")
        if not isinstance(self.data, np.ndarray):
            # bytearray/memoryview share memory with the caller; bytes is read-only
            buffer = bytearray(self.data) if isinstance(self.data, bytes) else self.data
            self.data = np.frombuffer(buffer, dtype=np.uint8)
        if self.data.dtype != np.uint8:
            raise ValueError(f"Frame buffer must be uint8, got {self.data.dtype}")
        self.data = self.data.reshape(-1)

        expected = self.format.buffer_size(self.width, self.height)
        if self.data.size != expected:
            raise ValueError(
                f"{self.format.value} frame {self.width}x{self.height} needs "
                f"{expected} bytes, got {self.data.size}"
            )

    @classmethod
    def from_bytes(
        cls,
        width: int,
        height: int,
        format: PixelFormat,
        data: bytes | bytearray,
    ) -> Frame:
        """Wrap a raw byte buffer. bytes are copied so the frame is writable."""
        return cls(width, height, format, data)

    @property
    def size(self) -> Tuple[int, int]:
        return (self.width, self.height)


@dataclass
class ModelDirectory:
    """A whitelisted directory models may be loaded from."""
    path: Path
    tier: TrustTier = TrustTier.USER

    def __post_init__(self):
        self.path = Path(self.path)


@dataclass
class ModelInfo:
    """Tensor contract of a loaded model."""
    input_name: str
    output_name: str
    input_height: int = 320
    input_width: int = 320
    input_shape: List[object] = field(default_factory=list)
    output_shape: List[object] = field(default_factory=list)
    providers: List[str] = field(default_factory=list)

    @property
    def input_size(self) -> Tuple[int, int]:
        """(height, width) the model expects."""
        return (self.input_height, self.input_width)


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass
class SecurityVerdict:
    """Result of validating a candidate model path."""
    passed: bool
    reason: Optional[SecurityReason] = None
    message: str = ""

    resolved_path: Optional[Path] = None
    trust_tier: Optional[TrustTier] = None

    # False when no checksum was supplied
    checksum_verified: bool = False
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def reject(cls, reason: SecurityReason, message: str, **kwargs) -> SecurityVerdict:
        return cls(passed=False, reason=reason, message=message, **kwargs)


@dataclass
class LoadResult:
    """Result of a model load attempt."""
    state: EngineState
    model_info: Optional[ModelInfo] = None
    verdict: Optional[SecurityVerdict] = None

    success: bool = True
    error: Optional[BackgroundFilterError] = None
    error_message: Optional[str] = None


@dataclass
class InferenceResult:
    """Result from the inference engine."""
    mask: Optional[NDArray[np.float32]] = None  # H x W, values in [0, 1]
    inference_time_ms: float = 0.0

    success: bool = True
    error: Optional[BackgroundFilterError] = None
    error_message: Optional[str] = None


@dataclass
class ConversionResult:
    """Result of a wire format <-> working colorspace conversion."""
    buffer: Optional[NDArray[np.uint8]] = None

    # Format is valid but not one we convert: passthrough, not an error
    unsupported: bool = False

    success: bool = True
    error: Optional[BackgroundFilterError] = None
    error_message: Optional[str] = None
