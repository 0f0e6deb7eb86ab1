"""Error taxonomy for the background filter."""

from __future__ import annotations

from typing import Optional

from .contracts import SecurityReason


class BackgroundFilterError(Exception):
    """Base class for all filter errors."""


class SecurityError(BackgroundFilterError):
    """A model artifact failed validation. Fatal to that load attempt."""

    def __init__(self, reason: SecurityReason, message: str):
        super().__init__(message)
        self.reason = reason


class ModelLoadError(BackgroundFilterError):
    """The model passed validation but could not be opened or introspected."""


class UnsupportedFormatError(BackgroundFilterError):
    """The frame's pixel format has no conversion. Per-frame, non-fatal."""

    def __init__(self, pixel_format: object, message: Optional[str] = None):
        super().__init__(message or f"Unsupported pixel format: {pixel_format}")
        self.pixel_format = pixel_format


class InferenceError(BackgroundFilterError):
    """Preprocessing, forward pass or postprocessing failed. Per-frame."""


class ConfigurationError(BackgroundFilterError):
    """Configuration values outside their allowed ranges."""
