"""
Configuration for the background filter.

FilterConfiguration is read-only during frame processing and is replaced
wholesale by BackgroundFilter.update(). Settings arrive from the host as a
plain mapping (or from a YAML file, see load_settings).

Bounded fields are validated together. If any is out of range, all of
them are reset to SAFE_DEFAULTS rather than corrected one by one.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from loguru import logger

from .errors import ConfigurationError


# === RANGES ===
THRESHOLD_RANGE = (0.0, 1.0)
BLUR_AMOUNT_RANGE = (1, 50)
EDGE_SMOOTHING_RANGE = (1, 10)
MAX_COLOR = 0xFFFFFF

GREEN = 0x00FF00

# Substituted as a unit when validation fails
SAFE_DEFAULTS = {
    "threshold": 0.5,
    "blur_amount": 15,
    "edge_smoothing": 3,
    "replacement_color": GREEN,
}


def validate_config_values(
    threshold: float,
    blur_amount: int,
    edge_smoothing: int,
    replacement_color: int = GREEN,
) -> bool:
    """
    Check the bounded configuration fields.

    Args:
        threshold: Segmentation threshold (0.0-1.0)
        blur_amount: Background blur radius (1-50)
        edge_smoothing: Mask edge smoothing radius (1-10)
        replacement_color: 24-bit RGB color (0xRRGGBB)

    Returns:
        True if all values are valid
    """
    if not THRESHOLD_RANGE[0] <= threshold <= THRESHOLD_RANGE[1]:
        logger.error(f"Invalid threshold value: {threshold} (must be 0.0-1.0)")
        return False

    if not BLUR_AMOUNT_RANGE[0] <= blur_amount <= BLUR_AMOUNT_RANGE[1]:
        logger.error(f"Invalid blur_amount: {blur_amount} (must be 1-50)")
        return False

    if not EDGE_SMOOTHING_RANGE[0] <= edge_smoothing <= EDGE_SMOOTHING_RANGE[1]:
        logger.error(f"Invalid edge_smoothing: {edge_smoothing} (must be 1-10)")
        return False

    if not 0 <= replacement_color <= MAX_COLOR:
        logger.error(f"Invalid replacement_color: {replacement_color:#x} (must be 24-bit RGB)")
        return False

    return True


@dataclass(frozen=True)
class FilterConfiguration:
    """
    Filter settings.

    Attributes:
        threshold: Mask confidence at or below which a pixel is background
        blur_background: Blur the background (ignored when replacing)
        blur_amount: Background blur radius, kernel = 2*amount+1
        replace_background: Replace the background with replacement_color
        replacement_color: Background color as 0xRRGGBB
        smooth_edges: Blur the mask before compositing
        edge_smoothing: Mask blur radius, kernel = 2*amount+1
        model_path: Model to load on update (None keeps the current model)
        model_checksum: Expected SHA-256 of model_path, hex encoded
    """
    threshold: float = 0.5
    blur_background: bool = False
    blur_amount: int = 15
    replace_background: bool = True
    replacement_color: int = GREEN
    smooth_edges: bool = True
    edge_smoothing: int = 3

    model_path: Optional[str] = None
    model_checksum: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return validate_config_values(
            self.threshold, self.blur_amount, self.edge_smoothing, self.replacement_color
        )

    @property
    def replacement_rgb(self) -> tuple[int, int, int]:
        """replacement_color split into (R, G, B)."""
        color = self.replacement_color
        return ((color >> 16) & 0xFF, (color >> 8) & 0xFF, color & 0xFF)

    def with_safe_defaults(self) -> FilterConfiguration:
        """Copy with every bounded field reset to SAFE_DEFAULTS."""
        return replace(self, **SAFE_DEFAULTS)

    @classmethod
    def from_settings(cls, settings: Optional[Mapping[str, Any]] = None) -> FilterConfiguration:
        """
        Build a configuration from a host settings mapping.

        Missing keys take their defaults. Invalid bounded values reset the
        whole bounded group to SAFE_DEFAULTS (logged once).

        Args:
            settings: Mapping of setting name to value

        Returns:
            Validated configuration
        """
        settings = dict(settings or {})
        defaults = cls()

        try:
            config = cls(
                threshold=float(settings.get("threshold", defaults.threshold)),
                blur_background=bool(settings.get("blur_background", defaults.blur_background)),
                blur_amount=int(settings.get("blur_amount", defaults.blur_amount)),
                replace_background=bool(settings.get("replace_background", defaults.replace_background)),
                replacement_color=_strip_alpha(
                    int(settings.get("replacement_color", defaults.replacement_color))
                ),
                smooth_edges=bool(settings.get("smooth_edges", defaults.smooth_edges)),
                edge_smoothing=int(settings.get("edge_smoothing", defaults.edge_smoothing)),
                model_path=_optional_str(settings.get("model_path")),
                model_checksum=_optional_str(settings.get("model_checksum")),
            )
        except (TypeError, ValueError, OverflowError) as e:
            logger.error(f"Malformed configuration values: {e}")
            logger.error("Using safe defaults instead.")
            return replace(
                defaults,
                model_path=_optional_str(settings.get("model_path")),
                model_checksum=_optional_str(settings.get("model_checksum")),
            )

        if not config.is_valid:
            logger.error("Invalid configuration values detected!")
            logger.error("Using safe defaults instead.")
            return config.with_safe_defaults()

        return config


@dataclass
class FilterState:
    """
    Mutable per-instance state of a filter.

    Only the frame currently holding the processing guard writes to it.
    """
    width: int = 0
    height: int = 0

    frames_processed: int = 0
    frames_passed_through: int = 0

    last_latency_ms: float = 0.0
    last_process_time: float = 0.0
    last_passthrough_reason: Optional[str] = None

    # Formats already reported as unsupported
    reported_formats: set = field(default_factory=set)

    def update_dimensions(self, width: int, height: int) -> bool:
        """Record frame dimensions. Returns True if they changed."""
        if (width, height) == (self.width, self.height):
            return False
        self.width = width
        self.height = height
        return True


def load_settings(path: Optional[str | Path]) -> dict[str, Any]:
    """
    Load filter settings from a YAML file.

    The file may hold the settings at top level or under a ``filter`` key.

    Args:
        path: YAML file path, or None

    Returns:
        Settings mapping ({} if the file does not exist)

    Raises:
        ConfigurationError: If the file is not valid YAML or not a mapping
    """
    if path is None:
        return {}

    path = Path(path)
    if not path.exists():
        logger.warning(f"Settings file not found: {path}")
        return {}

    try:
        with path.open("r", encoding="utf-8") as stream:
            data = yaml.safe_load(stream) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse settings file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file must contain a mapping: {path}")

    section = data.get("filter", data) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"'filter' section must be a mapping: {path}")

    return dict(section)


def _strip_alpha(color: int) -> int:
    # Hosts commonly send 0xAARRGGBB; the alpha byte is meaningless here
    if MAX_COLOR < color <= 0xFFFFFFFF:
        return color & MAX_COLOR
    return color


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None
