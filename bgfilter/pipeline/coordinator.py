"""
Pipeline Coordinator.

Executes the per-frame pipeline in strict order:

1. Skip (passthrough) if no model is loaded or a frame is in flight
2. Track frame dimensions
3. Convert the wire frame to RGB
4. Run segmentation inference
5. Refine mask edges
6. Composite according to configuration
7. Convert back to the wire format, in place

Any failure at any step returns the frame unmodified. No exception ever
reaches the host.
"""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence
from loguru import logger

from bgfilter.core.config import FilterConfiguration, FilterState
from bgfilter.core.contracts import EngineState, Frame, LoadResult, ModelDirectory
from bgfilter.compositing import (
    composite,
    extract_alpha,
    from_working_colorspace,
    refine_mask_edges,
    to_working_colorspace,
)
from bgfilter.security import SecurityGate
from bgfilter.segmentation import InferenceEngine


DEFAULT_LATENCY_BUDGET_MS = 1000.0 / 30.0


class BackgroundFilter:
    """
    One background filter instance.

    Coordinates the inference engine and compositor for every frame the
    host delivers.

    Guarantees:
    - At most one frame is processed at a time; frames arriving meanwhile
      are passed through, never queued
    - Fails safely to unmodified passthrough
    - Configuration is read as one snapshot per frame

    Usage:
        bg_filter = BackgroundFilter({"model_path": path, "replace_background": True})
        frame = bg_filter.process_frame(frame)
        ...
        bg_filter.destroy()
    """

    def __init__(
        self,
        settings: Optional[Mapping[str, Any]] = None,
        engine: Optional[InferenceEngine] = None,
        allowed_directories: Optional[Sequence[ModelDirectory | str | Path]] = None,
        latency_budget_ms: float = DEFAULT_LATENCY_BUDGET_MS,
        use_checksum_files: bool = True,
    ):
        """
        Initialize the filter.

        Args:
            settings: Host settings (see FilterConfiguration.from_settings)
            engine: Inference engine (ONNX Runtime engine if None)
            allowed_directories: Model whitelist, used when engine is None
            latency_budget_ms: Per-frame budget; overruns are logged
            use_checksum_files: Verify against a <model>.sha256 sidecar when
                no checksum is configured, used when engine is None
        """
        self._engine = engine if engine is not None else InferenceEngine(
            security_gate=SecurityGate(use_checksum_files=use_checksum_files),
            allowed_directories=allowed_directories,
        )
        self.latency_budget_ms = latency_budget_ms

        self._config = FilterConfiguration()
        self._state = FilterState()

        # Single-slot guard: held by the frame being processed
        self._guard = threading.Lock()
        # Protects counters touched by frames that never get the guard
        self._stats_lock = threading.Lock()

        self.update(settings or {})
        logger.info("Background filter initialized")

    # ============================================================
    # CONFIGURATION
    # ============================================================

    @property
    def config(self) -> FilterConfiguration:
        return self._config

    @property
    def engine(self) -> InferenceEngine:
        return self._engine

    @property
    def stats(self) -> FilterState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._engine.is_loaded

    def update(self, settings: Mapping[str, Any]) -> FilterConfiguration:
        """
        Apply new host settings.

        Invalid bounded values are replaced with safe defaults as a group.
        A changed model path or checksum triggers a model load.

        Args:
            settings: Host settings mapping

        Returns:
            The configuration now in effect
        """
        previous = self._config
        config = FilterConfiguration.from_settings(settings)
        self._config = config

        model_changed = (config.model_path, config.model_checksum) != (
            previous.model_path,
            previous.model_checksum,
        )
        if config.model_path and (model_changed or self._engine.state == EngineState.UNLOADED):
            self.load_model(config.model_path, config.model_checksum)

        return config

    def load_model(
        self,
        model_path: str | Path,
        expected_checksum: Optional[str] = None,
    ) -> LoadResult:
        """
        Load (or reload) the segmentation model.

        Frames pass through while loading and after a failed load.
        """
        result = self._engine.load_model(model_path, expected_checksum)
        if result.success:
            logger.info("Model loaded successfully")
        else:
            logger.warning(f"Failed to load model from: {model_path}")
        return result

    def destroy(self) -> None:
        """Wait for any in-flight frame, then release the model."""
        with self._guard:
            self._engine.unload()
        logger.info("Background filter destroyed")

    # ============================================================
    # FRAME PROCESSING
    # ============================================================

    def process_frame(self, frame: Frame) -> Frame:
        """
        Process one frame.

        Args:
            frame: Host frame, modified in place

        Returns:
            The same frame, processed or untouched
        """
        if not self._engine.is_loaded:
            return self._passthrough(frame, "Model not loaded")

        if not self._guard.acquire(blocking=False):
            return self._passthrough(frame, "Previous frame still processing")

        try:
            return self._process_guarded(frame)
        finally:
            self._guard.release()

    def _process_guarded(self, frame: Frame) -> Frame:
        start_time = time.perf_counter()
        config = self._config

        if self._state.update_dimensions(frame.width, frame.height):
            logger.debug(f"Frame size changed to {frame.width}x{frame.height}")

        if not (config.replace_background or config.blur_background):
            return self._passthrough(frame, "No background mode enabled")

        try:
            converted = to_working_colorspace(frame)
            if not converted.success:
                if converted.unsupported:
                    self._report_unsupported(frame)
                return self._passthrough(frame, converted.error_message)

            rgb = converted.buffer
            inference = self._engine.run_inference(rgb, config.threshold)
            if not inference.success:
                return self._passthrough(frame, inference.error_message)

            mask = inference.mask
            if config.smooth_edges:
                mask = refine_mask_edges(mask, config.edge_smoothing)

            output = composite(rgb, mask, config)

            restored = from_working_colorspace(output, frame.format, alpha=extract_alpha(frame))
            if not restored.success:
                return self._passthrough(frame, restored.error_message)

            self._write_back(frame, restored.buffer)

        except Exception as e:
            logger.error(f"Error processing frame: {e}")
            return self._passthrough(frame, str(e))

        latency_ms = (time.perf_counter() - start_time) * 1000
        with self._stats_lock:
            self._state.frames_processed += 1
            self._state.last_latency_ms = latency_ms
            self._state.last_process_time = time.time()

        if latency_ms > self.latency_budget_ms:
            logger.warning(
                f"Latency budget exceeded: {latency_ms:.1f}ms > {self.latency_budget_ms:.1f}ms"
            )

        return frame

    def _write_back(self, frame: Frame, buffer) -> None:
        if frame.data.flags.writeable:
            frame.data[:] = buffer
        else:
            frame.data = buffer

    def _passthrough(self, frame: Frame, reason: Optional[str]) -> Frame:
        with self._stats_lock:
            self._state.frames_passed_through += 1
            self._state.last_passthrough_reason = reason
        return frame

    def _report_unsupported(self, frame: Frame) -> None:
        # Once per format, the host keeps sending it every frame
        with self._stats_lock:
            if frame.format in self._state.reported_formats:
                return
            self._state.reported_formats.add(frame.format)
        logger.warning(f"Unsupported pixel format {frame.format.value}, passing frames through")
