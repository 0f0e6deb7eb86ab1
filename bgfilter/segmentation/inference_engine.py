"""
Segmentation Inference Engine.

Turns an RGB frame into a foreground-confidence mask.

Model contract (must match training exactly):
- Input: (1, 3, H, W) float32, RGB, scaled to [0, 1] then normalized
  with ImageNet mean/std
- Output: single channel logits at the model's native resolution

Lifecycle: UNLOADED -> LOADING -> LOADED | FAILED. No automatic retry.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import List, Optional, Sequence, Tuple
import numpy as np
from numpy.typing import NDArray
import cv2
from loguru import logger

from bgfilter.core.contracts import (
    EngineState,
    InferenceResult,
    LoadResult,
    ModelDirectory,
    ModelInfo,
)
from bgfilter.core.errors import (
    BackgroundFilterError,
    InferenceError,
    ModelLoadError,
    SecurityError,
)
from bgfilter.security import SecurityGate, default_model_directories
from .backends import DEFAULT_INPUT_SIZE, InferenceBackend, OnnxRuntimeBackend


IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)

# Logits beyond this saturate float32 sigmoid anyway
_LOGIT_CLIP = 88.0


# ============================================================
# PRE / POST PROCESSING
# ============================================================

def preprocess(
    frame: NDArray[np.uint8],
    input_size: Tuple[int, int],
) -> NDArray[np.float32]:
    """
    Convert an RGB frame into the model's input tensor.

    Args:
        frame: RGB frame (H x W x 3) uint8
        input_size: (height, width) the model expects

    Returns:
        (1, 3, height, width) float32 tensor
    """
    height, width = input_size
    resized = cv2.resize(frame, (width, height), interpolation=cv2.INTER_LINEAR)

    normalized = resized.astype(np.float32) * (1.0 / 255.0)
    normalized = (normalized - IMAGENET_MEAN) / IMAGENET_STD

    # HWC -> CHW, add batch axis
    return np.ascontiguousarray(normalized.transpose(2, 0, 1)[np.newaxis], dtype=np.float32)


def sigmoid(x: NDArray[np.float32]) -> NDArray[np.float32]:
    x = np.clip(x, -_LOGIT_CLIP, _LOGIT_CLIP)
    return (1.0 / (1.0 + np.exp(-x))).astype(np.float32)


def postprocess(
    raw_output: NDArray[np.float32],
    target_size: Tuple[int, int],
    threshold: float,
) -> NDArray[np.float32]:
    """
    Turn raw model output into a mask at frame resolution.

    Sigmoid, then every value at or below threshold becomes 0.0, then a
    linear resize to the frame.

    Args:
        raw_output: Model output, (1, 1, h, w), (1, h, w) or (h, w)
        target_size: (height, width) of the frame
        threshold: Confidence cutoff in [0, 1]

    Returns:
        Mask (height x width) float32 in [0, 1]
    """
    logits = np.asarray(raw_output, dtype=np.float32)
    output_shape = logits.shape
    while logits.ndim > 2:
        if logits.shape[0] != 1:
            raise InferenceError(f"Expected a single-channel output, got shape {output_shape}")
        logits = logits[0]
    if logits.ndim != 2:
        raise InferenceError(f"Cannot interpret output of shape {output_shape} as a mask")

    confidence = sigmoid(logits)
    mask = np.where(confidence > threshold, confidence, 0.0).astype(np.float32)

    height, width = target_size
    if mask.shape != (height, width):
        mask = cv2.resize(mask, (width, height), interpolation=cv2.INTER_LINEAR)

    return mask


# ============================================================
# ENGINE
# ============================================================

class InferenceEngine:
    """
    Owns the model handle and runs segmentation.

    Guarantees:
    - No model file is opened before the security gate passes it
    - Load and inference failures are returned, never raised
    - Input/output shapes are fixed once LOADED

    Usage:
        engine = InferenceEngine()
        if engine.load_model("~/.config/.../models/u2net.onnx").success:
            result = engine.run_inference(rgb_frame, threshold=0.5)
            if result.success:
                mask = result.mask
    """

    def __init__(
        self,
        backend: Optional[InferenceBackend] = None,
        security_gate: Optional[SecurityGate] = None,
        allowed_directories: Optional[Sequence[ModelDirectory | str | Path]] = None,
    ):
        """
        Initialize the engine.

        Args:
            backend: Model runtime (ONNX Runtime if None)
            security_gate: Gate used at load time
            allowed_directories: Model whitelist (platform defaults if None)
        """
        self._backend = backend if backend is not None else OnnxRuntimeBackend()
        self._gate = security_gate or SecurityGate()

        if allowed_directories is None:
            allowed_directories = default_model_directories()
        self.allowed_directories = list(allowed_directories)

        self._state = EngineState.UNLOADED
        self._model_info: Optional[ModelInfo] = None
        self._last_error: Optional[str] = None

        # Performance tracking
        self._inference_times: List[float] = []

    # ------------------------------------------------------------
    # State
    # ------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_loaded(self) -> bool:
        return self._state == EngineState.LOADED

    @property
    def model_info(self) -> Optional[ModelInfo]:
        return self._model_info

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def get_input_shape(self) -> Tuple[int, int]:
        """(height, width) of the model input, 320x320 if none is loaded."""
        if self._model_info is None:
            return DEFAULT_INPUT_SIZE
        return self._model_info.input_size

    @property
    def average_inference_ms(self) -> float:
        if not self._inference_times:
            return 0.0
        return sum(self._inference_times) / len(self._inference_times)

    # ------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------

    def load_model(
        self,
        model_path: str | Path,
        expected_checksum: Optional[str] = None,
    ) -> LoadResult:
        """
        Validate and load a model.

        Any previously loaded model is released first.

        Args:
            model_path: Path to the model file
            expected_checksum: Hex SHA-256 the file must match

        Returns:
            LoadResult with the final engine state
        """
        logger.info(f"Loading model: {model_path}")
        self.unload()
        self._state = EngineState.LOADING

        try:
            verdict = self._gate.validate(model_path, self.allowed_directories, expected_checksum)
        except Exception as e:
            return self._fail(ModelLoadError(f"Model path validation error: {e}"))

        if not verdict.passed:
            logger.error("Model path validation failed!")
            logger.error("Only load models from trusted directories.")
            return self._fail(SecurityError(verdict.reason, verdict.message), verdict=verdict)

        if not verdict.checksum_verified:
            logger.warning("Loading model without checksum verification")
            logger.warning("This is insecure! Provide checksums for production use.")

        try:
            info = self._backend.load(verdict.resolved_path)
        except BackgroundFilterError as e:
            return self._fail(e, verdict=verdict)
        except Exception as e:
            return self._fail(ModelLoadError(f"Failed to load model: {e}"), verdict=verdict)

        self._model_info = info
        self._state = EngineState.LOADED
        self._last_error = None
        logger.info(
            f"Model loaded: input size {info.input_width}x{info.input_height} "
            f"(providers: {', '.join(info.providers) or 'unknown'})"
        )
        return LoadResult(state=self._state, model_info=info, verdict=verdict)

    def unload(self) -> None:
        """Release the model handle and return to UNLOADED."""
        if self._backend.is_loaded:
            self._backend.close()
        self._model_info = None
        self._state = EngineState.UNLOADED

    def _fail(self, error: BackgroundFilterError, verdict=None) -> LoadResult:
        self._backend.close()
        self._model_info = None
        self._state = EngineState.FAILED
        self._last_error = str(error)
        logger.error(f"Failed to load model: {error}")
        return LoadResult(
            state=self._state,
            verdict=verdict,
            success=False,
            error=error,
            error_message=str(error),
        )

    # ------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------

    def run_inference(
        self,
        frame: NDArray[np.uint8],
        threshold: float,
    ) -> InferenceResult:
        """
        Compute the foreground mask for a frame.

        Args:
            frame: RGB frame (H x W x 3) uint8
            threshold: Confidence cutoff in [0, 1]

        Returns:
            InferenceResult whose mask matches the frame's height and width
        """
        if not self.is_loaded or self._model_info is None:
            return InferenceResult(
                success=False,
                error=InferenceError("Model not loaded"),
                error_message="Model not loaded",
            )

        start_time = time.perf_counter()

        try:
            input_tensor = preprocess(frame, self._model_info.input_size)
            raw_output = self._backend.run(input_tensor)
            mask = postprocess(raw_output, frame.shape[:2], threshold)
        except Exception as e:
            error = e if isinstance(e, InferenceError) else InferenceError(str(e))
            logger.error(f"Inference failed: {e}")
            return InferenceResult(success=False, error=error, error_message=str(e))

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        self._inference_times.append(elapsed_ms)
        if len(self._inference_times) > 100:
            self._inference_times.pop(0)

        return InferenceResult(mask=mask, inference_time_ms=elapsed_ms)
