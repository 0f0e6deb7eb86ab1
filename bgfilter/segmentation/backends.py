"""
Inference backends.

To add a new backend:
1. Inherit from InferenceBackend
2. Implement load(), run(), close() and the two properties
3. Pass an instance to InferenceEngine(backend=...)

The engine only talks to the backend through this interface, so the
security gate and compositor never change when a backend is swapped.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Tuple
import numpy as np
from numpy.typing import NDArray
import onnxruntime as ort
from loguru import logger

from bgfilter.core.contracts import ModelInfo
from bgfilter.core.errors import InferenceError, ModelLoadError


DEFAULT_INPUT_SIZE = (320, 320)  # (height, width)

# Accelerated providers, best first. CPU is always appended.
PREFERRED_PROVIDERS = [
    "CUDAExecutionProvider",
    "DmlExecutionProvider",
    "CoreMLExecutionProvider",
]
CPU_PROVIDER = "CPUExecutionProvider"


class InferenceBackend(ABC):
    """Abstract base class for model runtimes."""

    @abstractmethod
    def load(self, model_path: str | Path) -> ModelInfo:
        """Open a model and describe its tensors.

        Called only after the security gate has passed the path.

        Raises:
            ModelLoadError: If the model cannot be opened or introspected
        """
        pass

    @abstractmethod
    def run(self, input_tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run a forward pass on a (1, 3, H, W) tensor.

        Returns:
            Raw output of the model's single output tensor

        Raises:
            InferenceError: If no model is loaded or the runtime fails
        """
        pass

    @property
    @abstractmethod
    def is_loaded(self) -> bool:
        pass

    @property
    @abstractmethod
    def input_shape(self) -> Tuple[int, int]:
        """(height, width) of the model input."""
        pass

    def close(self) -> None:
        """Release the model handle."""
        pass


class OnnxRuntimeBackend(InferenceBackend):
    """ONNX Runtime backend.

    Execution providers are chosen once, at construction: the first
    available accelerated provider, then CPU.
    """

    def __init__(
        self,
        intra_op_threads: int = 4,
        prefer_gpu: bool = True,
    ):
        """
        Args:
            intra_op_threads: Threads ONNX Runtime may use inside one operator
            prefer_gpu: Try accelerated providers before CPU
        """
        self.intra_op_threads = intra_op_threads

        available = ort.get_available_providers()
        accelerated = [p for p in PREFERRED_PROVIDERS if p in available] if prefer_gpu else []
        self.providers: List[str] = accelerated[:1] + [CPU_PROVIDER]

        if accelerated:
            logger.info(f"{accelerated[0]} enabled")
        else:
            logger.info("GPU not available, using CPU")

        self._session: Optional[ort.InferenceSession] = None
        self._info: Optional[ModelInfo] = None

    def load(self, model_path: str | Path) -> ModelInfo:
        options = ort.SessionOptions()
        options.intra_op_num_threads = self.intra_op_threads
        # Basic optimizations only: less graph rewriting of untrusted models
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_BASIC

        try:
            session = ort.InferenceSession(
                str(model_path), sess_options=options, providers=self.providers
            )
        except Exception as e:
            raise ModelLoadError(f"Failed to open model {model_path}: {e}") from e

        inputs = session.get_inputs()
        outputs = session.get_outputs()
        if not inputs or not outputs:
            raise ModelLoadError(
                f"Model must have one input and one output, got {len(inputs)}/{len(outputs)}"
            )

        input_shape = list(inputs[0].shape)
        if len(input_shape) < 4:
            raise ModelLoadError(f"Expected NCHW input of rank >= 4, got {input_shape}")

        height = _static_dim(input_shape[2], DEFAULT_INPUT_SIZE[0])
        width = _static_dim(input_shape[3], DEFAULT_INPUT_SIZE[1])

        info = ModelInfo(
            input_name=inputs[0].name,
            output_name=outputs[0].name,
            input_height=height,
            input_width=width,
            input_shape=input_shape,
            output_shape=list(outputs[0].shape),
            providers=list(session.get_providers()),
        )

        self._session = session
        self._info = info
        logger.debug(f"Model input {info.input_name} {input_shape}, output {info.output_name} {info.output_shape}")
        return info

    def run(self, input_tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        if self._session is None or self._info is None:
            raise InferenceError("No model loaded")

        outputs = self._session.run(
            [self._info.output_name], {self._info.input_name: input_tensor}
        )
        return np.asarray(outputs[0], dtype=np.float32)

    @property
    def is_loaded(self) -> bool:
        return self._session is not None

    @property
    def input_shape(self) -> Tuple[int, int]:
        if self._info is None:
            return DEFAULT_INPUT_SIZE
        return self._info.input_size

    def close(self) -> None:
        self._session = None
        self._info = None


def _static_dim(dim: object, default: int) -> int:
    # Dynamic axes come back as strings ("height") or None
    if isinstance(dim, int) and dim > 0:
        return dim
    return default
