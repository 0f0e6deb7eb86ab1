from __future__ import annotations

import threading
from pathlib import Path
from typing import List, Optional, Tuple

import cv2
import numpy as np
import pytest

from bgfilter.compositing import from_working_colorspace
from bgfilter.core.contracts import Frame, ModelDirectory, ModelInfo, PixelFormat, TrustTier
from bgfilter.core.errors import InferenceError, ModelLoadError
from bgfilter.segmentation import InferenceBackend, InferenceEngine


# ---------------------------------------------------------------------------
# Stub backend: stands in for ONNX Runtime so no real model or GPU is needed.
# ---------------------------------------------------------------------------

class StubBackend(InferenceBackend):
    """Returns a constant logit map of the model's input size."""

    def __init__(
        self,
        logit: float = 50.0,
        input_size: Tuple[int, int] = (320, 320),
        fail_load: bool = False,
        fail_run: bool = False,
        output: Optional[np.ndarray] = None,
    ):
        self.logit = logit
        self._input_size = input_size
        self.fail_load = fail_load
        self.fail_run = fail_run
        self.output = output

        self.loaded_paths: List[Path] = []
        self.run_calls = 0
        self.last_input: Optional[np.ndarray] = None
        self._loaded = False

    def load(self, model_path) -> ModelInfo:
        self.loaded_paths.append(Path(model_path))
        if self.fail_load:
            raise ModelLoadError("corrupt model")
        self._loaded = True
        h, w = self._input_size
        return ModelInfo(
            input_name="input",
            output_name="output",
            input_height=h,
            input_width=w,
            input_shape=[1, 3, h, w],
            output_shape=[1, 1, h, w],
            providers=["CPUExecutionProvider"],
        )

    def run(self, input_tensor: np.ndarray) -> np.ndarray:
        self.run_calls += 1
        self.last_input = input_tensor
        if self.fail_run:
            raise InferenceError("runtime exploded")
        if self.output is not None:
            return self.output
        h, w = self._input_size
        return np.full((1, 1, h, w), self.logit, dtype=np.float32)

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def input_shape(self) -> Tuple[int, int]:
        return self._input_size

    def close(self) -> None:
        self._loaded = False


class BlockingBackend(StubBackend):
    """StubBackend whose run() waits until released, to hold a frame in flight."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def run(self, input_tensor: np.ndarray) -> np.ndarray:
        self.entered.set()
        self.release.wait(timeout=5.0)
        return super().run(input_tensor)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_frame(
    rgb: Tuple[int, int, int],
    pixel_format: PixelFormat = PixelFormat.RGBA,
    width: int = 64,
    height: int = 48,
    alpha: int = 255,
) -> Frame:
    """A uniformly colored frame in the given wire format."""
    image = np.empty((height, width, 3), dtype=np.uint8)
    image[:] = rgb

    if pixel_format == PixelFormat.RGBA:
        rgba = cv2.cvtColor(image, cv2.COLOR_RGB2RGBA)
        rgba[:, :, 3] = alpha
        return Frame(width, height, pixel_format, rgba.reshape(-1))

    packed = from_working_colorspace(image, pixel_format)
    return Frame(width, height, pixel_format, packed.buffer)


def write_model(path: Path, size: int = 1024) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(bytes(range(256)) * (size // 256) + b"\0" * (size % 256))
    return path


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def models_dir(tmp_path: Path) -> Path:
    """Whitelisted model directory with one valid-looking model."""
    directory = tmp_path / "models"
    write_model(directory / "u2net.onnx")
    return directory


@pytest.fixture
def model_path(models_dir: Path) -> Path:
    return models_dir / "u2net.onnx"


@pytest.fixture
def allowed(models_dir: Path) -> List[ModelDirectory]:
    return [ModelDirectory(models_dir, TrustTier.USER)]


@pytest.fixture
def stub_backend() -> StubBackend:
    return StubBackend()


@pytest.fixture
def engine(stub_backend: StubBackend, allowed: List[ModelDirectory]) -> InferenceEngine:
    return InferenceEngine(backend=stub_backend, allowed_directories=allowed)


@pytest.fixture
def loaded_engine(engine: InferenceEngine, model_path: Path) -> InferenceEngine:
    assert engine.load_model(model_path).success
    return engine
