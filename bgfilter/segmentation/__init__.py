"""
Segmentation module.

Responsibilities:
- Model loading behind the security gate
- Preprocessing to the model's tensor contract
- Sigmoid + threshold postprocessing
- Pluggable inference backends
"""

from .backends import InferenceBackend, OnnxRuntimeBackend
from .inference_engine import InferenceEngine, preprocess, postprocess
