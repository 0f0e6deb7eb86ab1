#!/usr/bin/env python3
"""
ONNX Model Verification

Checks a segmentation model before it is copied into a model directory:
- File exists and is a regular file
- Size is under the 500MB limit (warns if suspiciously small)
- .onnx extension
- SHA-256, compared against <model>.sha256 if present
- Opens with ONNX Runtime and prints its tensors

Usage:
    python scripts/verify_model.py u2net.onnx

Exit code is 0 if the model is safe to use, 1 otherwise.
"""

import argparse
import sys
from pathlib import Path

from bgfilter.core.errors import ModelLoadError
from bgfilter.security import MAX_MODEL_SIZE, calculate_file_sha256, read_checksum_file
from bgfilter.segmentation import OnnxRuntimeBackend


MIN_EXPECTED_SIZE = 1_000_000  # smaller than any real segmentation model


def verify(model_path: Path) -> bool:
    """Run every check, printing a report. Returns True if the model passed."""
    print("=== ONNX Model Verification ===\n")

    if not model_path.is_file():
        print(f"❌ File not found: {model_path}")
        return False
    print("✅ File exists")

    size = model_path.stat().st_size
    print(f"✅ File size: {size / (1024 * 1024):.1f}MB")

    if size < MIN_EXPECTED_SIZE:
        print("⚠️  WARNING: File seems too small (< 1MB)")

    if size > MAX_MODEL_SIZE:
        print("❌ File is too large (> 500MB)")
        print("   This could be a resource exhaustion attack")
        return False

    if model_path.suffix.lower() != ".onnx":
        print("⚠️  WARNING: File doesn't have .onnx extension")

    print("\nCalculating SHA-256...")
    checksum = calculate_file_sha256(model_path)
    if checksum is None:
        print("❌ Could not read file")
        return False
    print(f"SHA-256: {checksum}")

    saved = read_checksum_file(model_path)
    if saved is not None:
        print("\nVerifying against saved checksum...")
        if saved.lower() != checksum:
            print("❌ CHECKSUM MISMATCH!")
            print(f"   Expected: {saved}")
            print(f"   Got:      {checksum}")
            print("   DELETE this file immediately!")
            return False
        print("✅ Checksum matches saved value")
    else:
        print("\nNo saved checksum found.")
        print("Save this checksum for future verification:")
        print(f'echo "{checksum}  {model_path.name}" > {model_path}.sha256')

    print("\nOpening with ONNX Runtime...")
    backend = OnnxRuntimeBackend(prefer_gpu=False)
    try:
        info = backend.load(model_path)
    except ModelLoadError as e:
        print(f"❌ Model failed to load: {e}")
        print("DELETE this file - it may be corrupted or malicious!")
        return False
    finally:
        backend.close()

    print("✅ Model structure is valid")
    print("\nModel info:")
    print(f"  Input:  {info.input_name} {info.input_shape}")
    print(f"  Output: {info.output_name} {info.output_shape}")
    print(f"  Inference size: {info.input_width}x{info.input_height}")

    print("\n=== Verification Complete ===")
    return True


def main():
    parser = argparse.ArgumentParser(
        description="Verify an ONNX segmentation model",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("model", type=str, help="Path to the .onnx model")
    args = parser.parse_args()

    sys.exit(0 if verify(Path(args.model)) else 1)


if __name__ == "__main__":
    main()
