"""
Security Module - Model Artifact Gate.

Responsibilities:
- Directory traversal rejection
- Whitelist directory enforcement
- File type and size limits
- SHA-256 integrity verification
"""

from .security_gate import (
    SecurityGate,
    MAX_MODEL_SIZE,
    calculate_file_sha256,
    verify_file_checksum,
    has_traversal,
    is_path_in_directory,
    read_checksum_file,
    default_model_directories,
)
