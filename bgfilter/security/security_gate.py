"""
Security Gate - Model Artifact Validation.

Enforces, before any byte of a model file is parsed:
- No parent-directory traversal in the requested path
- Resolved path inside a whitelisted directory
- Regular file, no larger than MAX_MODEL_SIZE
- SHA-256 match when a checksum is known

When a check fails:
- Reject the load attempt
- Log the reason
- Never retry, never touch the filesystem
"""

from __future__ import annotations

import hashlib
import os
import re
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple
from loguru import logger

from bgfilter.core.contracts import (
    ModelDirectory,
    SecurityReason,
    SecurityVerdict,
    TrustTier,
)
from bgfilter.core.errors import SecurityError


MAX_MODEL_SIZE = 500 * 1024 * 1024  # 500 MiB
MODEL_EXTENSION = ".onnx"
HASH_CHUNK_SIZE = 8192

_SHA256_HEX = re.compile(r"^[0-9a-fA-F]{64}$")


# ============================================================
# HASHING
# ============================================================

def calculate_file_sha256(filepath: str | Path) -> Optional[str]:
    """
    Calculate the SHA-256 of a file, streamed in chunks.

    Args:
        filepath: Path to the file

    Returns:
        Hex-encoded digest, or None if the file could not be read
    """
    sha256 = hashlib.sha256()
    try:
        with open(filepath, "rb") as f:
            for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
                sha256.update(chunk)
    except OSError as e:
        logger.error(f"[Security] Failed to open file for hashing: {filepath} ({e})")
        return None

    return sha256.hexdigest()


def verify_file_checksum(filepath: str | Path, expected_hash: Optional[str]) -> bool:
    """
    Verify a file against an expected SHA-256 (case-insensitive).

    An empty expected hash skips verification and returns True.
    """
    if not expected_hash:
        logger.warning("[Security] No checksum provided for verification")
        return True

    calculated = calculate_file_sha256(filepath)
    if calculated is None:
        return False

    if calculated.lower() != expected_hash.strip().lower():
        logger.error(f"[Security] Checksum mismatch for {filepath}")
        logger.error(f"[Security] Expected: {expected_hash}")
        logger.error(f"[Security] Got:      {calculated}")
        return False

    logger.info(f"[Security] Checksum verified for {filepath}")
    return True


def read_checksum_file(model_path: str | Path) -> Optional[str]:
    """
    Read the ``<model>.sha256`` sidecar next to a model, if any.

    The sidecar uses ``sha256sum`` output format: ``<hex>  <filename>``.
    """
    sidecar = Path(str(model_path) + ".sha256")
    if not sidecar.is_file():
        return None

    try:
        tokens = sidecar.read_text(encoding="utf-8").split()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"[Security] Could not read checksum file {sidecar}: {e}")
        return None

    if not tokens or not _SHA256_HEX.match(tokens[0]):
        logger.warning(f"[Security] Malformed checksum file: {sidecar}")
        return None

    return tokens[0].lower()


# ============================================================
# PATH CHECKS
# ============================================================

def has_traversal(filepath: str | Path) -> bool:
    """True if any component of the path is '..' (either separator)."""
    return ".." in re.split(r"[\\/]", str(filepath))


def is_path_in_directory(filepath: str | Path, allowed_dir: str | Path) -> bool:
    """
    Check if a file resolves to a location inside a directory.

    Both paths are made absolute and symlink-resolved first, so links that
    point out of the directory do not count as inside it.
    """
    file_abs = Path(filepath).expanduser().resolve()
    dir_abs = Path(allowed_dir).expanduser().resolve()

    try:
        rel = os.path.relpath(file_abs, dir_abs)
    except ValueError:
        # Different drives on Windows
        return False

    if rel == os.curdir or os.path.isabs(rel):
        return False
    return not has_traversal(rel)


def default_model_directories(plugin_name: str = "obs-background-filter") -> List[ModelDirectory]:
    """
    Standard whitelist: the user's plugin data folders and system installs.
    """
    directories: List[ModelDirectory] = []

    home = os.environ.get("HOME")
    if home:
        user_base = Path(home) / ".config" / "obs-studio" / "plugins" / plugin_name / "data"
        directories.append(ModelDirectory(user_base / "models", TrustTier.USER))
        directories.append(ModelDirectory(user_base, TrustTier.USER))

    directories.append(
        ModelDirectory(Path("/usr/share/obs/obs-plugins") / plugin_name / "models", TrustTier.SYSTEM)
    )
    directories.append(
        ModelDirectory(Path("/usr/local/share/obs/obs-plugins") / plugin_name / "models", TrustTier.SYSTEM)
    )
    return directories


# ============================================================
# GATE
# ============================================================

class SecurityGate:
    """
    Validates model artifacts before they are loaded.

    Guarantees:
    - A rejected path is never opened by the gate beyond stat()
    - Hashing streams the file, never loading it whole
    - No filesystem mutation
    - A <model>.sha256 sidecar is read only once the model itself passed
      the whitelist and file checks

    Usage:
        gate = SecurityGate()
        verdict = gate.validate(path, default_model_directories())
        if not verdict.passed:
            ...
    """

    def __init__(
        self,
        max_size: int = MAX_MODEL_SIZE,
        require_checksum_for_user_models: bool = False,
        use_checksum_files: bool = True,
    ):
        """
        Initialize the gate.

        Args:
            max_size: Largest model file accepted, in bytes
            require_checksum_for_user_models: Reject unverified models coming
                from user-writable directories
            use_checksum_files: Verify against a <model>.sha256 file next to
                the model when no checksum is given
        """
        self.max_size = max_size
        self.require_checksum_for_user_models = require_checksum_for_user_models
        self.use_checksum_files = use_checksum_files

    def validate(
        self,
        filepath: str | Path,
        allowed_directories: Sequence[ModelDirectory | str | Path],
        expected_checksum: Optional[str] = None,
    ) -> SecurityVerdict:
        """
        Validate a candidate model path.

        Args:
            filepath: Requested model path
            allowed_directories: Whitelisted directories
            expected_checksum: Hex SHA-256 the file must match, if known

        Returns:
            SecurityVerdict; passed=False carries the rejection reason
        """
        try:
            verdict = self._validate(filepath, _as_model_directories(allowed_directories), expected_checksum)
        except SecurityError as e:
            logger.error(f"[Security] {e}")
            return SecurityVerdict.reject(e.reason, str(e))
        except OSError as e:
            logger.error(f"[Security] Could not inspect {filepath}: {e}")
            return SecurityVerdict.reject(SecurityReason.UNREADABLE, str(e))
        except ValueError as e:
            # Malformed paths, e.g. embedded null bytes
            logger.error(f"[Security] Invalid model path {filepath!r}: {e}")
            return SecurityVerdict.reject(SecurityReason.UNREADABLE, f"Invalid model path: {e}")

        for warning in verdict.warnings:
            logger.warning(f"[Security] {warning}")
        logger.info(f"[Security] Model validated: {verdict.resolved_path} ({verdict.trust_tier.value})")
        return verdict

    def _validate(
        self,
        filepath: str | Path,
        allowed_directories: List[ModelDirectory],
        expected_checksum: Optional[str],
    ) -> SecurityVerdict:
        if has_traversal(filepath):
            raise SecurityError(SecurityReason.TRAVERSAL, f"Path contains '..' traversal: {filepath}")

        resolved, tier = self._match_whitelist(filepath, allowed_directories)

        if not resolved.exists():
            raise SecurityError(SecurityReason.NOT_FOUND, f"Model file does not exist: {filepath}")

        if not resolved.is_file():
            raise SecurityError(
                SecurityReason.NOT_REGULAR_FILE, f"Model path is not a regular file: {filepath}"
            )

        file_size = resolved.stat().st_size
        if file_size > self.max_size:
            raise SecurityError(
                SecurityReason.OVERSIZED,
                f"Model file too large: {file_size} bytes (max {self.max_size})",
            )

        verdict = SecurityVerdict(passed=True, resolved_path=resolved, trust_tier=tier)

        if resolved.suffix.lower() != MODEL_EXTENSION:
            verdict.warnings.append(f"Model file does not have {MODEL_EXTENSION} extension: {filepath}")

        if not expected_checksum and self.use_checksum_files:
            expected_checksum = _sidecar_checksum(resolved)

        if expected_checksum:
            if not verify_file_checksum(resolved, expected_checksum):
                raise SecurityError(
                    SecurityReason.CHECKSUM_MISMATCH, f"Model checksum verification failed: {filepath}"
                )
            verdict.checksum_verified = True
        elif tier == TrustTier.USER and self.require_checksum_for_user_models:
            raise SecurityError(
                SecurityReason.CHECKSUM_REQUIRED,
                f"Models in user directories need a checksum: {filepath}",
            )
        else:
            verdict.warnings.append("Loading model without checksum verification")

        return verdict

    def _match_whitelist(
        self,
        filepath: str | Path,
        allowed_directories: Iterable[ModelDirectory],
    ) -> Tuple[Path, TrustTier]:
        resolved = Path(filepath).expanduser().resolve()

        for directory in allowed_directories:
            if is_path_in_directory(resolved, directory.path):
                return resolved, directory.tier

        raise SecurityError(
            SecurityReason.OUTSIDE_WHITELIST, f"Path not in allowed directories: {filepath}"
        )


def _sidecar_checksum(resolved: Path) -> Optional[str]:
    # Only a sidecar that itself stays next to the validated model is trusted
    sidecar = Path(str(resolved) + ".sha256")
    if not sidecar.exists() or not is_path_in_directory(sidecar, resolved.parent):
        return None

    checksum = read_checksum_file(resolved)
    if checksum:
        logger.info(f"[Security] Using checksum file {sidecar}")
    return checksum


def _as_model_directories(
    directories: Sequence[ModelDirectory | str | Path],
) -> List[ModelDirectory]:
    return [d if isinstance(d, ModelDirectory) else ModelDirectory(Path(d)) for d in directories]
