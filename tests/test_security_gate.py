from __future__ import annotations

import hashlib
import os
from pathlib import Path

import pytest

from bgfilter.core.contracts import ModelDirectory, SecurityReason, TrustTier
from bgfilter.security import (
    SecurityGate,
    calculate_file_sha256,
    default_model_directories,
    has_traversal,
    is_path_in_directory,
    read_checksum_file,
    verify_file_checksum,
)

from conftest import write_model


def _sha256(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def test_traversal_is_rejected_before_touching_filesystem(allowed) -> None:
    verdict = SecurityGate().validate("../../etc/passwd", allowed)

    assert not verdict.passed
    assert verdict.reason == SecurityReason.TRAVERSAL


def test_traversal_inside_whitelisted_prefix_is_rejected(models_dir: Path, allowed) -> None:
    verdict = SecurityGate().validate(f"{models_dir}/../models/u2net.onnx", allowed)

    assert verdict.reason == SecurityReason.TRAVERSAL


def test_backslash_traversal_is_detected() -> None:
    assert has_traversal("models\\..\\secret.onnx")
    assert not has_traversal("models/u2net..onnx")


def test_path_outside_whitelist_is_rejected(tmp_path: Path, allowed) -> None:
    outside = write_model(tmp_path / "elsewhere" / "u2net.onnx")

    verdict = SecurityGate().validate(outside, allowed)

    assert not verdict.passed
    assert verdict.reason == SecurityReason.OUTSIDE_WHITELIST


def test_symlink_escaping_whitelist_is_rejected(tmp_path: Path, models_dir: Path, allowed) -> None:
    target = write_model(tmp_path / "elsewhere" / "evil.onnx")
    link = models_dir / "link.onnx"
    link.symlink_to(target)

    verdict = SecurityGate().validate(link, allowed)

    assert verdict.reason == SecurityReason.OUTSIDE_WHITELIST


def test_missing_file_is_rejected(models_dir: Path, allowed) -> None:
    verdict = SecurityGate().validate(models_dir / "absent.onnx", allowed)

    assert verdict.reason == SecurityReason.NOT_FOUND


def test_directory_is_rejected(models_dir: Path, allowed) -> None:
    subdir = models_dir / "nested.onnx"
    subdir.mkdir()

    verdict = SecurityGate().validate(subdir, allowed)

    assert verdict.reason == SecurityReason.NOT_REGULAR_FILE


def test_oversized_file_is_rejected_without_hashing(models_dir: Path, allowed) -> None:
    big = models_dir / "big.onnx"
    with open(big, "wb") as f:
        f.truncate(600 * 1024 * 1024)  # sparse

    verdict = SecurityGate().validate(big, allowed, expected_checksum="0" * 64)

    assert verdict.reason == SecurityReason.OVERSIZED


def test_valid_model_with_matching_checksum_passes(models_dir: Path, allowed) -> None:
    model = write_model(models_dir / "medium.onnx", size=10 * 1024 * 1024)

    verdict = SecurityGate().validate(model, allowed, expected_checksum=_sha256(model))

    assert verdict.passed
    assert verdict.checksum_verified
    assert verdict.resolved_path == model.resolve()
    assert verdict.trust_tier == TrustTier.USER


def test_checksum_comparison_is_case_insensitive(model_path: Path, allowed) -> None:
    verdict = SecurityGate().validate(model_path, allowed, expected_checksum=_sha256(model_path).upper())

    assert verdict.passed
    assert verdict.checksum_verified


def test_checksum_mismatch_is_rejected(models_dir: Path, allowed) -> None:
    model = write_model(models_dir / "medium.onnx", size=10 * 1024 * 1024)

    verdict = SecurityGate().validate(model, allowed, expected_checksum="ab" * 32)

    assert not verdict.passed
    assert verdict.reason == SecurityReason.CHECKSUM_MISMATCH


def test_no_checksum_passes_with_warning(model_path: Path, allowed) -> None:
    verdict = SecurityGate().validate(model_path, allowed)

    assert verdict.passed
    assert not verdict.checksum_verified
    assert any("checksum" in w for w in verdict.warnings)


def test_wrong_extension_is_only_a_warning(models_dir: Path, allowed) -> None:
    model = write_model(models_dir / "u2net.bin")

    verdict = SecurityGate().validate(model, allowed)

    assert verdict.passed
    assert any(".onnx" in w for w in verdict.warnings)


def test_user_tier_can_require_checksum(model_path: Path, allowed) -> None:
    gate = SecurityGate(require_checksum_for_user_models=True)

    assert gate.validate(model_path, allowed).reason == SecurityReason.CHECKSUM_REQUIRED
    assert gate.validate(model_path, allowed, expected_checksum=_sha256(model_path)).passed


def test_system_tier_does_not_require_checksum(models_dir: Path, model_path: Path) -> None:
    gate = SecurityGate(require_checksum_for_user_models=True)

    verdict = gate.validate(model_path, [ModelDirectory(models_dir, TrustTier.SYSTEM)])

    assert verdict.passed
    assert verdict.trust_tier == TrustTier.SYSTEM


def test_plain_paths_are_accepted_as_whitelist(models_dir: Path, model_path: Path) -> None:
    verdict = SecurityGate().validate(model_path, [str(models_dir)])

    assert verdict.passed


def test_custom_size_limit(model_path: Path, allowed) -> None:
    verdict = SecurityGate(max_size=100).validate(model_path, allowed)

    assert verdict.reason == SecurityReason.OVERSIZED


def test_calculate_file_sha256_streams_whole_file(models_dir: Path) -> None:
    model = write_model(models_dir / "odd.onnx", size=8192 * 3 + 17)

    assert calculate_file_sha256(model) == _sha256(model)


def test_calculate_file_sha256_missing_file(tmp_path: Path) -> None:
    assert calculate_file_sha256(tmp_path / "nope") is None


def test_verify_file_checksum_empty_hash_skips(model_path: Path) -> None:
    assert verify_file_checksum(model_path, "")
    assert verify_file_checksum(model_path, None)
    assert not verify_file_checksum(model_path, "00" * 32)


def test_read_checksum_file_sha256sum_format(model_path: Path) -> None:
    digest = _sha256(model_path)
    Path(f"{model_path}.sha256").write_text(f"{digest.upper()}  u2net.onnx\n", encoding="utf-8")

    assert read_checksum_file(model_path) == digest


def test_read_checksum_file_malformed_or_missing(model_path: Path) -> None:
    assert read_checksum_file(model_path) is None

    Path(f"{model_path}.sha256").write_text("not-a-hash\n", encoding="utf-8")
    assert read_checksum_file(model_path) is None


def test_is_path_in_directory(tmp_path: Path) -> None:
    inside = tmp_path / "models" / "a.onnx"

    assert is_path_in_directory(inside, tmp_path / "models")
    assert not is_path_in_directory(tmp_path / "other" / "a.onnx", tmp_path / "models")
    assert not is_path_in_directory(tmp_path / "models", tmp_path / "models")
    # Prefix match is not containment
    assert not is_path_in_directory(tmp_path / "models-evil" / "a.onnx", tmp_path / "models")


@pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
def test_unreadable_file_fails_checksum(model_path: Path, allowed) -> None:
    if os.geteuid() == 0:
        pytest.skip("root can read anything")
    model_path.chmod(0)
    try:
        verdict = SecurityGate().validate(model_path, allowed, expected_checksum="00" * 32)
    finally:
        model_path.chmod(0o644)

    assert not verdict.passed


def test_default_model_directories_are_tagged_by_tier(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))

    directories = default_model_directories("my-filter")

    user = [d for d in directories if d.tier == TrustTier.USER]
    system = [d for d in directories if d.tier == TrustTier.SYSTEM]
    assert user[0].path == tmp_path / ".config" / "obs-studio" / "plugins" / "my-filter" / "data" / "models"
    assert all("my-filter" in str(d.path) for d in system)
    assert len(system) == 2


def test_null_byte_in_path_is_rejected(models_dir: Path, allowed) -> None:
    verdict = SecurityGate().validate(f"{models_dir}/u2net\x00.onnx", allowed)

    assert not verdict.passed
    assert verdict.reason == SecurityReason.UNREADABLE


# ============================================================
# Checksum sidecar
# ============================================================

def test_sidecar_checksum_is_verified(model_path: Path, allowed) -> None:
    Path(f"{model_path}.sha256").write_text(f"{_sha256(model_path)}  u2net.onnx\n", encoding="utf-8")

    verdict = SecurityGate().validate(model_path, allowed)

    assert verdict.passed
    assert verdict.checksum_verified


def test_sidecar_mismatch_is_rejected(model_path: Path, allowed) -> None:
    Path(f"{model_path}.sha256").write_text("00" * 32 + "  u2net.onnx\n", encoding="utf-8")

    verdict = SecurityGate().validate(model_path, allowed)

    assert verdict.reason == SecurityReason.CHECKSUM_MISMATCH


def test_explicit_checksum_wins_over_sidecar(model_path: Path, allowed) -> None:
    Path(f"{model_path}.sha256").write_text("00" * 32 + "  u2net.onnx\n", encoding="utf-8")

    verdict = SecurityGate().validate(model_path, allowed, expected_checksum=_sha256(model_path))

    assert verdict.passed


def test_sidecar_ignored_when_disabled(model_path: Path, allowed) -> None:
    Path(f"{model_path}.sha256").write_text("00" * 32 + "  u2net.onnx\n", encoding="utf-8")

    verdict = SecurityGate(use_checksum_files=False).validate(model_path, allowed)

    assert verdict.passed
    assert not verdict.checksum_verified


def test_sidecar_outside_whitelist_is_never_read(tmp_path: Path, allowed, monkeypatch) -> None:
    outside = write_model(tmp_path / "elsewhere" / "u2net.onnx")
    Path(f"{outside}.sha256").write_text(f"{_sha256(outside)}  u2net.onnx\n", encoding="utf-8")
    reads = []
    monkeypatch.setattr(
        "bgfilter.security.security_gate.read_checksum_file",
        lambda path: reads.append(path),
    )

    verdict = SecurityGate().validate(outside, allowed)

    assert verdict.reason == SecurityReason.OUTSIDE_WHITELIST
    assert reads == []


def test_sidecar_symlink_escaping_directory_is_ignored(tmp_path: Path, model_path: Path, allowed) -> None:
    foreign = tmp_path / "elsewhere" / "u2net.onnx.sha256"
    foreign.parent.mkdir(parents=True)
    foreign.write_text("00" * 32 + "  u2net.onnx\n", encoding="utf-8")
    Path(f"{model_path}.sha256").symlink_to(foreign)

    verdict = SecurityGate().validate(model_path, allowed)

    assert verdict.passed
    assert not verdict.checksum_verified
