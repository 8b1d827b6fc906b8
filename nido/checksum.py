"""Streaming digest verification for downloaded images."""

from __future__ import annotations

import hashlib
from pathlib import Path

from nido.constants import SUPPORTED_CHECKSUMS
from nido.exceptions import ChecksumMismatchError, UnsupportedAlgorithmError

CHUNK_SIZE = 1024 * 1024


def file_digest(path: Path, algorithm: str) -> str:
    """Hex digest of ``path``, read in 1 MiB chunks."""
    algorithm = algorithm.lower()
    if algorithm not in SUPPORTED_CHECKSUMS:
        raise UnsupportedAlgorithmError(f"Unsupported checksum algorithm: {algorithm}")
    hasher = hashlib.new(algorithm)
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def verify_checksum(path: Path, expected: str, algorithm: str = "sha256") -> None:
    actual = file_digest(path, algorithm)
    if actual != expected.strip().lower():
        raise ChecksumMismatchError(expected, actual)
