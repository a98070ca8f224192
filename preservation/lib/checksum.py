"""Checksum utilities for fixity and transfer verification.

Provides whole-file digests for long-term fixity (SHA256, SHA512, MD5) and
cloud-compatible CRC32C checksums, including the multipart
"checksum of checksums" that S3 reports for multipart uploads.

The multipart value must match what the provider computes bit for bit:
each part is CRC32C-digested to 4 big-endian bytes, and the digests are
concatenated and digested again. The S3 string form is
``<base64 checksum>-<part count>``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import math
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

import google_crc32c

from preservation.lib.errors import UnknownChecksumAlgorithmError

logger = logging.getLogger(__name__)

__all__ = [
    "ChecksumAlgorithm",
    "ChecksumMode",
    "MultipartChecksum",
    "TransferChecksum",
    "DEFAULT_MULTIPART_THRESHOLD",
    "MIN_PART_SIZE",
    "MAX_PARTS",
    "bin_to_hex",
    "hex_to_bin",
    "to_base64",
    "whole_file_checksum",
    "multipart_checksum",
    "default_part_size",
    "provider_checksum_string",
]

READ_CHUNK_SIZE = 1024 * 1024

# S3 multipart limits mirrored by the AWS SDK part-size heuristic
MIN_PART_SIZE = 5 * 1024 * 1024
MAX_PARTS = 10_000

DEFAULT_MULTIPART_THRESHOLD = 50 * 1024 * 1024


class _Crc32cHasher:
    """hashlib-style wrapper around google_crc32c.Checksum."""

    name = "crc32c"
    digest_size = 4

    def __init__(self, data: bytes = b"") -> None:
        self._checksum = google_crc32c.Checksum(data)

    def update(self, data: bytes) -> None:
        self._checksum.update(data)

    def digest(self) -> bytes:
        return self._checksum.digest()

    def hexdigest(self) -> str:
        return self.digest().hex()


class ChecksumAlgorithm(Enum):
    """Supported checksum algorithms.

    Each member knows how to build a hasher and what the digest of
    zero-length input looks like.

    Example:
        >>> ChecksumAlgorithm.from_name("sha256").empty_value.hex()[:8]
        'e3b0c442'
    """

    SHA256 = "SHA256"
    SHA512 = "SHA512"
    MD5 = "MD5"
    CRC32C = "CRC32C"

    def new(self) -> Any:
        """Return a fresh hasher with ``update()`` and ``digest()``."""
        if self is ChecksumAlgorithm.CRC32C:
            return _Crc32cHasher()
        return hashlib.new(self.value.lower())

    @property
    def empty_value(self) -> bytes:
        """Digest of zero-length input."""
        return self.new().digest()

    @property
    def digest_size(self) -> int:
        return len(self.empty_value)

    @classmethod
    def from_name(cls, name: str) -> "ChecksumAlgorithm":
        """Look up an algorithm by case-insensitive name.

        Raises:
            UnknownChecksumAlgorithmError: If the name is not supported
        """
        try:
            return cls(name.upper())
        except (ValueError, AttributeError):
            raise UnknownChecksumAlgorithmError(str(name)) from None


class ChecksumMode(str, Enum):
    """How a transfer checksum was computed."""

    WHOLE_FILE = "whole_file"
    MULTIPART = "multipart"


@dataclass(frozen=True)
class MultipartChecksum:
    """Result of a multipart checksum pass over a file."""

    checksum_of_parts: bytes
    part_size: int
    part_count: int
    whole_file_checksum: Optional[bytes] = None

    def to_provider_string(self) -> str:
        """Return the S3-style ``base64-N`` representation."""
        return f"{to_base64(self.checksum_of_parts)}-{self.part_count}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "checksum_of_parts": to_base64(self.checksum_of_parts),
            "part_size": self.part_size,
            "part_count": self.part_count,
            "whole_file_checksum": (
                to_base64(self.whole_file_checksum) if self.whole_file_checksum is not None else None
            ),
        }


@dataclass(frozen=True)
class TransferChecksum:
    """Checksum a storage backend verifies an upload against."""

    value: bytes
    part_size: Optional[int] = None
    part_count: Optional[int] = None
    algorithm: ChecksumAlgorithm = ChecksumAlgorithm.CRC32C

    @property
    def mode(self) -> ChecksumMode:
        if self.part_count is None:
            return ChecksumMode.WHOLE_FILE
        return ChecksumMode.MULTIPART

    def to_base64(self) -> str:
        return to_base64(self.value)

    def to_provider_string(self) -> str:
        """Return ``base64`` for whole-file values, ``base64-N`` for multipart ones."""
        if self.part_count is None:
            return self.to_base64()
        return f"{self.to_base64()}-{self.part_count}"


def bin_to_hex(value: Optional[bytes]) -> Optional[str]:
    """Lowercase hex representation of a binary digest."""
    if value is None:
        return None
    return binascii.hexlify(value).decode("ascii")


def hex_to_bin(value: Optional[str]) -> Optional[bytes]:
    """Decode a hex digest. Returns None for anything that isn't valid hex."""
    if value is None:
        return None
    try:
        return binascii.unhexlify(value)
    except (binascii.Error, ValueError):
        return None


def to_base64(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def whole_file_checksum(
    path: Union[str, Path],
    algorithm: ChecksumAlgorithm = ChecksumAlgorithm.SHA256,
) -> bytes:
    """Compute a binary digest of a file in a single streaming pass.

    Args:
        path: Path to the file
        algorithm: Checksum algorithm (default SHA256)

    Returns:
        Binary digest of the file contents

    Raises:
        OSError: If the file cannot be read

    Example:
        >>> whole_file_checksum("/data/object.tif", ChecksumAlgorithm.CRC32C)
        b'\\x9a...'
    """
    hasher = algorithm.new()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(READ_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.digest()


def default_part_size(file_size: int) -> int:
    """Part size the AWS SDK picks for a multipart upload of ``file_size`` bytes.

    This is an external contract with the provider SDK: at least 5 MiB,
    growing only when the file would otherwise need more than 10,000 parts.
    """
    return max(MIN_PART_SIZE, math.ceil(file_size / MAX_PARTS))


def multipart_checksum(
    path: Union[str, Path],
    part_size: Optional[int] = None,
    *,
    calculate_whole_file: bool = False,
) -> MultipartChecksum:
    """Compute the CRC32C checksum-of-parts for a file.

    Args:
        path: Path to the file
        part_size: Bytes per part (default: default_part_size for the file)
        calculate_whole_file: Also compute the whole-file CRC32C in the same pass

    Returns:
        MultipartChecksum with the checksum of parts, part size and part count

    Raises:
        OSError: If the file cannot be read
    """
    if part_size is None:
        part_size = default_part_size(os.path.getsize(path))
    if part_size <= 0:
        raise ValueError(f"part_size must be positive, got {part_size}")

    parts_digest = _Crc32cHasher()
    whole_file = _Crc32cHasher() if calculate_whole_file else None
    part_count = 0

    with open(path, "rb") as f:
        for part in iter(lambda: f.read(part_size), b""):
            parts_digest.update(google_crc32c.Checksum(part).digest())
            if whole_file is not None:
                whole_file.update(part)
            part_count += 1

    logger.debug("Computed %d-part CRC32C for %s (part size %d)", part_count, path, part_size)

    return MultipartChecksum(
        checksum_of_parts=parts_digest.digest(),
        part_size=part_size,
        part_count=part_count,
        whole_file_checksum=whole_file.digest() if whole_file is not None else None,
    )


def provider_checksum_string(
    path: Union[str, Path],
    multipart_threshold: int = DEFAULT_MULTIPART_THRESHOLD,
) -> str:
    """Return the CRC32C string S3 would report after uploading ``path``.

    Files at or above ``multipart_threshold`` are uploaded in parts and get
    the ``base64-N`` form; smaller files get a plain base64 digest.
    """
    if os.path.getsize(path) >= multipart_threshold:
        return multipart_checksum(path).to_provider_string()
    return to_base64(whole_file_checksum(path, ChecksumAlgorithm.CRC32C))
