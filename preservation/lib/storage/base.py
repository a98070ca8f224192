"""Abstract base class for storage backends.

Defines the upload contract every provider backend implements. A backend
must verify the transferred bytes against the precalculated checksum using
the provider's own integrity mechanism and raise TransferError on mismatch,
even when the provider call itself reported success.
"""

from __future__ import annotations

import logging
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from preservation.lib.checksum import ChecksumMode, TransferChecksum

logger = logging.getLogger(__name__)

__all__ = ["StorageBackend", "UploadResult", "guess_content_type"]


@dataclass
class UploadResult:
    """Result of a verified upload."""

    container: str
    key: str
    reported_checksum: str
    bytes_written: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


def guess_content_type(local_path: str) -> str:
    content_type, _ = mimetypes.guess_type(local_path)
    return content_type or "application/octet-stream"


class StorageBackend(ABC):
    """Abstract base class for storage backends.

    Subclasses upload into a single container (bucket).
    """

    def __init__(self, container_name: str, **options: Any) -> None:
        """Initialize the storage backend.

        Args:
            container_name: Bucket to upload into
            **options: Backend-specific options (credentials, endpoint, client)
        """
        self.container_name = container_name
        self.options = options

    @property
    @abstractmethod
    def kind(self) -> str:
        """Return the provider kind this backend serves (e.g., 'aws', 'gcp')."""
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if an object exists at a key."""
        pass

    @abstractmethod
    def upload(
        self,
        local_path: str,
        key: str,
        checksum_mode: ChecksumMode,
        precalculated_checksum: TransferChecksum,
        metadata: Optional[Dict[str, str]] = None,
        overwrite: bool = False,
    ) -> UploadResult:
        """Upload a local file and verify it against a precalculated checksum.

        Args:
            local_path: File to upload
            key: Destination object key
            checksum_mode: Whole-file or multipart upload
            precalculated_checksum: CRC32C computed when the transfer was prepared
            metadata: Object metadata
            overwrite: Replace an existing object instead of failing

        Returns:
            UploadResult with the provider-reported checksum

        Raises:
            ObjectExistsError: If the key is taken and overwrite is False
            TransferError: If the provider call fails or checksums disagree
        """
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.container_name!r})"
