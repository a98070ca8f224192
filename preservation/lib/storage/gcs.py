"""Google Cloud Storage backend."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from google.api_core import exceptions as api_exceptions
from google.cloud import storage as gcs

from preservation.lib.checksum import ChecksumMode, TransferChecksum
from preservation.lib.errors import ObjectExistsError, TransferError
from preservation.lib.resilience import with_retry
from preservation.lib.storage.base import StorageBackend, UploadResult, guess_content_type

logger = logging.getLogger(__name__)

__all__ = ["GCSStorage"]

UPLOAD_ATTEMPTS = 3


class GCSStorage(StorageBackend):
    """Google Cloud Storage backend.

    Cloud Storage always verifies whole-object CRC32C: the precalculated
    value is sent with the upload and the server rejects content that
    doesn't match. Multipart checksums are not supported here.

    Options:
        client: Prebuilt google.cloud.storage.Client
        project_id: GCP project
        credentials: Path to a service account JSON file
            (default: GOOGLE_APPLICATION_CREDENTIALS)
        retry_backoff: Base delay between retries of unavailable errors
    """

    def __init__(self, container_name: str, **options: Any) -> None:
        super().__init__(container_name, **options)
        self._client = options.get("client")
        self._bucket = None

    @property
    def kind(self) -> str:
        return "gcp"

    @property
    def client(self):
        """Lazy-load the Cloud Storage client."""
        if self._client is None:
            credentials = self.options.get("credentials") or os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
            project_id = self.options.get("project_id")
            if credentials:
                self._client = gcs.Client.from_service_account_json(credentials, project=project_id)
            else:
                self._client = gcs.Client(project=project_id)
        return self._client

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = self.client.bucket(self.container_name)
        return self._bucket

    def exists(self, key: str) -> bool:
        return self.bucket.get_blob(key) is not None

    def upload(
        self,
        local_path: str,
        key: str,
        checksum_mode: ChecksumMode,
        precalculated_checksum: TransferChecksum,
        metadata: Optional[Dict[str, str]] = None,
        overwrite: bool = False,
    ) -> UploadResult:
        if checksum_mode != ChecksumMode.WHOLE_FILE:
            raise TransferError(
                "Cloud Storage uploads require a whole-file CRC32C checksum",
                local_path=local_path,
                key=key,
            )

        expected = precalculated_checksum.to_base64()
        try:
            if not overwrite and self.exists(key):
                raise ObjectExistsError(
                    f"Cancelling upload because existing object was found (at: {key})",
                    key=key,
                    suggestion="If you want to replace the existing object, pass overwrite=True",
                )

            blob = self.bucket.blob(key)
            blob.crc32c = expected
            blob.metadata = metadata or None
            self._upload_with_retry(blob, local_path, overwrite, expected, dict(metadata or {}))
        except api_exceptions.PreconditionFailed as e:
            # Another writer created the object between the check and the upload
            raise ObjectExistsError(
                f"Cancelling upload because existing object was found (at: {key})",
                key=key,
            ) from e
        except api_exceptions.GoogleAPIError as e:
            raise TransferError(
                f"A GCP error occurred while attempting to upload file {local_path} to {key}. "
                f"Error message: {e}",
                local_path=local_path,
                key=key,
                cause=e,
            ) from e

        reported = blob.crc32c
        if reported != expected:
            raise TransferError(
                "File was uploaded to Google, but the reported CRC32C did not match our "
                f"precalculated checksum. GCP checksum: {reported}, Our local checksum: {expected}",
                local_path=local_path,
                key=key,
                details={"reported_checksum": reported, "expected_checksum": expected},
            )

        logger.info("Uploaded %s to gs://%s/%s (%s)", local_path, self.container_name, key, reported)
        return UploadResult(
            container=self.container_name,
            key=key,
            reported_checksum=reported,
            bytes_written=os.path.getsize(local_path),
            metadata=dict(metadata or {}),
        )

    def _upload_with_retry(
        self,
        blob: Any,
        local_path: str,
        overwrite: bool,
        expected_crc32c: str,
        metadata: Dict[str, str],
    ) -> None:
        upload_kwargs: Dict[str, Any] = {
            "content_type": guess_content_type(local_path),
            "checksum": "crc32c",
        }
        if not overwrite:
            upload_kwargs["if_generation_match"] = 0
        attempts = 0

        @with_retry(
            max_attempts=UPLOAD_ATTEMPTS,
            backoff_seconds=self.options.get("retry_backoff", 1.0),
            retry_exceptions=(api_exceptions.ServiceUnavailable,),
        )
        def _upload() -> None:
            nonlocal attempts
            attempts += 1
            try:
                blob.upload_from_filename(local_path, **upload_kwargs)
            except api_exceptions.PreconditionFailed:
                if attempts > 1 and self._earlier_attempt_landed(blob, expected_crc32c, metadata):
                    logger.warning(
                        "Upload of %s to %s reported unavailable but the object landed; keeping it",
                        local_path,
                        blob.name,
                    )
                    blob.crc32c = expected_crc32c
                    return
                raise

        _upload()

    def _earlier_attempt_landed(self, blob: Any, expected_crc32c: str, metadata: Dict[str, str]) -> bool:
        """Check whether the object at the blob's key is the one we were sending."""
        existing = self.bucket.get_blob(blob.name)
        if existing is None:
            return False
        return existing.crc32c == expected_crc32c and (existing.metadata or {}) == metadata
