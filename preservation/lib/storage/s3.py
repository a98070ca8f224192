"""AWS S3 storage backend."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

import boto3
import google_crc32c
from botocore.exceptions import BotoCoreError, ClientError

from preservation.lib.checksum import ChecksumMode, TransferChecksum, default_part_size, to_base64
from preservation.lib.errors import ObjectExistsError, TransferError
from preservation.lib.storage.base import StorageBackend, UploadResult, guess_content_type

logger = logging.getLogger(__name__)

__all__ = ["S3Storage"]

NOT_FOUND_CODES = ("404", "NoSuchKey", "NotFound")


class S3Storage(StorageBackend):
    """AWS S3 storage backend.

    Uploads with CRC32C integrity checking. Whole-file uploads send the
    precalculated CRC32C with the PUT; multipart uploads send a CRC32C per
    part and compare the composite ``base64-N`` checksum S3 reports on
    completion.

    Example:
        >>> storage = S3Storage("cul-preservation-aws", region="us-east-1")
        >>> storage.upload(
        ...     "/digital/preservation/ldpd/file.tif",
        ...     "ldpd/file.tif",
        ...     ChecksumMode.WHOLE_FILE,
        ...     TransferChecksum(value=crc32c_digest),
        ... )

    Environment Variables:
        AWS_ACCESS_KEY_ID: AWS access key
        AWS_SECRET_ACCESS_KEY: AWS secret key
        AWS_REGION: AWS region
        AWS_ENDPOINT_URL: Custom S3 endpoint (for MinIO, LocalStack, etc.)

    Options:
        client: Prebuilt boto3 S3 client
        access_key_id: AWS access key (overrides env var)
        secret_access_key: AWS secret key (overrides env var)
        region: AWS region (overrides env var)
        endpoint_url: Custom S3 endpoint
    """

    def __init__(self, container_name: str, **options: Any) -> None:
        super().__init__(container_name, **options)
        self._client = options.get("client")

    @property
    def kind(self) -> str:
        return "aws"

    @property
    def client(self):
        """Lazy-load the boto3 S3 client."""
        if self._client is None:
            client_options: Dict[str, Any] = {}

            key = self.options.get("access_key_id") or os.environ.get("AWS_ACCESS_KEY_ID")
            secret = self.options.get("secret_access_key") or os.environ.get("AWS_SECRET_ACCESS_KEY")
            if key and secret:
                client_options["aws_access_key_id"] = key
                client_options["aws_secret_access_key"] = secret

            region = self.options.get("region") or os.environ.get("AWS_REGION")
            if region:
                client_options["region_name"] = region

            endpoint_url = self.options.get("endpoint_url") or os.environ.get("AWS_ENDPOINT_URL")
            if endpoint_url:
                client_options["endpoint_url"] = endpoint_url

            self._client = boto3.client("s3", **client_options)

        return self._client

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.container_name, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                return False
            raise

    def upload(
        self,
        local_path: str,
        key: str,
        checksum_mode: ChecksumMode,
        precalculated_checksum: TransferChecksum,
        metadata: Optional[Dict[str, str]] = None,
        overwrite: bool = False,
    ) -> UploadResult:
        expected = precalculated_checksum.to_provider_string()
        try:
            if not overwrite and self.exists(key):
                raise ObjectExistsError(
                    f"Cancelling upload because existing object was found (at: {key})",
                    key=key,
                    suggestion="If you want to replace the existing object, pass overwrite=True",
                )

            if checksum_mode == ChecksumMode.MULTIPART:
                part_size = precalculated_checksum.part_size or default_part_size(os.path.getsize(local_path))
                reported = self._upload_multipart(local_path, key, part_size, metadata or {})
            else:
                reported = self._upload_whole_file(local_path, key, precalculated_checksum, metadata or {})
        except (ClientError, BotoCoreError) as e:
            raise TransferError(
                f"An AWS service error occurred while attempting to upload file {local_path} to {key}. "
                f"Error message: {e}",
                local_path=local_path,
                key=key,
                cause=e,
            ) from e

        self._verify_reported_checksum(reported, expected, local_path, key)
        logger.info("Uploaded %s to s3://%s/%s (%s)", local_path, self.container_name, key, reported)

        return UploadResult(
            container=self.container_name,
            key=key,
            reported_checksum=reported,
            bytes_written=os.path.getsize(local_path),
            metadata=dict(metadata or {}),
        )

    def _upload_whole_file(
        self,
        local_path: str,
        key: str,
        checksum: TransferChecksum,
        metadata: Dict[str, str],
    ) -> Optional[str]:
        with open(local_path, "rb") as body:
            response = self.client.put_object(
                Bucket=self.container_name,
                Key=key,
                Body=body,
                ChecksumCRC32C=checksum.to_base64(),
                ContentType=guess_content_type(local_path),
                Metadata=metadata,
            )
        return response.get("ChecksumCRC32C")

    def _upload_multipart(
        self,
        local_path: str,
        key: str,
        part_size: int,
        metadata: Dict[str, str],
    ) -> Optional[str]:
        upload = self.client.create_multipart_upload(
            Bucket=self.container_name,
            Key=key,
            ChecksumAlgorithm="CRC32C",
            ContentType=guess_content_type(local_path),
            Metadata=metadata,
        )
        upload_id = upload["UploadId"]
        parts: List[Dict[str, Any]] = []

        try:
            with open(local_path, "rb") as f:
                for part_number, chunk in enumerate(iter(lambda: f.read(part_size), b""), start=1):
                    part_checksum = to_base64(google_crc32c.Checksum(chunk).digest())
                    response = self.client.upload_part(
                        Bucket=self.container_name,
                        Key=key,
                        UploadId=upload_id,
                        PartNumber=part_number,
                        Body=chunk,
                        ChecksumCRC32C=part_checksum,
                    )
                    parts.append({
                        "ETag": response["ETag"],
                        "PartNumber": part_number,
                        "ChecksumCRC32C": response.get("ChecksumCRC32C", part_checksum),
                    })
                    logger.debug("Uploaded part %d of %s", part_number, key)

            response = self.client.complete_multipart_upload(
                Bucket=self.container_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except Exception:
            logger.warning("Aborting multipart upload %s for %s", upload_id, key)
            self.client.abort_multipart_upload(Bucket=self.container_name, Key=key, UploadId=upload_id)
            raise

        return response.get("ChecksumCRC32C")

    @staticmethod
    def _verify_reported_checksum(
        reported: Optional[str],
        expected: str,
        local_path: str,
        key: str,
    ) -> None:
        if not reported:
            raise TransferError(
                "Expected AWS S3 confirmation checksum after transfer completion, but it was missing.",
                local_path=local_path,
                key=key,
            )
        if reported != expected:
            raise TransferError(
                "File was uploaded to Amazon, but the S3 checksum did not match our precalculated "
                f"checksum. This requires manual investigation. AWS checksum: {reported}, "
                f"Our local checksum: {expected}",
                local_path=local_path,
                key=key,
                details={"reported_checksum": reported, "expected_checksum": expected},
            )
