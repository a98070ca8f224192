"""Transfer execution stage.

Uploads one PendingTransfer to its provider and promotes it to a
StoredObject. The PendingTransfer moves through

    pending -> in_progress -> promoted (row replaced by a StoredObject)
                           -> failure  (error_message recorded)

Keys are claimed in the database before uploading. The unique
(provider, key) constraint on PendingTransfer is what stops two workers
from writing the same object; losing that race, or finding the key
already taken at the provider, is a collision and the next remediated key
is tried.
"""

from __future__ import annotations

import base64
import logging
import zlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from preservation.lib.checksum import ChecksumAlgorithm, TransferChecksum, bin_to_hex
from preservation.lib.config import PreservationConfig
from preservation.lib.context import StageContext
from preservation.lib.db import get_record
from preservation.lib.errors import ObjectExistsError, StorageProviderMappingNotFoundError, error_message_for
from preservation.lib.keys import remediate_key
from preservation.lib.models import PendingTransfer, StorageType, StoredObject, TransferStatus
from preservation.lib.observability import get_stage_logger
from preservation.lib.queues import VERIFY_FIXITY
from preservation.lib.storage import StorageBackend, UploadResult, is_storage_implemented

logger = logging.getLogger(__name__)

__all__ = [
    "AttemptOutcome",
    "TransferResult",
    "build_metadata",
    "perform_transfer",
    "proposed_key",
    "COLLISION_RETRIES",
    "DUPLICATE_STORED_OBJECT_MESSAGE",
    "ORIGINAL_PATH_METADATA_THRESHOLD",
]

COLLISION_RETRIES = 2

# Object metadata values are size-limited, so longer paths are compressed
ORIGINAL_PATH_METADATA_THRESHOLD = 768
ORIGINAL_PATH_KEY = "original-path-b64"
ORIGINAL_PATH_GZ_KEY = "original-path-b64-gz"

DUPLICATE_STORED_OBJECT_MESSAGE = (
    "This PendingTransfer was skipped because there is already a StoredObject with the same "
    "storage_provider and source_object. Maybe this PendingTransfer was an accidental duplicate?"
)


@dataclass
class AttemptOutcome:
    """Result of one upload attempt: either an upload or a collision."""

    key: str
    upload: Optional[UploadResult] = None
    collision: Optional[Exception] = None

    @property
    def stored(self) -> bool:
        return self.upload is not None


@dataclass
class TransferResult:
    """Summary of one perform_transfer run."""

    pending_transfer_id: int
    status: str
    stored_object_id: Optional[int] = None
    key: Optional[str] = None
    attempted_keys: List[str] = field(default_factory=list)
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pending_transfer_id": self.pending_transfer_id,
            "status": self.status,
            "stored_object_id": self.stored_object_id,
            "key": self.key,
            "attempted_keys": self.attempted_keys,
            "error_message": self.error_message,
        }


def proposed_key(storage_type: StorageType, config: PreservationConfig, local_path: str) -> str:
    """Translate a local path into a provider key using the prefix table.

    Example:
        >>> # aws.local_path_key_map: {"/digital/preservation/": "ldpd/"}
        >>> proposed_key(StorageType.aws, config, "/digital/preservation/a/b.tif")
        'ldpd/a/b.tif'

    Raises:
        StorageProviderMappingNotFoundError: If no prefix covers the path
    """
    for local_prefix, key_prefix in config.local_path_key_map(storage_type).items():
        if local_path.startswith(local_prefix):
            return key_prefix + local_path[len(local_prefix):]

    raise StorageProviderMappingNotFoundError(
        f"Could not find a {storage_type.name} local_path_key_map entry for {local_path}",
        path=local_path,
    )


def build_metadata(
    fixity_algorithm: ChecksumAlgorithm,
    fixity_value: bytes,
    key: str,
    proposed: str,
) -> Dict[str, str]:
    """Object metadata for an upload.

    Always records the fixity checksum. When remediation changed the key,
    the proposed path is kept as base64, deflated first if it is long.
    """
    metadata = {f"checksum-{fixity_algorithm.value.lower()}-hex": bin_to_hex(fixity_value)}
    if key == proposed:
        return metadata

    encoded = proposed.encode("utf-8")
    if len(encoded) < ORIGINAL_PATH_METADATA_THRESHOLD:
        metadata[ORIGINAL_PATH_KEY] = base64.b64encode(encoded).decode("ascii")
    else:
        metadata[ORIGINAL_PATH_GZ_KEY] = base64.b64encode(zlib.compress(encoded)).decode("ascii")
    return metadata


def _transfer_checksum(pending: PendingTransfer) -> TransferChecksum:
    return TransferChecksum(
        value=pending.transfer_checksum_value,
        part_size=pending.transfer_checksum_part_size,
        part_count=pending.transfer_checksum_part_count,
        algorithm=pending.transfer_checksum_algorithm,
    )


def _attempt(
    session: Session,
    pending: PendingTransfer,
    backend: StorageBackend,
    proposed: str,
    tried: List[str],
) -> AttemptOutcome:
    key = remediate_key(proposed, tried)
    tried.append(key)

    pending.stored_object_key = key
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        logger.info("Key %s is already claimed by another transfer", key)
        return AttemptOutcome(key=key, collision=e)

    source_object = pending.source_object
    metadata = build_metadata(
        source_object.fixity_checksum_algorithm,
        source_object.fixity_checksum_value,
        key,
        proposed,
    )
    checksum = _transfer_checksum(pending)

    try:
        upload = backend.upload(
            source_object.path,
            key,
            checksum.mode,
            checksum,
            metadata=metadata,
            overwrite=False,
        )
    except ObjectExistsError as e:
        logger.info("Key %s already exists in %s", key, backend.container_name)
        return AttemptOutcome(key=key, collision=e)

    return AttemptOutcome(key=key, upload=upload)


def _record_failure(session: Session, pending_transfer_id: int, error: Exception) -> None:
    session.rollback()
    pending = session.get(PendingTransfer, pending_transfer_id)
    if pending is None:
        return
    pending.status = TransferStatus.failure
    pending.error_message = error_message_for(error)
    session.commit()


def perform_transfer(context: StageContext, pending_transfer_id: int) -> TransferResult:
    """Upload a PendingTransfer and promote it to a StoredObject.

    Args:
        context: Stage collaborators
        pending_transfer_id: PendingTransfer to perform

    Returns:
        TransferResult describing what happened

    Raises:
        RecordNotFoundError: If the PendingTransfer no longer exists
        ObjectExistsError: If every remediated key collided
        IntegrityError: If the last key claim lost a race
        TransferError: If the upload failed or did not verify
    """
    log = get_stage_logger(__name__, stage="perform_transfer", pending_transfer_id=pending_transfer_id)
    result = TransferResult(pending_transfer_id=pending_transfer_id, status=TransferStatus.pending.value)

    session = context.session_factory()
    try:
        pending = get_record(session, PendingTransfer, pending_transfer_id)
        provider = pending.storage_provider
        source_object = pending.source_object

        duplicate = session.query(StoredObject).filter_by(
            source_object_id=source_object.id, storage_provider_id=provider.id
        ).first()
        if duplicate is not None:
            pending.status = TransferStatus.failure
            pending.error_message = DUPLICATE_STORED_OBJECT_MESSAGE
            session.commit()
            log.warning("Skipping duplicate transfer; StoredObject %s already exists", duplicate.id)
            result.status = TransferStatus.failure.value
            result.error_message = DUPLICATE_STORED_OBJECT_MESSAGE
            return result

        if not is_storage_implemented(provider.storage_type):
            log.warning("Transfers to %s are not implemented; leaving transfer pending", provider)
            return result

        try:
            proposed = proposed_key(provider.storage_type, context.config, source_object.path)
            backend = context.storage_for(provider)

            pending.status = TransferStatus.in_progress
            pending.error_message = None
            session.commit()

            for attempt in range(1 + COLLISION_RETRIES):
                outcome = _attempt(session, pending, backend, proposed, result.attempted_keys)
                if outcome.stored:
                    break
                log.info("Collision on attempt %d for key %s", attempt + 1, outcome.key)
            else:
                raise outcome.collision

            stored_object = StoredObject(
                source_object_id=pending.source_object_id,
                storage_provider_id=pending.storage_provider_id,
                path=outcome.key,
                transfer_checksum_algorithm=pending.transfer_checksum_algorithm,
                transfer_checksum_value=pending.transfer_checksum_value,
                transfer_checksum_part_size=pending.transfer_checksum_part_size,
                transfer_checksum_part_count=pending.transfer_checksum_part_count,
            )
            session.add(stored_object)
            session.delete(pending)
            session.commit()
        except Exception as e:
            _record_failure(session, pending_transfer_id, e)
            log.error("Transfer failed: %s", e)
            raise

        result.status = TransferStatus.promoted.value
        result.stored_object_id = stored_object.id
        result.key = outcome.key
        log.info("Stored %s as %s:%s", source_object.path, provider.container_name, outcome.key)
        log.metric("transfer_bytes", outcome.upload.bytes_written, unit="bytes")
    finally:
        session.close()

    context.dispatcher.enqueue(VERIFY_FIXITY, result.stored_object_id)
    return result
