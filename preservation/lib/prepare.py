"""Transfer preparation stage.

Decides which providers a SourceObject still needs to reach and records a
PendingTransfer for each, with the CRC32C the destination will verify:

    - S3 gets a whole-file CRC32C below the multipart threshold and a
      multipart checksum-of-parts at or above it
    - Cloud Storage always gets a whole-file CRC32C

The whole-file CRC32C is computed at most once per run, in the same pass
as the multipart checksum when both are needed.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from preservation.lib.checksum import (
    ChecksumAlgorithm,
    MultipartChecksum,
    multipart_checksum,
    whole_file_checksum,
)
from preservation.lib.config import ProviderTarget
from preservation.lib.context import StageContext
from preservation.lib.db import get_record, session_scope
from preservation.lib.errors import MissingFixityChecksumError
from preservation.lib.models import PendingTransfer, SourceObject, StorageProvider, StorageType, StoredObject
from preservation.lib.observability import get_stage_logger
from preservation.lib.queues import PERFORM_TRANSFER

logger = logging.getLogger(__name__)

__all__ = ["PrepareResult", "get_or_create_storage_provider", "prepare_transfers"]


@dataclass
class PrepareResult:
    """Result of preparing transfers for one SourceObject."""

    source_object_id: int
    pending_transfer_ids: List[int] = field(default_factory=list)
    skipped_provider_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_object_id": self.source_object_id,
            "pending_transfer_ids": self.pending_transfer_ids,
            "skipped_provider_ids": self.skipped_provider_ids,
        }


def get_or_create_storage_provider(session: Session, target: ProviderTarget) -> StorageProvider:
    provider = (
        session.query(StorageProvider)
        .filter_by(storage_type=target.storage_type, container_name=target.container_name)
        .one_or_none()
    )
    if provider is None:
        provider = StorageProvider(storage_type=target.storage_type, container_name=target.container_name)
        session.add(provider)
        session.flush()
    return provider


def _needs_transfer(session: Session, source_object: SourceObject, provider: StorageProvider) -> bool:
    pending = session.query(PendingTransfer).filter_by(
        source_object_id=source_object.id, storage_provider_id=provider.id
    ).first()
    if pending is not None:
        return False
    stored = session.query(StoredObject).filter_by(
        source_object_id=source_object.id, storage_provider_id=provider.id
    ).first()
    return stored is None


class _Crc32cCache:
    """Computes each CRC32C form of a file at most once."""

    def __init__(self, path: str, need_whole_file: bool) -> None:
        self.path = path
        self.need_whole_file = need_whole_file
        self._whole_file: Optional[bytes] = None
        self._multipart: Optional[MultipartChecksum] = None

    def whole_file(self) -> bytes:
        if self._whole_file is None:
            self._whole_file = whole_file_checksum(self.path, ChecksumAlgorithm.CRC32C)
        return self._whole_file

    def multipart(self) -> MultipartChecksum:
        if self._multipart is None:
            self._multipart = multipart_checksum(self.path, calculate_whole_file=self.need_whole_file)
            if self._multipart.whole_file_checksum is not None:
                self._whole_file = self._multipart.whole_file_checksum
        return self._multipart


def prepare_transfers(
    context: StageContext,
    source_object_id: int,
    enqueue_successor: bool = True,
) -> PrepareResult:
    """Create the PendingTransfers a SourceObject still needs.

    Idempotent: providers that already have a PendingTransfer or a
    StoredObject for this source are skipped.

    Args:
        context: Stage collaborators
        source_object_id: SourceObject to prepare
        enqueue_successor: Enqueue perform_transfer for every created row

    Returns:
        PrepareResult listing created PendingTransfer ids

    Raises:
        RecordNotFoundError: If the SourceObject no longer exists
        MissingFixityChecksumError: If the SourceObject has no fixity checksum
        StorageProviderMappingNotFoundError: If no provider covers its path
    """
    log = get_stage_logger(__name__, stage="prepare_transfer", source_object_id=source_object_id)
    result = PrepareResult(source_object_id=source_object_id)
    threshold = context.config.aws.multipart_threshold

    with session_scope(context.session_factory) as session:
        source_object = get_record(session, SourceObject, source_object_id)

        if source_object.fixity_checksum_value is None or source_object.fixity_checksum_algorithm is None:
            raise MissingFixityChecksumError(
                f"SourceObject {source_object_id} has no fixity checksum; refusing to prepare transfers",
                source_object_id=source_object_id,
            )

        needed: List[StorageProvider] = []
        for target in context.config.storage_targets_for_path(source_object.path):
            provider = get_or_create_storage_provider(session, target)
            if provider in needed:
                continue
            if _needs_transfer(session, source_object, provider):
                needed.append(provider)
            else:
                result.skipped_provider_ids.append(provider.id)

        if not needed:
            log.info("No transfers needed for %s", source_object.path)
            return result

        file_size = os.path.getsize(source_object.path)
        aws_providers = [p for p in needed if p.storage_type == StorageType.aws]
        other_providers = [p for p in needed if p.storage_type != StorageType.aws]
        checksums = _Crc32cCache(source_object.path, need_whole_file=bool(other_providers))

        created: List[PendingTransfer] = []
        for provider in aws_providers:
            if file_size < threshold:
                created.append(PendingTransfer(
                    source_object=source_object,
                    storage_provider=provider,
                    transfer_checksum_algorithm=ChecksumAlgorithm.CRC32C,
                    transfer_checksum_value=checksums.whole_file(),
                ))
            else:
                parts = checksums.multipart()
                created.append(PendingTransfer(
                    source_object=source_object,
                    storage_provider=provider,
                    transfer_checksum_algorithm=ChecksumAlgorithm.CRC32C,
                    transfer_checksum_value=parts.checksum_of_parts,
                    transfer_checksum_part_size=parts.part_size,
                    transfer_checksum_part_count=parts.part_count,
                ))

        for provider in other_providers:
            created.append(PendingTransfer(
                source_object=source_object,
                storage_provider=provider,
                transfer_checksum_algorithm=ChecksumAlgorithm.CRC32C,
                transfer_checksum_value=checksums.whole_file(),
            ))

        session.add_all(created)
        session.flush()
        result.pending_transfer_ids = [pending.id for pending in created]

    log.info("Created %d pending transfer(s)", len(result.pending_transfer_ids))

    if enqueue_successor:
        for pending_transfer_id in result.pending_transfer_ids:
            context.dispatcher.enqueue(PERFORM_TRANSFER, pending_transfer_id)

    return result
