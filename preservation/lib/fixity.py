"""Fixity checksum stage: compute the SourceObject's whole-file digest."""

from __future__ import annotations

import logging

from preservation.lib.checksum import ChecksumAlgorithm, bin_to_hex, whole_file_checksum
from preservation.lib.context import StageContext
from preservation.lib.db import get_record, session_scope
from preservation.lib.models import SourceObject
from preservation.lib.observability import get_stage_logger
from preservation.lib.queues import PREPARE_TRANSFER

logger = logging.getLogger(__name__)

__all__ = ["DEFAULT_FIXITY_ALGORITHM", "create_fixity_checksum"]

DEFAULT_FIXITY_ALGORITHM = ChecksumAlgorithm.SHA256


def create_fixity_checksum(
    context: StageContext,
    source_object_id: int,
    force: bool = False,
    enqueue_successor: bool = False,
    algorithm: ChecksumAlgorithm = DEFAULT_FIXITY_ALGORITHM,
) -> bool:
    """Compute and store a SourceObject's fixity checksum.

    Args:
        context: Stage collaborators
        source_object_id: SourceObject to checksum
        force: Recompute even if a checksum is already stored
        enqueue_successor: Enqueue prepare_transfer afterwards
        algorithm: Digest to compute

    Returns:
        False if a checksum was already present and force was not set

    Raises:
        RecordNotFoundError: If the SourceObject no longer exists
        ValueError: If the digest contradicts the recorded object size
        OSError: If the file cannot be read
    """
    log = get_stage_logger(__name__, stage="create_fixity", source_object_id=source_object_id)

    with session_scope(context.session_factory) as session:
        source_object = get_record(session, SourceObject, source_object_id)
        if source_object.fixity_checksum_value is not None and not force:
            log.info("Fixity checksum already present for %s", source_object.path)
            return False

        value = whole_file_checksum(source_object.path, algorithm)
        source_object.fixity_checksum_algorithm = algorithm
        source_object.fixity_checksum_value = value
        source_object.validate_fixity_checksum()
        log.info("%s %s %s", algorithm.value, bin_to_hex(value), source_object.path)

    if enqueue_successor:
        context.dispatcher.enqueue(PREPARE_TRANSFER, source_object_id)
    return True
