"""Fixity verification stage.

Re-checks a StoredObject at its provider and records the outcome in a
FixityVerification. Only S3 objects are checked for now; the remote
fixity service has no Cloud Storage check.
"""

from __future__ import annotations

import logging
from typing import Optional

from preservation.lib.checksum import bin_to_hex
from preservation.lib.context import StageContext
from preservation.lib.db import get_record
from preservation.lib.errors import ProviderFixityCheckNotFoundError, error_message_for
from preservation.lib.models import (
    FixityVerification,
    SourceObject,
    StorageProvider,
    StorageType,
    StoredObject,
    VerificationStatus,
)
from preservation.lib.observability import get_stage_logger
from preservation.lib.remote_fixity import FixityCheckResult

logger = logging.getLogger(__name__)

__all__ = ["MISMATCH_MESSAGE", "checksum_and_size_match", "require_fixity_check", "verify_fixity"]

MISMATCH_MESSAGE = "Checksum and/or object size mismatch."

FIXITY_CHECKED_STORAGE_TYPES = (StorageType.aws,)


def checksum_and_size_match(source_object: SourceObject, result: FixityCheckResult) -> bool:
    """Compare a remote result with the local fixity checksum and size."""
    local_hex = bin_to_hex(source_object.fixity_checksum_value)
    return local_hex == result.checksum_hexdigest and source_object.object_size == result.object_size


def require_fixity_check(provider: StorageProvider) -> None:
    """Raise ProviderFixityCheckNotFoundError unless the provider kind can be checked."""
    if provider.storage_type not in FIXITY_CHECKED_STORAGE_TYPES:
        raise ProviderFixityCheckNotFoundError(
            f"No fixity check functionality for storage type {provider.storage_type.name}"
        )


def verify_fixity(context: StageContext, stored_object_id: int) -> Optional[FixityVerification]:
    """Verify a StoredObject against its SourceObject's fixity checksum.

    A verification that is still pending is left alone and returned. A
    finished one is replaced. Failures of the remote check itself are
    recorded on the verification rather than raised.

    Args:
        context: Stage collaborators
        stored_object_id: StoredObject to verify

    Returns:
        The FixityVerification, or None if the provider is not checked

    Raises:
        RecordNotFoundError: If the StoredObject no longer exists
    """
    log = get_stage_logger(__name__, stage="verify_fixity", stored_object_id=stored_object_id)

    session = context.session_factory()
    try:
        stored_object = get_record(session, StoredObject, stored_object_id)
        provider = stored_object.storage_provider

        if provider.storage_type not in FIXITY_CHECKED_STORAGE_TYPES:
            log.info("Skipping fixity verification for %s", provider)
            return None

        existing = stored_object.fixity_verification
        if existing is not None and existing.pending:
            log.info("Fixity verification %s is already pending", existing.id)
            return existing
        if existing is not None:
            # delete-orphan cascade removes the old row
            stored_object.fixity_verification = None
            session.flush()

        verification = FixityVerification(
            stored_object=stored_object,
            source_object_id=stored_object.source_object_id,
            status=VerificationStatus.pending,
        )
        session.add(verification)
        session.commit()

        source_object = stored_object.source_object
        try:
            client = context.remote_fixity_client()
            result = client.check(
                verification.id,
                provider.container_name,
                stored_object.path,
                source_object.fixity_checksum_algorithm.value.lower(),
                source_object.object_size,
            )
            if result.error_message:
                verification.status = VerificationStatus.failure
                verification.error_message = result.error_message
            elif checksum_and_size_match(source_object, result):
                verification.status = VerificationStatus.success
            else:
                verification.status = VerificationStatus.failure
                verification.error_message = MISMATCH_MESSAGE
        except Exception as e:
            log.exception("Fixity verification failed")
            verification.status = VerificationStatus.failure
            verification.error_message = f"An unexpected error occurred: {error_message_for(e)}"

        session.commit()
        log.info("Fixity verification %s finished with status %s", verification.id, verification.status.value)
        return verification
    finally:
        session.close()
