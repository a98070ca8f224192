"""Tests for preservation/lib/transfer.py - the transfer execution stage."""

import base64
import zlib
from typing import Dict, List, Optional, Set

import pytest

from preservation.lib.checksum import ChecksumAlgorithm, ChecksumMode, TransferChecksum
from preservation.lib.errors import (
    ObjectExistsError,
    RecordNotFoundError,
    StorageProviderMappingNotFoundError,
    TransferError,
)
from preservation.lib.models import PendingTransfer, StorageType, StoredObject, TransferStatus
from preservation.lib.prepare import prepare_transfers
from preservation.lib.queues import VERIFY_FIXITY
from preservation.lib.storage import StorageBackend, UploadResult
from preservation.lib.transfer import (
    DUPLICATE_STORED_OBJECT_MESSAGE,
    ORIGINAL_PATH_GZ_KEY,
    ORIGINAL_PATH_KEY,
    build_metadata,
    perform_transfer,
    proposed_key,
)

AWS_BUCKET = "cul-preservation-aws"
GCP_BUCKET = "cul-preservation-gcp"

SHA256_OF_A = "559aead08264d5795d3909718cdd05abd49572e84fe55590eef31a88a08fdffd"


class FakeBackend(StorageBackend):
    """Records uploads; keys in ``taken`` raise ObjectExistsError."""

    def __init__(self, container_name: str, kind: str = "aws", taken: Optional[Set[str]] = None,
                 error: Optional[Exception] = None) -> None:
        super().__init__(container_name)
        self._kind = kind
        self.taken = set(taken or ())
        self.error = error
        self.uploads: List[Dict] = []

    @property
    def kind(self) -> str:
        return self._kind

    def exists(self, key: str) -> bool:
        return key in self.taken

    def upload(self, local_path, key, checksum_mode, precalculated_checksum, metadata=None, overwrite=False):
        if key in self.taken and not overwrite:
            raise ObjectExistsError(f"Object already exists: {key}", key=key)
        if self.error is not None:
            raise self.error
        self.uploads.append({
            "local_path": local_path,
            "key": key,
            "mode": checksum_mode,
            "checksum": precalculated_checksum,
            "metadata": metadata,
            "overwrite": overwrite,
        })
        self.taken.add(key)
        return UploadResult(
            container=self.container_name,
            key=key,
            reported_checksum=precalculated_checksum.to_provider_string(),
            bytes_written=1,
            metadata=metadata or {},
        )


@pytest.fixture
def backends():
    return {
        StorageType.aws: FakeBackend(AWS_BUCKET, "aws"),
        StorageType.gcp: FakeBackend(GCP_BUCKET, "gcp"),
    }


@pytest.fixture
def prepared(make_context, make_source_object, session_factory):
    """Register a file, prepare it, and return {storage_type: pending_transfer_id}."""

    def _prepare(relative_path: str = "file.txt", content: bytes = b"A") -> Dict[StorageType, int]:
        source_object_id = make_source_object(relative_path, content)
        prepare_transfers(make_context(), source_object_id, enqueue_successor=False)
        with session_factory() as session:
            rows = session.query(PendingTransfer).filter_by(source_object_id=source_object_id).all()
            return {row.storage_provider.storage_type: row.id for row in rows}

    return _prepare


def pending_row(session_factory, pending_transfer_id):
    with session_factory() as session:
        return session.get(PendingTransfer, pending_transfer_id)


class TestProposedKey:
    """Tests for proposed_key."""

    def test_prefix_is_translated(self, preservation_config, source_root):
        key = proposed_key(StorageType.aws, preservation_config, f"{source_root}/a/b.tif")
        assert key == "ldpd/a/b.tif"

    def test_unmapped_path(self, preservation_config):
        with pytest.raises(StorageProviderMappingNotFoundError):
            proposed_key(StorageType.aws, preservation_config, "/elsewhere/b.tif")


class TestBuildMetadata:
    """Tests for build_metadata."""

    def test_fixity_only_when_key_unchanged(self):
        metadata = build_metadata(ChecksumAlgorithm.SHA256, bytes.fromhex(SHA256_OF_A), "a/b", "a/b")
        assert metadata == {"checksum-sha256-hex": SHA256_OF_A}

    def test_short_original_path(self):
        metadata = build_metadata(ChecksumAlgorithm.MD5, b"\x00" * 16, "a/b_c", "a/b c")
        assert base64.b64decode(metadata[ORIGINAL_PATH_KEY]) == b"a/b c"
        assert ORIGINAL_PATH_GZ_KEY not in metadata
        assert "checksum-md5-hex" in metadata

    def test_long_original_path_is_compressed(self):
        proposed = "dir/" + "é" * 400
        metadata = build_metadata(ChecksumAlgorithm.SHA256, bytes.fromhex(SHA256_OF_A), "dir/e", proposed)
        assert ORIGINAL_PATH_KEY not in metadata
        decoded = zlib.decompress(base64.b64decode(metadata[ORIGINAL_PATH_GZ_KEY]))
        assert decoded.decode("utf-8") == proposed

    @pytest.mark.parametrize("accents", [0, 300], ids=["ascii", "multibyte"])
    @pytest.mark.parametrize(
        "size,compressed",
        [(767, False), (768, True)],
        ids=["below-threshold", "at-threshold"],
    )
    def test_original_path_threshold_in_utf8_bytes(self, size, compressed, accents):
        proposed = "dir/" + "é" * accents
        proposed += "a" * (size - len(proposed.encode("utf-8")))
        assert len(proposed.encode("utf-8")) == size

        metadata = build_metadata(ChecksumAlgorithm.SHA256, bytes.fromhex(SHA256_OF_A), "dir/e", proposed)

        if compressed:
            assert ORIGINAL_PATH_KEY not in metadata
            decoded = zlib.decompress(base64.b64decode(metadata[ORIGINAL_PATH_GZ_KEY]))
        else:
            assert ORIGINAL_PATH_GZ_KEY not in metadata
            decoded = base64.b64decode(metadata[ORIGINAL_PATH_KEY])
        assert decoded == proposed.encode("utf-8")


class TestPerformTransfer:
    """Tests for perform_transfer."""

    def test_success_promotes_to_stored_object(self, make_context, prepared, backends, session_factory, queued):
        pending_ids = prepared("file.txt")
        context = make_context(backends)

        result = perform_transfer(context, pending_ids[StorageType.aws])

        assert result.status == TransferStatus.promoted.value
        assert result.key == "ldpd/file.txt"
        assert queued(VERIFY_FIXITY) == [result.stored_object_id]
        assert pending_row(session_factory, pending_ids[StorageType.aws]) is None

        upload = backends[StorageType.aws].uploads[0]
        assert upload["overwrite"] is False
        assert upload["mode"] == ChecksumMode.WHOLE_FILE
        assert upload["metadata"] == {"checksum-sha256-hex": SHA256_OF_A}

        with session_factory() as session:
            stored = session.get(StoredObject, result.stored_object_id)
            assert stored.path == "ldpd/file.txt"
            assert stored.transfer_checksum_algorithm == ChecksumAlgorithm.CRC32C
            assert stored.transfer_checksum_value == b"\xe1\x6d\xcd\xee"

    def test_gcp_transfer(self, make_context, prepared, backends):
        pending_ids = prepared("file.txt")
        result = perform_transfer(make_context(backends), pending_ids[StorageType.gcp])
        assert result.status == TransferStatus.promoted.value
        assert backends[StorageType.gcp].uploads[0]["key"] == "ldpd/file.txt"

    def test_remediated_key_records_original_path(self, make_context, prepared, backends):
        pending_ids = prepared("my file.txt")

        result = perform_transfer(make_context(backends), pending_ids[StorageType.aws])

        assert result.key == "ldpd/my_file.txt"
        metadata = backends[StorageType.aws].uploads[0]["metadata"]
        assert base64.b64decode(metadata[ORIGINAL_PATH_KEY]) == b"ldpd/my file.txt"

    def test_existing_object_is_a_collision(self, make_context, prepared, backends):
        backends[StorageType.aws].taken.add("ldpd/file.txt")
        pending_ids = prepared("file.txt")

        result = perform_transfer(make_context(backends), pending_ids[StorageType.aws])

        assert result.key == "ldpd/file_1.txt"
        assert result.attempted_keys == ["ldpd/file.txt", "ldpd/file_1.txt"]

    def test_collisions_exhausted(self, make_context, prepared, backends, session_factory, queued):
        backends[StorageType.aws].taken.update({"ldpd/file.txt", "ldpd/file_1.txt", "ldpd/file_2.txt"})
        pending_ids = prepared("file.txt")

        with pytest.raises(ObjectExistsError):
            perform_transfer(make_context(backends), pending_ids[StorageType.aws])

        row = pending_row(session_factory, pending_ids[StorageType.aws])
        assert row.status == TransferStatus.failure
        assert row.error_message == "Object already exists: ldpd/file_2.txt"
        assert queued(VERIFY_FIXITY) == []

    def test_key_claimed_by_another_transfer(
        self, make_context, prepared, backends, make_source_object, session_factory
    ):
        pending_ids = prepared("file.txt")
        other_source_id = make_source_object("other.txt")
        with session_factory() as session:
            aws_pending = session.get(PendingTransfer, pending_ids[StorageType.aws])
            session.add(PendingTransfer(
                source_object_id=other_source_id,
                storage_provider_id=aws_pending.storage_provider_id,
                transfer_checksum_value=b"\x00\x00\x00\x01",
                stored_object_key="ldpd/file.txt",
            ))
            session.commit()

        result = perform_transfer(make_context(backends), pending_ids[StorageType.aws])

        assert result.key == "ldpd/file_1.txt"
        assert [u["key"] for u in backends[StorageType.aws].uploads] == ["ldpd/file_1.txt"]

    def test_upload_error_is_recorded_and_raised(self, make_context, prepared, backends, session_factory):
        backends[StorageType.aws].error = TransferError("Checksum mismatch", key="ldpd/file.txt")
        pending_ids = prepared("file.txt")

        with pytest.raises(TransferError):
            perform_transfer(make_context(backends), pending_ids[StorageType.aws])

        row = pending_row(session_factory, pending_ids[StorageType.aws])
        assert row.status == TransferStatus.failure
        assert row.error_message == "Checksum mismatch"

    def test_failed_transfer_can_be_retried(self, make_context, prepared, backends, session_factory):
        backends[StorageType.aws].error = TransferError("Checksum mismatch")
        pending_ids = prepared("file.txt")
        context = make_context(backends)
        with pytest.raises(TransferError):
            perform_transfer(context, pending_ids[StorageType.aws])

        backends[StorageType.aws].error = None
        result = perform_transfer(context, pending_ids[StorageType.aws])
        assert result.status == TransferStatus.promoted.value

    def test_unmapped_prefix_fails(self, make_context, prepared, backends, preservation_config, session_factory):
        pending_ids = prepared("file.txt")
        preservation_config.aws.local_path_key_map = {}

        with pytest.raises(StorageProviderMappingNotFoundError):
            perform_transfer(make_context(backends), pending_ids[StorageType.aws])

        assert pending_row(session_factory, pending_ids[StorageType.aws]).status == TransferStatus.failure

    def test_duplicate_stored_object(self, make_context, prepared, backends, session_factory, queued):
        pending_ids = prepared("file.txt")
        with session_factory() as session:
            pending = session.get(PendingTransfer, pending_ids[StorageType.aws])
            session.add(StoredObject(
                source_object_id=pending.source_object_id,
                storage_provider_id=pending.storage_provider_id,
                path="ldpd/file.txt",
                transfer_checksum_algorithm=ChecksumAlgorithm.CRC32C,
                transfer_checksum_value=pending.transfer_checksum_value,
            ))
            session.commit()

        result = perform_transfer(make_context(backends), pending_ids[StorageType.aws])

        assert result.status == TransferStatus.failure.value
        assert backends[StorageType.aws].uploads == []
        row = pending_row(session_factory, pending_ids[StorageType.aws])
        assert row.status == TransferStatus.failure
        assert row.error_message == DUPLICATE_STORED_OBJECT_MESSAGE
        assert queued(VERIFY_FIXITY) == []

    def test_unimplemented_provider_is_left_pending(
        self, make_context, make_source_object, make_provider, session_factory, queued
    ):
        source_object_id = make_source_object("file.txt")
        provider_id = make_provider(StorageType.cul, "cul-archive")
        with session_factory() as session:
            pending = PendingTransfer(
                source_object_id=source_object_id,
                storage_provider_id=provider_id,
                transfer_checksum_value=b"\xe1\x6d\xcd\xee",
            )
            session.add(pending)
            session.commit()
            pending_id = pending.id

        result = perform_transfer(make_context({}), pending_id)

        assert result.status == TransferStatus.pending.value
        assert pending_row(session_factory, pending_id).status == TransferStatus.pending
        assert queued(VERIFY_FIXITY) == []

    def test_missing_record(self, make_context):
        with pytest.raises(RecordNotFoundError):
            perform_transfer(make_context({}), 999)


class TestTransferChecksumHandoff:
    """The backend gets the checksum form recorded at preparation."""

    def test_multipart_checksum_reaches_backend(
        self, make_context, prepared, backends, preservation_config
    ):
        preservation_config.aws.multipart_threshold = 5 * 1024 * 1024
        pending_ids = prepared("big.bin", b"A" * (5 * 1024 * 1024 + 1))

        perform_transfer(make_context(backends), pending_ids[StorageType.aws])

        upload = backends[StorageType.aws].uploads[0]
        assert upload["mode"] == ChecksumMode.MULTIPART
        checksum: TransferChecksum = upload["checksum"]
        assert checksum.to_provider_string() == "3DhwZA==-2"
