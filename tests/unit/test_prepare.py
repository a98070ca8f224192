"""Tests for preservation/lib/prepare.py - the transfer preparation stage."""

import pytest

from preservation.lib.checksum import ChecksumAlgorithm, to_base64
from preservation.lib.errors import MissingFixityChecksumError, RecordNotFoundError, StorageProviderMappingNotFoundError
from preservation.lib.models import PendingTransfer, StorageProvider, StorageType, StoredObject
from preservation.lib.prepare import prepare_transfers
from preservation.lib.queues import PERFORM_TRANSFER

MiB = 1024 * 1024


def pending_by_type(session_factory, source_object_id):
    with session_factory() as session:
        rows = session.query(PendingTransfer).filter_by(source_object_id=source_object_id).all()
        return {row.storage_provider.storage_type: row for row in rows}


class TestPrepareTransfers:
    """Tests for prepare_transfers."""

    def test_creates_one_pending_transfer_per_provider(self, make_context, make_source_object, session_factory, queued):
        source_object_id = make_source_object("ldpd/file.txt", b"A")

        result = prepare_transfers(make_context(), source_object_id)

        assert len(result.pending_transfer_ids) == 2
        assert sorted(queued(PERFORM_TRANSFER)) == sorted(result.pending_transfer_ids)

        pending = pending_by_type(session_factory, source_object_id)
        for storage_type in (StorageType.aws, StorageType.gcp):
            row = pending[storage_type]
            assert row.transfer_checksum_algorithm == ChecksumAlgorithm.CRC32C
            assert to_base64(row.transfer_checksum_value) == "4W3N7g=="
            assert row.transfer_checksum_part_size is None
            assert row.transfer_checksum_part_count is None

    def test_creates_storage_providers(self, make_context, make_source_object, session_factory):
        source_object_id = make_source_object("ldpd/file.txt")
        prepare_transfers(make_context(), source_object_id)
        with session_factory() as session:
            assert session.query(StorageProvider).count() == 2

    def test_fixed_ten_byte_input(self, make_context, make_source_object, session_factory):
        source_object_id = make_source_object("ldpd/ten.txt", b"AAAAAAAAAA")

        result = prepare_transfers(make_context(), source_object_id)

        assert len(result.pending_transfer_ids) == 2
        pending = pending_by_type(session_factory, source_object_id)
        for storage_type in (StorageType.aws, StorageType.gcp):
            row = pending[storage_type]
            assert row.transfer_checksum_value == bytes.fromhex("d4e65efa")
            assert to_base64(row.transfer_checksum_value) == "1OZe+g=="
            assert row.transfer_checksum_part_count is None

    @pytest.mark.parametrize(
        "size,multipart",
        [(5 * MiB - 1, False), (5 * MiB, True)],
        ids=["one-byte-below", "exactly-at"],
    )
    def test_aws_threshold_boundary(
        self, size, multipart, make_context, make_source_object, session_factory, preservation_config
    ):
        preservation_config.aws.multipart_threshold = 5 * MiB
        source_object_id = make_source_object("ldpd/edge.bin", b"A" * size)

        prepare_transfers(make_context(), source_object_id)

        pending = pending_by_type(session_factory, source_object_id)
        aws = pending[StorageType.aws]
        gcp = pending[StorageType.gcp]
        assert gcp.transfer_checksum_part_count is None
        if multipart:
            assert aws.transfer_checksum_part_size == 5 * MiB
            assert aws.transfer_checksum_part_count == 1
            assert aws.transfer_checksum_value != gcp.transfer_checksum_value
        else:
            assert aws.transfer_checksum_part_count is None
            assert aws.transfer_checksum_value == gcp.transfer_checksum_value

    def test_aws_uses_multipart_above_threshold(
        self, make_context, make_source_object, session_factory, preservation_config
    ):
        preservation_config.aws.multipart_threshold = 5 * MiB
        source_object_id = make_source_object("ldpd/big.bin", b"A" * (5 * MiB + 1))

        prepare_transfers(make_context(), source_object_id)

        pending = pending_by_type(session_factory, source_object_id)
        aws = pending[StorageType.aws]
        assert to_base64(aws.transfer_checksum_value) == "3DhwZA=="
        assert aws.transfer_checksum_part_size == 5 * MiB
        assert aws.transfer_checksum_part_count == 2

        gcp = pending[StorageType.gcp]
        assert gcp.transfer_checksum_part_count is None
        assert gcp.transfer_checksum_value != aws.transfer_checksum_value

    def test_is_idempotent(self, make_context, make_source_object, session_factory):
        source_object_id = make_source_object("ldpd/file.txt")
        context = make_context()

        prepare_transfers(context, source_object_id)
        second = prepare_transfers(context, source_object_id)

        assert second.pending_transfer_ids == []
        assert len(second.skipped_provider_ids) == 2
        with session_factory() as session:
            assert session.query(PendingTransfer).count() == 2

    def test_skips_providers_with_stored_objects(self, make_context, make_source_object, session_factory):
        source_object_id = make_source_object("ldpd/file.txt")
        context = make_context()
        prepare_transfers(context, source_object_id)

        with session_factory() as session:
            aws = session.query(PendingTransfer).join(StorageProvider).filter(
                StorageProvider.storage_type == StorageType.aws
            ).one()
            session.add(StoredObject(
                source_object_id=source_object_id,
                storage_provider_id=aws.storage_provider_id,
                path="ldpd/file.txt",
                transfer_checksum_algorithm=ChecksumAlgorithm.CRC32C,
                transfer_checksum_value=aws.transfer_checksum_value,
            ))
            session.delete(aws)
            session.commit()

        result = prepare_transfers(context, source_object_id)
        assert result.pending_transfer_ids == []

    def test_no_enqueue(self, make_context, make_source_object, queued):
        source_object_id = make_source_object("ldpd/file.txt")
        prepare_transfers(make_context(), source_object_id, enqueue_successor=False)
        assert queued(PERFORM_TRANSFER) == []

    def test_missing_fixity_checksum(self, make_context, make_source_object):
        source_object_id = make_source_object("ldpd/file.txt", with_fixity=False)
        with pytest.raises(MissingFixityChecksumError):
            prepare_transfers(make_context(), source_object_id)

    def test_unmapped_path(self, make_context, session_factory, tmp_path):
        from preservation.lib.models import SourceObject

        path = tmp_path / "elsewhere.txt"
        path.write_bytes(b"A")
        with session_factory() as session:
            source_object = SourceObject(
                path=str(path),
                object_size=1,
                fixity_checksum_algorithm=ChecksumAlgorithm.MD5,
                fixity_checksum_value=b"\x7f" * 16,
            )
            session.add(source_object)
            session.commit()
            source_object_id = source_object.id

        with pytest.raises(StorageProviderMappingNotFoundError):
            prepare_transfers(make_context(), source_object_id)

    def test_missing_record(self, make_context):
        with pytest.raises(RecordNotFoundError):
            prepare_transfers(make_context(), 999)
