"""Tests for preservation/lib/errors.py - structured exception hierarchy."""

import pytest

from preservation.lib.errors import (
    ConfigurationError,
    MissingFixityChecksumError,
    ObjectExistsError,
    PollingWaitTimeoutError,
    PreservationError,
    RecordNotFoundError,
    RemoteFixityCheckTimeout,
    RemoteFixityError,
    StorageProviderMappingNotFoundError,
    TransferError,
    UnknownChecksumAlgorithmError,
    UnreadableFilesError,
    error_message_for,
)


class TestPreservationError:
    """Tests for base PreservationError class."""

    def test_basic_message(self):
        error = PreservationError("Something went wrong")
        assert str(error) == "Something went wrong"
        assert error.message == "Something went wrong"

    def test_with_details_and_suggestion(self):
        error = PreservationError(
            "Upload failed",
            details={"key": "ldpd/file.tif"},
            suggestion="Check the bucket policy",
        )
        assert "key: ldpd/file.tif" in str(error)
        assert "Check the bucket policy" in str(error)

    def test_to_dict(self):
        error = PreservationError("Test error", details={"a": 1}, suggestion="Fix it")
        assert error.to_dict() == {
            "error_type": "PreservationError",
            "message": "Test error",
            "details": {"a": 1},
            "suggestion": "Fix it",
        }


class TestSpecificErrors:
    """Tests for the context each subclass carries."""

    def test_configuration_error(self):
        error = ConfigurationError("Bad value", field="aws.region", value=42)
        assert error.details == {"field": "aws.region", "value": "42"}

    def test_mapping_not_found_is_configuration_error(self):
        error = StorageProviderMappingNotFoundError("No mapping", path="/x/y")
        assert isinstance(error, ConfigurationError)
        assert error.path == "/x/y"
        assert error.suggestion

    def test_unknown_checksum_algorithm(self):
        error = UnknownChecksumAlgorithmError("sha3")
        assert "sha3" in error.message
        assert isinstance(error, ConfigurationError)

    def test_missing_fixity_checksum(self):
        error = MissingFixityChecksumError("No checksum", source_object_id=5)
        assert error.details["source_object_id"] == 5

    def test_record_not_found(self):
        error = RecordNotFoundError("PendingTransfer", 12)
        assert error.message == "PendingTransfer 12 not found"

    def test_object_exists(self):
        error = ObjectExistsError("Exists", key="ldpd/a.txt")
        assert error.key == "ldpd/a.txt"

    def test_transfer_error_with_cause(self):
        cause = IOError("disk gone")
        error = TransferError("Upload failed", local_path="/a", key="a", cause=cause)
        assert error.details["local_path"] == "/a"
        assert error.details["key"] == "a"
        assert error.details["cause_type"] == "OSError"

    @pytest.mark.parametrize("error_class", [RemoteFixityCheckTimeout, PollingWaitTimeoutError])
    def test_timeouts_are_remote_fixity_errors(self, error_class):
        assert issubclass(error_class, RemoteFixityError)

    def test_unreadable_files_lists_paths_sorted(self):
        error = UnreadableFilesError(["/b", "/a"])
        assert error.paths == ["/a", "/b"]
        assert error.message == "The following files could not be read:\n/a\n/b"


class TestErrorMessageFor:
    """Tests for error_message_for."""

    def test_preservation_error_uses_message_only(self):
        error = PreservationError("Short", details={"long": "details"})
        assert error_message_for(error) == "Short"

    def test_other_errors_use_str(self):
        assert error_message_for(ValueError("bad")) == "bad"
