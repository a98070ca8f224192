"""Structured exception hierarchy for preservation transfers.

Provides specific exception types for the failure modes of each stage,
with rich context for debugging and troubleshooting.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

__all__ = [
    "PreservationError",
    "ConfigurationError",
    "StorageProviderMappingNotFoundError",
    "UnknownChecksumAlgorithmError",
    "MissingFixityChecksumError",
    "RecordNotFoundError",
    "ObjectExistsError",
    "TransferError",
    "ProviderFixityCheckNotFoundError",
    "RemoteFixityError",
    "RemoteFixityCheckTimeout",
    "PollingWaitTimeoutError",
    "UnreadableFilesError",
    "error_message_for",
]


class PreservationError(Exception):
    """Base exception for all preservation errors.

    Provides structured error information for debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.details = details or {}
        self.suggestion = suggestion

        parts = [message]

        if details:
            detail_lines = [f"  {k}: {v}" for k, v in details.items()]
            parts.append("\nDetails:")
            parts.extend(detail_lines)

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts) if len(parts) > 1 else message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "suggestion": self.suggestion,
        }


class ConfigurationError(PreservationError):
    """Error in preservation configuration.

    Raised when configuration is invalid or incomplete. Not retried.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        self.field = field
        self.value = value

        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(message, details=details, **kwargs)


class StorageProviderMappingNotFoundError(ConfigurationError):
    """No configured mapping covers a local path."""

    def __init__(self, message: str, *, path: Optional[str] = None, **kwargs: Any) -> None:
        self.path = path

        details = kwargs.pop("details", {})
        if path:
            details["path"] = path

        suggestion = kwargs.pop("suggestion", None)
        if not suggestion:
            suggestion = (
                "Add a prefix covering this path to source_paths_to_storage_providers "
                "or to the provider's local_path_key_map."
            )

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class UnknownChecksumAlgorithmError(ConfigurationError):
    """A checksum algorithm name is not one of the supported algorithms."""

    def __init__(self, name: str, **kwargs: Any) -> None:
        self.name = name
        super().__init__(
            f"Unknown checksum algorithm: {name}",
            field="checksum_algorithm",
            value=name,
            **kwargs,
        )


class MissingFixityChecksumError(PreservationError):
    """A SourceObject has no fixity checksum yet."""

    def __init__(self, message: str, *, source_object_id: Optional[int] = None, **kwargs: Any) -> None:
        self.source_object_id = source_object_id

        details = kwargs.pop("details", {})
        if source_object_id is not None:
            details["source_object_id"] = source_object_id

        suggestion = kwargs.pop("suggestion", None)
        if not suggestion:
            suggestion = "Run the fixity stage (or load checksums) before preparing transfers."

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class RecordNotFoundError(PreservationError):
    """A record vanished between stages.

    Another worker has usually already handled it, so callers log and move on.
    """

    def __init__(self, model: str, record_id: Any, **kwargs: Any) -> None:
        self.model = model
        self.record_id = record_id
        super().__init__(
            f"{model} {record_id} not found",
            details={"model": model, "record_id": record_id},
            **kwargs,
        )


class ObjectExistsError(PreservationError):
    """An object already exists at the destination key.

    Signals the transfer executor to try another key.
    """

    def __init__(self, message: str, *, key: Optional[str] = None, **kwargs: Any) -> None:
        self.key = key

        details = kwargs.pop("details", {})
        if key:
            details["key"] = key

        super().__init__(message, details=details, **kwargs)


class TransferError(PreservationError):
    """Upload to a storage provider failed or could not be verified."""

    def __init__(
        self,
        message: str,
        *,
        local_path: Optional[str] = None,
        key: Optional[str] = None,
        cause: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        self.local_path = local_path
        self.key = key
        self.cause = cause

        details = kwargs.pop("details", {})
        if local_path:
            details["local_path"] = local_path
        if key:
            details["key"] = key
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        super().__init__(message, details=details, **kwargs)


class ProviderFixityCheckNotFoundError(PreservationError):
    """No remote fixity check exists for a storage provider kind."""


class RemoteFixityError(PreservationError):
    """The remote fixity service rejected a request."""


class RemoteFixityCheckTimeout(RemoteFixityError):
    """A remote fixity job stopped reporting progress."""


class PollingWaitTimeoutError(RemoteFixityError):
    """Polling for a remote fixity job exceeded the maximum wait."""


class UnreadableFilesError(PreservationError):
    """Files under a registration directory could not be read."""

    def __init__(self, paths: List[str], **kwargs: Any) -> None:
        self.paths = sorted(paths)
        listing = "\n".join(self.paths)
        super().__init__(
            f"The following files could not be read:\n{listing}",
            details={"unreadable_count": len(self.paths)},
            **kwargs,
        )


def error_message_for(error: BaseException) -> str:
    """Short message for an error_message column: no details or suggestion."""
    if isinstance(error, PreservationError):
        return error.message
    return str(error)
