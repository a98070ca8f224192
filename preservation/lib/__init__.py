"""Preservation library modules.

Checksums, key remediation, persistence, storage backends, the remote
fixity client and the four stages built on them:

    create_fixity -> prepare_transfer -> perform_transfer -> verify_fixity
"""

from preservation.lib.checksum import (
    ChecksumAlgorithm,
    ChecksumMode,
    MultipartChecksum,
    TransferChecksum,
    bin_to_hex,
    default_part_size,
    hex_to_bin,
    multipart_checksum,
    provider_checksum_string,
    whole_file_checksum,
)
from preservation.lib.config import PreservationConfig, PreservationSettings, load_config
from preservation.lib.context import StageContext, build_context
from preservation.lib.db import create_session_factory, init_db, session_scope
from preservation.lib.env import expand_env_vars, expand_options, load_env_file
from preservation.lib.errors import (
    ConfigurationError,
    MissingFixityChecksumError,
    ObjectExistsError,
    PreservationError,
    RecordNotFoundError,
    RemoteFixityCheckTimeout,
    RemoteFixityError,
    StorageProviderMappingNotFoundError,
    TransferError,
)
from preservation.lib.keys import is_legal_key, remediate_key
from preservation.lib.observability import get_stage_logger, setup_logging
from preservation.lib.queues import InlineDispatcher, NullDispatcher, run_stage
from preservation.lib.remote_fixity import FixityCheckResult, RemoteFixityClient

__all__ = [
    # Checksums
    "ChecksumAlgorithm",
    "ChecksumMode",
    "MultipartChecksum",
    "TransferChecksum",
    "bin_to_hex",
    "default_part_size",
    "hex_to_bin",
    "multipart_checksum",
    "provider_checksum_string",
    "whole_file_checksum",
    # Configuration
    "PreservationConfig",
    "PreservationSettings",
    "load_config",
    "expand_env_vars",
    "expand_options",
    "load_env_file",
    # Persistence and stages
    "StageContext",
    "build_context",
    "create_session_factory",
    "init_db",
    "session_scope",
    "InlineDispatcher",
    "NullDispatcher",
    "run_stage",
    # Keys
    "is_legal_key",
    "remediate_key",
    # Remote fixity
    "FixityCheckResult",
    "RemoteFixityClient",
    # Errors
    "ConfigurationError",
    "MissingFixityChecksumError",
    "ObjectExistsError",
    "PreservationError",
    "RecordNotFoundError",
    "RemoteFixityCheckTimeout",
    "RemoteFixityError",
    "StorageProviderMappingNotFoundError",
    "TransferError",
    # Logging
    "get_stage_logger",
    "setup_logging",
]
