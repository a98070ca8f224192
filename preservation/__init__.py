"""Preservation transfers to cloud storage.

Copies local preservation files to one or more cloud storage providers
under legal, collision-free keys, verifying each transfer with CRC32C and
re-verifying stored objects against their fixity checksums remotely.

Usage:
    python -m preservation register /digital/preservation/ldpd/aip-123
    python -m preservation transfer 17
"""

from preservation.lib.checksum import ChecksumAlgorithm, ChecksumMode
from preservation.lib.config import PreservationConfig, load_config
from preservation.lib.keys import is_legal_key, remediate_key

__all__ = [
    "ChecksumAlgorithm",
    "ChecksumMode",
    "PreservationConfig",
    "is_legal_key",
    "load_config",
    "remediate_key",
]

__version__ = "0.1.0"
