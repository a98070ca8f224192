"""Storage backend abstraction for preservation transfers.

One backend per provider kind, each bound to a single container:

    from preservation.lib.storage import get_storage

    backend = get_storage(pending_transfer.storage_provider, config)
    backend.upload(local_path, key, mode, checksum, metadata)
"""

from typing import Any

from preservation.lib.models import StorageProvider, StorageType
from preservation.lib.storage.base import StorageBackend, UploadResult
from preservation.lib.storage.gcs import GCSStorage
from preservation.lib.storage.s3 import S3Storage

__all__ = [
    "StorageBackend",
    "UploadResult",
    "S3Storage",
    "GCSStorage",
    "get_storage",
    "is_storage_implemented",
]

IMPLEMENTED_STORAGE_TYPES = (StorageType.aws, StorageType.gcp)


def is_storage_implemented(storage_type: StorageType) -> bool:
    return storage_type in IMPLEMENTED_STORAGE_TYPES


def get_storage(provider: StorageProvider, config: Any, **options: Any) -> StorageBackend:
    """Get the storage backend for a provider.

    Args:
        provider: StorageProvider record or configured ProviderTarget
        config: PreservationConfig with aws/gcp connection settings
        **options: Extra backend options (e.g. a prebuilt client)

    Returns:
        StorageBackend bound to the provider's container

    Raises:
        NotImplementedError: If the provider kind has no backend
    """
    if provider.storage_type == StorageType.aws:
        aws = config.aws
        backend_options = {
            "region": aws.region,
            "access_key_id": aws.access_key_id,
            "secret_access_key": aws.secret_access_key,
            "endpoint_url": aws.endpoint_url,
        }
        backend_options.update(options)
        return S3Storage(provider.container_name, **backend_options)

    if provider.storage_type == StorageType.gcp:
        gcp = config.gcp
        backend_options = {"project_id": gcp.project_id, "credentials": gcp.credentials}
        backend_options.update(options)
        return GCSStorage(provider.container_name, **backend_options)

    raise NotImplementedError(
        f"StorageProvider storage_type {provider.storage_type.name} is not implemented yet."
    )
