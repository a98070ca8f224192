"""Collaborators shared by every stage invocation.

Everything a stage needs (sessions, configuration, storage backends, the
remote fixity client, the dispatcher) is resolved once by ``build_context``
and passed in, so a stage never builds anything on its own.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from preservation.lib.config import PreservationConfig
from preservation.lib.errors import ConfigurationError
from preservation.lib.models import StorageProvider, StorageType
from preservation.lib.queues import Dispatcher, InlineDispatcher, NullDispatcher
from preservation.lib.remote_fixity import RemoteFixityClient
from preservation.lib.storage import StorageBackend, get_storage, is_storage_implemented

__all__ = ["StageContext", "build_context", "resolve_backends"]

BackendKey = Tuple[StorageType, str]
StorageFactory = Callable[[Any, PreservationConfig], StorageBackend]


@dataclass
class StageContext:
    """Resolved collaborators for stage functions."""

    session_factory: sessionmaker
    config: PreservationConfig
    dispatcher: Dispatcher = field(default_factory=NullDispatcher)
    backends: Dict[BackendKey, StorageBackend] = field(default_factory=dict)
    fixity_client: Optional[RemoteFixityClient] = None

    def storage_for(self, provider: StorageProvider) -> StorageBackend:
        """Return the backend resolved for a provider's container.

        Raises:
            ConfigurationError: If the container is not in the provider mapping
        """
        backend = self.backends.get((provider.storage_type, provider.container_name))
        if backend is None:
            raise ConfigurationError(
                f"No storage backend configured for {provider.storage_type.name} "
                f"container {provider.container_name}",
                field="source_paths_to_storage_providers",
            )
        return backend

    def remote_fixity_client(self) -> RemoteFixityClient:
        if self.fixity_client is None:
            raise ConfigurationError(
                "Remote fixity checks need a check_please section in the configuration",
                field="check_please",
            )
        return self.fixity_client


def resolve_backends(
    config: PreservationConfig,
    storage_factory: StorageFactory = get_storage,
) -> Dict[BackendKey, StorageBackend]:
    """Build one backend per configured container of an implemented kind."""
    backends: Dict[BackendKey, StorageBackend] = {}
    for target in config.storage_targets():
        if is_storage_implemented(target.storage_type):
            backends[(target.storage_type, target.container_name)] = storage_factory(target, config)
    return backends


def build_context(
    session_factory: sessionmaker,
    config: PreservationConfig,
    dispatcher: Optional[Dispatcher] = None,
    storage_factory: StorageFactory = get_storage,
) -> StageContext:
    """Build a StageContext with every backend and the fixity client resolved.

    An inline dispatcher is bound to the new context when configured.
    """
    if dispatcher is None:
        dispatcher = InlineDispatcher() if config.run_queued_jobs_inline else NullDispatcher()

    fixity_client = None
    if config.check_please is not None:
        fixity_client = RemoteFixityClient.from_config(config.check_please)

    context = StageContext(
        session_factory=session_factory,
        config=config,
        dispatcher=dispatcher,
        backends=resolve_backends(config, storage_factory),
        fixity_client=fixity_client,
    )
    if isinstance(dispatcher, InlineDispatcher):
        dispatcher.bind(context)
    return context
