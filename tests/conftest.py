"""Pytest configuration and fixtures."""

from pathlib import Path
from typing import Callable, List, Optional

import pytest

from preservation.lib.checksum import ChecksumAlgorithm, whole_file_checksum
from preservation.lib.config import PreservationConfig
from preservation.lib.context import StageContext
from preservation.lib.db import create_session_factory, init_db
from preservation.lib.models import SourceObject, StorageProvider, StorageType
from preservation.lib.queues import NullDispatcher

AWS_BUCKET = "cul-preservation-aws"
GCP_BUCKET = "cul-preservation-gcp"


@pytest.fixture
def session_factory():
    """In-memory SQLite database with all tables created."""
    factory = create_session_factory("sqlite://")
    init_db(factory)
    return factory


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def source_root(tmp_path: Path) -> Path:
    root = tmp_path / "digital" / "preservation"
    root.mkdir(parents=True)
    return root


@pytest.fixture
def preservation_config(source_root: Path) -> PreservationConfig:
    """Config replicating everything under source_root to one S3 and one GCS bucket."""
    prefix = f"{source_root}/"
    return PreservationConfig.model_validate({
        "database_url": "sqlite://",
        "source_paths_to_storage_providers": {
            prefix: {
                "storage_providers": [
                    {"storage_type": "aws", "container_name": AWS_BUCKET},
                    {"storage_type": "gcp", "container_name": GCP_BUCKET},
                ]
            }
        },
        "aws": {"local_path_key_map": {prefix: "ldpd/"}},
        "gcp": {"local_path_key_map": {prefix: "ldpd/"}},
        "check_please": {
            "http_base_url": "https://check-please.example.edu",
            "ws_url": "wss://check-please.example.edu/cable",
            "auth_token": "test-token",
            "http_timeout": 60,
        },
    })


@pytest.fixture
def dispatcher() -> NullDispatcher:
    return NullDispatcher()


@pytest.fixture
def make_context(session_factory, preservation_config, dispatcher):
    """Build a StageContext with one backend per storage type for every configured container."""

    def _make(backends: Optional[dict] = None, **kwargs) -> StageContext:
        backends = backends or {}
        resolved = {
            (target.storage_type, target.container_name): backends[target.storage_type]
            for target in preservation_config.storage_targets()
            if target.storage_type in backends
        }
        return StageContext(
            session_factory=session_factory,
            config=preservation_config,
            dispatcher=dispatcher,
            backends=resolved,
            **kwargs,
        )

    return _make


@pytest.fixture
def write_file(source_root: Path) -> Callable[..., Path]:
    def _write(relative_path: str, content: bytes = b"A") -> Path:
        path = source_root / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path

    return _write


@pytest.fixture
def make_source_object(session_factory, write_file):
    """Write a file and register it as a SourceObject with a SHA256 fixity checksum."""

    def _make(relative_path: str, content: bytes = b"A", with_fixity: bool = True) -> int:
        path = write_file(relative_path, content)
        session = session_factory()
        try:
            source_object = SourceObject(path=str(path), object_size=len(content))
            if with_fixity:
                source_object.fixity_checksum_algorithm = ChecksumAlgorithm.SHA256
                source_object.fixity_checksum_value = whole_file_checksum(path, ChecksumAlgorithm.SHA256)
            session.add(source_object)
            session.commit()
            return source_object.id
        finally:
            session.close()

    return _make


@pytest.fixture
def make_provider(session_factory):
    def _make(storage_type: StorageType, container_name: str) -> int:
        session = session_factory()
        try:
            provider = StorageProvider(storage_type=storage_type, container_name=container_name)
            session.add(provider)
            session.commit()
            return provider.id
        finally:
            session.close()

    return _make


@pytest.fixture
def queued(dispatcher: NullDispatcher) -> Callable[[str], List[int]]:
    """Record ids the stage under test enqueued on a queue."""

    def _queued(queue: str) -> List[int]:
        return [record_id for name, record_id, _ in dispatcher.dropped if name == queue]

    return _queued
