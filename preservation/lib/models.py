"""Database models for preservation transfers.

Uniqueness constraints here are the only cross-process synchronization
between stage workers: a second worker trying to claim the same
(provider, key) or (source, provider) pair gets an IntegrityError and
retries or gives up.
"""

from __future__ import annotations

import enum
import hashlib
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Session, declarative_base, relationship, validates

from preservation.lib.checksum import ChecksumAlgorithm

__all__ = [
    "Base",
    "FixityVerification",
    "PendingTransfer",
    "SourceObject",
    "StorageProvider",
    "StorageType",
    "StoredObject",
    "TransferStatus",
    "VerificationStatus",
    "binary_hash",
]

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def binary_hash(value: str) -> bytes:
    """SHA256 of a path or key, used for unique indexes on unbounded text."""
    return hashlib.sha256(value.encode("utf-8")).digest()


class StorageType(enum.IntEnum):
    """Cloud storage provider kinds."""

    aws = 0
    gcp = 1
    cul = 2


class TransferStatus(str, enum.Enum):
    """PendingTransfer lifecycle. ``promoted`` rows are replaced by a StoredObject."""

    pending = "pending"
    in_progress = "in_progress"
    promoted = "promoted"
    failure = "failure"


class VerificationStatus(str, enum.Enum):
    pending = "pending"
    success = "success"
    failure = "failure"


ChecksumAlgorithmEnum = Enum(ChecksumAlgorithm, name="checksum_algorithm", native_enum=False)


class SourceObject(Base):
    """A local file that should exist in every configured provider."""

    __tablename__ = "source_objects"

    id = Column(Integer, primary_key=True)
    path = Column(Text, nullable=False)
    path_hash = Column(LargeBinary(32), nullable=False, unique=True)
    object_size = Column(BigInteger, nullable=False)
    fixity_checksum_algorithm = Column(ChecksumAlgorithmEnum, nullable=True)
    fixity_checksum_value = Column(LargeBinary(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    pending_transfers = relationship("PendingTransfer", back_populates="source_object", cascade="all, delete-orphan")
    stored_objects = relationship("StoredObject", back_populates="source_object")

    @validates("path")
    def _bind_path_hash(self, key: str, value: str) -> str:
        if self.path is not None and self.path != value:
            raise ValueError("SourceObject.path cannot be changed once set")
        self.path_hash = binary_hash(value)
        return value

    @classmethod
    def for_path(cls, session: Session, path: str) -> Optional["SourceObject"]:
        return session.query(cls).filter_by(path_hash=binary_hash(path)).one_or_none()

    def validate_fixity_checksum(self) -> None:
        """Check the fixity fields against the object size.

        Raises:
            ValueError: If only one of algorithm/value is set, or the value
                contradicts the object size
        """
        algorithm = self.fixity_checksum_algorithm
        value = self.fixity_checksum_value
        if algorithm is None and value is None:
            return
        if algorithm is None or value is None:
            raise ValueError("fixity checksum algorithm and value must be set together")
        if len(value) != algorithm.digest_size:
            raise ValueError(f"fixity checksum value has wrong length for {algorithm.value}")
        if self.object_size == 0 and value != algorithm.empty_value:
            raise ValueError("zero-length object must have the empty-input checksum")
        if self.object_size > 0 and value == algorithm.empty_value:
            raise ValueError("non-empty object cannot have the empty-input checksum")

    def __repr__(self) -> str:
        return f"<SourceObject(id={self.id}, path={self.path!r})>"


class StorageProvider(Base):
    """A (provider kind, container) destination."""

    __tablename__ = "storage_providers"
    __table_args__ = (UniqueConstraint("storage_type", "container_name", name="uq_storage_provider"),)

    id = Column(Integer, primary_key=True)
    storage_type = Column(Enum(StorageType, name="storage_type", native_enum=False), nullable=False)
    container_name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    def __repr__(self) -> str:
        return f"<StorageProvider({self.storage_type.name}:{self.container_name})>"


class PendingTransfer(Base):
    """Intent to copy one SourceObject to one StorageProvider."""

    __tablename__ = "pending_transfers"
    __table_args__ = (
        UniqueConstraint("source_object_id", "storage_provider_id", name="uq_pending_transfer_source_provider"),
        UniqueConstraint("storage_provider_id", "stored_object_key_hash", name="uq_pending_transfer_provider_key"),
    )

    id = Column(Integer, primary_key=True)
    source_object_id = Column(Integer, ForeignKey("source_objects.id"), nullable=False)
    storage_provider_id = Column(Integer, ForeignKey("storage_providers.id"), nullable=False)
    transfer_checksum_algorithm = Column(ChecksumAlgorithmEnum, nullable=False, default=ChecksumAlgorithm.CRC32C)
    transfer_checksum_value = Column(LargeBinary(64), nullable=False)
    transfer_checksum_part_size = Column(BigInteger, nullable=True)
    transfer_checksum_part_count = Column(Integer, nullable=True)
    status = Column(Enum(TransferStatus, name="transfer_status", native_enum=False), nullable=False, default=TransferStatus.pending)
    stored_object_key = Column(Text, nullable=True)
    stored_object_key_hash = Column(LargeBinary(32), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    source_object = relationship("SourceObject", back_populates="pending_transfers")
    storage_provider = relationship("StorageProvider")

    @validates("stored_object_key")
    def _bind_key_hash(self, key: str, value: Optional[str]) -> Optional[str]:
        self.stored_object_key_hash = binary_hash(value) if value is not None else None
        return value


class StoredObject(Base):
    """A SourceObject verified to exist at a key in a provider."""

    __tablename__ = "stored_objects"
    __table_args__ = (
        UniqueConstraint("storage_provider_id", "path_hash", name="uq_stored_object_provider_key"),
        UniqueConstraint("storage_provider_id", "source_object_id", name="uq_stored_object_provider_source"),
    )

    id = Column(Integer, primary_key=True)
    source_object_id = Column(Integer, ForeignKey("source_objects.id"), nullable=False)
    storage_provider_id = Column(Integer, ForeignKey("storage_providers.id"), nullable=False)
    path = Column(Text, nullable=False)
    path_hash = Column(LargeBinary(32), nullable=False)
    transfer_checksum_algorithm = Column(ChecksumAlgorithmEnum, nullable=False)
    transfer_checksum_value = Column(LargeBinary(64), nullable=False)
    transfer_checksum_part_size = Column(BigInteger, nullable=True)
    transfer_checksum_part_count = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    source_object = relationship("SourceObject", back_populates="stored_objects")
    storage_provider = relationship("StorageProvider")
    fixity_verification = relationship(
        "FixityVerification", back_populates="stored_object", uselist=False, cascade="all, delete-orphan"
    )

    @validates("path")
    def _bind_path_hash(self, key: str, value: str) -> str:
        self.path_hash = binary_hash(value)
        return value


class FixityVerification(Base):
    """Outcome of re-checking a StoredObject at its provider."""

    __tablename__ = "fixity_verifications"

    id = Column(Integer, primary_key=True)
    stored_object_id = Column(Integer, ForeignKey("stored_objects.id"), nullable=False, unique=True)
    source_object_id = Column(Integer, ForeignKey("source_objects.id"), nullable=False)
    status = Column(
        Enum(VerificationStatus, name="verification_status", native_enum=False),
        nullable=False,
        default=VerificationStatus.pending,
    )
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    stored_object = relationship("StoredObject", back_populates="fixity_verification")
    source_object = relationship("SourceObject")

    @property
    def pending(self) -> bool:
        return self.status == VerificationStatus.pending
