"""Source object registration and bulk checksum loading."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import IO, Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from preservation.lib.checksum import ChecksumAlgorithm, bin_to_hex, hex_to_bin
from preservation.lib.context import StageContext
from preservation.lib.db import session_scope
from preservation.lib.errors import UnknownChecksumAlgorithmError, UnreadableFilesError
from preservation.lib.models import SourceObject
from preservation.lib.queues import PREPARE_TRANSFER

logger = logging.getLogger(__name__)

__all__ = [
    "ChecksumLoadOutcome",
    "LoadStatus",
    "RegistrationResult",
    "iter_files",
    "load_checksums",
    "register_source_objects",
]


class LoadStatus:
    """Per-row outcome codes written to the checksum load log."""

    SKIP = "skip"  # dry run
    BAD_VALUE = "xval"
    NO_SOURCE = "xsrc"
    NOOP = "noop"
    SUCCESS = "succ"
    FAIL = "fail"


@dataclass
class RegistrationResult:
    created: List[int] = field(default_factory=list)
    existing: List[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.created) + len(self.existing)


@dataclass
class ChecksumLoadOutcome:
    status: str
    algorithm_name: str
    checksum_hex: str
    path: str
    source_object_id: Optional[int] = None

    def to_line(self) -> str:
        return f"{self.status},{self.algorithm_name},{self.checksum_hex},{self.path}"


def iter_files(directory: str) -> Iterator[str]:
    """Yield every file below a directory in sorted order."""
    for root, dirs, files in os.walk(directory):
        dirs.sort()
        for name in sorted(files):
            yield os.path.join(root, name)


def register_source_objects(session: Session, directory: str) -> RegistrationResult:
    """Create a SourceObject for every file below a directory.

    Nothing is registered if any file is unreadable.

    Raises:
        UnreadableFilesError: Listing every file that could not be read
    """
    readable: List[str] = []
    unreadable: List[str] = []
    for path in iter_files(directory):
        if os.access(path, os.R_OK):
            readable.append(path)
        else:
            unreadable.append(path)

    if unreadable:
        raise UnreadableFilesError(unreadable)

    result = RegistrationResult()
    for path in readable:
        source_object = SourceObject.for_path(session, path)
        if source_object is not None:
            result.existing.append(source_object.id)
            continue
        source_object = SourceObject(path=path, object_size=os.path.getsize(path))
        session.add(source_object)
        session.flush()
        result.created.append(source_object.id)

    logger.info(
        "Registered %d new source object(s) under %s (%d already present)",
        len(result.created),
        directory,
        len(result.existing),
    )
    return result


def _load_row(session: Session, algorithm_name: str, path: str, checksum_hex: str) -> ChecksumLoadOutcome:
    try:
        algorithm = ChecksumAlgorithm.from_name(algorithm_name)
    except UnknownChecksumAlgorithmError:
        return ChecksumLoadOutcome(LoadStatus.BAD_VALUE, algorithm_name, checksum_hex, path)

    outcome = ChecksumLoadOutcome(LoadStatus.BAD_VALUE, algorithm.value, checksum_hex, path)
    value = hex_to_bin(checksum_hex)
    # whole-file digests have a fixed length, so the value can be sanity checked
    if value is None or len(value) != len(algorithm.empty_value):
        return outcome
    outcome.checksum_hex = bin_to_hex(value)

    source_object = SourceObject.for_path(session, path)
    if source_object is None:
        outcome.status = LoadStatus.NO_SOURCE
        return outcome
    outcome.source_object_id = source_object.id

    if source_object.fixity_checksum_algorithm == algorithm and source_object.fixity_checksum_value == value:
        outcome.status = LoadStatus.NOOP
        return outcome

    previous = (source_object.fixity_checksum_algorithm, source_object.fixity_checksum_value)
    source_object.fixity_checksum_algorithm = algorithm
    source_object.fixity_checksum_value = value
    try:
        source_object.validate_fixity_checksum()
    except ValueError as e:
        source_object.fixity_checksum_algorithm, source_object.fixity_checksum_value = previous
        logger.warning("Rejected checksum for %s: %s", path, e)
        outcome.status = LoadStatus.FAIL
        return outcome

    outcome.status = LoadStatus.SUCCESS
    return outcome


def load_checksums(
    context: StageContext,
    rows: Iterable[Sequence[str]],
    dry_run: bool = False,
    enqueue_successor: bool = False,
    log_io: Optional[IO[str]] = None,
) -> List[ChecksumLoadOutcome]:
    """Assign externally computed fixity checksums to SourceObjects.

    Each row is ``(algorithm_name, path, checksum_hex)``. One outcome line
    per row is written to ``log_io``:

        succ,SHA256,41cd3787...,/digital/preservation/ldpd/file.tif

    Args:
        context: Stage collaborators
        rows: Checksum rows, e.g. from csv.reader
        dry_run: Report every row as skip without touching the database
        enqueue_successor: Enqueue prepare_transfer for every updated object
        log_io: Where to write outcome lines

    Returns:
        One ChecksumLoadOutcome per row
    """
    outcomes: List[ChecksumLoadOutcome] = []
    with session_scope(context.session_factory) as session:
        for algorithm_name, path, checksum_hex in rows:
            if dry_run:
                outcome = ChecksumLoadOutcome(LoadStatus.SKIP, algorithm_name or "MISSING", checksum_hex, path)
            else:
                outcome = _load_row(session, algorithm_name, path, checksum_hex)
                session.flush()
            outcomes.append(outcome)
            if log_io is not None:
                log_io.write(outcome.to_line() + "\n")

    counts: List[Tuple[str, int]] = []
    for status in (LoadStatus.SUCCESS, LoadStatus.NOOP, LoadStatus.NO_SOURCE, LoadStatus.BAD_VALUE, LoadStatus.FAIL):
        counts.append((status, sum(1 for o in outcomes if o.status == status)))
    logger.info("Checksum load finished: %s", ", ".join(f"{s}={n}" for s, n in counts))

    if enqueue_successor:
        for outcome in outcomes:
            if outcome.status == LoadStatus.SUCCESS:
                context.dispatcher.enqueue(PREPARE_TRANSFER, outcome.source_object_id)
    return outcomes
