"""Stage queues and dispatchers.

Each stage is invoked with one record id plus small flags. A stage that
succeeds hands the next record id to a Dispatcher; the worker pool behind
the dispatcher is outside this package. ``InlineDispatcher`` runs the next
stage in-process, which is handy for single-box runs and tests.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from preservation.lib.errors import RecordNotFoundError

if TYPE_CHECKING:
    from preservation.lib.context import StageContext

logger = logging.getLogger(__name__)

__all__ = [
    "CREATE_FIXITY",
    "PREPARE_TRANSFER",
    "PERFORM_TRANSFER",
    "VERIFY_FIXITY",
    "QUEUES",
    "Dispatcher",
    "InlineDispatcher",
    "NullDispatcher",
    "run_stage",
]

CREATE_FIXITY = "create_fixity"
PREPARE_TRANSFER = "prepare_transfer"
PERFORM_TRANSFER = "perform_transfer"
VERIFY_FIXITY = "verify_fixity"

QUEUES = (CREATE_FIXITY, PREPARE_TRANSFER, PERFORM_TRANSFER, VERIFY_FIXITY)


class Dispatcher(ABC):
    """Hands a record id to the worker pool for a stage queue."""

    @abstractmethod
    def enqueue(self, queue: str, record_id: int, **flags: Any) -> None:
        pass


class NullDispatcher(Dispatcher):
    """Drops every message. Successor stages are run by hand."""

    def __init__(self) -> None:
        self.dropped: List[Tuple[str, int, Dict[str, Any]]] = []

    def enqueue(self, queue: str, record_id: int, **flags: Any) -> None:
        logger.debug("Not enqueuing %s %s (no worker pool configured)", queue, record_id)
        self.dropped.append((queue, record_id, flags))


class InlineDispatcher(Dispatcher):
    """Runs the successor stage immediately in the current process."""

    def __init__(self, context: Optional["StageContext"] = None) -> None:
        self.context = context

    def bind(self, context: "StageContext") -> None:
        self.context = context

    def enqueue(self, queue: str, record_id: int, **flags: Any) -> None:
        if self.context is None:
            raise RuntimeError("InlineDispatcher is not bound to a StageContext")
        run_stage(self.context, queue, record_id, **flags)


def _stage_functions() -> Dict[str, Callable[..., Any]]:
    from preservation.lib.fixity import create_fixity_checksum
    from preservation.lib.prepare import prepare_transfers
    from preservation.lib.transfer import perform_transfer
    from preservation.lib.verify import verify_fixity

    return {
        CREATE_FIXITY: create_fixity_checksum,
        PREPARE_TRANSFER: prepare_transfers,
        PERFORM_TRANSFER: perform_transfer,
        VERIFY_FIXITY: verify_fixity,
    }


def run_stage(context: "StageContext", queue: str, record_id: int, **flags: Any) -> Any:
    """Run one stage for one record, the way a worker would.

    A record that has vanished is logged and skipped: another worker has
    already handled it.

    Raises:
        ValueError: If the queue name is unknown
    """
    stages = _stage_functions()
    if queue not in stages:
        raise ValueError(f"Unknown queue: {queue}. Expected one of: {list(QUEUES)}")

    try:
        return stages[queue](context, record_id, **flags)
    except RecordNotFoundError as e:
        logger.info("Skipping %s for %s: %s", queue, record_id, e.message)
        return None
