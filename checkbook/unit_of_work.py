"""
Unit of Work Module

Runs a multi-write operation all-or-nothing against any storage backend.
Backends with transaction support get a real transaction; for the rest each
successful write records a compensating action, and the recorded actions are
replayed in reverse order when a later step fails.
"""

from typing import Callable, List, Tuple, TypeVar

from .errors import RollbackError
from .logging_config import get_logger
from .storage import StorageInterface


T = TypeVar("T")

logger = get_logger("checkbook.unit_of_work")


class CompensationLog:
    """Ordered list of undo actions for writes that already succeeded"""

    def __init__(self):
        self._actions: List[Tuple[str, Callable[[], object]]] = []

    def __len__(self) -> int:
        return len(self._actions)

    def record(self, description: str, action: Callable[[], object]) -> None:
        """Register the action that undoes a write which just succeeded"""
        self._actions.append((description, action))

    def unwind(self) -> None:
        """
        Run every recorded action, newest first.

        All actions are attempted even if one fails; the failures are then
        reported together.

        Raises:
            RollbackError: If any compensating action raised
        """
        failures = []
        while self._actions:
            description, action = self._actions.pop()
            try:
                action()
                logger.debug("Compensated: %s", description)
            except Exception as e:
                logger.error("Compensation failed: %s (%s)", description, e)
                failures.append(f"{description}: {e}")
        if failures:
            raise RollbackError("Rollback incomplete: " + "; ".join(failures))


def run_unit_of_work(
    storage: StorageInterface,
    unit_of_work: Callable[[CompensationLog], T]
) -> T:
    """
    Execute unit_of_work so that either all of its writes persist or none do.

    The unit of work always receives a CompensationLog and should record an
    undo action after each write. The log is only replayed when the backend
    cannot roll back by itself.

    Raises:
        RollbackError: If compensation could not restore storage
        Exception: Whatever the unit of work raised, after rollback
    """
    compensations = CompensationLog()
    if storage.supports_transactions:
        return storage.transact(lambda: unit_of_work(compensations))

    try:
        return unit_of_work(compensations)
    except Exception:
        compensations.unwind()
        raise
