"""Work registry: tracks each planned change from definition to completion.

Work items move forward only::

    DEFINED -> RUNNING -> COMPLETED
                       -> ERROR

COMPLETED and ERROR are terminal. Every mutator returns a ``Transition``
telling the caller whether it was applied, referenced an unknown id, or was
rejected by the state machine. Misses never raise and never change anything.
"""

import itertools
import threading
from collections.abc import Hashable, Iterator
from dataclasses import dataclass, replace
from enum import Enum

from .logging import get_logger

logger = get_logger("registry")


class WorkState(str, Enum):
    """Lifecycle state of a work item."""

    DEFINED = "DEFINED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


TERMINAL_STATES = frozenset({WorkState.COMPLETED, WorkState.ERROR})


class Transition(str, Enum):
    """Result of a registry mutation."""

    APPLIED = "applied"
    UNKNOWN_ID = "unknown_id"
    REJECTED = "rejected"


@dataclass
class WorkItem:
    """One tracked unit of change (one resource, one action)."""

    id: Hashable
    resource: str
    work: str
    state: WorkState = WorkState.DEFINED
    duration: float = 0
    order: int | None = None  # completion order, set by complete()
    error: object | None = None  # set by error()

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES


# Source states each transition may start from
_ALLOWED_FROM: dict[WorkState, frozenset[WorkState]] = {
    WorkState.RUNNING: frozenset({WorkState.DEFINED, WorkState.RUNNING}),
    WorkState.COMPLETED: frozenset({WorkState.RUNNING}),
    WorkState.ERROR: frozenset({WorkState.RUNNING}),
}


class WorkRegistry:
    """In-memory, append-only collection of work items for one apply run.

    Writes are serialized by a lock so concurrent reporters cannot interleave
    a transition, and the completion counter advances exactly once per
    applied ``complete``. Each registry owns its counter: the first item
    completed in a registry gets order 0.
    """

    def __init__(self) -> None:
        self._items: list[WorkItem] = []
        self._by_id: dict[Hashable, WorkItem] = {}  # first item defined per id
        self._completion_order = itertools.count()
        self._lock = threading.Lock()

    def define(self, id: Hashable, resource: str, work: str) -> Transition:
        """Append a new item in state DEFINED with duration 0. Always applied.

        Ids are the caller's responsibility. A reused id is appended too, but
        transitions and ``get`` keep addressing the first item with that id.
        """
        item = WorkItem(id=id, resource=resource, work=work)
        with self._lock:
            duplicate = id in self._by_id
            self._items.append(item)
            self._by_id.setdefault(id, item)
        if duplicate:
            logger.warning("Work id already defined", work_id=id, resource=resource)
        logger.debug("Work defined", work_id=id, resource=resource, work=work)
        return Transition.APPLIED

    def run(self, id: Hashable, duration: float) -> Transition:
        """Mark an item RUNNING and record its elapsed duration."""
        return self._transition(id, WorkState.RUNNING, duration)

    def complete(self, id: Hashable, duration: float) -> Transition:
        """Mark a running item COMPLETED and stamp its completion order."""
        return self._transition(id, WorkState.COMPLETED, duration)

    def error(self, id: Hashable, duration: float, error_info: object) -> Transition:
        """Mark a running item ERROR and attach ``error_info``."""
        return self._transition(id, WorkState.ERROR, duration, error_info)

    def _transition(
        self,
        id: Hashable,
        target: WorkState,
        duration: float,
        error_info: object | None = None,
    ) -> Transition:
        with self._lock:
            item = self._by_id.get(id)
            if item is None:
                result = Transition.UNKNOWN_ID
            elif item.state not in _ALLOWED_FROM[target]:
                result = Transition.REJECTED
            else:
                item.state = target
                item.duration = duration
                if target is WorkState.COMPLETED:
                    item.order = next(self._completion_order)
                elif target is WorkState.ERROR:
                    item.error = error_info
                result = Transition.APPLIED
            current = item.state if item is not None else None

        if result is Transition.UNKNOWN_ID:
            logger.warning("Transition for unknown work id", work_id=id, target=target.value)
        elif result is Transition.REJECTED:
            logger.warning(
                "Transition rejected",
                work_id=id,
                state=current.value,
                target=target.value,
            )
        return result

    def get(self, id: Hashable) -> WorkItem | None:
        """Return a copy of one item, or None."""
        with self._lock:
            item = self._by_id.get(id)
            return replace(item) if item is not None else None

    def snapshot(self) -> list[WorkItem]:
        """Copies of all items in definition order."""
        with self._lock:
            return [replace(item) for item in self._items]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __iter__(self) -> Iterator[WorkItem]:
        return iter(self.snapshot())
