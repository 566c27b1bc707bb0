"""Read-only views over the work registry.

Each selector takes a ``WorkRegistry`` (read through a snapshot) or any
iterable of work items, and returns a new list. Nothing is mutated.
"""

from collections.abc import Iterable
from dataclasses import dataclass

from .registry import WorkItem, WorkRegistry, WorkState


def _items(work: WorkRegistry | Iterable[WorkItem]) -> list[WorkItem]:
    if isinstance(work, WorkRegistry):
        return work.snapshot()
    return list(work)


def _with_state(work: WorkRegistry | Iterable[WorkItem], state: WorkState) -> list[WorkItem]:
    return [item for item in _items(work) if item.state is state]


def defined_work(work: WorkRegistry | Iterable[WorkItem]) -> list[WorkItem]:
    return _with_state(work, WorkState.DEFINED)


def running_work(work: WorkRegistry | Iterable[WorkItem]) -> list[WorkItem]:
    return _with_state(work, WorkState.RUNNING)


def completed_work(work: WorkRegistry | Iterable[WorkItem]) -> list[WorkItem]:
    """Completed items in the order they actually completed."""
    return sorted(_with_state(work, WorkState.COMPLETED), key=lambda item: item.order)


def errored_work(work: WorkRegistry | Iterable[WorkItem]) -> list[WorkItem]:
    return _with_state(work, WorkState.ERROR)


@dataclass(frozen=True)
class WorkSummary:
    """Item counts per state."""

    total: int = 0
    defined: int = 0
    running: int = 0
    completed: int = 0
    errored: int = 0

    @property
    def finished(self) -> int:
        return self.completed + self.errored


def summarize(work: WorkRegistry | Iterable[WorkItem]) -> WorkSummary:
    items = _items(work)
    counts = {state: 0 for state in WorkState}
    for item in items:
        counts[item.state] += 1
    return WorkSummary(
        total=len(items),
        defined=counts[WorkState.DEFINED],
        running=counts[WorkState.RUNNING],
        completed=counts[WorkState.COMPLETED],
        errored=counts[WorkState.ERROR],
    )
