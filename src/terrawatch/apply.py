"""Apply driver: plan, ingest, then stream ``terraform apply -json`` into a registry.

terraform applies many resources concurrently inside one process and
reports each one through machine-readable UI messages::

    {"type": "apply_start",    "hook": {"resource": {"addr": "..."}, "action": "create"}}
    {"type": "apply_progress", "hook": {..., "elapsed_seconds": 10}}
    {"type": "apply_complete", "hook": {..., "elapsed_seconds": 32}}
    {"type": "apply_errored",  "hook": {..., "elapsed_seconds": 5}}

Each message becomes a ``WorkUpdate`` posted to a ``ProgressReporter``,
the only writer of the registry while the apply runs.
"""

import asyncio
import json
from collections.abc import Callable, Hashable, Sequence
from dataclasses import dataclass, field

from .config import WatchConfig
from .errors import ApplyError
from .logging import get_logger
from .plan import Action, ChangeDescriptor, load_plan
from .registry import Transition, WorkItem, WorkRegistry, WorkState
from .runner import ExecutionOutcome, StreamingProcess, Terraform
from .selectors import WorkSummary, running_work, summarize

logger = get_logger("apply")

WorkKey = tuple[str, str]  # (resource address, action)

# UI message type -> target state
EVENT_STATES: dict[str, WorkState] = {
    "apply_start": WorkState.RUNNING,
    "apply_progress": WorkState.RUNNING,
    "apply_complete": WorkState.COMPLETED,
    "apply_errored": WorkState.ERROR,
}


@dataclass(frozen=True)
class WorkUpdate:
    """A state change reported for one work item."""

    state: WorkState
    id: Hashable
    duration: float = 0
    error: object | None = None


@dataclass
class ApplyResult:
    """Outcome of a full plan + apply run."""

    returncode: int
    summary: WorkSummary
    command: str = ""
    timed_out: bool = False
    diagnostics: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and self.summary.errored == 0


def define_work(
    registry: WorkRegistry, descriptors: Sequence[ChangeDescriptor]
) -> dict[WorkKey, int]:
    """Register one work item per descriptor, ids counting up from 1.

    Returns:
        Mapping of (address, action) to the id of its work item.
    """
    index: dict[WorkKey, int] = {}
    for work_id, descriptor in enumerate(descriptors, start=1):
        action = descriptor.action
        registry.define(work_id, descriptor.address, action)
        key = (descriptor.address, action)
        if key in index:
            logger.warning("Duplicate change in plan", address=descriptor.address, action=action)
            continue
        index[key] = work_id
    return index


def parse_event(line: str) -> dict | None:
    """Decode one UI message line; anything that is not a JSON object is None."""
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        event = json.loads(line)
    except ValueError:
        logger.debug("Skipping malformed event line", line=line[:200])
        return None
    return event if isinstance(event, dict) else None


def event_to_update(event: dict, index: dict[WorkKey, int]) -> WorkUpdate | None:
    """Translate a hook message into a WorkUpdate.

    Returns None for messages that are not apply hooks. Hooks for resources
    missing from ``index`` keep their (address, action) key as id, so the
    registry reports them as unknown.
    """
    state = EVENT_STATES.get(event.get("type", ""))
    hook = event.get("hook")
    if state is None or not isinstance(hook, dict):
        return None

    resource = hook.get("resource") or {}
    key = (resource.get("addr", ""), hook.get("action", ""))
    work_id: Hashable = index.get(key, key)
    duration = float(hook.get("elapsed_seconds") or 0)

    error = None
    if state is WorkState.ERROR:
        error = event.get("@message") or f"{key[0]}: {key[1]} failed"
    return WorkUpdate(state=state, id=work_id, duration=duration, error=error)


class ProgressReporter:
    """Single consumer that applies queued updates to a registry.

    Producers call ``post()``; one asyncio task drains the queue in order,
    so registry writes during an apply never race.
    """

    def __init__(
        self,
        registry: WorkRegistry,
        listener: Callable[[WorkItem], None] | None = None,
    ):
        self.registry = registry
        self.listener = listener
        self.misses = 0
        self._queue: asyncio.Queue[WorkUpdate | None] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        self._task = asyncio.ensure_future(self._consume())

    def post(self, update: WorkUpdate) -> None:
        self._queue.put_nowait(update)

    async def stop(self) -> None:
        """Drain pending updates and stop the consumer."""
        if self._task is None:
            return
        self._queue.put_nowait(None)
        task, self._task = self._task, None
        await task

    async def _consume(self) -> None:
        while True:
            update = await self._queue.get()
            if update is None:
                return
            self.apply(update)

    def apply(self, update: WorkUpdate) -> Transition:
        if update.state is WorkState.RUNNING:
            result = self.registry.run(update.id, update.duration)
        elif update.state is WorkState.COMPLETED:
            result = self.registry.complete(update.id, update.duration)
        elif update.state is WorkState.ERROR:
            result = self.registry.error(update.id, update.duration, update.error)
        else:
            raise ValueError(f"cannot report state {update.state.value}")

        if result is not Transition.APPLIED:
            self.misses += 1
        elif self.listener is not None:
            item = self.registry.get(update.id)
            if item is not None:
                self.listener(item)
        return result


def create_plan(terraform: Terraform, config: WatchConfig) -> list[ChangeDescriptor]:
    """Save a plan to ``config.plan_file`` and return its change descriptors.

    Raises:
        ApplyError: ``terraform plan`` exited non-zero.
        PlanParseError: The saved plan could not be read back.
    """
    config.plan_file.parent.mkdir(parents=True, exist_ok=True)
    options = {**config.plan_options, "input": "false", "out": config.plan_file}

    logger.info("Planning", working_dir=str(terraform.cwd))
    outcome = terraform.plan(options, {"silent": True, "async_mode": False})
    if not outcome.ok:
        raise ApplyError("plan", outcome.returncode, outcome.stderr)
    return load_plan(terraform, config.plan_file)


def _fail_running(reporter: ProgressReporter, reason: str) -> None:
    for item in running_work(reporter.registry):
        reporter.apply(WorkUpdate(WorkState.ERROR, item.id, item.duration, reason))


def _diagnostic_text(event: dict) -> str | None:
    diagnostic = event.get("diagnostic") or {}
    if diagnostic.get("severity") != "error":
        return None
    summary = diagnostic.get("summary", "")
    address = diagnostic.get("address")
    return f"{address}: {summary}" if address else summary


async def _stream_apply(
    process: StreamingProcess,
    index: dict[WorkKey, int],
    reporter: ProgressReporter,
    diagnostics: list[str],
    timeout: float | None,
) -> tuple[ExecutionOutcome, bool]:
    await process.start()

    async def pump() -> None:
        async for line in process.lines():
            event = parse_event(line)
            if event is None:
                continue
            if event.get("type") == "diagnostic":
                text = _diagnostic_text(event)
                if text:
                    diagnostics.append(text)
                    logger.error("terraform diagnostic", diagnostic=text)
                continue
            update = event_to_update(event, index)
            if update is not None:
                reporter.post(update)

    timed_out = False
    try:
        await asyncio.wait_for(pump(), timeout)
    except TimeoutError:
        timed_out = True
        process.kill()
    return await process.wait(), timed_out


async def run_apply(
    terraform: Terraform,
    config: WatchConfig,
    registry: WorkRegistry,
    listener: Callable[[WorkItem], None] | None = None,
) -> ApplyResult:
    """Plan, ingest, and apply while reporting progress into ``registry``.

    Args:
        terraform: Terraform wrapper bound to the working directory.
        config: Plan inputs, parallelism and timeout.
        registry: Fresh registry for this run.
        listener: Called with a copy of every item after an applied update.

    Returns:
        ApplyResult with terraform's exit status and final counts.

    Raises:
        ApplyError: ``terraform plan`` failed.
        ExecutionError: terraform could not be started.
        PlanParseError: The saved plan could not be read.
    """
    descriptors = await asyncio.to_thread(create_plan, terraform, config)
    index = define_work(registry, descriptors)
    logger.info("Plan loaded", changes=len(descriptors))

    if all(d.action == Action.NO_OP for d in descriptors):
        logger.info("No changes to apply")
        return ApplyResult(returncode=0, summary=summarize(registry))

    command_line = terraform.build(
        "apply",
        {"json": True, "parallelism": config.parallelism or None},
        config.plan_file,
    )
    process = StreamingProcess(command_line, cwd=terraform.cwd)
    reporter = ProgressReporter(registry, listener)
    diagnostics: list[str] = []
    timeout = config.apply_timeout_minutes * 60 or None

    reporter.start()
    try:
        outcome, timed_out = await _stream_apply(
            process, index, reporter, diagnostics, timeout
        )
    except BaseException:
        process.kill()
        await reporter.stop()
        _fail_running(reporter, "apply interrupted")
        raise
    await reporter.stop()

    if timed_out:
        logger.error("Apply timed out", timeout_minutes=config.apply_timeout_minutes)
        _fail_running(reporter, f"Timeout after {config.apply_timeout_minutes} minutes")
    elif outcome.returncode != 0:
        _fail_running(reporter, f"terraform apply exited with status {outcome.returncode}")

    summary = summarize(registry)
    logger.info(
        "Apply finished",
        returncode=outcome.returncode,
        completed=summary.completed,
        errored=summary.errored,
        unreported=reporter.misses,
    )
    return ApplyResult(
        returncode=outcome.returncode,
        summary=summary,
        command=outcome.command,
        timed_out=timed_out,
        diagnostics=diagnostics,
    )
