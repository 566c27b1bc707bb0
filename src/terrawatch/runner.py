"""Process execution for terrawatch.

Runs built command lines either blocking (``subprocess.run``) or
non-blocking (``subprocess.Popen``), and streams long-running commands
line by line through asyncio for the apply driver.
"""

import asyncio
import contextlib
import os
import re
import subprocess
import sys
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

from .command import CommandLine, build_command
from .config import WatchConfig
from .errors import ExecutionError
from .logging import get_logger

logger = get_logger("runner")

_VERSION_RE = re.compile(r"Terraform v(\S+)")


@dataclass(frozen=True)
class ExecSettings:
    """How a command line is executed."""

    cwd: Path | None = None
    silent: bool = False  # Do not echo child output to our stdout/stderr
    async_mode: bool = False  # Return immediately with a pending outcome


@dataclass
class ExecutionOutcome:
    """Result of running a command line.

    ``returncode`` is None while an asynchronously started process has not
    been waited for.
    """

    command: str
    returncode: int | None = None
    stdout: str = ""
    stderr: str = ""
    silent: bool = field(default=True, repr=False)
    process: subprocess.Popen | None = field(default=None, repr=False, compare=False)

    @property
    def pending(self) -> bool:
        return self.returncode is None

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def wait(self, timeout: float | None = None) -> "ExecutionOutcome":
        """Block until an asynchronously started process exits.

        Raises:
            subprocess.TimeoutExpired: The process is still running after
                ``timeout`` seconds.
        """
        if self.process is None or not self.pending:
            return self
        stdout, stderr = self.process.communicate(timeout=timeout)
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        self.returncode = self.process.returncode
        if not self.silent:
            _echo(self.stdout, self.stderr)
        logger.debug("Process finished", command=self.command, returncode=self.returncode)
        return self


def _echo(stdout: str, stderr: str) -> None:
    if stdout:
        sys.stdout.write(stdout)
        sys.stdout.flush()
    if stderr:
        sys.stderr.write(stderr)
        sys.stderr.flush()


def _launch_failure(error: OSError) -> str:
    if isinstance(error, FileNotFoundError):
        return "executable not found"
    if isinstance(error, PermissionError):
        return "permission denied"
    return f"cannot start process ({error.strerror or error})"


def execute(command_line: CommandLine, settings: ExecSettings) -> ExecutionOutcome:
    """Run a command line.

    A non-zero exit status is reported in the outcome, never raised.

    Raises:
        ExecutionError: The process could not be started.
    """
    command = str(command_line)
    cwd = str(settings.cwd) if settings.cwd else None
    logger.debug(
        "Running command",
        command=command,
        cwd=cwd,
        async_mode=settings.async_mode,
    )

    try:
        if settings.async_mode:
            process = subprocess.Popen(
                list(command_line.argv),
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
            return ExecutionOutcome(command=command, silent=settings.silent, process=process)

        result = subprocess.run(
            list(command_line.argv),
            cwd=cwd,
            capture_output=True,
            text=True,
        )
    except OSError as e:
        logger.error("Failed to start command", command=command, error=str(e))
        raise ExecutionError(command, _launch_failure(e)) from e

    if not settings.silent:
        _echo(result.stdout, result.stderr)
    logger.debug("Process finished", command=command, returncode=result.returncode)
    return ExecutionOutcome(
        command=command,
        returncode=result.returncode,
        stdout=result.stdout or "",
        stderr=result.stderr or "",
        silent=settings.silent,
    )


class StreamingProcess:
    """A command whose stdout is consumed line by line as it is produced.

    stderr is drained in the background so a chatty child cannot block on a
    full pipe while we read stdout.
    """

    def __init__(self, command_line: CommandLine, cwd: Path | None = None):
        self.command_line = command_line
        self.command = str(command_line)
        self.cwd = cwd
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task | None = None
        self._stdout: list[str] = []

    async def start(self) -> None:
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.command_line.argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.cwd) if self.cwd else None,
            )
        except OSError as e:
            logger.error("Failed to start command", command=self.command, error=str(e))
            raise ExecutionError(self.command, _launch_failure(e)) from e
        self._stderr_task = asyncio.ensure_future(self._proc.stderr.read())
        logger.debug("Streaming command", command=self.command, pid=self._proc.pid)

    async def lines(self) -> AsyncIterator[str]:
        """Yield stdout lines without their trailing newline."""
        if self._proc is None:
            await self.start()
        assert self._proc is not None and self._proc.stdout is not None
        while True:
            raw = await self._proc.stdout.readline()
            if not raw:
                break
            line = raw.decode(errors="replace").rstrip("\r\n")
            self._stdout.append(line)
            yield line

    async def wait(self) -> ExecutionOutcome:
        assert self._proc is not None
        returncode = await self._proc.wait()
        stderr = b""
        if self._stderr_task is not None:
            stderr = await self._stderr_task
        return ExecutionOutcome(
            command=self.command,
            returncode=returncode,
            stdout="\n".join(self._stdout),
            stderr=stderr.decode(errors="replace"),
        )

    def kill(self) -> None:
        if self._proc is not None and self._proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._proc.kill()
            logger.warning("Killed command", command=self.command)


# === Terraform API ===


class Terraform:
    """Terraform CLI wrapper.

    Instance settings (``cwd``, ``silent``, ``no_color``, ``async_mode``) are
    defaults; every subcommand method accepts a ``settings`` mapping that
    overrides them for that call only.
    """

    def __init__(
        self,
        cwd: Path | None = None,
        silent: bool = False,
        no_color: bool = False,
        async_mode: bool = False,
        command: str = "terraform",
    ):
        self.cwd = Path(cwd) if cwd else Path.cwd()
        self.silent = silent
        self.no_color = no_color
        self.async_mode = async_mode
        self.command = command

    @classmethod
    def from_config(cls, config: WatchConfig) -> "Terraform":
        return cls(
            cwd=config.working_dir,
            silent=config.silent,
            no_color=config.no_color,
            async_mode=config.async_mode,
            command=config.terraform_command,
        )

    def settings(self, overrides: Mapping[str, object] | None = None) -> ExecSettings:
        base = ExecSettings(cwd=self.cwd, silent=self.silent, async_mode=self.async_mode)
        return replace(base, **dict(overrides or {}))

    def build(
        self,
        command: str,
        options: Mapping[str, object] | None = None,
        *params: str | os.PathLike | None,
    ) -> CommandLine:
        return build_command(self.command, command, options, *params, no_color=self.no_color)

    def terraform(
        self,
        command: str,
        options: Mapping[str, object] | None = None,
        settings: Mapping[str, object] | None = None,
        *params: str | os.PathLike | None,
    ) -> ExecutionOutcome:
        """Execute a terraform subcommand with its options and arguments.

        Args:
            command: Subcommand name, matching the method name.
            options: Option set for the subcommand.
            settings: Overrides for the instance execution settings.
            *params: Positional arguments; None entries are dropped.

        Returns:
            ExecutionOutcome with the exact command string attached.
        """
        command_line = self.build(command, options, *params)
        return execute(command_line, self.settings(settings))

    def version(self) -> str:
        """Return terraform's version without the leading ``v`` (``1.5.7``)."""
        outcome = self.terraform("--version", {}, {"silent": True, "async_mode": False})
        first_line = outcome.stdout.splitlines()[0] if outcome.stdout else ""
        match = _VERSION_RE.search(first_line)
        if not match:
            raise ExecutionError(outcome.command, f"unexpected version output {first_line!r}")
        return match.group(1)

    def apply(self, options=None, settings=None, dir_or_plan=None) -> ExecutionOutcome:
        return self.terraform("apply", options, settings, dir_or_plan)

    def destroy(self, options=None, settings=None, dir=None) -> ExecutionOutcome:
        return self.terraform("destroy", options, settings, dir)

    def console(self, options=None, settings=None, dir=None) -> ExecutionOutcome:
        return self.terraform("console", options, settings, dir)

    def fmt(self, options=None, settings=None, dir=None) -> ExecutionOutcome:
        return self.terraform("fmt", options, settings, dir)

    def get(self, options=None, settings=None, path=None) -> ExecutionOutcome:
        """Download modules; ``path`` defaults to the working directory."""
        return self.terraform("get", options, settings, path or self.cwd)

    def graph(self, options=None, settings=None, dir=None) -> ExecutionOutcome:
        return self.terraform("graph", options, settings, dir)

    def import_(self, options=None, settings=None, addr=None, id=None) -> ExecutionOutcome:
        """Import an existing object at ``addr`` by its provider ``id``."""
        return self.terraform("import", options, settings, addr, id)

    def init(self, options=None, settings=None, source=None, path=None) -> ExecutionOutcome:
        return self.terraform("init", options, settings, source, path or self.cwd)

    def output(self, options=None, settings=None, name=None) -> ExecutionOutcome:
        return self.terraform("output", options, settings, name)

    def plan(self, options=None, settings=None, dir_or_plan=None) -> ExecutionOutcome:
        return self.terraform("plan", options, settings, dir_or_plan)

    def push(self, options=None, settings=None, dir=None) -> ExecutionOutcome:
        return self.terraform("push", options, settings, dir)

    def refresh(self, options=None, settings=None, dir=None) -> ExecutionOutcome:
        return self.terraform("refresh", options, settings, dir)

    def show(self, options=None, settings=None, path=None) -> ExecutionOutcome:
        return self.terraform("show", options, settings, path)

    def taint(self, options=None, settings=None, name=None) -> ExecutionOutcome:
        return self.terraform("taint", options, settings, name)

    def untaint(self, options=None, settings=None, name=None) -> ExecutionOutcome:
        return self.terraform("untaint", options, settings, name)

    def validate(self, options=None, settings=None, path=None) -> ExecutionOutcome:
        return self.terraform("validate", options, settings, path)
