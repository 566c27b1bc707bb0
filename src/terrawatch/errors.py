"""Exception types for terrawatch.

A non-zero exit status of terraform is never raised: it is reported in
``ExecutionOutcome.returncode``. The exceptions below cover the cases where
terrawatch itself cannot go on.
"""


class TerrawatchError(Exception):
    """Base class for all terrawatch errors."""


class OptionError(TerrawatchError, ValueError):
    """An option value cannot be rendered into command-line tokens."""

    def __init__(self, option: str, message: str):
        self.option = option
        super().__init__(f"option {option!r}: {message}")


class ExecutionError(TerrawatchError):
    """The external process could not be launched at all."""

    def __init__(self, command: str, message: str):
        self.command = command
        super().__init__(f"{message}: {command}")


class PlanParseError(TerrawatchError, ValueError):
    """The plan document is not valid plan JSON."""


class ApplyError(TerrawatchError):
    """A step of the apply driver finished with a non-zero exit status."""

    def __init__(self, step: str, returncode: int, stderr: str = ""):
        self.step = step
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(f"terraform {step} exited with status {returncode}{detail}")
