"""
terrawatch: terraform apply with live, per-resource progress.

Usage as library:
    from terrawatch import Terraform, WorkRegistry, ingest_plan
    from terrawatch import completed_work, running_work

Usage as CLI:
    terrawatch plan            # Show planned changes, one per resource/action
    terrawatch apply           # Plan and apply, printing each finished change
    terrawatch apply --tui     # Same, with a live dashboard
    terrawatch version         # terraform's version
"""

from importlib.metadata import PackageNotFoundError, version

from .apply import (
    ApplyResult,
    ProgressReporter,
    WorkUpdate,
    create_plan,
    define_work,
    event_to_update,
    parse_event,
    run_apply,
)
from .command import (
    CommandLine,
    Flag,
    Repeated,
    Scalar,
    VarMap,
    build_command,
    coerce_option,
    normalize_option,
)
from .config import WatchConfig, build_config, load_config_from_yaml
from .errors import (
    ApplyError,
    ExecutionError,
    OptionError,
    PlanParseError,
    TerrawatchError,
)
from .logging import get_logger, setup_logging
from .plan import Action, ChangeDescriptor, ingest_plan, load_plan
from .registry import Transition, WorkItem, WorkRegistry, WorkState
from .runner import ExecSettings, ExecutionOutcome, StreamingProcess, Terraform, execute
from .selectors import (
    WorkSummary,
    completed_work,
    defined_work,
    errored_work,
    running_work,
    summarize,
)

try:
    __version__ = version("terrawatch")
except PackageNotFoundError:
    __version__ = "0.0.0.dev"  # Fallback for development without install
__all__ = [
    # Command building
    "CommandLine",
    "Flag",
    "Repeated",
    "Scalar",
    "VarMap",
    "build_command",
    "coerce_option",
    "normalize_option",
    # Execution
    "ExecSettings",
    "ExecutionOutcome",
    "StreamingProcess",
    "Terraform",
    "execute",
    # Plan
    "Action",
    "ChangeDescriptor",
    "ingest_plan",
    "load_plan",
    # Registry
    "Transition",
    "WorkItem",
    "WorkRegistry",
    "WorkState",
    # Selectors
    "WorkSummary",
    "completed_work",
    "defined_work",
    "errored_work",
    "running_work",
    "summarize",
    # Apply
    "ApplyResult",
    "ProgressReporter",
    "WorkUpdate",
    "create_plan",
    "define_work",
    "event_to_update",
    "parse_event",
    "run_apply",
    # Config
    "WatchConfig",
    "build_config",
    "load_config_from_yaml",
    # Errors
    "ApplyError",
    "ExecutionError",
    "OptionError",
    "PlanParseError",
    "TerrawatchError",
    # Logging
    "get_logger",
    "setup_logging",
]
