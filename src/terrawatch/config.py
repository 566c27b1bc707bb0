"""Configuration module for terrawatch.

Contains the WatchConfig dataclass, config loading from YAML,
and config building from CLI arguments.
"""

import argparse
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .errors import OptionError
from .logging import get_logger

logger = get_logger("config")

# === Constants ===

CONFIG_FILE = Path(".terrawatch.yaml")
DEFAULT_PLAN_FILE = Path(".terrawatch/plan.tfplan")


# === WatchConfig ===


@dataclass
class WatchConfig:
    """terrawatch configuration"""

    # Terraform CLI
    terraform_command: str = "terraform"
    working_dir: Path = Path(".")
    silent: bool = False  # Suppress passthrough of terraform output
    no_color: bool = False  # Append -no-color to every invocation
    async_mode: bool = False  # Default execution mode for Terraform calls

    # Plan inputs
    plan_file: Path = DEFAULT_PLAN_FILE
    var_files: list[str] = field(default_factory=list)
    variables: dict[str, str] = field(default_factory=dict)
    targets: list[str] = field(default_factory=list)

    # Apply
    parallelism: int = 0  # 0 = terraform default
    apply_timeout_minutes: int = 0  # 0 = no timeout

    # Display
    refresh_interval: float = 0.5  # TUI refresh period in seconds

    # Logging
    log_level: str = "info"
    log_file: Path | None = None

    def __post_init__(self):
        """Resolve working_dir and anchor relative paths to it."""
        self.working_dir = Path(self.working_dir).resolve()
        self.plan_file = Path(self.plan_file)
        if not self.plan_file.is_absolute():
            self.plan_file = self.working_dir / self.plan_file
        if self.log_file is not None:
            self.log_file = Path(self.log_file)
            if not self.log_file.is_absolute():
                self.log_file = self.working_dir / self.log_file

    @property
    def plan_options(self) -> dict:
        """Option set for ``terraform plan``, in emission order."""
        options: dict = {}
        if self.variables:
            options["var"] = dict(self.variables)
        if self.var_files:
            options["var_file"] = list(self.var_files)
        if self.targets:
            options["target"] = list(self.targets)
        return options


# === Config Loading ===


def load_config_from_yaml(config_path: Path = CONFIG_FILE) -> dict:
    """Load configuration from YAML file.

    Args:
        config_path: Path to the configuration file.

    Returns:
        Dictionary with configuration values.
    """
    if not config_path.exists():
        return {}

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        section = data.get("terrawatch", {}) or {}
        terraform = section.get("terraform", {}) or {}
        plan = section.get("plan", {}) or {}
        apply = section.get("apply", {}) or {}
        display = section.get("display", {}) or {}
        logging_cfg = section.get("logging", {}) or {}

        variables = plan.get("variables")
        return {
            "terraform_command": terraform.get("command"),
            "working_dir": Path(section["working_dir"]) if section.get("working_dir") else None,
            "silent": terraform.get("silent"),
            "no_color": terraform.get("no_color"),
            "async_mode": terraform.get("async"),
            "plan_file": Path(plan["file"]) if plan.get("file") else None,
            "var_files": plan.get("var_files"),
            "variables": (
                {str(k): str(v) for k, v in variables.items()} if variables else None
            ),
            "targets": plan.get("targets"),
            "parallelism": apply.get("parallelism"),
            "apply_timeout_minutes": apply.get("timeout_minutes"),
            "refresh_interval": display.get("refresh_interval"),
            "log_level": logging_cfg.get("level"),
            "log_file": Path(logging_cfg["file"]) if logging_cfg.get("file") else None,
        }
    except Exception as e:
        logger.warning("Failed to load config", path=str(config_path), error=str(e))
        return {}


def parse_var_assignments(assignments: list[str]) -> dict[str, str]:
    """Turn ``["region=eu-west-1", ...]`` into an ordered mapping."""
    variables: dict[str, str] = {}
    for assignment in assignments:
        key, sep, value = assignment.partition("=")
        if not sep or not key:
            raise OptionError("var", f"expected KEY=VALUE, got {assignment!r}")
        variables[key] = value
    return variables


def build_config(yaml_config: dict, args: argparse.Namespace) -> WatchConfig:
    """Build WatchConfig from YAML and CLI arguments.

    CLI arguments override YAML config. List-valued arguments extend the
    YAML lists; ``--var`` assignments override YAML variables key by key.

    Args:
        yaml_config: Configuration loaded from YAML file.
        args: Parsed CLI arguments.

    Returns:
        WatchConfig instance.
    """
    config_kwargs = {}

    for key, value in yaml_config.items():
        if value is not None:
            config_kwargs[key] = value

    if getattr(args, "chdir", None):
        config_kwargs["working_dir"] = Path(args.chdir)
    if getattr(args, "terraform", None):
        config_kwargs["terraform_command"] = args.terraform
    if getattr(args, "no_color", False):
        config_kwargs["no_color"] = True
    if getattr(args, "silent", False):
        config_kwargs["silent"] = True
    if getattr(args, "plan_file", None):
        config_kwargs["plan_file"] = Path(args.plan_file)
    if getattr(args, "var_file", None):
        config_kwargs["var_files"] = [*config_kwargs.get("var_files", []), *args.var_file]
    if getattr(args, "var", None):
        config_kwargs["variables"] = {
            **config_kwargs.get("variables", {}),
            **parse_var_assignments(args.var),
        }
    if getattr(args, "target", None):
        config_kwargs["targets"] = [*config_kwargs.get("targets", []), *args.target]
    if getattr(args, "parallelism", 0):
        config_kwargs["parallelism"] = args.parallelism
    if getattr(args, "timeout", None) is not None:
        config_kwargs["apply_timeout_minutes"] = args.timeout
    if getattr(args, "log_level", None):
        config_kwargs["log_level"] = args.log_level
    if getattr(args, "log_file", None):
        config_kwargs["log_file"] = Path(args.log_file)

    return WatchConfig(**config_kwargs)
