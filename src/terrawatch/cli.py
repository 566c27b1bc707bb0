"""CLI commands and argument parsing for terrawatch."""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from uuid import uuid4

import structlog

from .apply import ApplyResult, create_plan, run_apply
from .config import CONFIG_FILE, WatchConfig, build_config, load_config_from_yaml
from .errors import TerrawatchError
from .logging import get_logger, setup_logging
from .registry import WorkItem, WorkRegistry
from .runner import Terraform
from .tui import TerrawatchApp, format_work_line

logger = get_logger("cli")


# === CLI Commands ===


def _print_finished(item: WorkItem) -> None:
    """Print items as they reach a terminal state, in completion order."""
    if item.terminal:
        print(format_work_line(item), flush=True)


def _print_summary(result: ApplyResult) -> None:
    summary = result.summary
    print(
        f"\nApply {'complete' if result.ok else 'failed'}: "
        f"{summary.completed} completed, {summary.errored} failed, "
        f"{summary.defined} not started"
    )
    for diagnostic in result.diagnostics:
        print(f"  error: {diagnostic}")


def cmd_apply(args: argparse.Namespace, config: WatchConfig) -> int:
    terraform = Terraform.from_config(config)
    registry = WorkRegistry()

    if getattr(args, "tui", False):
        app = TerrawatchApp(
            registry,
            job=lambda: run_apply(terraform, config, registry),
            refresh_interval=config.refresh_interval,
        )
        app.run()
        if app.failure is not None:
            raise app.failure
        if app.result is None:
            logger.warning("Apply cancelled")
            return 130
        result = app.result
    else:
        result = asyncio.run(run_apply(terraform, config, registry, listener=_print_finished))

    _print_summary(result)
    # Negative codes mean terraform was killed by a signal (timeout)
    if result.returncode > 0 and not result.timed_out:
        return result.returncode
    return 0 if result.ok else 1


def cmd_plan(args: argparse.Namespace, config: WatchConfig) -> int:
    terraform = Terraform.from_config(config)
    descriptors = create_plan(terraform, config)

    if getattr(args, "json", False):
        rows = [{"address": d.address, "action": d.action} for d in descriptors]
        print(json.dumps(rows, indent=2))
        return 0

    if not descriptors:
        print("No changes.")
        return 0
    for descriptor in descriptors:
        print(f"{descriptor.action:<8} {descriptor.address}")
    return 0


def cmd_version(args: argparse.Namespace, config: WatchConfig) -> int:
    terraform = Terraform.from_config(config)
    print(terraform.version())
    return 0


def build_parser() -> argparse.ArgumentParser:
    # Shared options available to every subcommand
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--chdir",
        type=str,
        default="",
        help="Terraform working directory (default: current directory)",
    )
    common.add_argument(
        "--config",
        type=str,
        default="",
        help=f"Config file (default: {CONFIG_FILE} in the working directory)",
    )
    common.add_argument(
        "--terraform", type=str, default="", help="Terraform executable (default: terraform)"
    )
    common.add_argument("--no-color", action="store_true", help="Pass -no-color to terraform")
    common.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    common.add_argument("--log-json", action="store_true", help="Output logs as JSON lines")
    common.add_argument("--log-file", type=str, default="", help="Also write logs to a file")

    # Plan inputs shared by plan and apply
    plan_inputs = argparse.ArgumentParser(add_help=False)
    plan_inputs.add_argument(
        "--var-file", action="append", default=[], help="Variable file (repeatable)"
    )
    plan_inputs.add_argument(
        "--var", action="append", default=[], metavar="KEY=VALUE", help="Variable (repeatable)"
    )
    plan_inputs.add_argument(
        "--target", action="append", default=[], help="Resource address to target (repeatable)"
    )
    plan_inputs.add_argument("--plan-file", type=str, default="", help="Where to save the plan")

    parser = argparse.ArgumentParser(
        prog="terrawatch",
        description="terrawatch - terraform apply with live per-resource progress",
        parents=[common],
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # apply
    apply_parser = subparsers.add_parser(
        "apply", parents=[common, plan_inputs], help="Plan and apply with progress"
    )
    apply_parser.add_argument(
        "--parallelism", type=int, default=0, help="Concurrent operations (default: terraform's)"
    )
    apply_parser.add_argument(
        "--timeout", type=int, default=None, help="Apply timeout in minutes (default: none)"
    )
    apply_parser.add_argument("--tui", action="store_true", help="Show the TUI dashboard")

    # plan
    plan_parser = subparsers.add_parser(
        "plan", parents=[common, plan_inputs], help="Show the planned changes"
    )
    plan_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # version
    subparsers.add_parser("version", parents=[common], help="Show terraform's version")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    working_dir = Path(args.chdir or ".")
    config_path = Path(args.config) if args.config else working_dir / CONFIG_FILE
    yaml_config = load_config_from_yaml(config_path)

    commands = {
        "apply": cmd_apply,
        "plan": cmd_plan,
        "version": cmd_version,
    }

    try:
        config = build_config(yaml_config, args)
        tui_mode = getattr(args, "tui", False)
        log_file = config.log_file
        if tui_mode and log_file is None:
            # TUI owns the screen
            log_file = config.working_dir / ".terrawatch" / "terrawatch.log"
        setup_logging(
            level=config.log_level,
            json_output=args.log_json,
            log_file=log_file,
            tui_mode=tui_mode,
        )
        structlog.contextvars.bind_contextvars(run_id=uuid4().hex[:8])
        return commands[args.command](args, config)
    except TerrawatchError as e:
        logger.error("terrawatch failed", error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
