"""Structured logging for terrawatch.

Configures structlog with context processors, output formatters,
and sensitive data redaction.
"""

import logging
import re
import sys
from pathlib import Path

import structlog

# Regex for sensitive patterns
_SENSITIVE_RE = re.compile(r"(sk-|key-|token-)[a-zA-Z0-9]{6,}", re.IGNORECASE)
# -var 'db_password=hunter2' -> -var 'db_password=***'
_SECRET_VAR_RE = re.compile(
    r"(-var\s+'?[\w-]*(?:password|secret|token|key)[\w-]*=)([^'\s]*)",
    re.IGNORECASE,
)


def _redact(value: str) -> str:
    value = _SENSITIVE_RE.sub(lambda m: m.group(1) + "***", value)
    return _SECRET_VAR_RE.sub(lambda m: m.group(1) + "***", value)


def redact_sensitive(logger: object, method_name: str, event_dict: dict) -> dict:
    """Structlog processor that redacts sensitive data."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _redact(value)
    return event_dict


def setup_logging(
    level: str = "info",
    json_output: bool = False,
    log_file: Path | None = None,
    tui_mode: bool = False,
) -> None:
    """Configure structlog for the entire application.

    Args:
        level: Log level (debug, info, warning, error).
        json_output: If True, output JSON lines.
        log_file: Path to log file (used in TUI mode or for file logging).
        tui_mode: If True, suppress console output (TUI owns the screen).
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_sensitive,
    ]

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        stream=sys.stderr,
        force=True,
    )

    root = logging.getLogger()
    file_handler: logging.FileHandler | None = None
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(log_file))
        file_handler.setLevel(log_level)
        if tui_mode:
            # TUI owns the screen: file only
            root.handlers = [file_handler]
        else:
            root.addHandler(file_handler)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    console_formatter = _formatter(json_output, colors=not tui_mode)
    file_formatter = _formatter(json_output, colors=False)
    for handler in root.handlers:
        handler.setFormatter(file_formatter if handler is file_handler else console_formatter)


def _formatter(json_output: bool, colors: bool) -> structlog.stdlib.ProcessorFormatter:
    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=colors)
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def get_logger(module: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger bound to a module name.

    Args:
        module: Module name (e.g., "registry", "apply").

    Returns:
        Bound structlog logger.
    """
    return structlog.get_logger(module=module)
