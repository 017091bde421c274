"""Structured logging for shepherd.

structlog is routed through the stdlib root logger so that every process
in a job's lifetime (supervisor, stop hook, dashboard) shares one setup:
diagnostics go to stderr, or to a file when a full-screen UI owns the
terminal. Credentials passed on worker command lines are masked.
"""

import logging
import os
import re
import sys
from pathlib import Path

import structlog

# Credentials passed to workers as key=value or --flag value
_SENSITIVE_RE = re.compile(
    r"(--?(?:password|passwd|token|secret|api[_-]?key)[=\s]+"
    r"|\b(?:password|passwd|token|secret|api[_-]?key)=)(\S+)",
    re.IGNORECASE,
)


def redact_sensitive(logger: object, method_name: str, event_dict: dict) -> dict:
    """Structlog processor that masks credential values in string fields."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _SENSITIVE_RE.sub(lambda m: m.group(1) + "***", value)
    return event_dict


def add_process_id(logger: object, method_name: str, event_dict: dict) -> dict:
    """Tag events with the emitting PID; log files are shared across processes."""
    event_dict.setdefault("pid", os.getpid())
    return event_dict


def _build_handler(level: int, log_file: Path | None) -> logging.Handler:
    handler: logging.Handler
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(str(log_file))
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    return handler


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
        log_file: Write diagnostics here instead of stderr (TUI mode only).
        tui_mode: If True, suppress console output (TUI owns the screen).
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_sensitive,
    ]
    if json_output or tui_mode:
        processors.append(add_process_id)

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    renderer: structlog.types.Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=not tui_mode and sys.stderr.isatty())

    handler = _build_handler(log_level, log_file if tui_mode else None)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    for old in root.handlers[:]:
        root.removeHandler(old)
        old.close()
    root.addHandler(handler)
    root.setLevel(log_level)


def get_logger(module: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger bound to a module name.

    Args:
        module: Module name (e.g., "supervisor", "registry").

    Returns:
        Bound structlog logger.
    """
    return structlog.get_logger(module=module)
