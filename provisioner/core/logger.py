"""
Structured logging for the provisioner.
Uses structlog for contextual events and rich for console output; every
console line is mirrored into the provisioning log file.
"""

import sys
from pathlib import Path
from typing import Any, Optional, TextIO

import structlog
from rich.console import Console
from rich.markup import escape
from rich.theme import Theme

from .security import SecretsMasker

# Custom theme for rich output
custom_theme = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
    "step": "bold magenta",
    "output": "dim",
})

console = Console(theme=custom_theme)

# Plain-text mirror of the console, set by setup_logging()
_file_console: Optional[Console] = None
_log_handle: Optional[TextIO] = None


def _mask_event(_, __, event_dict: dict) -> dict:
    """structlog processor that masks secrets in every string value."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = SecretsMasker.mask_secrets(value)
    return event_dict


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """
    Configure structured logging.

    With a log file, structured events and a plain copy of all console output
    are appended to it.
    """
    global _file_console, _log_handle

    if _log_handle is not None:
        _log_handle.close()
        _log_handle = None
        _file_console = None

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            _log_handle = open(log_file, "a", buffering=1)
        except OSError as e:
            console.print(f"[warning]⚠[/warning] Cannot open log file {log_file}: {e}")
        else:
            _file_console = Console(file=_log_handle, no_color=True, width=200, soft_wrap=True)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        _mask_event,
    ]

    if verbose:
        processors.append(structlog.dev.ConsoleRenderer(colors=_log_handle is None))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(10 if verbose else 20),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=_log_handle or sys.stdout),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance with the given name."""
    return structlog.get_logger(name)


def echo(markup: str, plain: str) -> None:
    """Print to the console and mirror the plain text into the log file."""
    console.print(markup, highlight=False)
    if _file_console is not None:
        _file_console.print(plain, markup=False, highlight=False)


def show(renderable: Any = "") -> None:
    """Print a rich renderable (markup, panel, table) and mirror it without colour."""
    if isinstance(renderable, str):
        renderable = SecretsMasker.mask_secrets(renderable)
    console.print(renderable)
    if _file_console is not None:
        _file_console.print(renderable)


class StepLogger:
    """High-level logger for provisioning steps with rich output."""

    def __init__(self, step_name: str):
        self.step_name = step_name
        self.logger = get_logger(step_name)

    def _line(self, style: str, icon: str, message: str) -> None:
        message = SecretsMasker.mask_secrets(message)
        echo(
            f"[{style}]{icon}[/{style}] [{escape(self.step_name)}] {escape(message)}",
            f"{icon} [{self.step_name}] {message}",
        )

    def step(self, message: str, step_num: int = None) -> None:
        """Log a step in the sequence."""
        prefix = f"[Step {step_num}]" if step_num else "[→]"
        self._line("step", prefix, message)
        self.logger.info(message, step=step_num)

    def success(self, message: str) -> None:
        """Log a success message."""
        self._line("success", "✓", message)
        self.logger.info(message, status="success")

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self._line("warning", "⚠", message)
        self.logger.warning(message)

    def error(self, message: str, exc: Exception = None) -> None:
        """Log an error message."""
        self._line("error", "✗", message)
        self.logger.error(message, exc_info=exc)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log an info message."""
        self._line("info", "ℹ", message)
        self.logger.info(message, **kwargs)

    def output(self, line: str) -> None:
        """Echo one line of subprocess output."""
        line = SecretsMasker.mask_secrets(line.rstrip("\n"))
        echo(f"[output]  │ {escape(line)}[/output]", f"  | {line}")

    def block(self, title: str, text: str) -> None:
        """Dump a multi-line diagnostic block (listings, configs, status output)."""
        self._line("warning", "▼", title)
        for line in (text or "").splitlines():
            self.output(line)

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log a debug message."""
        self.logger.debug(SecretsMasker.mask_secrets(message), **kwargs)
