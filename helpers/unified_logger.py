"""
Unified logging for sysproxy

Provides consistent, colored logging across all components:
- Discovery (platform proxy stores)
- Installer (process-wide policy)
- Authenticator (credential hook)
- Networking bindings (urllib, httpx)

Based on loguru with component-specific context.
"""

import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger as _logger


class UnifiedLogger:
    """
    Unified logger that provides consistent formatting across all components.

    Features:
    - Colored console output with source location (module:function:line)
    - Component-specific context (discovery, installer, etc.)
    - Optional history file when SYSPROXY_LOG_DIR is set
    """

    def __init__(
        self,
        component_type: str,  # "core", "binding", "cli"
        component_name: str,  # "discovery", "installer", "urllib", etc.
        context: Optional[Dict[str, Any]] = None,
        log_to_console: bool = True,
        log_level: str = "INFO",
    ):
        """
        Initialize unified logger.

        Args:
            component_type: Type of component (core, binding, cli)
            component_name: Name of specific component
            context: Additional context bound into every record
            log_to_console: Whether to log to console
            log_level: Minimum console log level
        """
        self.component_type = component_type.upper()
        self.component_name = component_name.upper()
        self.context = context or {}
        self.log_level = log_level.upper()
        self.log_to_console = log_to_console

        self.component_id = f"{self.component_type}:{self.component_name}"
        if self.context:
            context_str = ":".join([f"{k}={v}" for k, v in self.context.items()])
            self.component_id = f"{self.component_id}:{context_str}"

        self._setup_logger(log_to_console)

    def _setup_logger(self, log_to_console: bool):
        """Setup loguru sinks shared by every component (once per process)."""

        if log_to_console and not hasattr(_logger, "_sysproxy_console_setup"):
            # Drop loguru's default stderr handler so records are not printed twice.
            try:
                _logger.remove(0)
            except ValueError:
                pass

            def format_record(record):
                module_name = record.get("module") or record.get("name", "")
                function_name = record.get("function", "")
                line_number = record.get("line", 0)
                source_location = f"{module_name}:{function_name}:{line_number}"
                max_width = 40
                if len(source_location) > max_width:
                    source_location = f"...{source_location[-(max_width - 3):]}"
                record["extra"]["short_name"] = f"{source_location:>{max_width}}"
                return True

            console_format = (
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{extra[short_name]}</cyan> | "
                "<level>{message}</level>"
            )

            _logger.add(
                sys.stderr,
                format=console_format,
                level=self.log_level,
                colorize=True,
                filter=lambda record: bool(record["extra"].get("component_id")) and format_record(record),
                backtrace=True,
                diagnose=False,
            )
            _logger._sysproxy_console_setup = True

        log_dir = os.getenv("SYSPROXY_LOG_DIR")
        if log_dir and not hasattr(_logger, "_sysproxy_history_setup"):
            logs_dir = Path(log_dir)
            logs_dir.mkdir(parents=True, exist_ok=True)
            history_file = logs_dir / "sysproxy_history.log"

            history_format = (
                "{time:YYYY-MM-DD HH:mm:ss} | "
                "{level:<8} | "
                "{extra[component_id]:<28} | "
                "{message}"
            )

            _logger.add(
                str(history_file),
                format=history_format,
                level="DEBUG",
                filter=lambda record: "component_id" in record["extra"],
                backtrace=False,
                diagnose=False,
                enqueue=True,  # Thread-safe writes from network worker threads
                catch=True,
            )
            _logger._sysproxy_history_setup = True

        # Bind component context to all log records
        self._logger = _logger.bind(component_id=self.component_id)

    def debug(self, message: str, **kwargs):
        """Log debug message."""
        self._logger.opt(depth=1).debug(message, **kwargs)

    def info(self, message: str, **kwargs):
        """Log info message."""
        self._logger.opt(depth=1).info(message, **kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message."""
        self._logger.opt(depth=1).warning(message, **kwargs)

    def error(self, message: str, **kwargs):
        """Log error message."""
        self._logger.opt(depth=1).error(message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log error message with the active exception's traceback."""
        self._logger.opt(depth=1, exception=True).error(message, **kwargs)


def get_logger(
    component_type: str,
    component_name: str,
    context: Optional[Dict[str, Any]] = None,
    log_to_console: bool = True,
    log_level: Optional[str] = None,
) -> UnifiedLogger:
    """
    Factory function to create unified loggers.

    Args:
        component_type: Type of component (core, binding, cli)
        component_name: Name of specific component
        context: Additional context
        log_to_console: Whether to log to console
        log_level: Log level (defaults to env LOG_LEVEL or INFO)

    Examples:
        logger = get_logger("core", "discovery")
        logger = get_logger("binding", "httpx", {"client": "async"})
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")

    return UnifiedLogger(
        component_type=component_type,
        component_name=component_name,
        context=context,
        log_to_console=log_to_console,
        log_level=log_level,
    )


def get_core_logger(module_name: str, **context) -> UnifiedLogger:
    """Get logger for core proxy components."""
    return get_logger("core", module_name, context)


def get_binding_logger(binding_name: str, **context) -> UnifiedLogger:
    """Get logger for networking-stack bindings."""
    return get_logger("binding", binding_name, context)


def set_console_level(level: str) -> None:
    """Re-create the console sink at a new minimum level (used by the CLI)."""
    if hasattr(_logger, "_sysproxy_console_setup"):
        _logger.remove()
        del _logger._sysproxy_console_setup
        if hasattr(_logger, "_sysproxy_history_setup"):
            del _logger._sysproxy_history_setup
    get_logger("cli", "sysproxy", log_level=level)
