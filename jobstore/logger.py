"""
Structured logging for the job store.

Provides centralized logging with console and file outputs and metrics
tracking for transaction commits.
"""

import logging
import sys
from pathlib import Path
from typing import Optional
from datetime import datetime
import json


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks commit metrics for monitoring storage health.
    """

    def __init__(
        self,
        name: str = "jobstore",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = False,
        enable_console: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: logs/)
            enable_file: Write logs to file
            enable_console: Output logs to console
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.handlers.clear()

        self.metrics = {
            "commits": 0,
            "commits_failed": 0,
            "actions_applied": 0,
            "rows": {"inserted": 0, "updated": 0, "deleted": 0},
            "errors_by_type": {},
        }

        if enable_console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        if enable_file:
            if log_dir is None:
                log_dir = Path("logs")
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"jobstore_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)  # Always log everything to file
            file_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

    def debug(self, message: str, **kwargs):
        """Log debug message with optional context."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with optional context."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional context."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with optional context."""
        self._log(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        """Log critical message with optional context."""
        self._log(logging.CRITICAL, message, kwargs)

    def _log(self, level: int, message: str, context: dict):
        if not self.logger.isEnabledFor(level):
            return
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, message)

    # Metric tracking methods

    def record_commit(self, actions: int, rows: dict):
        """Record a successful commit and the rows it wrote."""
        self.metrics["commits"] += 1
        self.metrics["actions_applied"] += actions
        for kind in ("inserted", "updated", "deleted"):
            self.metrics["rows"][kind] += rows.get(kind, 0)

    def record_commit_failure(self, error_type: str):
        """Record a rolled back commit."""
        self.metrics["commits_failed"] += 1

        if error_type not in self.metrics["errors_by_type"]:
            self.metrics["errors_by_type"][error_type] = 0
        self.metrics["errors_by_type"][error_type] += 1

    def get_metrics(self) -> dict:
        """Return current metrics."""
        metrics_copy = dict(self.metrics)
        metrics_copy["rows"] = dict(self.metrics["rows"])
        metrics_copy["errors_by_type"] = dict(self.metrics["errors_by_type"])

        attempts = metrics_copy["commits"] + metrics_copy["commits_failed"]
        metrics_copy["success_rate"] = (
            round(metrics_copy["commits"] / attempts, 3) if attempts else 0
        )
        return metrics_copy

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()
        attempts = metrics["commits"] + metrics["commits_failed"]

        self.info("=== Storage Session Metrics ===")
        self.info(
            f"Commits: {metrics['commits']}/{attempts} "
            f"({metrics['success_rate'] * 100:.1f}% success)"
        )
        self.info(f"Actions applied: {metrics['actions_applied']}")
        rows = metrics["rows"]
        self.info(
            f"Rows: {rows['inserted']} inserted, {rows['updated']} updated, "
            f"{rows['deleted']} deleted"
        )

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "jobstore",
    level: str = "INFO",
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
