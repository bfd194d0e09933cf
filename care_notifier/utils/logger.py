"""
Logging utility for the notification engine.

Provides structured (JSON) logging with appropriate levels and formats.
"""

import json
import logging
import sys
from datetime import datetime, timezone


class StructuredLogger:
    """Structured logger for engine components."""

    def __init__(self, name: str, level: int = logging.INFO):
        """
        Initialize structured logger.

        Args:
            name: Logger name
            level: Logging level
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)

        # Prevent adding handlers multiple times
        if not self.logger.handlers:
            self._setup_handlers()

    def _setup_handlers(self):
        """Set up logging handlers."""
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.DEBUG)
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

    def _payload(self, level_name: str, message: str, **kwargs) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level_name,
            "message": message,
            "service": self.logger.name,
        }
        log_data.update(kwargs)
        return json.dumps(log_data, default=str)

    def _log_structured(self, level: int, message: str, **kwargs):
        """
        Log a structured message.

        Args:
            level: Logging level
            message: Log message
            **kwargs: Additional structured data
        """
        if self.logger.isEnabledFor(level):
            self.logger.log(level, self._payload(logging.getLevelName(level), message, **kwargs))

    def debug(self, message: str, **kwargs):
        """Log debug message."""
        self._log_structured(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        """Log info message."""
        self._log_structured(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message."""
        self._log_structured(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        """Log error message."""
        self._log_structured(logging.ERROR, message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log exception with traceback."""
        if self.logger.isEnabledFor(logging.ERROR):
            self.logger.exception(self._payload("ERROR", message, exception=True, **kwargs))


def get_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger for the given component.

    Args:
        name: Component name (e.g. "notification-engine")

    Returns:
        StructuredLogger instance
    """
    return StructuredLogger(name)


def configure_logging(level: str = "INFO"):
    """Configure root logging for the service process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
