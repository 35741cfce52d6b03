"""Logging setup: the rotating service log and the tool-output stream.

Every adb/fastboot output line is logged on ``flasher.tool``. The
terminal-log view reads those lines back through a ``ToolLogBuffer``
attached to that logger, and the service log records them tagged with
the run that produced them.
"""

import logging
from collections import deque
from logging.handlers import RotatingFileHandler
from pathlib import Path

TOOL_LOGGER = "flasher.tool"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
RUN_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: [%(run_id)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


class ServiceFormatter(logging.Formatter):
    """ISO-timestamped lines; records logged with ``extra={"run_id": ...}`` carry the id."""

    def __init__(self):
        super().__init__(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
        self._run_style = logging.PercentStyle(RUN_LOG_FORMAT)

    def formatMessage(self, record: logging.LogRecord) -> str:
        if getattr(record, "run_id", None):
            return self._run_style.format(record)
        return super().formatMessage(record)


class ToolLogBuffer(logging.Handler):
    """Keeps the most recent tool output lines, oldest dropped first."""

    def __init__(self, capacity: int = 500):
        super().__init__(level=logging.INFO)
        self.lines: deque[str] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.lines.append(record.getMessage())
        except Exception:
            self.handleError(record)

    def attach(self) -> None:
        tool_logger().addHandler(self)

    def detach(self) -> None:
        tool_logger().removeHandler(self)


def tool_logger() -> logging.Logger:
    """The ``flasher.tool`` logger, at INFO unless configured otherwise."""
    logger = logging.getLogger(TOOL_LOGGER)
    if logger.level == logging.NOTSET:
        logger.setLevel(logging.INFO)
    return logger


def setup_logger(
    name: str = "flasher",
    log_file: str = "./logs/flasher.log",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 3,
    level: int = logging.INFO,
) -> logging.Logger:
    """Install the service log handlers on ``name``.

    Service loggers (``flasher.download``, ``flasher.tool``, ...) propagate
    into the rotating file and the console. Calling it again for the same
    name keeps the existing handlers.

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    tool_logger()
    if logger.handlers:
        return logger

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = ServiceFormatter()

    file_handler = RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    console_handler = logging.StreamHandler()
    for handler in (file_handler, console_handler):
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
