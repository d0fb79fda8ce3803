"""
Custom Log Handlers for chatdesk.

Size-rotated JSONL file output for the structured log streams.
"""

import json
import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path


class JSONLRotatingHandler(RotatingFileHandler):
    """
    Rotating file handler that writes one JSON object per line.

    Messages produced by a log entry's to_json() are written unchanged;
    anything else is wrapped with timestamp, level and logger name.
    """

    def __init__(
        self,
        filename: str | Path,
        max_bytes: int = 10_000_000,
        backup_count: int = 5,
    ):
        filepath = Path(filename)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(
            str(filepath),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
            delay=True,
        )

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            try:
                data = json.loads(msg)
                if not isinstance(data, dict):
                    raise ValueError("not an object")
            except ValueError:
                data = {
                    "timestamp": datetime.fromtimestamp(record.created).isoformat(),
                    "level": record.levelname,
                    "message": msg,
                    "logger": record.name,
                }
            if self.shouldRollover(record):
                self.doRollover()
            if self.stream is None:
                self.stream = self._open()
            self.stream.write(json.dumps(data, default=str) + "\n")
            self.flush()
        except Exception:
            # Logging must never break the chat runtime.
            self.handleError(record)


class PassthroughFormatter(logging.Formatter):
    """Return the message unchanged; entries are already JSON."""

    def format(self, record: logging.LogRecord) -> str:
        return record.getMessage()


def create_jsonl_logger(
    name: str,
    filepath: Path,
    level: str = "INFO",
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Create a logger configured for JSONL output.

    Args:
        name: Logger name
        filepath: Path to log file
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        max_bytes: Max file size before rotation
        backup_count: Number of backup files

    Returns:
        Configured logger that does not propagate to the root logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handler = JSONLRotatingHandler(filepath, max_bytes=max_bytes, backup_count=backup_count)
    handler.setFormatter(PassthroughFormatter())
    logger.addHandler(handler)
    logger.propagate = False

    return logger
