"""Logging setup: plain text by default, JSON lines with --log-json."""
import logging
import sys
from typing import Any

from pythonjsonlogger import jsonlogger


class RunContextFilter(logging.Filter):
    """Add run/job context fields to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "run_id"):
            record.run_id = None
        if not hasattr(record, "job"):
            record.job = None
        return True


class StageciJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("timestamp"):
            log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        if getattr(record, "run_id", None):
            log_record["run_id"] = record.run_id
        if getattr(record, "job", None):
            log_record["job"] = record.job


def setup_logging(level: str = "WARNING", json_format: bool = False) -> None:
    """Configure the root logger. Logs go to stderr; console output owns stdout."""
    handler = logging.StreamHandler(sys.stderr)
    if json_format:
        formatter: logging.Formatter = StageciJsonFormatter(
            "%(timestamp)s %(level)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    else:
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    handler.setFormatter(formatter)
    handler.addFilter(RunContextFilter())

    root_logger = logging.getLogger()
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())
