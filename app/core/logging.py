"""JSON logging for the marketplace backend."""
from __future__ import annotations

import logging
from typing import Optional

from pythonjsonlogger import jsonlogger

SERVICE_NAME = "craftmarket-backend"


class ServiceJsonFormatter(jsonlogger.JsonFormatter):
    """Stamps every record with the service name and its level."""

    def add_fields(self, log_record, record, message_dict) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault("service", SERVICE_NAME)
        log_record["level"] = record.levelname


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging with a JSON formatter."""

    root_logger = logging.getLogger()
    # Remove existing handlers to avoid duplicate logs when reloading.
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(level.upper())

    handler = logging.StreamHandler()
    handler.setFormatter(ServiceJsonFormatter("%(asctime)s %(name)s %(message)s"))
    root_logger.addHandler(handler)


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level.upper())
    return logger


__all__ = ["SERVICE_NAME", "ServiceJsonFormatter", "setup_logging", "get_logger"]
