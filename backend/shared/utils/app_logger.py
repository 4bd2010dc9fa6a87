"""
Logging utilities for the fulfillment workers
Centralized logging configuration for all worker processes
"""

import logging
import sys

from pythonjsonlogger.json import JsonFormatter

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def build_formatter(fmt: str) -> logging.Formatter:
    """"json" gives one JSON object per line; anything else the text format."""
    if (fmt or "").strip().lower() == "json":
        return JsonFormatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        )
    return logging.Formatter(LOG_FORMAT)


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """
    Configure global logging settings for a worker process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        fmt: "text" for the human format, "json" for one JSON object per line
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.root.setLevel(log_level)

    # Only add handler if no handlers exist (avoid duplicate handlers)
    if not logging.root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(log_level)
        handler.setFormatter(build_formatter(fmt))
        logging.root.addHandler(handler)

    # librdkafka chatter is routed through the confluent_kafka logger
    logging.getLogger("confluent_kafka").setLevel(max(log_level, logging.WARNING))
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))
