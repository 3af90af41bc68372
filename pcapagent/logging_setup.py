from __future__ import annotations

import contextlib
import contextvars
import logging
import os
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

LOG_FILE = Path("logs/agent.log")
ACCESS_LOG_FILE = Path("logs/access.log")
DEFAULT_CATEGORY = "CONFIG"
CATEGORIES = {
    "CAPTURE",
    "STREAM",
    "DEVICES",
    "HOST",
    "PERF",
    "CONFIG",
    "ERRORS",
}
NOISY_LOGGERS = ("scapy", "scapy.runtime", "redis", "urllib3", "asyncio")

# Propagated automatically within async tasks; threads must re-set explicitly.
_correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="-")
_category_var: contextvars.ContextVar[str] = contextvars.ContextVar("category", default=DEFAULT_CATEGORY)


def short_uuid() -> str:
    return uuid.uuid4().hex[:8]


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_category() -> str:
    return _category_var.get()


@contextlib.contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[None]:
    token = _correlation_id_var.set(correlation_id or short_uuid())
    try:
        yield
    finally:
        _correlation_id_var.reset(token)


class ContextEnricherFilter(logging.Filter):
    """
    Ensures every LogRecord has:
      - category
      - correlation_id
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        category = getattr(record, "category", None)
        if not category or category not in CATEGORIES:
            record.category = get_category()
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


def _level_from_env(name: str, default: str) -> int:
    level_name = os.environ.get(name, default).upper()
    return getattr(logging, level_name, getattr(logging, default))


def setup_logging() -> None:
    """
    Central logging setup.

    Format:
      %(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s |
      %(filename)s:%(lineno)d %(funcName)s() | %(message)s
    """
    level = _level_from_env("PCAPAGENT_LOG_LEVEL", "INFO")
    external_level = _level_from_env("PCAPAGENT_EXTERNAL_LIB_LOG_LEVEL", "WARNING")
    access_level = _level_from_env("PCAPAGENT_ACCESS_LOG_LEVEL", "INFO")

    root_logger = logging.getLogger()

    # Avoid double-installation; still allow runtime level update.
    if getattr(root_logger, "_pcapagent_logging_installed", False):
        root_logger.setLevel(level)
        for h in root_logger.handlers:
            h.setLevel(level)
        logging.getLogger("pcapagent.access").setLevel(access_level)
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(external_level)
        return

    LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
    ACCESS_LOG_FILE.parent.mkdir(parents=True, exist_ok=True)

    fmt = (
        "%(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s | "
        "%(filename)s:%(lineno)d %(funcName)s() | %(message)s"
    )
    # Default datefmt keeps the ",%03d" milliseconds.
    formatter = logging.Formatter(fmt=fmt)
    access_formatter = logging.Formatter(fmt="%(asctime)s | %(levelname)s | %(message)s")

    root_logger.setLevel(level)
    enricher = ContextEnricherFilter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(enricher)

    file_handler = RotatingFileHandler(
        LOG_FILE,
        maxBytes=10 * 1024 * 1024,
        backupCount=10,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.addFilter(enricher)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    access_logger = logging.getLogger("pcapagent.access")
    access_logger.propagate = False
    access_logger.setLevel(access_level)
    access_file_handler = RotatingFileHandler(
        ACCESS_LOG_FILE,
        maxBytes=10 * 1024 * 1024,
        backupCount=10,
        encoding="utf-8",
    )
    access_file_handler.setFormatter(access_formatter)
    access_logger.handlers = [access_file_handler]
    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(external_level)
    root_logger._pcapagent_logging_installed = True  # type: ignore[attr-defined]


def get_access_logger() -> logging.Logger:
    return logging.getLogger("pcapagent.access")
