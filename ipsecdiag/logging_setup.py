from __future__ import annotations

import contextlib
import contextvars
import logging
import os
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

DEFAULT_LOG_FILE = "logs/ipsecdiag.log"
DEFAULT_CATEGORY = "CONFIG"
CATEGORIES = {
    "CLUSTER",
    "CAPTURE",
    "XFRM",
    "RETIS",
    "TRANSFER",
    "FILES",
    "VERIFY",
    "PERF",
    "CONFIG",
    "ERRORS",
}

# Threads do not inherit context; capture jobs are subprocesses, so the poll loop keeps it.
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


@contextlib.contextmanager
def category_context(category: str) -> Iterator[None]:
    token = _category_var.set(category if category in CATEGORIES else DEFAULT_CATEGORY)
    try:
        yield
    finally:
        _category_var.reset(token)


class ContextEnricherFilter(logging.Filter):
    """
    Ensures every LogRecord has:
      - category
      - correlation_id
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if not hasattr(record, "category") or not getattr(record, "category"):
            record.category = get_category()
        if not hasattr(record, "correlation_id") or not getattr(record, "correlation_id"):
            record.correlation_id = get_correlation_id()
        return True


class CategoryLoggerAdapter(logging.LoggerAdapter):
    def __init__(self, logger: logging.Logger, category: str) -> None:
        super().__init__(logger, extra={"category": category})

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        if "category" not in extra:
            extra["category"] = self.extra.get("category") or get_category()
        if "correlation_id" not in extra:
            extra["correlation_id"] = get_correlation_id()
        kwargs["extra"] = extra
        return msg, kwargs


def _level_from_env(name: str, default: str) -> int:
    level_name = os.environ.get(name, default).upper()
    return getattr(logging, level_name, getattr(logging, default))


def setup_logging() -> None:
    """
    Central logging setup.

    Format (mandatory):
      %(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s |
      %(filename)s:%(lineno)d %(funcName)s() | %(message)s

    The console handler defaults to WARNING: user-facing progress is printed by the CLI,
    the full trail goes to the rotating log file.
    """
    fmt = (
        "%(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s | "
        "%(filename)s:%(lineno)d %(funcName)s() | %(message)s"
    )
    # Important: do NOT pass datefmt; default includes ",%03d" milliseconds.
    formatter = logging.Formatter(fmt=fmt)

    file_level = _level_from_env("IPSECDIAG_LOG_LEVEL", "INFO")
    console_level = _level_from_env("IPSECDIAG_CONSOLE_LOG_LEVEL", "WARNING")
    external_level = _level_from_env("IPSECDIAG_EXTERNAL_LIB_LOG_LEVEL", "WARNING")

    root_logger = logging.getLogger()

    # Avoid double-installation; still allow runtime level update.
    if getattr(root_logger, "_ipsecdiag_logging_installed", False):
        root_logger.setLevel(min(file_level, console_level))
        for h in root_logger.handlers:
            if isinstance(h, RotatingFileHandler):
                h.setLevel(file_level)
            elif getattr(h, "_ipsecdiag_console", False):
                h.setLevel(console_level)
        logging.getLogger("scapy").setLevel(external_level)
        return
    root_logger.setLevel(min(file_level, console_level))

    enricher = ContextEnricherFilter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(console_level)
    console_handler.addFilter(enricher)
    console_handler._ipsecdiag_console = True  # type: ignore[attr-defined]
    root_logger.addHandler(console_handler)

    log_file = os.environ.get("IPSECDIAG_LOG_FILE", DEFAULT_LOG_FILE).strip()
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=10 * 1024 * 1024,
            backupCount=10,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(file_level)
        file_handler.addFilter(enricher)
        root_logger.addHandler(file_handler)

    for noisy in ("scapy", "scapy.runtime", "scapy.loading"):
        logging.getLogger(noisy).setLevel(external_level)
    root_logger._ipsecdiag_logging_installed = True  # type: ignore[attr-defined]


def get_logger(name: str, category: str = DEFAULT_CATEGORY) -> CategoryLoggerAdapter:
    return CategoryLoggerAdapter(logging.getLogger(name), category if category in CATEGORIES else DEFAULT_CATEGORY)
