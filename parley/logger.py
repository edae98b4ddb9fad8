import logging
import sys
from logging import Logger
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from parley.settings import LOG_LEVEL, ENABLE_CONSOLE_LOG, LOG_TO_FILE


class SafeStreamHandler(logging.StreamHandler):
    """
    A StreamHandler that suppresses BlockingIOError during stdout congestion.

    Heartbeat and per-envelope tracing can be chatty; when stdout blocks, the
    record is dropped instead of raising inside a timer callback.

    Example:
        logger = logging.getLogger("parley")
        handler = SafeStreamHandler(sys.stdout)
        logger.addHandler(handler)
    """
    def emit(self, record):
        try:
            super().emit(record)
        except BlockingIOError:
            # Message is dropped, but the engine keeps running.
            pass


# Log formatting style
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FORMAT_CONSOLE = "\033[92m%(asctime)s\033[0m - \033[94m%(name)s\033[0m - %(levelname)s - %(message)s"

DEFAULT_MAX_BYTES = 1_000_000
DEFAULT_BACKUP_COUNT = 3


def _resolve_level(level: Any, default: int = logging.INFO) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        return getattr(logging, level.upper(), default)
    return default


def get_logger(name: str) -> Logger:
    """
    Return a bare logger: no handlers are attached here.

    Component loggers are children of the engine logger (e.g. "peer.heartbeat"),
    so configuring the parent with `configure_logger` is enough for all of them.
    """
    return logging.getLogger(name)


def configure_logger(logger: Logger, cfg: Optional[dict[str, Any]] = None) -> Logger:
    """
    Attach handlers to `logger` according to `cfg`.

    Recognized keys (all optional, environment settings are the fallback):
        log_level           "DEBUG" | "INFO" | ... or a logging constant
        enable_console_log  bool
        log_file_path       str path; when set, a rotating file handler is added
        max_bytes           rotation threshold for the file handler
        backup_count        rotated files kept

    Calling it again replaces the handlers added by a previous call.
    """
    cfg = cfg or {}

    logger.setLevel(_resolve_level(cfg.get("log_level", LOG_LEVEL)))

    # Drop handlers from an earlier configuration
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if cfg.get("enable_console_log", ENABLE_CONSOLE_LOG):
        console_handler = SafeStreamHandler(sys.stdout)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT_CONSOLE))
        logger.addHandler(console_handler)

    log_file_path = cfg.get("log_file_path")
    if isinstance(log_file_path, str) and log_file_path:
        file_handler = RotatingFileHandler(
            log_file_path,
            maxBytes=int(cfg.get("max_bytes", DEFAULT_MAX_BYTES)),
            backupCount=int(cfg.get("backup_count", DEFAULT_BACKUP_COUNT)),
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    return logger


def setup_logger(name: str) -> Logger:
    # Get or create a logger instance with the given name
    logger = logging.getLogger(name)

    # Prevent adding duplicate handlers if logger was already set up
    if logger.handlers:
        return logger

    cfg: dict[str, Any] = {"log_level": LOG_LEVEL, "enable_console_log": ENABLE_CONSOLE_LOG}

    if LOG_TO_FILE:
        # Replace dots in logger name to create a safe filename
        # e.g. "peer.router" becomes "peer_router.log"
        cfg["log_file_path"] = f"{name.replace('.', '_')}.log"

    return configure_logger(logger, cfg)


__all__ = [
    "Logger",
    "SafeStreamHandler",
    "get_logger",
    "configure_logger",
    "setup_logger",
]
