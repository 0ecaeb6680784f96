from __future__ import annotations
from pathlib import Path
import logging, os, sys, threading
from logging.handlers import RotatingFileHandler

__all__ = ["setup_logger", "set_level", "get_log_file_path"]


def _log_dir() -> Path:
    override = os.environ.get("PACKAGE_CONSOLE_LOG_DIR")
    if override:
        return Path(override).expanduser()
    return Path(os.environ.get("HOME") or Path.home()) / ".config" / "Package Console" / "logs"


_LOG_FILE = _log_dir() / "package_console.log"


def _level_from_env(raw: str) -> int:
    if not raw:
        return logging.INFO
    level = logging.getLevelName(raw.upper())
    if isinstance(level, int):
        return level
    print(f"[logging_config] WARNING: unknown LOG_LEVEL '{raw}', defaulting to INFO", file=sys.stderr, flush=True)
    return logging.INFO


_LEVEL = _level_from_env(os.environ.get("LOG_LEVEL", ""))

_FORMATTER = logging.Formatter(
    fmt="%(asctime)s  %(levelname)-8s  %(threadName)s  %(name)s  -  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

_lock = threading.Lock()
_file_handler: RotatingFileHandler | None = None
_file_handler_failed = False
_console_handlers: list[logging.StreamHandler] = []


def _shared_file_handler() -> RotatingFileHandler | None:
    """One rotating file for every module; console-only when the directory is not writable."""
    global _file_handler, _file_handler_failed
    with _lock:
        if _file_handler is None and not _file_handler_failed:
            try:
                _LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
                _file_handler = RotatingFileHandler(_LOG_FILE, maxBytes=2 * 1024 * 1024, backupCount=5,
                                                    encoding="utf-8")
                _file_handler.setFormatter(_FORMATTER)
                _file_handler.setLevel(logging.DEBUG)
            except OSError as exc:
                _file_handler_failed = True
                print(f"[logging_config] WARNING: could not open {_LOG_FILE}: {exc}", file=sys.stderr, flush=True)
        return _file_handler


def setup_logger(name: str, level: int | None = None) -> logging.Logger:
    level = _LEVEL if level is None else level
    # Console output goes to stderr; stdout belongs to the command output of the CLI.
    logger = logging.getLogger(name)
    if not any(getattr(h, "_console", False) for h in logger.handlers):
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(_FORMATTER)
        console.setLevel(level)
        console._console = True
        logger.addHandler(console)
        with _lock:
            _console_handlers.append(console)

    file_handler = _shared_file_handler()
    if file_handler is not None and file_handler not in logger.handlers:
        logger.addHandler(file_handler)

    logger.setLevel(min(level, logging.DEBUG) if file_handler else level)
    logger.propagate = False
    return logger


def set_level(level: int) -> None:
    """Change the console level of every logger created so far (``--verbose``/``--quiet``)."""
    global _LEVEL
    _LEVEL = level
    with _lock:
        handlers = list(_console_handlers)
    for handler in handlers:
        handler.setLevel(level)


def get_log_file_path() -> Path:
    return _LOG_FILE
