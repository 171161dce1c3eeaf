import logging
import os
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Optional

from .utils.time_utils import resolve_tz

_CONFIGURED = False
_FULL_ENABLED = False

LOG_DIR = "logs"
LOG_PATTERN = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S%z"

# Third-party loggers held at WARNING unless LIB_LOG_LEVEL says otherwise
NOISY_LIBRARIES = (
    "httpx",
    "httpcore",
    "websockets",
    "websockets.client",
    "asyncio",
)


class _ZonedFormatter(logging.Formatter):
    """Timestamps in the bot's configured zone rather than the host's."""

    def __init__(self, fmt: str, datefmt: Optional[str] = None, tz: Optional[str] = None):
        super().__init__(fmt, datefmt=datefmt)
        self._tz = resolve_tz(tz)

    def formatTime(self, record, datefmt=None):
        stamp = datetime.fromtimestamp(record.created, tz=self._tz)
        return stamp.strftime(datefmt) if datefmt else stamp.isoformat()


def _flag(value) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _file_handler(name: str, level: int, formatter: logging.Formatter) -> Optional[logging.Handler]:
    path = os.path.join(LOG_DIR, name)
    try:
        os.makedirs(LOG_DIR, exist_ok=True)
        # ~1MB per file, 5 generations
        handler = RotatingFileHandler(path, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as e:
        logging.getLogger("logger_factory").warning(f"[log-file-unavailable] path=\"{path}\" error=\"{e}\"")
        return None
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    level: Optional[str] = None,
    tz: Optional[str] = None,
    lib_log_level: Optional[str] = None,
    console_to_file: bool | None = None,
    error_file: bool | None = None,
) -> None:
    """Set up the root logger once per process.

    ``level`` is INFO, DEBUG or FULL (DEBUG plus reply payloads). The console
    can be mirrored to ``logs/log.log`` and errors copied to ``logs/errors.log``;
    the LOG_CONSOLE / LOG_ERRORS environment variables override the arguments.
    """
    global _CONFIGURED, _FULL_ENABLED
    if _CONFIGURED:
        return
    name = (level or "INFO").upper()
    if name not in ("INFO", "DEBUG", "FULL"):
        name = "INFO"
    _FULL_ENABLED = name == "FULL"
    py_level = logging.INFO if name == "INFO" else logging.DEBUG

    root = logging.getLogger()
    root.setLevel(py_level)
    for h in list(root.handlers):
        root.removeHandler(h)

    formatter = _ZonedFormatter(LOG_PATTERN, datefmt=LOG_DATEFMT, tz=tz)
    console = logging.StreamHandler()
    console.setLevel(py_level)
    console.setFormatter(formatter)
    handlers = [console]

    mirror = _flag(os.environ["LOG_CONSOLE"]) if "LOG_CONSOLE" in os.environ else bool(console_to_file)
    if mirror:
        handlers.append(_file_handler("log.log", py_level, formatter))
    errors = bool(error_file) if error_file is not None else _flag(os.getenv("LOG_ERRORS", ""))
    if errors:
        handlers.append(_file_handler("errors.log", logging.ERROR, formatter))
    for h in handlers:
        if h is not None:
            root.addHandler(h)

    lib_name = lib_log_level or os.getenv("LIB_LOG_LEVEL") or "WARNING"
    lib_level = getattr(logging, lib_name.upper(), logging.WARNING)
    for lib in NOISY_LIBRARIES:
        logging.getLogger(lib).setLevel(lib_level)

    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    # Unconfigured (tests, library use): INFO with TZ from the environment
    if not _CONFIGURED:
        configure_logging(level=os.getenv("LOG_LEVEL", "INFO"), tz=os.getenv("TZ") or None)
    return logging.getLogger(name)


def is_full_enabled() -> bool:
    return _FULL_ENABLED
