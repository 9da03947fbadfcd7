"""Logging setup for mailstream.

The library itself only creates loggers below ``mailstream``. Handlers are
installed by applications through :func:`init_logging`, or per client through
:class:`DebugLogging` when a client is configured with debug output.
"""

import json
import logging
import re
import time
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, MutableMapping, Optional

from rich.logging import RichHandler

ROOT_LOGGER_NAME = "mailstream"
AIOIMAPLIB_LOGGER_NAME = "aioimaplib"

REDACTED = "[REDACTED]"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 5

# Attributes every LogRecord carries; anything else came from ``extra=``
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime"}


def record_extra(record: logging.LogRecord) -> Dict[str, Any]:
    """Return the ``extra=`` values attached to a log record."""
    return {
        name: value
        for name, value in vars(record).items()
        if name not in _STANDARD_ATTRS and not name.startswith("_")
    }


## Formatting


class JSONFormatter(logging.Formatter):
    """One JSON object per line, used for the rotating log file."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "where": f"{record.funcName}:{record.lineno}",
            "message": record.getMessage(),
        }

        context = record_extra(record)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class ContextAdapter(logging.LoggerAdapter):
    """Merges fixed context into the ``extra`` of every call."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


## Redaction


class SensitiveDataMasker:
    """Hides credentials and obscures addresses before records are written."""

    SENSITIVE_FIELDS = frozenset(
        {
            "password",
            "passwd",
            "pwd",
            "secret",
            "token",
            "access_token",
            "authorization",
            "credential",
        }
    )

    # ``password=...``, ``"token": "..."`` and similar
    _ASSIGNMENT = re.compile(
        r"""\b(password|passwd|pwd|secret|token|access_token)(["']?\s*[:=]\s*["']?)([^\s"'},]+)""",
        re.IGNORECASE,
    )
    _ADDRESS = re.compile(r"\b([\w.%+-]+)@([\w-]+(?:\.[\w-]+)*\.[a-z]{2,})\b", re.IGNORECASE)

    def is_sensitive(self, key: str) -> bool:
        return key.lower() in self.SENSITIVE_FIELDS

    def mask_string(self, text: str) -> str:
        if not isinstance(text, str) or not text:
            return text
        text = self._ASSIGNMENT.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", text)
        return self._ADDRESS.sub(self._obscure_address, text)

    def mask_value(self, key: str, value: Any) -> Any:
        if self.is_sensitive(key):
            return REDACTED
        if isinstance(value, str):
            return self.mask_string(value)
        if isinstance(value, dict):
            return self.mask_dict(value)
        return value

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {key: self.mask_value(key, value) for key, value in data.items()}

    @staticmethod
    def _obscure_address(match: "re.Match[str]") -> str:
        local, domain = match.group(1), match.group(2)
        return f"{local[:1]}***@{domain[:1]}***"


class SensitiveDataFilter(logging.Filter):
    """Applies :class:`SensitiveDataMasker` to the message and its extras."""

    def __init__(self, masker: Optional[SensitiveDataMasker] = None):
        super().__init__()
        self.masker = masker or SensitiveDataMasker()

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self.masker.mask_string(record.msg)
        for key, value in record_extra(record).items():
            setattr(record, key, self.masker.mask_value(key, value))
        return True


class CallbackHandler(logging.Handler):
    """Forwards log records to a user supplied ``sink(message, extra)``."""

    def __init__(self, sink: Callable[..., Any], level: int = logging.DEBUG):
        super().__init__(level)
        self.sink = sink

    def emit(self, record: logging.LogRecord) -> None:
        try:
            extra = record_extra(record)
            if extra:
                self.sink(record.getMessage(), extra)
            else:
                self.sink(record.getMessage())
        except Exception:
            self.handleError(record)


## Application level configuration


class LogManager:
    """Owns the handlers installed on the ``mailstream`` logger."""

    def __init__(self, log_level: str = "WARNING", log_file: Optional[Path] = None):
        self.root_logger = logging.getLogger(ROOT_LOGGER_NAME)
        self.sensitive_filter = SensitiveDataFilter()
        self.console_handler = self._console_handler()
        self.file_handler = self._file_handler(log_file) if log_file else None

        self.root_logger.handlers.clear()
        self.root_logger.addHandler(self.console_handler)
        if self.file_handler is not None:
            self.root_logger.addHandler(self.file_handler)

        self.set_level(log_level)

    def _console_handler(self) -> logging.Handler:
        handler = RichHandler(show_path=False, markup=False, rich_tracebacks=True)
        handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
        handler.addFilter(self.sensitive_filter)
        return handler

    def _file_handler(self, log_file: Path) -> logging.Handler:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_file,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
        # The file keeps everything the logger lets through
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(JSONFormatter())
        handler.addFilter(self.sensitive_filter)
        return handler

    @staticmethod
    def parse_level(level: str) -> int:
        value = logging.getLevelName(level.upper())
        if not isinstance(value, int):
            raise ValueError(f"Invalid logging level: {level}")
        return value

    def set_level(self, level: str) -> None:
        self.log_level = self.parse_level(level)
        self.root_logger.setLevel(self.log_level)
        self.console_handler.setLevel(self.log_level)


_log_manager: Optional[LogManager] = None


def init_logging(log_level: str = "WARNING", log_file: Optional[Path] = None) -> LogManager:
    """Install console (and optional file) handlers on the ``mailstream`` logger.

    Calling it again only changes the level.
    """
    global _log_manager

    if _log_manager is None:
        _log_manager = LogManager(log_level, log_file)
    else:
        _log_manager.set_level(log_level)
    return _log_manager


def get_logger(name: Optional[str] = None, **context) -> logging.Logger | ContextAdapter:
    """Return a logger below ``mailstream``, wrapped when context is given."""
    if not name:
        name = ROOT_LOGGER_NAME
    elif name != ROOT_LOGGER_NAME and not name.startswith(f"{ROOT_LOGGER_NAME}."):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    logger = logging.getLogger(name)
    return ContextAdapter(logger, context) if context else logger


def async_log_call(func):
    """Log entry, exit and elapsed time of a coroutine function at DEBUG."""
    logger = logging.getLogger(func.__module__)
    label = func.__qualname__

    @wraps(func)
    async def wrapper(*args, **kwargs):
        started = time.perf_counter()
        logger.debug("call %s", label)
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            logger.debug(
                "%s raised %s after %.3fs", label, type(e).__name__, time.perf_counter() - started
            )
            raise
        logger.debug("%s returned after %.3fs", label, time.perf_counter() - started)
        return result

    return wrapper


## Per-client debug output


class DebugLogging:
    """Applies a client's debug options to the logging tree and undoes them."""

    def __init__(
        self,
        enabled: bool = False,
        sink: Optional[Callable[..., Any]] = None,
        connection_debug: bool = False,
    ):
        self.enabled = enabled
        self.sink = sink
        self.connection_debug = connection_debug
        self._installed: list[tuple[logging.Logger, logging.Handler, int]] = []

    def install(self) -> None:
        if not self.enabled or self._installed:
            return

        handler: logging.Handler
        if self.sink is not None:
            handler = CallbackHandler(self.sink)
        else:
            handler = RichHandler(show_path=False, markup=False)
        handler.addFilter(SensitiveDataFilter())

        targets = [logging.getLogger(ROOT_LOGGER_NAME)]
        if self.connection_debug:
            targets.append(logging.getLogger(AIOIMAPLIB_LOGGER_NAME))

        for target in targets:
            self._installed.append((target, handler, target.level))
            target.addHandler(handler)
            target.setLevel(logging.DEBUG)

    def uninstall(self) -> None:
        while self._installed:
            target, handler, level = self._installed.pop()
            target.removeHandler(handler)
            target.setLevel(level)
