"""
Logging for the gateway

A single entry point with per-event context tracking.

Quick start:
============

```python
from logger import get_logger, set_request_context, log_execution_time

logger = get_logger("gateway.bridge")

# once per inbound event
set_request_context(account_id="default", conversation_id="oc_123", message_id="om_456")

logger.info("Reply dispatched", extra={"chunks": 2})
logger.error("Send failed", exc_info=True)

with log_execution_time("session store read", logger):
    await store.read_async()
```

Output:
=======
- console: colored, human readable
- file: one JSON object per line (app.log, plus error.log for ERROR and above)
"""
import json
import logging
import os
import sys
import time
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# ============================================================
# Configuration
# ============================================================

_ROOT_NAME = "feishu_gateway"


def _get_log_dir() -> Path:
    """Log directory, resolved through app_paths."""
    try:
        from utils.app_paths import get_logs_dir
        return get_logs_dir()
    except Exception:
        import tempfile
        return Path(tempfile.gettempdir()) / "feishu-gateway" / "logs"


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


LOG_CONFIG = {
    "level": os.getenv("GATEWAY_LOG_LEVEL", "INFO").upper(),
    "console_enabled": True,
    "file_enabled": _env_flag("GATEWAY_LOG_TO_FILE", True),
    "file": None,
    "error_file": None,
    "max_size": 50 * 1024 * 1024,  # 50MB
    "backup_count": 10,
}

# ============================================================
# Context variables (per inbound event)
# ============================================================
_account_id: ContextVar[str] = ContextVar("account_id", default="")
_conversation_id: ContextVar[str] = ContextVar("conversation_id", default="")
_message_id: ContextVar[str] = ContextVar("message_id", default="")


def set_request_context(
    account_id: str = "",
    conversation_id: str = "",
    message_id: str = "",
) -> None:
    """
    Attach event identifiers to every log line emitted in the current task.

    Args:
        account_id: gateway account id
        conversation_id: platform chat id
        message_id: platform message id
    """
    if account_id:
        _account_id.set(account_id)
    if conversation_id:
        _conversation_id.set(conversation_id)
    if message_id:
        _message_id.set(message_id)


def clear_request_context() -> None:
    _account_id.set("")
    _conversation_id.set("")
    _message_id.set("")


@contextmanager
def log_execution_time(operation: str, logger: Optional[logging.Logger] = None):
    """
    Log how long a block took.

    Args:
        operation: label for the log line
        logger: logger to use (defaults to the root gateway logger)
    """
    if logger is None:
        logger = logging.getLogger(_ROOT_NAME)

    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        logger.debug(f"{operation} finished", extra={
            "operation": operation,
            "duration_ms": round(duration_ms, 2),
        })


# ============================================================
# Formatters
# ============================================================

class _ContextFilter(logging.Filter):
    """Copies the context variables onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.account_id = _account_id.get() or "-"
        record.conversation_id = _conversation_id.get() or "-"
        record.message_id = _message_id.get() or "-"
        return True


class _ConsoleFormatter(logging.Formatter):
    """Colored console output."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] [%(account_id)s:%(conversation_id)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
        self.use_colors = sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        if self.use_colors:
            record = logging.makeLogRecord(record.__dict__)
            color = self.COLORS.get(record.levelname, "")
            record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """
    JSON line formatter for file output.

    Example:
    {"ts":"2026-01-01T12:00:00.123+00:00","level":"INFO","account":"default","conv":"oc_1","logger":"gateway.bridge","msg":"Reply dispatched","chunks":2}
    """

    _RESERVED = {
        "name", "msg", "args", "created", "levelname", "levelno",
        "pathname", "filename", "module", "exc_info", "exc_text",
        "stack_info", "lineno", "funcName", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "taskName", "account_id", "conversation_id", "message_id",
    }

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "account": getattr(record, "account_id", "-"),
            "conv": getattr(record, "conversation_id", "-"),
            "msg_id": getattr(record, "message_id", "-"),
            "logger": record.name.replace(f"{_ROOT_NAME}.", ""),
            "file": f"{record.filename}:{record.lineno}",
            "func": record.funcName or "-",
            "msg": record.getMessage(),
        }

        if record.exc_info:
            log["error"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "msg": str(record.exc_info[1]) if record.exc_info[1] else None,
                "trace": "".join(traceback.format_exception(*record.exc_info)).strip(),
            }

        for key, value in record.__dict__.items():
            if key not in self._RESERVED:
                try:
                    json.dumps(value)
                    log[key] = value
                except (TypeError, ValueError):
                    log[key] = str(value)

        return json.dumps(log, ensure_ascii=False, default=str)


# ============================================================
# Logger management
# ============================================================

class _LoggerManager:
    """Configures the gateway logger tree once."""

    _initialized = False
    _loggers: dict[str, logging.Logger] = {}

    @classmethod
    def setup(cls) -> None:
        if cls._initialized:
            return

        root = logging.getLogger(_ROOT_NAME)
        root.setLevel(LOG_CONFIG["level"])
        root.handlers.clear()

        context_filter = _ContextFilter()

        if LOG_CONFIG["console_enabled"]:
            console = logging.StreamHandler(sys.stdout)
            console.setLevel(LOG_CONFIG["level"])
            console.setFormatter(_ConsoleFormatter())
            console.addFilter(context_filter)
            root.addHandler(console)

        if LOG_CONFIG["file_enabled"]:
            from logging.handlers import RotatingFileHandler

            log_dir = _get_log_dir()
            try:
                log_dir.mkdir(parents=True, exist_ok=True)
            except OSError:
                # read-only filesystem
                import tempfile
                log_dir = Path(tempfile.gettempdir()) / "feishu_gateway_logs"
                log_dir.mkdir(parents=True, exist_ok=True)
            LOG_CONFIG["file"] = str(log_dir / "app.log")
            LOG_CONFIG["error_file"] = str(log_dir / "error.log")

            file_handler = RotatingFileHandler(
                LOG_CONFIG["file"],
                maxBytes=LOG_CONFIG["max_size"],
                backupCount=LOG_CONFIG["backup_count"],
                encoding="utf-8",
            )
            file_handler.setLevel(LOG_CONFIG["level"])
            file_handler.setFormatter(_JsonFormatter())
            file_handler.addFilter(context_filter)
            root.addHandler(file_handler)

            error_handler = RotatingFileHandler(
                LOG_CONFIG["error_file"],
                maxBytes=LOG_CONFIG["max_size"],
                backupCount=LOG_CONFIG["backup_count"],
                encoding="utf-8",
            )
            error_handler.setLevel(logging.ERROR)
            error_handler.setFormatter(_JsonFormatter())
            error_handler.addFilter(context_filter)
            root.addHandler(error_handler)

        cls._initialized = True

    @classmethod
    def get(cls, name: str) -> logging.Logger:
        if not cls._initialized:
            cls.setup()

        full_name = f"{_ROOT_NAME}.{name}" if name != _ROOT_NAME else _ROOT_NAME
        if full_name not in cls._loggers:
            cls._loggers[full_name] = logging.getLogger(full_name)

        return cls._loggers[full_name]


# ============================================================
# Public API
# ============================================================

def get_logger(name: str = _ROOT_NAME) -> logging.Logger:
    """
    Get a logger under the gateway namespace.

    Args:
        name: dotted area name, e.g. "gateway.bridge"

    Returns:
        logging.Logger instance
    """
    return _LoggerManager.get(name)

