import logging
import os
import time
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler

from kidledger.core.config import GetEnv

_RequestIdContext: ContextVar[str] = ContextVar("ledger_request_id", default="-")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s"
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "alembic.runtime.migration")


def BindRequestId(request_id: str):
    return _RequestIdContext.set(request_id)


def ResetRequestId(token) -> None:
    _RequestIdContext.reset(token)


def CurrentRequestId() -> str:
    return _RequestIdContext.get()


class RequestIdFilter(logging.Filter):
    """Stamps every record with the id of the request being served."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _RequestIdContext.get()
        return True


class LocalTimeFormatter(logging.Formatter):
    converter = time.localtime


def _BuildFileHandler(path: str, formatter: logging.Formatter) -> RotatingFileHandler:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    handler = RotatingFileHandler(
        path,
        maxBytes=int(GetEnv("LOG_MAX_BYTES", "5000000")),
        backupCount=int(GetEnv("LOG_BACKUP_COUNT", "5")),
    )
    handler.setFormatter(formatter)
    return handler


def setup_logging(level: str | None = None, log_file_path: str | None = None) -> None:
    resolved_level = (level or GetEnv("LOG_LEVEL", "INFO")).upper()
    # An empty LOG_FILE_PATH keeps output on the console.
    resolved_path = log_file_path if log_file_path is not None else os.getenv("LOG_FILE_PATH", "")

    formatter = LocalTimeFormatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    request_filter = RequestIdFilter()

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if resolved_path:
        handlers.append(_BuildFileHandler(resolved_path, formatter))

    root_logger = logging.getLogger()
    root_logger.setLevel(resolved_level)
    root_logger.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(request_filter)
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        noisy = logging.getLogger(name)
        noisy.handlers.clear()
        if resolved_level != "DEBUG":
            noisy.setLevel(logging.WARNING)
