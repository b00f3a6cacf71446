from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Dict, Iterator, Optional, Union


# Request and data-access context attached to every log record
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
db_code_var: ContextVar[Optional[str]] = ContextVar("db_code", default=None)
operation_var: ContextVar[Optional[str]] = ContextVar("db_operation", default=None)

_RECORD_FIELDS: Dict[str, ContextVar[Optional[str]]] = {
    "correlation_id": correlation_id_var,
    "db_code": db_code_var,
    "db_operation": operation_var,
}

LOG_FORMAT = (
    "%(asctime)s | %(levelname)s | %(name)s | cid=%(correlation_id)s | "
    "db=%(db_code)s | op=%(db_operation)s | %(message)s"
)


class LoggingContextFilter(logging.Filter):
    """
    Copy the request correlation id, the database code and the repository
    operation in progress onto each record ("-" when unset).
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        for field, var in _RECORD_FIELDS.items():
            setattr(record, field, var.get() or "-")
        return True


# PUBLIC_INTERFACE
@contextmanager
def repository_call(code: str, operation: str) -> Iterator[None]:
    """Tag log records emitted inside the block with a database code and operation name."""
    code_token = db_code_var.set(code)
    op_token = operation_var.set(operation)
    try:
        yield
    finally:
        operation_var.reset(op_token)
        db_code_var.reset(code_token)


# PUBLIC_INTERFACE
def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """Configure root logging with a structured format and context filter."""
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT))
    handler.addFilter(LoggingContextFilter())

    root = logging.getLogger()
    # Remove pre-existing default handlers configured elsewhere (e.g., basicConfig)
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)
    root.setLevel(level)
