# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
relaykit.core.logging
=====================

Every relaykit component logs through `get_logger(<component>)`:
- keyword fields go onto the record (`log.warning("...", message_id=mid)`),
- `log_context()` binds interface/message/operation ids for a whole block,
- `JsonFormatter` renders one object per line with those fields merged in,
- `swallow()` logs a side-channel failure (lock store, dedup store) with a
  stable `code` and keeps the main path going.

Nothing is printed unless the application calls `enable_stdout_logging()`
or sets RELAYKIT_LOG_STDOUT=1 before `configure_from_env()`.
"""

import contextvars
import json
import logging
import os
import sys
from collections.abc import Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, ClassVar, Final

__all__ = [
    "JsonFormatter",
    "bind_context",
    "configure_from_env",
    "enable_stdout_logging",
    "get_logger",
    "log_context",
    "set_level",
    "swallow",
]

_ROOT_LOGGER_NAME = "relaykit"
_HANDLER_NAME = "_relaykit_stream_handler"

_log_context: contextvars.ContextVar[dict[str, Any] | None] = contextvars.ContextVar("relaykit_log_ctx", default=None)


def _current() -> dict[str, Any]:
    ctx = _log_context.get()
    return dict(ctx) if ctx else {}


def _non_null(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None}


def bind_context(**fields: Any) -> None:
    """Add fields to the context of the current task for good."""
    _log_context.set({**_current(), **_non_null(fields)})


@contextmanager
def log_context(**fields: Any):
    """Add fields to the log context for the duration of the block."""
    token = _log_context.set({**_current(), **_non_null(fields)})
    try:
        yield
    finally:
        _log_context.reset(token)


# LogRecord's own attributes; keyword fields with these names get a prefix.
_RECORD_ATTRS: Final[frozenset[str]] = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys() | {"message", "asctime", "taskName"}
)


def _utc_ms(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JsonFormatter(logging.Formatter):
    """ts/level/logger/message, then context, then keyword fields, then `error`."""

    def __init__(self, *, include_stack: bool = False) -> None:
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:
        out: dict[str, Any] = {"ts": _utc_ms(record.created), "level": record.levelname, "logger": record.name}
        text = record.getMessage()
        if text:
            out["message"] = text
        out.update(_current())
        for k, v in record.__dict__.items():
            if k not in _RECORD_ATTRS and k not in out:
                out[k] = v

        if record.exc_info and record.exc_info[0] is not None:
            etype, evalue, _ = record.exc_info
            error = {"type": etype.__name__, "message": str(evalue) if evalue else None}
            if self.include_stack:
                error["stack"] = self.formatException(record.exc_info)
            out["error"] = error
        return json.dumps(out, ensure_ascii=False, separators=(",", ":"), default=str)


class ContextFilter(logging.Filter):
    """Copy the bound context onto records so plain formatters and caplog see it."""

    def filter(self, record: logging.LogRecord) -> bool:
        for k, v in _current().items():
            record.__dict__.setdefault(k, v)
        return True


class _KwExtraAdapter(logging.LoggerAdapter):
    """Moves keyword arguments other than the logging ones into `extra`."""

    _logging_kwargs: ClassVar[frozenset[str]] = frozenset({"exc_info", "stack_info", "stacklevel", "extra"})

    def process(self, msg, kwargs):
        extra = kwargs.get("extra")
        extra = dict(extra) if isinstance(extra, Mapping) else {}
        for k in [k for k in kwargs if k not in self._logging_kwargs]:
            extra.setdefault(f"field_{k}" if k in _RECORD_ATTRS else k, kwargs.pop(k))
        kwargs["extra"] = extra
        return msg, kwargs


def _root() -> logging.Logger:
    lg = logging.getLogger(_ROOT_LOGGER_NAME)
    if not lg.handlers:
        lg.addHandler(logging.NullHandler())
        lg.setLevel(logging.INFO)
    if not any(isinstance(f, ContextFilter) for f in lg.filters):
        lg.addFilter(ContextFilter())
    return lg


def _level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level {level!r}")
    return resolved


def get_logger(name: str | None = None) -> logging.LoggerAdapter:
    """`relaykit.<name>` wrapped so call sites can pass fields as keywords."""
    root = _root()
    return _KwExtraAdapter(root.getChild(name) if name else root, {})


def set_level(level: int | str) -> None:
    _root().setLevel(_level(level))


def _drop_stream_handler(lg: logging.Logger) -> None:
    for h in list(lg.handlers):
        if h.get_name() == _HANDLER_NAME:
            lg.removeHandler(h)


def enable_stdout_logging(
    *,
    level: int | str = logging.INFO,
    json_output: bool = True,
    include_stack: bool = False,
) -> None:
    """Replace any previous relaykit stream handler with one writing to stdout."""
    lg = _root()
    _drop_stream_handler(lg)
    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setLevel(_level(level))
    handler.setFormatter(
        JsonFormatter(include_stack=include_stack)
        if json_output
        else logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    lg.addHandler(handler)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes", "on")


def configure_from_env() -> None:
    """
    RELAYKIT_LOG_LEVEL sets the level (default INFO). RELAYKIT_LOG_STDOUT=1
    writes JSON lines to stdout; RELAYKIT_LOG_STACK=1 adds tracebacks to them.
    """
    level = os.getenv("RELAYKIT_LOG_LEVEL", "INFO")
    set_level(level)
    if _env_flag("RELAYKIT_LOG_STDOUT"):
        enable_stdout_logging(level=level, include_stack=_env_flag("RELAYKIT_LOG_STACK"))
    else:
        _drop_stream_handler(_root())


@contextmanager
def swallow(
    *,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
    level: int = logging.DEBUG,
    code: str,
    msg: str | None = None,
    reraise: bool = False,
    extra: Mapping[str, Any] | None = None,
):
    """
    Log an `Exception` from the block under `code` and carry on.

        with swallow(logger=log, code="locks.record", msg="lock store write failed", level=logging.WARNING):
            await store.record_lock(rec)

    Cancellation is not an `Exception` and always propagates.
    """
    log = logger or get_logger("swallow")
    if not isinstance(log, logging.LoggerAdapter):
        log = _KwExtraAdapter(log, {})
    try:
        yield
    except Exception as e:
        log.log(level, msg or "suppressed exception", exc_info=e, code=code, **(extra or {}))
        if reraise:
            raise
