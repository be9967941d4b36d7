"""
Structured input/output logging for the SKU optimization engine.

Provides a @log_io decorator that logs function arguments on entry and
return values on exit at DEBUG level, with truncation for the objects the
engine passes around (series arrays, DataFrames, pydantic results, job
dataclasses, long lists of grid results).

Usage:
    from sku_optimizer.utils.logging_utils import log_io

    @log_io
    def claim_next_pending(self):
        ...

    @log_io(log_result=False)
    def run_grid_search(self, series, model_types):
        ...
"""
import dataclasses
import functools
import inspect
import logging
import time
import traceback
from typing import Any, Optional

import numpy as np
import pandas as pd
from pydantic import BaseModel

MAX_STR_LENGTH = 300
MAX_LIST_ITEMS = 5
MAX_DICT_ITEMS = 10
MAX_REPR_LENGTH = 200

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: int = logging.INFO) -> None:
    """Configure root logging the way the worker entry point expects."""
    logging.basicConfig(level=level, format=LOG_FORMAT)


class _Lazy:
    """Defers evaluation until the logging framework calls __str__."""

    __slots__ = ("_fn", "_args")

    def __init__(self, fn, *args):
        self._fn = fn
        self._args = args

    def __str__(self):
        return self._fn(*self._args)


def _truncate_value(value: Any, depth: int = 0) -> str:
    """Render a value for a log line without dumping whole series or result sets."""
    if depth > 2:
        return f"<{type(value).__name__}>"

    if value is None:
        return "None"

    if isinstance(value, pd.DataFrame):
        cols = list(value.columns)
        col_preview = cols[:8]
        if len(cols) > 8:
            col_preview.append(f"...+{len(cols) - 8}")
        return f"DataFrame(shape={value.shape}, cols={col_preview})"
    if isinstance(value, pd.Series):
        return f"Series(name={value.name}, len={len(value)}, dtype={value.dtype})"
    if isinstance(value, np.ndarray):
        return f"ndarray(shape={value.shape}, dtype={value.dtype})"

    if isinstance(value, BaseModel):
        return f"{type(value).__name__}({_truncate_dict(value.model_dump(), depth + 1)})"

    # OptimizationJob and other record dataclasses: identity fields only
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        shown = {}
        for f in dataclasses.fields(value)[:MAX_DICT_ITEMS]:
            attr = getattr(value, f.name)
            if isinstance(attr, (dict, list)) and len(attr) > MAX_LIST_ITEMS:
                shown[f.name] = f"<{type(attr).__name__} len={len(attr)}>"
            else:
                shown[f.name] = attr
        return f"{type(value).__name__}({_truncate_dict(shown, depth + 1)})"

    if isinstance(value, dict):
        if len(value) > MAX_DICT_ITEMS:
            sample = dict(list(value.items())[:MAX_DICT_ITEMS])
            return f"dict(len={len(value)}, sample={_truncate_dict(sample, depth + 1)})"
        return _truncate_dict(value, depth)

    if isinstance(value, (list, tuple)):
        type_name = type(value).__name__
        if len(value) > MAX_LIST_ITEMS:
            sample = [_truncate_value(item, depth + 1) for item in value[:MAX_LIST_ITEMS]]
            return f"{type_name}(len={len(value)}, first_{MAX_LIST_ITEMS}={sample})"
        return f"{type_name}([{', '.join(_truncate_value(item, depth + 1) for item in value)}])"

    if isinstance(value, str):
        if len(value) > MAX_STR_LENGTH:
            return f"str(len={len(value)}, preview='{value[:MAX_STR_LENGTH]}...')"
        return repr(value)

    if isinstance(value, (set, frozenset)):
        return f"{type(value).__name__}(len={len(value)})"

    r = repr(value)
    if len(r) > MAX_REPR_LENGTH:
        return r[:MAX_REPR_LENGTH] + "..."
    return r


def _truncate_dict(d: dict, depth: int) -> str:
    return "{" + ", ".join(f"{k}={_truncate_value(v, depth + 1)}" for k, v in d.items()) + "}"


def _prepare_logged_params(func, args, kwargs):
    """Prepare args/kwargs for logging, stripping self/cls."""
    try:
        param_names = list(inspect.signature(func).parameters.keys())
    except (ValueError, TypeError):
        param_names = []

    start_idx = 1 if param_names and param_names[0] in ("self", "cls") else 0
    logged = []
    for i, arg in enumerate(args):
        if i < start_idx:
            continue
        name = param_names[i] if i < len(param_names) else f"arg{i}"
        logged.append(f"{name}={_Lazy(_truncate_value, arg)}")
    logged.extend(f"{k}={_Lazy(_truncate_value, v)}" for k, v in kwargs.items())
    return logged


def _format_entry(func_qualname, logged):
    return f"[ENTER] {func_qualname}({', '.join(str(p) for p in logged)})"


class _CallTrace:
    """Entry/exit/error bookkeeping shared by the sync and async wrappers."""

    def __init__(self, func, func_logger, log_args, log_result, log_level):
        self.func = func
        self.logger = func_logger
        self.qualname = func.__qualname__
        self.log_args = log_args
        self.log_result = log_result
        self.log_level = log_level
        self.start: Optional[float] = None

    def enter(self, args, kwargs):
        if self.logger.isEnabledFor(self.log_level):
            if self.log_args:
                logged = _prepare_logged_params(self.func, args, kwargs)
                self.logger.log(self.log_level, "%s", _Lazy(_format_entry, self.qualname, logged))
            else:
                self.logger.log(self.log_level, "[ENTER] %s()", self.qualname)
        self.start = time.perf_counter()

    def exit(self, result):
        elapsed = time.perf_counter() - self.start
        if self.logger.isEnabledFor(self.log_level):
            shown = _Lazy(_truncate_value, result) if self.log_result else type(result).__name__
            self.logger.log(self.log_level, "[EXIT]  %s -> %s (%.3fs)", self.qualname, shown, elapsed)

    def error(self, exc: Exception):
        elapsed = time.perf_counter() - self.start
        self.logger.error(
            "[ERROR] %s raised %s: %s (%.3fs)\n%s",
            self.qualname,
            type(exc).__name__,
            str(exc)[:500],
            elapsed,
            traceback.format_exc()[-1000:],
        )


def log_io(fn=None, *, log_args=True, log_result=True, log_level=logging.DEBUG):
    """Decorator that logs function inputs and outputs at DEBUG level.

    Auto-detects sync vs async. Strips self/cls from logged args.
    Exceptions are logged at ERROR and re-raised unchanged.

    Args:
        log_args: Whether to log function arguments (default True).
        log_result: Whether to log the full return value (default True).
            When False, only the return type is logged.
        log_level: Log level for entry/exit messages (default DEBUG).
    """

    def decorator(func):
        func_logger = logging.getLogger(func.__module__)

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                trace = _CallTrace(func, func_logger, log_args, log_result, log_level)
                trace.enter(args, kwargs)
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    trace.error(e)
                    raise
                trace.exit(result)
                return result

            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            trace = _CallTrace(func, func_logger, log_args, log_result, log_level)
            trace.enter(args, kwargs)
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                trace.error(e)
                raise
            trace.exit(result)
            return result

        return sync_wrapper

    if fn is not None:
        return decorator(fn)
    return decorator
