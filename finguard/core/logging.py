"""Structured logging with request correlation.

Provides:
- JSON structured output for log aggregation
- Request/user correlation through context variables
- Sensitive data masking (passwords, tokens, MFA and backup codes)
- Operation instrumentation with timing

Usage:
    from finguard.core.logging import get_logger, request_context

    logger = get_logger(__name__)

    with request_context(request_id="abc-123"):
        logger.info("Refresh token rotated", user_id=user_id)
"""

import inspect
import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Iterator

from finguard.core.errors import AuthError

# Context variables for request-scoped data
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)

# Key fragments that mark a field as sensitive
SENSITIVE_FIELDS = {
    "password", "secret", "token", "key", "credential", "authorization",
    "access_token", "refresh_token", "session", "cookie", "master_key",
    "backup_code", "mfa_code", "verification_code", "totp",
}

# Keys that are sensitive only on an exact match ("status_code" is not)
SENSITIVE_EXACT = {"code", "otp", "pin"}


def _is_sensitive(key: str) -> bool:
    key_lower = key.lower()
    if key_lower in SENSITIVE_EXACT:
        return True
    return any(s in key_lower for s in SENSITIVE_FIELDS)


def mask_sensitive(data: dict[str, Any]) -> dict[str, Any]:
    """Mask sensitive values in a dictionary."""
    masked = {}
    for key, value in data.items():
        if _is_sensitive(key):
            if isinstance(value, str) and len(value) > 12:
                masked[key] = f"{value[:4]}...{value[-4:]}"
            else:
                masked[key] = "[REDACTED]"
        elif isinstance(value, dict):
            masked[key] = mask_sensitive(value)
        else:
            masked[key] = value
    return masked


def _context_fields() -> dict[str, str]:
    """Request-scoped identifiers bound by ``request_context``."""
    fields = {}
    for name, var in (
        ("request_id", request_id_var),
        ("correlation_id", correlation_id_var),
        ("user_id", user_id_var),
    ):
        if value := var.get():
            fields[name] = value
    return fields


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    return mask_sensitive(getattr(record, "extra_fields", None) or {})


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context_fields(),
            **_record_fields(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if record.levelno >= logging.WARNING:
            entry["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """Single-line output for development consoles."""

    LEVEL_STYLES = {
        logging.DEBUG: ("DBG", "\033[36m"),
        logging.INFO: ("INF", "\033[32m"),
        logging.WARNING: ("WRN", "\033[33m"),
        logging.ERROR: ("ERR", "\033[31m"),
        logging.CRITICAL: ("CRT", "\033[35m"),
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        tag, color = self.LEVEL_STYLES.get(record.levelno, (record.levelname[:3], ""))
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]

        context = _context_fields()
        ids = [
            f"{short}={context[name][:8]}"
            for name, short in (("request_id", "req"), ("user_id", "user"))
            if name in context
        ]

        parts = [f"{color}{timestamp} {tag}{self.RESET}", f"[{record.name}]"]
        if ids:
            parts.append(f"[{' '.join(ids)}]")
        parts.append(record.getMessage())
        if fields := _record_fields(record):
            parts.append("| " + " ".join(f"{k}={v}" for k, v in fields.items()))

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredLogger(logging.Logger):
    """Logger accepting structured keyword fields.

    ``logger.info("Device trusted", user_id=uid)`` stores the keywords on the
    record as ``extra_fields``; the formatters mask and render them.
    """

    def _log(
        self,
        level,
        msg,
        args,
        exc_info=None,
        extra=None,
        stack_info=False,
        stacklevel=1,
        **fields,
    ):
        if fields:
            extra = {**(extra or {}), "extra_fields": fields}
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for a module."""
    logging.setLoggerClass(StructuredLogger)
    logger = logging.getLogger(name)
    logging.setLoggerClass(logging.Logger)
    return logger


def setup_logging(json_output: bool = False, level: str = "INFO"):
    """Configure engine logging.

    Args:
        json_output: Use JSON format (for production)
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanFormatter())
    root_logger.addHandler(handler)

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


@contextmanager
def request_context(
    request_id: str | None = None,
    correlation_id: str | None = None,
    user_id: str | None = None,
) -> Iterator[str]:
    """Bind request/user identifiers to every record logged inside the block.

    Yields the request id (generated when not supplied).
    """
    request_id = request_id or str(uuid.uuid4())
    request_token = request_id_var.set(request_id)
    correlation_token = correlation_id_var.set(correlation_id or request_id)
    user_token = user_id_var.set(user_id)
    try:
        yield request_id
    finally:
        request_id_var.reset(request_token)
        correlation_id_var.reset(correlation_token)
        user_id_var.reset(user_token)


def set_user_context(user_id: str | None):
    """Set user context for logging."""
    if user_id:
        user_id_var.set(user_id)


def instrument(func: Callable, operation: str) -> Callable:
    """Return ``func`` wrapped with completion/failure logging and timing.

    Applied explicitly where operations are composed, e.g.
    ``self.login = instrument(self._login, "login")``. Expected denials
    (``AuthError``) are logged at INFO; anything else at ERROR and re-raised.
    """
    logger = get_logger(func.__module__)

    def _log_failure(e: Exception, start: float):
        duration_ms = round((time.monotonic() - start) * 1000, 2)
        if isinstance(e, AuthError):
            logger.info(
                f"{operation} denied",
                operation=operation,
                error_code=e.code.value,
                duration_ms=duration_ms,
            )
        else:
            logger.error(
                f"{operation} failed",
                operation=operation,
                error=type(e).__name__,
                duration_ms=duration_ms,
            )

    def _log_success(start: float):
        logger.debug(
            f"{operation} completed",
            operation=operation,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )

    if inspect.iscoroutinefunction(func):
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            start = time.monotonic()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _log_failure(e, start)
                raise
            _log_success(start)
            return result

        return async_wrapper

    @wraps(func)
    def sync_wrapper(*args, **kwargs):
        start = time.monotonic()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            _log_failure(e, start)
            raise
        _log_success(start)
        return result

    return sync_wrapper
