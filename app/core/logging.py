"""
Structured Logging Infrastructure

Provides JSON-formatted logging with correlation IDs for request tracing,
plus the categorized error helpers used across the settlement pipeline.
"""
import logging
import json
import secrets
import sys
import time
from datetime import datetime
from typing import Any
from contextvars import ContextVar
from functools import wraps

from app.core.exceptions import ErrorCategory

# Context variable for correlation ID
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Add correlation ID if available
        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_entry["correlation_id"] = correlation_id

        if getattr(record, "error_category", None):
            log_entry["category"] = record.error_category

        # Add exception info if present
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        if hasattr(record, "extra_data"):
            log_entry["extra"] = record.extra_data

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """Extended logger with structured logging support"""

    def _log_with_extra(
        self,
        level: int,
        msg: str,
        args: tuple,
        extra_data: dict[str, Any] | None = None,
        category: ErrorCategory | None = None,
        **kwargs
    ) -> None:
        if extra_data or category:
            extra = kwargs.get("extra", {})
            if extra_data:
                extra["extra_data"] = extra_data
            if category:
                extra["error_category"] = category.value
            kwargs["extra"] = extra
        super()._log(level, msg, args, **kwargs)

    def debug(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        if self.isEnabledFor(logging.DEBUG):
            self._log_with_extra(logging.DEBUG, msg, args, extra_data, **kwargs)

    def info(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        if self.isEnabledFor(logging.INFO):
            self._log_with_extra(logging.INFO, msg, args, extra_data, **kwargs)

    def warning(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        if self.isEnabledFor(logging.WARNING):
            self._log_with_extra(logging.WARNING, msg, args, extra_data, **kwargs)

    def error(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        if self.isEnabledFor(logging.ERROR):
            self._log_with_extra(logging.ERROR, msg, args, extra_data, **kwargs)

    def critical(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        if self.isEnabledFor(logging.CRITICAL):
            self._log_with_extra(logging.CRITICAL, msg, args, extra_data, **kwargs)


# Set custom logger class
logging.setLoggerClass(StructuredLogger)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
) -> None:
    """
    Configure application logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting for production
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        # Human-readable format for development
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | [%(correlation_id)s] | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        handler.setFormatter(formatter)
        handler.addFilter(CorrelationIdFilter())

    root_logger.addHandler(handler)

    # Set levels for third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)


class CorrelationIdFilter(logging.Filter):
    """Filter that adds correlation_id to log records"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        return True


def generate_correlation_id() -> str:
    """Generate a new correlation ID, e.g. ``wh_1718000000000_k3j9x0a2b``"""
    return f"wh_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set correlation ID for current context"""
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    """Get current correlation ID, generating and persisting one if not set"""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance"""
    return logging.getLogger(name)  # type: ignore


# ==================== PII helpers ====================

def presence(value: Any) -> str:
    """Reduce a PII value (email, name) to whether it was there at all"""
    return "present" if value else "missing"


def redact(value: Any) -> str:
    """Replace a captured compliance value (IP, user agent) with a marker"""
    return "[REDACTED]" if value else "not_captured"


# ==================== Categorized errors ====================

def serialize_error(error: BaseException | Any) -> dict[str, Any]:
    """Turn anything raised into a JSON-safe dict"""
    if isinstance(error, BaseException):
        info: dict[str, Any] = {
            "name": type(error).__name__,
            "message": str(error),
        }
        code = getattr(error, "retry_code", None) or getattr(error, "code", None)
        if code:
            info["code"] = str(code)
        return info

    if isinstance(error, dict):
        try:
            return {"message": json.dumps(error, default=str), "type": "dict"}
        except (TypeError, ValueError):
            return {"message": str(error), "type": "dict", "serialization_error": True}

    return {"message": str(error), "type": type(error).__name__}


def log_error(
    logger: logging.Logger,
    category: ErrorCategory,
    message: str,
    error: BaseException | Any,
    context: dict[str, Any] | None = None,
) -> None:
    """Log an error with its category, serialized detail and context"""
    logger.error(
        message,
        extra_data={"error": serialize_error(error), "context": context or {}},
        category=category,
    )


def log_critical(
    logger: logging.Logger,
    category: ErrorCategory,
    message: str,
    error: BaseException | Any,
    context: dict[str, Any] | None = None,
) -> None:
    """Log a condition that should page someone"""
    logger.critical(
        message,
        extra_data={
            "error": serialize_error(error),
            "context": {**(context or {}), "requires_immediate_attention": True},
        },
        category=category,
    )


def log_async_operation(operation_name: str):
    """Decorator for logging async operations with timing.

    Operations slower than SLOW_OPERATION_THRESHOLD_MS get an extra warning.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            from app.core.config import settings

            logger = get_logger(func.__module__)
            start = time.perf_counter()

            logger.debug(
                f"Starting {operation_name}",
                extra_data={"operation": operation_name, "status": "started"}
            )

            success = False
            try:
                result = await func(*args, **kwargs)
                success = True
                return result
            finally:
                duration_ms = int((time.perf_counter() - start) * 1000)
                getattr(logger, "info" if success else "warning")(
                    f"Operation {operation_name} completed in {duration_ms}ms",
                    extra_data={
                        "operation": operation_name,
                        "status": "completed" if success else "failed",
                        "success": success,
                        "duration_ms": duration_ms,
                    }
                )
                if duration_ms > settings.SLOW_OPERATION_THRESHOLD_MS:
                    logger.warning(
                        f"Slow webhook operation detected: {operation_name} took {duration_ms}ms",
                        extra_data={
                            "operation": operation_name,
                            "duration_ms": duration_ms,
                            "threshold_ms": settings.SLOW_OPERATION_THRESHOLD_MS,
                        },
                        category=ErrorCategory.WEBHOOK_PROCESSING,
                    )

        return wrapper
    return decorator
