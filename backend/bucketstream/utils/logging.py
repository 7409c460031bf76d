"""
Structured JSON logging for the storage pipeline.

Provides event-specific logging functions with mandatory fields:
- timestamp (ISO8601)
- level
- service
- event

Optional fields (included when applicable):
- bucket
- key
- method
- status_code
- attempt
- duration_ms

Usage:
    from bucketstream.utils.logging import StructuredLogger, log_request_retry

    StructuredLogger.configure('bucketstream', 'INFO')
    log_request_retry(logger, bucket='logs', key='2024.gz', attempt=2, status_code=503)
"""
import logging
import sys
from typing import Any, Dict, Optional, TextIO

from pythonjsonlogger import jsonlogger


class StructuredLogger:
    """Structured JSON logger with mandatory fields."""

    _service_name = None
    _configured = False

    @classmethod
    def configure(cls, service_name: str, log_level: str = "INFO", stream: Optional[TextIO] = None):
        """
        Configure structured JSON logging for the application.

        Args:
            service_name: Service identifier written on every record
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
            stream: Output stream for JSON records (stdout when omitted)
        """
        if cls._configured:
            return  # Already configured

        cls._service_name = service_name

        # Remove default handlers
        root_logger = logging.getLogger()
        root_logger.handlers = []

        # Create JSON formatter
        formatter = jsonlogger.JsonFormatter(
            '%(timestamp)s %(levelname)s %(name)s %(message)s',
            timestamp=True,
            json_ensure_ascii=False
        )

        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(formatter)

        root_logger.addHandler(handler)
        root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

        # Add service name to all log records via filter
        class ServiceFilter(logging.Filter):
            def filter(self, record):
                record.service = cls._service_name
                return True

        handler.addFilter(ServiceFilter())
        cls._configured = True

    @classmethod
    def reset(cls):
        """Forget a previous configure() call (used by tests)."""
        cls._service_name = None
        cls._configured = False


def _build_log_extra(
    event: str,
    bucket: Optional[str] = None,
    key: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
) -> Dict[str, Any]:
    """
    Build extra fields for structured logging.

    Args:
        event: Event name (mandatory)
        bucket: Optional bucket name
        key: Optional object key
        duration_ms: Optional duration in milliseconds
        **kwargs: Additional fields

    Returns:
        Dictionary of extra fields
    """
    extra = {
        "event": event,
        **kwargs
    }

    if bucket:
        extra["bucket"] = bucket
    if key:
        extra["key"] = key
    if duration_ms is not None:
        extra["duration_ms"] = round(duration_ms, 2)

    return extra


def log_event(
    logger: logging.Logger,
    event: str,
    message: str,
    level: int = logging.INFO,
    **kwargs
):
    """
    Log a structured event with mandatory fields.

    Args:
        logger: Logger instance
        event: Event name (e.g., 'object_download_started')
        message: Log message
        level: Logging level for the record
        **kwargs: Additional fields to include
    """
    logger.log(level, message, extra=_build_log_extra(event=event, **kwargs))


# Request pipeline events

def log_request_attempt(
    logger: logging.Logger,
    method: str,
    uri: str,
    attempt: int,
    **kwargs
):
    """
    Log the start of one authenticated request attempt.

    Args:
        logger: Logger instance
        method: HTTP method
        uri: Target URI (without credentials)
        attempt: 1-based attempt number
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="request_attempt",
        method=method,
        uri=uri,
        attempt=attempt,
        **kwargs
    )
    logger.debug(f"{method} {uri} (attempt {attempt})", extra=extra)


def log_request_retry(
    logger: logging.Logger,
    bucket: str,
    key: str,
    attempt: int,
    status_code: Optional[int] = None,
    error: Optional[str] = None,
    **kwargs
):
    """
    Log a retry of a failed read attempt.

    Args:
        logger: Logger instance
        bucket: Bucket name
        key: Object key
        attempt: Number of the attempt that is about to start
        status_code: HTTP status that triggered the retry, if any
        error: Transport error message that triggered the retry, if any
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="request_retry",
        bucket=bucket,
        key=key,
        attempt=attempt,
        **kwargs
    )
    if status_code is not None:
        extra["status_code"] = status_code
    if error:
        extra["error"] = error

    logger.warning(f"Retrying read of {bucket}/{key} (attempt {attempt})", extra=extra)


def log_request_failure(
    logger: logging.Logger,
    operation: str,
    error: str,
    bucket: Optional[str] = None,
    key: Optional[str] = None,
    status_code: Optional[int] = None,
    **kwargs
):
    """
    Log a terminal failure of a storage operation.

    Args:
        logger: Logger instance
        operation: Operation name (read, write, list, delete)
        error: Error message
        bucket: Optional bucket name
        key: Optional object key
        status_code: Optional HTTP status
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="request_failed",
        bucket=bucket,
        key=key,
        operation=operation,
        error=error,
        **kwargs
    )
    if status_code is not None:
        extra["status_code"] = status_code

    logger.error(f"Storage {operation} failed: {error}", extra=extra)


def log_upload_completed(
    logger: logging.Logger,
    bucket: str,
    key: str,
    bytes_sent: int,
    duration_ms: Optional[float] = None,
    **kwargs
):
    """
    Log a finished upload.

    Args:
        logger: Logger instance
        bucket: Bucket name
        key: Object key
        bytes_sent: Bytes handed to the upload session (after compression)
        duration_ms: Optional duration in milliseconds
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="upload_completed",
        bucket=bucket,
        key=key,
        duration_ms=duration_ms,
        bytes_sent=bytes_sent,
        **kwargs
    )
    logger.info(f"Uploaded {bucket}/{key} ({bytes_sent} bytes)", extra=extra)


def log_bulk_delete_completed(
    logger: logging.Logger,
    bucket: str,
    status: str,
    total: int,
    failed: int,
    duration_ms: Optional[float] = None,
    **kwargs
):
    """
    Log the aggregated result of a bulk delete.

    Args:
        logger: Logger instance
        bucket: Bucket name
        status: Result status (success, partial_failure, fatal)
        total: Number of listed objects
        failed: Number of failed deletes
        duration_ms: Optional duration in milliseconds
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="bulk_delete_completed",
        bucket=bucket,
        duration_ms=duration_ms,
        status=status,
        total=total,
        failed=failed,
        **kwargs
    )
    level = logging.INFO if status == "success" else logging.WARNING
    logger.log(
        level,
        f"Bulk delete in {bucket}: {status} ({total - failed} deleted, {failed} failed)",
        extra=extra
    )


def configure_logging(service_name: str, log_level: str = "INFO", stream: Optional[TextIO] = None):
    """Configure logging (alias for StructuredLogger.configure)."""
    StructuredLogger.configure(service_name, log_level, stream=stream)
