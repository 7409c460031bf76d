"""
Decorator for tracking storage operation metrics.
"""
import functools
import time

from bucketstream.utils.metrics import (
    storage_errors_total,
    storage_operation_duration_seconds,
)


def track_storage_operation(operation: str):
    """
    Async decorator to track storage operation metrics.

    Records duration under status "ok" or "error" and counts the error
    type of every exception that escapes the wrapped coroutine.

    Args:
        operation: Operation name (download, list, delete, delete_matching)
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.time()

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                duration = time.time() - start_time
                storage_errors_total.labels(error_type=type(e).__name__).inc()
                storage_operation_duration_seconds.labels(
                    operation=operation,
                    status="error"
                ).observe(duration)
                raise

            duration = time.time() - start_time
            storage_operation_duration_seconds.labels(
                operation=operation,
                status="ok"
            ).observe(duration)
            return result

        return wrapper
    return decorator
