"""
Utility functions and helpers for the FREEGHOST identity core.

This module provides the timing decorator, identifier helpers, constant-time
comparison and the shared-read / exclusive-write lock used around the replay
set and the active key handle.
"""

import functools
import hmac
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Iterator, TypeVar

import structlog

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Type variable for generic decorators
F = TypeVar("F", bound=Callable[..., Any])


def timer(func: F) -> F:
    """
    Decorator to measure and log function execution time.

    Parameters
    ----------
    func : Callable
        Function to be timed.

    Returns
    -------
    Callable
        Wrapped function with timing capability.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.perf_counter()

        try:
            result = func(*args, **kwargs)
            execution_time = (time.perf_counter() - start_time) * 1000

            logger.debug(
                "Function execution completed",
                function_name=func.__name__,
                module=func.__module__,
                execution_time_ms=execution_time,
                success=True,
            )

            return result

        except Exception as e:
            execution_time = (time.perf_counter() - start_time) * 1000

            logger.debug(
                "Function execution failed",
                function_name=func.__name__,
                module=func.__module__,
                execution_time_ms=execution_time,
                error_type=type(e).__name__,
                success=False,
            )

            raise

    return wrapper


def generate_handle_id(prefix: str = "tmpl") -> str:
    """
    Generate an opaque handle identifier.

    Examples
    --------
    >>> generate_handle_id()
    'tmpl_3f2b...'
    """
    return f"{prefix}_{uuid.uuid4().hex}"


def preview(value: bytes, length: int = 8) -> str:
    """Short hex preview of a public value for log output."""
    return value[:length].hex() + "..."


def constant_time_equals(left: bytes, right: bytes) -> bool:
    """Compare two byte strings in time independent of their content."""
    return hmac.compare_digest(bytes(left), bytes(right))


class ReadWriteLock:
    """
    Lock allowing many concurrent readers or a single writer.

    Writers are preferred: once a writer waits, new readers queue behind it
    so that rotation and inserts cannot starve.

    Examples
    --------
    >>> lock = ReadWriteLock()
    >>> with lock.read_locked():
    ...     pass
    >>> with lock.write_locked():
    ...     pass
    """

    def __init__(self) -> None:
        self._condition = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer_active = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._condition:
            while self._writer_active or self._writers_waiting:
                self._condition.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._condition:
            self._readers -= 1
            if self._readers == 0:
                self._condition.notify_all()

    def acquire_write(self) -> None:
        with self._condition:
            self._writers_waiting += 1
            try:
                while self._writer_active or self._readers:
                    self._condition.wait()
            finally:
                self._writers_waiting -= 1
            self._writer_active = True

    def release_write(self) -> None:
        with self._condition:
            self._writer_active = False
            self._condition.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()
