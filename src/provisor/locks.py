"""Synchronisation primitives shared by the registry and resolver."""

import threading
from contextlib import contextmanager
from typing import Iterator

__all__ = ["ReadWriteLock"]


class ReadWriteLock:
    """A lock allowing many concurrent readers or a single writer.

    The writing thread may re-enter both sides of the lock, so listeners
    notified during a registration can still query the registry.

    Example:
        >>> lock = ReadWriteLock()
        >>> with lock.read():
        ...     lookup()
        >>> with lock.write():
        ...     mutate()
    """

    def __init__(self):
        self._condition = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = None
        self._write_depth = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        me = threading.get_ident()
        with self._condition:
            reentrant = self._writer == me
            if not reentrant:
                while self._writer is not None:
                    self._condition.wait()
                self._readers += 1
        try:
            yield
        finally:
            if not reentrant:
                with self._condition:
                    self._readers -= 1
                    if self._readers == 0:
                        self._condition.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        me = threading.get_ident()
        with self._condition:
            if self._writer == me:
                self._write_depth += 1
            else:
                while self._writer is not None or self._readers > 0:
                    self._condition.wait()
                self._writer = me
                self._write_depth = 1
        try:
            yield
        finally:
            with self._condition:
                self._write_depth -= 1
                if self._write_depth == 0:
                    self._writer = None
                    self._condition.notify_all()
