"""Deferred resolution handles."""

import threading
from typing import Any, Optional

from provisor.domain import ServiceKey

__all__ = ["LazyService"]


class LazyService:
    """Resolve a service the first time it is needed, then keep returning it.

    Example:
        >>> mailer = LazyService(resolver, "mailer")
        >>> mailer.get().send(message)   # resolved here
    """

    def __init__(self, resolver, key: ServiceKey, group: Optional[str] = None, tag: Optional[str] = None):
        self._resolver = resolver
        self._key = key
        self._group = group
        self._tag = tag
        self._instance: Any = None
        self._resolved = False
        self._lock = threading.Lock()

    @property
    def resolved(self) -> bool:
        return self._resolved

    def get(self) -> Any:
        if not self._resolved:
            with self._lock:
                if not self._resolved:
                    self._instance = self._resolver.resolve(self._key, self._group, self._tag)
                    self._resolved = True
        return self._instance

    def __repr__(self) -> str:
        return f"LazyService({self._key!r})"
