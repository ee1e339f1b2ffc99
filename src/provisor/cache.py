"""Key/value stores used to persist the descriptor table between processes.

Two backends are provided: :class:`MemoryCache`, which lives as long as the
process, and :class:`FileCache`, which stores JSON payloads on disk. File
writes go through a temporary file followed by an atomic rename, so a reader
never observes a half-written entry.
"""

import hashlib
import json
import logging
import math
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional, Union

from cachetools import TLRUCache

from provisor.errors import NotFoundError, SerializationError

__all__ = ["CacheMetadata", "CacheStore", "MemoryCache", "FileCache", "DEFAULT_TTL", "METADATA_VERSION", "atomic_write"]

logger = logging.getLogger(__name__)

DEFAULT_TTL = 3600
METADATA_VERSION = "1.0"


@dataclass(frozen=True)
class CacheMetadata:
    """Bookkeeping stored alongside each cache entry.

    Attributes:
        created_at: Unix timestamp of the write.
        ttl: Time to live in seconds; 0 means the entry never expires.
        expires_at: Unix timestamp after which the entry is stale, or 0.
        version: Version stamp of the metadata format.
    """

    created_at: float
    ttl: int
    expires_at: float
    version: str = METADATA_VERSION

    @staticmethod
    def stamp(ttl: int) -> "CacheMetadata":
        now = time.time()
        return CacheMetadata(now, ttl, now + ttl if ttl > 0 else 0)

    @property
    def expired(self) -> bool:
        return self.ttl > 0 and time.time() > self.expires_at


class CacheStore(ABC):
    """Contract for the stores the registry can persist its descriptor table to."""

    @abstractmethod
    def has(self, key: str) -> bool:
        """True if the key exists and has not expired."""

    @abstractmethod
    def get(self, key: str) -> Any:
        """Return the value stored under key.

        Raises:
            NotFoundError: If the key is absent or expired.
        """

    @abstractmethod
    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store a value. ``ttl=None`` uses the store default, ``ttl=0`` never expires."""

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass

    @abstractmethod
    def metadata(self, key: str) -> CacheMetadata:
        """Return the metadata of a stored key.

        Raises:
            NotFoundError: If no metadata exists for the key.
        """


class MemoryCache(CacheStore):
    """In-process store backed by a :class:`cachetools.TLRUCache`.

    Each entry keeps its own TTL; entries stored with ``ttl=0`` never expire.

    Args:
        default_ttl: TTL applied when ``set`` is called without one.
        maxsize: Maximum number of entries before the least recently used is evicted.
    """

    def __init__(self, default_ttl: int = DEFAULT_TTL, maxsize: int = 1024):
        self._default_ttl = default_ttl
        self._entries: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_time_to_use, timer=lambda: time.time())
        self._lock = threading.Lock()

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, key: str) -> Any:
        return self._entry(key)[0]

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        metadata = CacheMetadata.stamp(self._default_ttl if ttl is None else ttl)
        with self._lock:
            self._entries[key] = (value, metadata)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def metadata(self, key: str) -> CacheMetadata:
        return self._entry(key)[1]

    def _entry(self, key: str) -> tuple[Any, CacheMetadata]:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            raise NotFoundError(f"Cache key not found: {key}")
        return entry


def _time_to_use(key: str, entry: tuple[Any, CacheMetadata], now: float) -> float:
    metadata = entry[1]
    return now + metadata.ttl if metadata.ttl > 0 else math.inf


class FileCache(CacheStore):
    """Store JSON payloads on disk, one data file and one ``.meta`` file per key.

    Files are sharded into sub-directories named after the first two
    characters of the key's md5 hash.

    Args:
        directory: Root directory of the cache; defaults to ``provisor-cache``
            in the system temp directory.
        default_ttl: TTL applied when ``set`` is called without one.
    """

    METADATA_SUFFIX = ".meta"

    def __init__(self, directory: Union[str, Path, None] = None, default_ttl: int = DEFAULT_TTL):
        self._directory = Path(directory) if directory else Path(tempfile.gettempdir()) / "provisor-cache"
        self._default_ttl = default_ttl
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise SerializationError(f"Failed to create cache directory: {self._directory}") from err
        if not os.access(self._directory, os.W_OK):
            raise SerializationError(f"Cache directory is not writable: {self._directory}")

    @property
    def directory(self) -> Path:
        return self._directory

    def has(self, key: str) -> bool:
        if not self._path(key, create=False).exists():
            return False

        metadata = self._read_metadata(key)
        if metadata is None:
            return False
        if metadata.expired:
            self.delete(key)
            return False

        return True

    def get(self, key: str) -> Any:
        if not self.has(key):
            raise NotFoundError(f"Cache key not found: {key}")

        path = self._path(key)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except OSError as err:
            raise SerializationError(f"Failed to read cache file: {path}") from err
        except ValueError as err:
            self.delete(key)
            raise SerializationError(f"Failed to decode cache data for key: {key}") from err

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as err:
            raise SerializationError(f"Failed to serialise data for key: {key}") from err

        path = self._path(key)
        metadata = json.dumps(asdict(CacheMetadata.stamp(ttl)))

        # The data file is published first; has() treats data without
        # metadata as absent until the metadata rename lands.
        atomic_write(path, payload)
        try:
            atomic_write(self._metadata_path(key), metadata)
        except SerializationError:
            path.unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        path = self._path(key, create=False)
        meta_path = self._metadata_path(key, create=False)
        for file in (path, meta_path):
            file.unlink(missing_ok=True)

    def clear(self) -> None:
        if not self._directory.is_dir():
            return
        for path in sorted(self._directory.rglob("*"), key=lambda p: len(p.parts), reverse=True):
            if path.is_dir():
                path.rmdir()
            else:
                path.unlink(missing_ok=True)

    def metadata(self, key: str) -> CacheMetadata:
        metadata = self._read_metadata(key)
        if metadata is None:
            raise NotFoundError(f"Metadata not found for key: {key}")
        return metadata

    def _path(self, key: str, create: bool = True) -> Path:
        digest = hashlib.md5(key.encode("utf-8")).hexdigest()
        shard = self._directory / digest[:2]
        if create:
            shard.mkdir(parents=True, exist_ok=True)
        return shard / digest[2:]

    def _metadata_path(self, key: str, create: bool = True) -> Path:
        path = self._path(key, create)
        return path.with_name(path.name + self.METADATA_SUFFIX)

    def _read_metadata(self, key: str) -> Optional[CacheMetadata]:
        meta_path = self._metadata_path(key, create=False)
        try:
            return CacheMetadata(**json.loads(meta_path.read_text(encoding="utf-8")))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, TypeError) as err:
            logger.warning("Discarding unreadable cache metadata %s: %s", meta_path, err)
            return None


def atomic_write(path: Path, content: str) -> None:
    """Write content to a temporary sibling file, then rename it over path."""
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=path.name, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except OSError as err:
        Path(temp_name).unlink(missing_ok=True)
        raise SerializationError(f"Failed to write cache file: {path}") from err
