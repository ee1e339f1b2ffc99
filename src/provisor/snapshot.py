"""Compile a populated registry into a frozen snapshot, and load it back.

A compiled snapshot is a JSON artifact holding the fully expanded
descriptor table: every id, type and interface key, plus aliases and
registration order. Loading it restores the table directly, without
running any registration code, and yields a registry that refuses further
changes.
"""

import json
import logging
from pathlib import Path
from typing import Any, Mapping, NoReturn, Optional, Union

from provisor.cache import atomic_write
from provisor.errors import ConfigurationError, ImmutableContainerError, SerializationError
from provisor.events import EventSink
from provisor.registry import ServiceRegistry

__all__ = [
    "FORMAT_VERSION",
    "SNAPSHOT_FILENAME",
    "SnapshotCompiler",
    "FrozenServiceRegistry",
    "load_snapshot",
]

logger = logging.getLogger(__name__)

FORMAT_VERSION = "1.0"
SNAPSHOT_FILENAME = "services.json"


class SnapshotCompiler:
    """Write registries to snapshot artifacts in a target directory.

    Args:
        target_dir: Directory the artifact is written to; created if missing.

    Raises:
        SerializationError: If the directory cannot be created.
    """

    def __init__(self, target_dir: Union[str, Path]):
        self._target_dir = Path(target_dir)
        try:
            self._target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise SerializationError(f"Could not create directory: {self._target_dir}") from err

    @property
    def target_dir(self) -> Path:
        return self._target_dir

    def compile(self, registry: ServiceRegistry) -> Path:
        """Serialise the registry's descriptor table.

        Returns:
            The path of the written artifact.

        Raises:
            SerializationError: If a service is produced by a factory, holds
                arguments that are not JSON-serialisable, or refers to a type
                that cannot be imported by reference.
        """
        factories = [descriptor.id for descriptor in registry.descriptors() if descriptor.factory is not None]
        if factories:
            raise SerializationError(f"Services {factories} are produced by factories and cannot be compiled")

        artifact = {"format_version": FORMAT_VERSION, **registry.export_state()}
        path = self._target_dir / SNAPSHOT_FILENAME
        atomic_write(path, json.dumps(artifact, indent=2, sort_keys=True))

        logger.info("Compiled %d services to %s", len(artifact["order"]), path)
        return path


class FrozenServiceRegistry(ServiceRegistry):
    """A registry restored from a compiled snapshot.

    Lookups and resolution behave exactly as on the registry that was
    compiled; every attempt to change the registry raises
    :class:`ImmutableContainerError`.
    """

    def __init__(self, state: Mapping[str, Any], event_sink: Optional[EventSink] = None):
        super().__init__(event_sink=event_sink)
        self._restore_state(state)

    def register(self, *args: Any, **kwargs: Any) -> NoReturn:
        raise ImmutableContainerError("Cannot register services in a compiled registry")

    def register_class(self, *args: Any, **kwargs: Any) -> NoReturn:
        raise ImmutableContainerError("Cannot register services in a compiled registry")

    def register_factory(self, *args: Any, **kwargs: Any) -> NoReturn:
        raise ImmutableContainerError("Cannot register factories in a compiled registry")

    def load_configuration(self, *args: Any, **kwargs: Any) -> NoReturn:
        raise ImmutableContainerError("Cannot load configuration into a compiled registry")

    def load_configuration_file(self, *args: Any, **kwargs: Any) -> NoReturn:
        raise ImmutableContainerError("Cannot load configuration into a compiled registry")

    def clear(self) -> NoReturn:
        raise ImmutableContainerError("Cannot clear a compiled registry")


def load_snapshot(path: Union[str, Path], event_sink: Optional[EventSink] = None) -> FrozenServiceRegistry:
    """Load a compiled snapshot into a :class:`FrozenServiceRegistry`.

    Args:
        path: The artifact, or the directory it was compiled into.
        event_sink: Optional sink for events raised while resolving.

    Raises:
        ConfigurationError: If the artifact is missing, unreadable, of another
            format version, or refers to types that cannot be imported.
    """
    path = Path(path)
    if path.is_dir():
        path = path / SNAPSHOT_FILENAME
    if not path.exists():
        raise ConfigurationError(f"Compiled snapshot not found at {path}. Did you forget to compile the registry?")

    try:
        artifact = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as err:
        raise ConfigurationError(f"Invalid compiled snapshot {path}: {err}") from err

    version = artifact.get("format_version") if isinstance(artifact, dict) else None
    if version != FORMAT_VERSION:
        raise ConfigurationError(f"Compiled snapshot {path} has format version {version!r}, expected {FORMAT_VERSION!r}")

    registry = FrozenServiceRegistry(artifact, event_sink)
    logger.debug("Loaded %d services from %s", len(registry.registration_order), path)
    return registry
