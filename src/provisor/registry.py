"""The service registry: descriptor table, aliases, group/tag indices and persistence."""

import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Union, get_type_hints

from provisor.cache import CacheStore
from provisor.configuration import iter_service_configs, read_configuration_file
from provisor.domain import ServiceDescriptor, ServiceKey, type_key
from provisor.errors import (
    ConfigurationError,
    DuplicateServiceError,
    NotFoundError,
    SerializationError,
)
from provisor.events import SERVICE_REGISTERED, EventSink, ServiceRegistered
from provisor.locks import ReadWriteLock

__all__ = ["ServiceRegistry", "CACHE_KEY", "CACHE_VERSION", "CACHE_TTL"]

logger = logging.getLogger(__name__)

CACHE_KEY = "provisor.services"
CACHE_VERSION = "1.0"
CACHE_TTL = 3600


class ServiceRegistry:
    """Registry of service descriptors.

    Each descriptor is stored under its id and under its implementation type.
    A descriptor declaring an interface is also stored under the interface, so
    the interface resolves to the most recently registered implementation.

    Args:
        cache: Optional store the descriptor table is persisted to and
            restored from.
        event_sink: Optional sink receiving ``service.registered`` events.
        allow_overwrite: Default for ``register(replace=...)``. When False,
            registering an id twice raises :class:`DuplicateServiceError`.

    Example:
        >>> registry = ServiceRegistry()
        >>> registry.register(ServiceDescriptor("primary.db", Database))
        >>> registry.register(
        ...     ServiceDescriptor("users", UserRepository, arguments={"db": "@primary.db"}),
        ...     alias="user.repository",
        ... )
    """

    def __init__(
        self,
        cache: Optional[CacheStore] = None,
        event_sink: Optional[EventSink] = None,
        allow_overwrite: bool = True,
    ):
        self._cache = cache
        self.event_sink = event_sink
        self._allow_overwrite = allow_overwrite
        self._lock = ReadWriteLock()
        self._reset()

        if self._cache is not None:
            self._load_from_cache()

    def _reset(self):
        self._services: dict[str, ServiceDescriptor] = {}
        self._aliases: dict[str, str] = {}
        self._groups: dict[str, list[str]] = defaultdict(list)
        self._tags: dict[str, list[str]] = defaultdict(list)
        self._registration_order: list[str] = []

    # Registration

    def register(
        self,
        descriptor: ServiceDescriptor,
        alias: Optional[str] = None,
        replace: Optional[bool] = None,
    ) -> None:
        """Register a service descriptor.

        Args:
            descriptor: The descriptor to register.
            alias: Optional alternate name bound to the descriptor's id.
            replace: Whether an existing descriptor with the same id may be
                replaced; defaults to the registry's ``allow_overwrite``.

        Raises:
            ConfigurationError: If the alias equals the descriptor's id.
            DuplicateServiceError: If the id is taken and replacing is not allowed.
            SerializationError: If the registry is cached and the table cannot be persisted.
        """
        with self._lock.write():
            self._check_persistable(descriptor)
            self._insert(descriptor, alias, self._allow_overwrite if replace is None else replace)
            self._save_to_cache()
        self._dispatch_registered(descriptor, alias)

    def register_class(self, cls: type, alias: Optional[str] = None, **options: Any) -> ServiceDescriptor:
        """Register a class decorated with :func:`provisor.domain.service`.

        Explicit ``options`` (``id``, ``group``, ``tags``, ``priority``,
        ``singleton``, ``implements``, ``arguments``) override the decorator.

        Returns:
            The registered descriptor.
        """
        descriptor = ServiceDescriptor.for_class(cls, **options)
        self.register(descriptor, alias)
        return descriptor

    def register_factory(
        self,
        service_id: str,
        factory: Callable[..., Any],
        singleton: bool = False,
        alias: Optional[str] = None,
        **options: Any,
    ) -> ServiceDescriptor:
        """Register a service produced by a factory callable.

        The factory's return annotation, when present, is recorded as the
        implementation so the service can also be looked up by that type.

        Returns:
            The registered descriptor.
        """
        try:
            implementation = get_type_hints(factory).get("return", None)
        except (NameError, TypeError):
            implementation = None
        if not isinstance(implementation, type):
            implementation = None

        descriptor = ServiceDescriptor(
            service_id,
            implementation,
            singleton=singleton,
            factory=factory,
            **options,
        )
        self.register(descriptor, alias)
        return descriptor

    def load_configuration(self, document: Mapping[str, Any]) -> list[str]:
        """Register every service declared in a configuration document.

        ``@id`` argument references are kept verbatim and resolved when the
        service is constructed. Loading is not transactional: if an entry is
        invalid, the entries before it stay registered.

        Args:
            document: A mapping of the form ``{"services": {id: definition}}``.

        Returns:
            The ids registered, in document order.

        Raises:
            ConfigurationError: If the document or an entry is malformed.
        """
        registered: list[tuple[ServiceDescriptor, Optional[str]]] = []
        try:
            with self._lock.write():
                for service_id, config in iter_service_configs(document):
                    descriptor = config.to_descriptor(service_id)
                    self._check_persistable(descriptor)
                    self._insert(descriptor, config.alias, self._allow_overwrite)
                    registered.append((descriptor, config.alias))
                self._save_to_cache()
        finally:
            for descriptor, alias in registered:
                self._dispatch_registered(descriptor, alias)

        logger.debug("Loaded %d services from configuration", len(registered))
        return [descriptor.id for descriptor, _ in registered]

    def load_configuration_file(self, path: Union[str, Path]) -> list[str]:
        """Load a YAML or JSON configuration document from disk."""
        return self.load_configuration(read_configuration_file(path))

    def clear(self) -> None:
        """Remove every descriptor, alias and index entry."""
        with self._lock.write():
            self._reset()

    def clear_cache(self) -> None:
        if self._cache is not None:
            self._cache.clear()

    # Queries

    def contains(self, key: ServiceKey) -> bool:
        """True if key is a registered id, type or alias."""
        key = type_key(key)
        with self._lock.read():
            return key in self._services or key in self._aliases

    __contains__ = contains

    def get_descriptor(self, key: ServiceKey) -> ServiceDescriptor:
        """Return the descriptor stored under key, following aliases.

        Raises:
            NotFoundError: If nothing is registered under key.
        """
        lookup = type_key(key)
        with self._lock.read():
            lookup = self._aliases.get(lookup, lookup)
            descriptor = self._services.get(lookup)
        if descriptor is None:
            if isinstance(key, type):
                raise NotFoundError(f"No implementation found for {lookup}")
            raise NotFoundError(f"Service {lookup} not found")
        return descriptor

    def canonical_id(self, key: ServiceKey) -> str:
        """Return the id of the descriptor key resolves to."""
        return self.get_descriptor(key).id

    def candidates_for(self, key: ServiceKey) -> list[ServiceDescriptor]:
        """Return the descriptors that can satisfy key, in registration order.

        If key names an interface declared by registered descriptors, every
        such descriptor is returned. Otherwise the single descriptor stored
        under key is returned, or an empty list.
        """
        lookup = type_key(key)
        with self._lock.read():
            lookup = self._aliases.get(lookup, lookup)
            implementations = [
                descriptor
                for descriptor in self._descriptors()
                if lookup in descriptor.interface_keys
            ]
            if implementations:
                return implementations
            descriptor = self._services.get(lookup)
        return [descriptor] if descriptor is not None else []

    def query(self, group: Optional[str] = None, tag: Optional[str] = None) -> list[str]:
        """Return the keys bucketed under a group and/or tag, in insertion order.

        With both filters, the group bucket is narrowed to keys also carrying the tag.
        """
        with self._lock.read():
            if group is not None:
                keys = list(self._groups.get(group, []))
                if tag is not None:
                    tagged = set(self._tags.get(tag, []))
                    keys = [key for key in keys if key in tagged]
                return keys
            if tag is not None:
                return list(self._tags.get(tag, []))
        return []

    def services_in_group(self, group: str) -> list[str]:
        return self.query(group=group)

    def services_with_tag(self, tag: str) -> list[str]:
        return self.query(tag=tag)

    def has_service_in_group(self, group: str, key: ServiceKey) -> bool:
        return type_key(key) in self.query(group=group)

    def has_service_with_tag(self, tag: str, key: ServiceKey) -> bool:
        return type_key(key) in self.query(tag=tag)

    @property
    def registration_order(self) -> list[str]:
        with self._lock.read():
            return list(self._registration_order)

    def services(self) -> dict[str, ServiceDescriptor]:
        """Return a copy of the full table, including type and interface keys."""
        with self._lock.read():
            return dict(self._services)

    def aliases(self) -> dict[str, str]:
        with self._lock.read():
            return dict(self._aliases)

    def descriptors(self) -> list[ServiceDescriptor]:
        """Return each registered descriptor once, in registration order."""
        with self._lock.read():
            return self._descriptors()

    # State export and restore, shared by the cache and compiled snapshots.

    def export_state(self) -> dict[str, Any]:
        """Return the JSON-compatible descriptor table.

        Factory descriptors exist only at runtime and are left out.

        Raises:
            SerializationError: If a descriptor cannot be serialised.
        """
        with self._lock.read():
            return {
                "services": {
                    key: descriptor.to_record()
                    for key, descriptor in self._services.items()
                    if descriptor.factory is None
                },
                "aliases": {
                    alias: service_id
                    for alias, service_id in self._aliases.items()
                    if service_id in self._services and self._services[service_id].factory is None
                },
                "order": [
                    service_id
                    for service_id in self._registration_order
                    if service_id in self._services and self._services[service_id].factory is None
                ],
            }

    def _restore_state(self, state: Mapping[str, Any]) -> None:
        """Replace the registry contents with an exported table.

        Raises:
            ConfigurationError: If the table is malformed or a type cannot be imported.
        """
        records = state.get("services")
        if not isinstance(records, Mapping):
            raise ConfigurationError("Descriptor table has no 'services' mapping")

        by_id: dict[str, ServiceDescriptor] = {}
        services: dict[str, ServiceDescriptor] = {}
        for key, record in records.items():
            if not isinstance(record, Mapping):
                raise ConfigurationError(f"Malformed service record under '{key}'")
            service_id = record.get("id", key)
            if service_id not in by_id:
                by_id[service_id] = ServiceDescriptor.from_record(record)
            services[key] = by_id[service_id]

        with self._lock.write():
            self._reset()
            self._services = services
            self._aliases = dict(state.get("aliases") or {})
            self._registration_order = list(state.get("order") or [])
            for descriptor in self._descriptors():
                self._index(descriptor)

    # Internals

    def _insert(self, descriptor: ServiceDescriptor, alias: Optional[str], replace: bool) -> None:
        if alias is not None and alias == descriptor.id:
            raise ConfigurationError(f"Alias '{alias}' cannot be the id of the service it names")

        previous = self._services.get(descriptor.id)
        if previous is not None and previous.id == descriptor.id:
            if previous == descriptor:
                # Same definition again, e.g. after a restore from cache.
                logger.debug("Service '%s' is already registered with this definition", descriptor.id)
                if alias is not None:
                    self._aliases[alias] = descriptor.id
                return
            if not replace:
                raise DuplicateServiceError(f"Service '{descriptor.id}' is already registered")
            logger.warning("Service '%s' is already registered; replacing it", descriptor.id)
            self._unindex(previous)

        for key in self._keys_of(descriptor):
            current = self._services.get(key)
            if key != descriptor.id and current is not None and current.id == key:
                # Ids take precedence over type and interface keys.
                logger.debug("Key '%s' is the id of another service; not mapping it to '%s'", key, descriptor.id)
                continue
            self._services[key] = descriptor
        self._index(descriptor)
        self._registration_order.append(descriptor.id)

        if alias is not None:
            self._aliases[alias] = descriptor.id

        logger.debug("Registered service '%s' (%s)", descriptor.id, descriptor.implementation)

    def _index(self, descriptor: ServiceDescriptor) -> None:
        keys = [descriptor.id, *descriptor.interface_keys]
        if descriptor.group:
            self._groups[descriptor.group].extend(keys)
        for tag in descriptor.tags:
            self._tags[tag].extend(keys)

    def _unindex(self, previous: ServiceDescriptor) -> None:
        """Drop the index and table entries that still point at a replaced descriptor."""
        groups = [previous.group] if previous.group else []
        for buckets, labels in ((self._groups, groups), (self._tags, previous.tags)):
            for label in labels:
                bucket = buckets.get(label, [])
                bucket[:] = [key for key in bucket if key != previous.id]
                for interface_key in previous.interface_keys:
                    if interface_key in bucket:
                        bucket.remove(interface_key)
                if not bucket:
                    buckets.pop(label, None)

        for key in self._keys_of(previous):
            if self._services.get(key) is previous:
                del self._services[key]

        for interface_key in previous.interface_keys:
            if interface_key in self._services:
                continue
            fallback = [
                descriptor
                for descriptor in self._descriptors()
                if descriptor is not previous and interface_key in descriptor.interface_keys
            ]
            if fallback:
                self._services[interface_key] = fallback[-1]

    def _keys_of(self, descriptor: ServiceDescriptor) -> Iterable[str]:
        keys = [descriptor.id]
        if descriptor.implementation is not None:
            keys.append(descriptor.implementation_key)
        keys.extend(descriptor.interface_keys)
        return keys

    def _check_persistable(self, descriptor: ServiceDescriptor) -> None:
        """Fail before the table changes if a cached registry could not persist descriptor."""
        if self._cache is not None and descriptor.factory is None:
            descriptor.to_record()

    def _descriptors(self) -> list[ServiceDescriptor]:
        seen = set()
        descriptors = []
        for service_id in self._registration_order:
            descriptor = self._services.get(service_id)
            if service_id in seen or descriptor is None or descriptor.id != service_id:
                continue
            seen.add(service_id)
            descriptors.append(descriptor)
        return descriptors

    def _dispatch_registered(self, descriptor: ServiceDescriptor, alias: Optional[str]) -> None:
        if self.event_sink is None:
            return
        implementation = descriptor.implementation
        self.event_sink.dispatch(
            SERVICE_REGISTERED,
            ServiceRegistered(
                service_id=descriptor.id,
                service_class=type_key(implementation) if implementation is not None else descriptor.id,
                alias=alias,
                group=descriptor.group,
                tags=descriptor.tags,
                singleton=descriptor.singleton,
                implements=descriptor.interface_key,
            ),
        )

    def _save_to_cache(self) -> None:
        if self._cache is None:
            return
        self._cache.set(CACHE_KEY, {"version": CACHE_VERSION, **self.export_state()}, CACHE_TTL)

    def _load_from_cache(self) -> None:
        try:
            if not self._cache.has(CACHE_KEY):
                return
            payload = self._cache.get(CACHE_KEY)
            version = payload.get("version") if isinstance(payload, Mapping) else None
            if version != CACHE_VERSION:
                raise ConfigurationError(
                    f"Cached descriptor table has version {version!r}, expected {CACHE_VERSION!r}"
                )
            self._restore_state(payload)
            logger.debug("Restored %d services from cache", len(self._registration_order))
        except (NotFoundError, SerializationError, ConfigurationError) as err:
            logger.warning("Discarding cached descriptor table: %s", err)
            self._reset()
            self._cache.delete(CACHE_KEY)
