"""The container facade and high level entry points for constructing containers.

A :class:`Container` owns one registry, one resolver and one provider
orchestrator. Applications create the container at their entry point and
pass it to whatever needs it; there is no process-wide instance.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from provisor.cache import CacheStore, FileCache
from provisor.domain import ServiceDescriptor, ServiceKey
from provisor.events import EventSink
from provisor.lazy import LazyService
from provisor.providers import ServiceProvider, ServiceProviderOrchestrator
from provisor.registry import ServiceRegistry
from provisor.resolver import DependencyResolver, ServiceFactory
from provisor.settings import ProvisorSettings
from provisor.snapshot import SnapshotCompiler, load_snapshot

__all__ = ["Container", "make_container", "load_compiled_container"]

logger = logging.getLogger(__name__)


class Container:
    """Registry, resolver and provider orchestrator behind a single object.

    Args:
        registry: An existing registry; a new one is created when omitted.
        cache: Store the new registry persists its descriptor table to.
        event_sink: Sink receiving registration and resolution events.
        settings: Settings supplying the snapshot directory and overwrite policy.

    Example:
        >>> container = Container()
        >>> container.register(ServiceDescriptor("primary.db", Database))
        >>> container.register(ServiceDescriptor("users", UserRepository, arguments={"db": "@primary.db"}))
        >>> container.get("users").db is container.get("primary.db")
        True
    """

    def __init__(
        self,
        registry: Optional[ServiceRegistry] = None,
        cache: Optional[CacheStore] = None,
        event_sink: Optional[EventSink] = None,
        settings: Optional[ProvisorSettings] = None,
    ):
        self._settings = settings
        if registry is None:
            allow_overwrite = settings.allow_overwrite if settings is not None else True
            registry = ServiceRegistry(cache=cache, event_sink=event_sink, allow_overwrite=allow_overwrite)
        elif event_sink is not None:
            registry.event_sink = event_sink
        self._registry = registry
        self._resolver = DependencyResolver(registry)
        self._orchestrator = ServiceProviderOrchestrator(self)

    @classmethod
    def from_settings(cls, settings: Optional[ProvisorSettings] = None, event_sink: Optional[EventSink] = None) -> "Container":
        """Build a container configured from :class:`ProvisorSettings`.

        A :class:`FileCache` is attached when ``settings.cache_enabled`` is set.
        """
        settings = settings or ProvisorSettings()
        cache = FileCache(settings.cache_dir, settings.cache_ttl) if settings.cache_enabled else None
        return cls(cache=cache, event_sink=event_sink, settings=settings)

    @classmethod
    def load_compiled(cls, path: Union[str, Path], event_sink: Optional[EventSink] = None) -> "Container":
        """Build a read-only container from a compiled snapshot."""
        return cls(registry=load_snapshot(path, event_sink))

    @property
    def registry(self) -> ServiceRegistry:
        return self._registry

    @property
    def resolver(self) -> DependencyResolver:
        return self._resolver

    @property
    def event_sink(self) -> Optional[EventSink]:
        return self._registry.event_sink

    @event_sink.setter
    def event_sink(self, sink: Optional[EventSink]) -> None:
        self._registry.event_sink = sink

    # Registration

    def register(self, descriptor: ServiceDescriptor, alias: Optional[str] = None, replace: Optional[bool] = None) -> None:
        self._registry.register(descriptor, alias, replace)

    def register_class(self, cls: type, alias: Optional[str] = None, **options: Any) -> ServiceDescriptor:
        return self._registry.register_class(cls, alias, **options)

    def register_factory(self, service_id: str, factory: Callable[..., Any], **options: Any) -> ServiceDescriptor:
        return self._registry.register_factory(service_id, factory, **options)

    def load_configuration(self, document: Mapping[str, Any]) -> list[str]:
        return self._registry.load_configuration(document)

    def load_configuration_file(self, path: Union[str, Path]) -> list[str]:
        return self._registry.load_configuration_file(path)

    def add_service_factory(self, factory: ServiceFactory) -> None:
        self._resolver.add_service_factory(factory)

    # Providers

    def add_provider(self, provider: ServiceProvider) -> None:
        self._orchestrator.add_provider(provider)

    def run_providers(self) -> None:
        self._orchestrator.run_providers()

    register_providers = run_providers

    @property
    def providers(self) -> list[ServiceProvider]:
        return self._orchestrator.providers

    # Resolution

    def get(self, key: ServiceKey, group: Optional[str] = None, tag: Optional[str] = None) -> Any:
        return self._resolver.resolve(key, group, tag)

    resolve = get

    def has(self, key: ServiceKey) -> bool:
        return self._registry.contains(key)

    __contains__ = has

    def query(self, group: Optional[str] = None, tag: Optional[str] = None) -> list[str]:
        return self._registry.query(group, tag)

    def call(self, func: Callable[..., Any], arguments: Optional[Mapping[Union[str, int], Any]] = None) -> Any:
        return self._resolver.call(func, arguments)

    def lazy(self, key: ServiceKey, group: Optional[str] = None, tag: Optional[str] = None) -> LazyService:
        return LazyService(self._resolver, key, group, tag)

    # Lifecycle

    def compile(self, target_dir: Union[str, Path, None] = None) -> Path:
        """Compile the registry into a snapshot.

        Args:
            target_dir: Directory to write to; defaults to the settings'
                ``snapshot_dir``.
        """
        if target_dir is None:
            target_dir = (self._settings or ProvisorSettings()).snapshot_dir
        return SnapshotCompiler(target_dir).compile(self._registry)

    def clear(self) -> None:
        """Remove every registration and cached instance."""
        self._registry.clear()
        self._resolver.reset()

    def clear_cache(self) -> None:
        self._registry.clear_cache()


def make_container(
    configuration: Optional[Mapping[str, Any]] = None,
    providers: Iterable[ServiceProvider] = (),
    cache: Optional[CacheStore] = None,
    event_sink: Optional[EventSink] = None,
) -> Container:
    """Construct a container, load a configuration document and run providers.

    Args:
        configuration: Optional ``{"services": {...}}`` document loaded first.
        providers: Service providers added, then registered and booted.
        cache: Optional store the descriptor table is persisted to.
        event_sink: Optional sink receiving registration and resolution events.

    Returns:
        The populated :class:`Container`.

    Raises:
        ConfigurationError: If the configuration document is malformed.
        CircularDependencyError: If provider dependencies form a cycle.
    """
    container = Container(cache=cache, event_sink=event_sink)
    if configuration is not None:
        container.load_configuration(configuration)
    for provider in providers:
        container.add_provider(provider)
    container.run_providers()
    return container


def load_compiled_container(path: Union[str, Path], event_sink: Optional[EventSink] = None) -> Container:
    """Construct a read-only container from a compiled snapshot.

    Raises:
        ConfigurationError: If the snapshot is missing or invalid.
    """
    return Container.load_compiled(path, event_sink)
