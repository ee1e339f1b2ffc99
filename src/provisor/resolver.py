"""Build object graphs from the descriptors held in a :class:`ServiceRegistry`.

Resolution is recursive. Each service's constructor parameters are bound
from its declared arguments, ``@id`` references, annotated types and
defaults, and every service reached on the way is built first. Services
under construction are tracked on a per-thread stack, so revisiting one
raises :class:`CircularDependencyError` with the full chain.

Singleton instances are cached per descriptor id. A per-id guard makes sure
two threads asking for the same singleton at the same time build it once.
"""

import inspect
import json
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import nullcontext
from typing import Any, Callable, Mapping, Optional, Union

from provisor.domain import Dependency, ServiceDescriptor, ServiceKey, is_reference
from provisor.errors import (
    CircularDependencyError,
    ConfigurationError,
    NotFoundError,
    UnresolvableParameterError,
)
from provisor.events import SERVICE_RESOLVED, EventDispatcher, EventSink, ServiceResolved
from provisor.introspection import get_dependencies, injectable_fields, is_builtin_type
from provisor.registry import ServiceRegistry

__all__ = ["DependencyResolver", "ServiceFactory"]

logger = logging.getLogger(__name__)

_SKIPPED_KINDS = (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)


class ServiceFactory(ABC):
    """A pluggable factory the resolver delegates construction to.

    Factories are consulted in the order they were added; the first whose
    :meth:`supports` returns True builds the service.
    """

    @abstractmethod
    def supports(self, service_id: str) -> bool:
        """True if this factory builds the service with the given id."""

    @abstractmethod
    def create_service(
        self, resolver: "DependencyResolver", service_id: str, arguments: dict[Union[str, int], Any]
    ) -> Any:
        """Build the service, given the descriptor's declared arguments."""


class DependencyResolver:
    """Resolve services registered in a :class:`ServiceRegistry`.

    Args:
        registry: The registry holding the descriptors.
        event_sink: Optional sink for ``service.resolved`` events; defaults
            to the registry's sink.

    Example:
        >>> resolver = DependencyResolver(registry)
        >>> repository = resolver.resolve("user.repository")
        >>> logger = resolver.resolve(LoggerInterface, group="web", tag="svc")
    """

    def __init__(self, registry: ServiceRegistry, event_sink: Optional[EventSink] = None):
        self._registry = registry
        self._event_sink = event_sink
        # id -> (descriptor the instance was built from, instance)
        self._instances: dict[str, tuple[ServiceDescriptor, Any]] = {}
        self._factories: list[ServiceFactory] = []
        self._local = threading.local()
        self._guards: dict[str, threading.RLock] = {}
        self._guards_lock = threading.Lock()

    @property
    def registry(self) -> ServiceRegistry:
        return self._registry

    @property
    def event_sink(self) -> Optional[EventSink]:
        return self._event_sink if self._event_sink is not None else self._registry.event_sink

    @event_sink.setter
    def event_sink(self, sink: Optional[EventSink]) -> None:
        self._event_sink = sink

    def add_service_factory(self, factory: ServiceFactory) -> None:
        self._factories.append(factory)

    def resolve(self, key: ServiceKey, group: Optional[str] = None, tag: Optional[str] = None) -> Any:
        """Return an instance of the service registered under key.

        Without ``group`` or ``tag`` the descriptor stored under key (after
        alias and interface mapping) is built. With either filter, every
        descriptor implementing key is considered, narrowed to those in the
        group and carrying the tag, and the one with the highest priority is
        built. Equal priorities go to the earliest registered.

        Raises:
            NotFoundError: If key is unknown or no candidate matches the filters.
            CircularDependencyError: If building the service revisits itself.
            UnresolvableParameterError: If a constructor parameter cannot be bound.
        """
        if group is None and tag is None:
            return self._build(key)
        return self._build(self._select(key, group, tag).id)

    def call(self, func: Callable[..., Any], arguments: Optional[Mapping[Union[str, int], Any]] = None) -> Any:
        """Invoke a callable, binding its parameters the same way constructors are bound."""
        args, kwargs, _ = self._bind(func, arguments or {}, None)
        return func(*args, **kwargs)

    def has_instance(self, key: ServiceKey) -> bool:
        try:
            descriptor = self._registry.get_descriptor(key)
        except NotFoundError:
            return False
        return self._cached(descriptor) is not None

    def reset(self) -> None:
        """Forget every cached singleton instance."""
        self._instances.clear()

    @property
    def resolution_stack(self) -> list[str]:
        """The ids under construction on the current thread, outermost first."""
        return list(self._stack)

    @property
    def _stack(self) -> list[str]:
        stack = getattr(self._local, "stack", None)
        if stack is None:
            stack = self._local.stack = []
        return stack

    def _select(self, key: ServiceKey, group: Optional[str], tag: Optional[str]) -> ServiceDescriptor:
        candidates = [
            descriptor
            for descriptor in self._registry.candidates_for(key)
            if (group is None or descriptor.group == group) and (tag is None or tag in descriptor.tags)
        ]
        if not candidates:
            raise NotFoundError(
                f"No service found for id '{key}' with group '{group or 'any'}' and tag '{tag or 'any'}'"
            )
        # max() keeps the first of equal elements, i.e. the earliest registered.
        return max(candidates, key=lambda descriptor: descriptor.priority)

    def _build(self, key: ServiceKey) -> Any:
        descriptor = self._registry.get_descriptor(key)
        service_id = descriptor.id

        stack = self._stack
        if service_id in stack:
            raise CircularDependencyError(stack + [service_id])

        stack.append(service_id)
        try:
            with self._guard(descriptor):
                return self._construct(descriptor)
        finally:
            stack.pop()

    def _guard(self, descriptor: ServiceDescriptor):
        if not descriptor.singleton:
            return nullcontext()
        with self._guards_lock:
            return self._guards.setdefault(descriptor.id, threading.RLock())

    def _construct(self, descriptor: ServiceDescriptor) -> Any:
        service_id = descriptor.id

        cached = self._cached(descriptor)
        if cached is not None:
            instance = cached[1]
            self._dispatch_resolved(service_id, instance, True, descriptor.arguments.values())
            return instance

        dependencies: list[Any] = []
        factory = self._find_factory(service_id) if descriptor.factory is None else None
        if descriptor.factory is not None:
            args, kwargs = self._resolve_arguments(descriptor.arguments)
            instance = descriptor.factory(*args, **kwargs)
        elif factory is not None:
            instance = factory.create_service(self, service_id, dict(descriptor.arguments))
        else:
            args, kwargs, dependencies = self._bind(descriptor.implementation, descriptor.arguments, service_id)
            instance = descriptor.implementation(*args, **kwargs)
            self._inject_fields(instance)

        if descriptor.singleton:
            self._instances[service_id] = (descriptor, instance)

        logger.debug("Constructed service '%s'", service_id)
        self._dispatch_resolved(service_id, instance, False, dependencies)
        return instance

    def _cached(self, descriptor: ServiceDescriptor) -> Optional[tuple[ServiceDescriptor, Any]]:
        """Return the cached ``(descriptor, instance)`` entry, dropping it if the id was re-registered."""
        entry = self._instances.get(descriptor.id)
        if entry is None:
            return None
        if entry[0] is not descriptor:
            logger.debug("Service '%s' was re-registered; discarding its cached instance", descriptor.id)
            self._instances.pop(descriptor.id, None)
            return None
        return entry

    def _find_factory(self, service_id: str) -> Optional[ServiceFactory]:
        return next((factory for factory in self._factories if factory.supports(service_id)), None)

    def _bind(
        self,
        target: Callable[..., Any],
        arguments: Mapping[Union[str, int], Any],
        service_id: Optional[str],
    ) -> tuple[list[Any], dict[str, Any], list[Any]]:
        """Bind each parameter of target to a value.

        Strategies, in order: named argument, next positional argument,
        ``Annotated`` service id, registered declared type, default value.

        Returns:
            Positional arguments, keyword arguments, and every bound value in
            signature order.
        """
        args: list[Any] = []
        kwargs: dict[str, Any] = {}
        bound: list[Any] = []
        position = 0

        for dependency in get_dependencies(target):
            if dependency.kind in _SKIPPED_KINDS:
                continue

            if dependency.parameter_name in arguments:
                value = self._argument_value(arguments[dependency.parameter_name])
            elif position in arguments:
                value = self._argument_value(arguments[position])
                position += 1
            elif dependency.component_name is not None:
                value = self.resolve(dependency.component_name)
            elif self._is_service_type(dependency):
                value = self.resolve(dependency.declared_type)
            elif dependency.has_default:
                value = dependency.default
            else:
                raise UnresolvableParameterError(dependency.parameter_name, service_id)

            if dependency.kind == inspect.Parameter.POSITIONAL_ONLY:
                args.append(value)
            else:
                kwargs[dependency.parameter_name] = value
            bound.append(value)

        return args, kwargs, bound

    def _is_service_type(self, dependency: Dependency) -> bool:
        return not is_builtin_type(dependency.declared_type) and dependency.declared_type in self._registry

    def _resolve_arguments(self, arguments: Mapping[Union[str, int], Any]) -> tuple[list[Any], dict[str, Any]]:
        args = [self._argument_value(arguments[key]) for key in sorted(k for k in arguments if isinstance(k, int))]
        kwargs = {key: self._argument_value(value) for key, value in arguments.items() if isinstance(key, str)}
        return args, kwargs

    def _argument_value(self, value: Any) -> Any:
        if is_reference(value):
            return self.resolve(value[1:])
        return value

    def _inject_fields(self, instance: Any) -> None:
        for name, declared_type, marker in injectable_fields(type(instance)):
            if marker.service is not None:
                value = self.resolve(marker.service)
            elif declared_type in (EventSink, EventDispatcher):
                if self.event_sink is None:
                    raise ConfigurationError(f"No event sink is configured to inject into '{name}'")
                value = self.event_sink
            elif is_builtin_type(declared_type) or declared_type not in self._registry:
                continue
            else:
                value = self.resolve(declared_type)
            setattr(instance, name, value)

    def _dispatch_resolved(self, service_id: str, instance: Any, from_cache: bool, dependencies) -> None:
        sink = self.event_sink
        if sink is None:
            return
        sink.dispatch(
            SERVICE_RESOLVED,
            ServiceResolved(
                service_id=service_id,
                instance=instance,
                from_cache=from_cache,
                dependencies=tuple(_format_dependency(value) for value in dependencies),
            ),
        )


def _format_dependency(value: Any) -> str:
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, default=_format_dependency)
    if value is None or isinstance(value, (str, int, float, bool)):
        return str(value)
    return type(value).__qualname__
