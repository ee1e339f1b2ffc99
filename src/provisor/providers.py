"""Service providers and the orchestrator that orders and runs them.

A service provider registers a batch of services and, once every provider
has registered, performs initialisation that may need services registered
by other providers. Providers declare the providers they must follow. The
orchestrator performs a topological sort, using priority to order providers
that are ready at the same time.
"""

import heapq
import logging
from collections import defaultdict
from typing import Any, Iterable, Iterator, Union

from provisor.errors import CircularDependencyError

__all__ = ["ServiceProvider", "ServiceProviderOrchestrator"]

logger = logging.getLogger(__name__)

ProviderReference = Union[type, str]


class ServiceProvider:
    """Base class for service providers.

    Attributes:
        priority: Higher priority providers run earlier, unless a dependency
            forces otherwise.
        dependencies: Provider classes (or class names) that must run first.

    Example:
        >>> class MailProvider(ServiceProvider):
        ...     priority = 10
        ...     dependencies = (ConfigProvider,)
        ...
        ...     def register(self, container):
        ...         container.register(ServiceDescriptor("mailer", SmtpMailer))
    """

    priority: int = 0
    dependencies: tuple[ProviderReference, ...] = ()

    @property
    def name(self) -> str:
        return type(self).__name__

    def register(self, container: Any) -> None:
        """Register services. Called on every provider before any is booted."""

    def boot(self, container: Any) -> None:
        """Initialise once every provider has registered its services."""


class _ProviderGraph:
    """
    Internal helper to represent and traverse the dependencies between providers.

    Each node corresponds to a provider, identified by its insertion index, and
    each edge indicates that one provider must run after another.
    """

    def __init__(self, providers: list[ServiceProvider]):
        self._providers = providers
        self._dependencies: dict[int, set[int]] = defaultdict(set)

        indices_by_name: dict[str, list[int]] = defaultdict(list)
        for index, provider in enumerate(providers):
            indices_by_name[provider.name].append(index)
            self._dependencies[index] = set()

        for index, provider in enumerate(providers):
            for dependency in provider.dependencies:
                name = dependency if isinstance(dependency, str) else dependency.__name__
                if name not in indices_by_name:
                    logger.debug("Provider %s depends on %s, which has not been added", provider.name, name)
                self._dependencies[index].update(i for i in indices_by_name.get(name, []) if i != index)

    def traverse(self) -> Iterator[ServiceProvider]:
        """
        Perform a topological traversal of the provider graph.

        Yields:
            Providers in an order where each provider's dependencies are yielded
            before it. Among providers whose dependencies are all satisfied, the
            highest priority comes first, then the earliest added.

        Raises:
            CircularDependencyError: If the providers' dependencies form a cycle.
        """
        ready_to_run = [
            self._sort_key(index)
            for index, dependencies in self._dependencies.items()
            if len(dependencies) == 0
        ]
        heapq.heapify(ready_to_run)

        while len(ready_to_run) > 0:
            _, next_index = heapq.heappop(ready_to_run)
            yield self._providers[next_index]

            self._remove_dependency(next_index, ready_to_run)

        if len(self._dependencies) > 0:
            raise CircularDependencyError(self._cycle())

    def _sort_key(self, index: int) -> tuple[int, int]:
        return -self._providers[index].priority, index

    def _remove_dependency(self, next_index: int, ready_to_run: list) -> None:
        """
        Remove a provider from the graph and update readiness of its dependents.

        Args:
            next_index: The provider that has just been emitted.
            ready_to_run: The heap of providers ready to run.
        """
        del self._dependencies[next_index]

        for dependee, dependencies in self._dependencies.items():
            if next_index in dependencies:
                dependencies.discard(next_index)
                if len(dependencies) == 0:
                    heapq.heappush(ready_to_run, self._sort_key(dependee))

    def _cycle(self) -> list[str]:
        """Follow unsatisfied dependencies from the first remaining provider until one repeats."""
        path: list[int] = []
        current = min(self._dependencies)
        while current not in path:
            path.append(current)
            current = min(self._dependencies[current])
        cycle = path[path.index(current):] + [current]
        return [self._providers[index].name for index in cycle]


class ServiceProviderOrchestrator:
    """Order service providers and run their register and boot phases.

    Args:
        container: The object passed to each provider's ``register`` and
            ``boot``; usually a :class:`provisor.container.Container`.
    """

    def __init__(self, container: Any):
        self._container = container
        self._added: list[ServiceProvider] = []
        self._providers: list[ServiceProvider] = []
        self._registered: set[int] = set()
        self._booted: set[int] = set()

    @property
    def providers(self) -> list[ServiceProvider]:
        """The providers in the order they will run."""
        return list(self._providers)

    def add_provider(self, provider: ServiceProvider) -> None:
        """Add a provider and re-sort the full provider list.

        Raises:
            CircularDependencyError: If the provider dependencies form a cycle;
                the provider is not added.
        """
        if any(existing is provider for existing in self._added):
            return

        candidates = self._added + [provider]
        self._providers = list(_ProviderGraph(candidates).traverse())
        self._added = candidates
        logger.debug("Provider order: %s", [p.name for p in self._providers])

    def add_providers(self, providers: Iterable[ServiceProvider]) -> None:
        for provider in providers:
            self.add_provider(provider)

    def run_providers(self) -> None:
        """Call ``register`` on every provider in order, then ``boot`` on every provider in order.

        Providers that already registered or booted in an earlier call are skipped.
        """
        providers = list(self._providers)
        for provider in providers:
            if id(provider) not in self._registered:
                provider.register(self._container)
                self._registered.add(id(provider))

        for provider in providers:
            if id(provider) not in self._booted:
                provider.boot(self._container)
                self._booted.add(id(provider))

    def is_registered(self, provider: ServiceProvider) -> bool:
        return id(provider) in self._registered

    def is_booted(self, provider: ServiceProvider) -> bool:
        return id(provider) in self._booted
