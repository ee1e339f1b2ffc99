"""Provisor dependency injection registry.

Provisor keeps a registry of explicit service descriptors and builds object
graphs from them on demand. There is no attribute scanning and no hidden
global container. Services are declared as descriptors, through a
configuration document, or by service providers. An application creates a
container at its entry point and passes it along.

Key Features:
    - Singleton and transient lifecycles, with at-most-once singleton construction
    - Aliases, groups, tags and priorities for selecting among implementations
    - ``@service.id`` argument references resolved at construction time
    - Cycle detection reporting the full dependency chain
    - Service providers ordered by dependency, then priority
    - Compiled snapshots that load without any registration code

Basic Usage:
    >>> from provisor.container import Container
    >>> from provisor.domain import ServiceDescriptor
    >>>
    >>> container = Container()
    >>> container.register(ServiceDescriptor("primary.db", Database))
    >>> container.register(
    ...     ServiceDescriptor("users", UserRepository, arguments={"db": "@primary.db"})
    ... )
    >>> repository = container.get("users")

The framework consists of several core modules:
    - registry: Descriptor table, aliases, group/tag indices and persistence
    - resolver: Object graph construction and singleton caching
    - providers: Service providers and their ordering
    - snapshot: Compiling registries into frozen snapshots
    - container: The facade tying the above together
    - domain: Core domain models (ServiceDescriptor, Dependency, Inject)
    - errors: Framework-specific exceptions
"""
