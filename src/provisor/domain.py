"""Domain models used throughout the framework."""

import importlib
import inspect
import json
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional, Union

from provisor.errors import ConfigurationError, SerializationError

__all__ = [
    "ServiceKey",
    "ServiceDescriptor",
    "Dependency",
    "Inject",
    "service",
    "type_key",
    "import_reference",
    "is_reference",
    "SERVICE_METADATA",
]


ServiceKey = Union[str, type]
"""Type alias for keys used to look up services.

Services can be looked up either by string id (or alias) or by type. Types are
converted to their dotted reference for internal lookup.

Example:
    >>> registry.get_descriptor("primary.db")   # Lookup by id
    >>> registry.get_descriptor(Database)       # Lookup by type
"""

SERVICE_METADATA = "__service_metadata__"


def type_key(key: Any) -> str:
    """Return the table key for a service id or type.

    Example:
        >>> type_key("mailer")          # Returns "mailer"
        >>> type_key(Database)          # Returns "app.db:Database"
    """
    if isinstance(key, str):
        return key
    module = getattr(key, "__module__", None)
    qualname = getattr(key, "__qualname__", None)
    if module is None or qualname is None:
        raise ConfigurationError(f"{key!r} cannot be used as a service key")
    return f"{module}:{qualname}"


def import_reference(reference: str) -> Any:
    """Import the object named by a ``module:QualName`` or ``module.Name`` reference.

    Raises:
        ConfigurationError: If the module or attribute cannot be found.
    """
    if ":" in reference:
        module_name, _, qualname = reference.partition(":")
    elif "." in reference:
        module_name, _, qualname = reference.rpartition(".")
    else:
        raise ConfigurationError(f"'{reference}' is not a module-qualified reference")

    try:
        target = importlib.import_module(module_name)
        for part in qualname.split("."):
            target = getattr(target, part)
    except (ImportError, AttributeError) as err:
        raise ConfigurationError(f"Cannot import '{reference}': {err}") from err
    return target


def is_reference(value: Any) -> bool:
    """True if an argument value is an ``@service.id`` reference."""
    return isinstance(value, str) and value.startswith("@") and len(value) > 1


@dataclass(frozen=True)
class Inject:
    """Marks a class attribute for injection after construction.

    Example:
        >>> class ReportService:
        ...     mailer: Annotated[Mailer, Inject()]
        ...     audit: Annotated[AuditLog, Inject("audit.primary")]
    """

    service: Optional[str] = None


@dataclass(frozen=True)
class Dependency:
    """Represents a dependency required by a service constructor or callable.

    Attributes:
        parameter_name: The parameter name in the callable's signature.
        declared_type: The annotated type of the parameter, if any.
        component_name: The service id named by an ``Annotated`` qualifier, if any.
        kind: The ``inspect.Parameter`` kind of the parameter.
        default: The parameter default, or ``inspect.Parameter.empty``.
    """

    parameter_name: str
    declared_type: Optional[type]
    component_name: Optional[str]
    kind: Any = inspect.Parameter.POSITIONAL_OR_KEYWORD
    default: Any = inspect.Parameter.empty

    @property
    def has_default(self) -> bool:
        return self.default is not inspect.Parameter.empty


@dataclass(frozen=True)
class ServiceDescriptor:
    """Record describing how to construct one named service.

    Attributes:
        id: Unique key of the service.
        implementation: The concrete class (or callable) to instantiate.
        interface: Optional type this service satisfies.
        provides: Further interfaces the service is registered under. Filled
            by :meth:`for_class` with the base classes that carry their own
            ``@service`` metadata.
        group: Optional group label.
        tags: Tag labels attached to the service.
        priority: Tie-breaker among candidates matching a group/tag filter.
        singleton: Whether one instance is cached and reused.
        arguments: Named (str) or positional (int) constructor arguments.
            String values starting with ``@`` reference other services.
        factory: Optional callable that produces the instance instead of the
            implementation's constructor.

    Example:
        >>> ServiceDescriptor(
        ...     "user.repository",
        ...     UserRepository,
        ...     arguments={"db": "@primary.db"},
        ... )
    """

    id: str
    implementation: Any
    interface: Optional[type] = None
    group: Optional[str] = None
    tags: tuple[str, ...] = ()
    priority: int = 0
    singleton: bool = True
    arguments: dict[Union[str, int], Any] = field(default_factory=dict)
    factory: Optional[Callable[..., Any]] = None
    provides: tuple[type, ...] = ()

    def __post_init__(self):
        if not isinstance(self.id, str) or not self.id:
            raise ConfigurationError(f"Service id must be a non-empty string, got {self.id!r}")
        # Accept any iterable of tags but store an immutable tuple.
        object.__setattr__(self, "tags", tuple(self.tags or ()))
        object.__setattr__(self, "arguments", dict(self.arguments or {}))
        object.__setattr__(
            self, "provides", tuple(t for t in self.provides or () if t is not self.interface)
        )

    @property
    def implementation_key(self) -> str:
        return type_key(self.implementation)

    @property
    def interface_key(self) -> Optional[str]:
        return type_key(self.interface) if self.interface is not None else None

    @property
    def interface_keys(self) -> list[str]:
        """Keys of the declared interface followed by those of ``provides``."""
        keys = [self.interface_key] if self.interface is not None else []
        keys.extend(type_key(t) for t in self.provides)
        return keys

    @classmethod
    def for_class(cls, target: type, **options: Any) -> "ServiceDescriptor":
        """Build a descriptor from a class decorated with :func:`service`.

        Explicit ``options`` override the decorator's metadata. ``arguments`` may
        be passed as an option. Base classes that are themselves decorated with
        :func:`service` become additional interfaces of the descriptor.

        Raises:
            ConfigurationError: If the class carries no service metadata.
        """
        if not _has_own_metadata(target):
            raise ConfigurationError(
                f"Class {target.__qualname__} must be decorated with @service to be registered"
            )

        merged = {**getattr(target, SERVICE_METADATA)["options"], **options}
        return cls(
            merged.get("id") or type_key(target),
            target,
            interface=merged.get("implements"),
            group=merged.get("group"),
            tags=tuple(merged.get("tags") or ()),
            priority=merged.get("priority") or 0,
            singleton=merged.get("singleton", True),
            arguments=merged.get("arguments") or {},
            provides=tuple(base for base in target.__mro__[1:] if _has_own_metadata(base)),
        )

    def with_options(self, **changes: Any) -> "ServiceDescriptor":
        return replace(self, **changes)

    def to_record(self) -> dict[str, Any]:
        """Serialise the descriptor into a JSON-compatible record.

        Raises:
            SerializationError: If the descriptor holds a factory, an argument that
                is not JSON-serialisable, or a type that cannot be imported back.
        """
        if self.factory is not None:
            raise SerializationError(f"Service '{self.id}' is produced by a factory and cannot be serialised")

        arguments = [[key, value] for key, value in self.arguments.items()]
        try:
            json.dumps(arguments)
        except (TypeError, ValueError) as err:
            raise SerializationError(f"Arguments of service '{self.id}' are not serialisable: {err}") from err

        return {
            "id": self.id,
            "class": _portable_reference(self.implementation),
            "implements": _portable_reference(self.interface) if self.interface is not None else None,
            "group": self.group,
            "tags": list(self.tags),
            "priority": self.priority,
            "singleton": self.singleton,
            "arguments": arguments,
            "provides": [_portable_reference(t) for t in self.provides],
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "ServiceDescriptor":
        """Rebuild a descriptor from :meth:`to_record` output.

        Raises:
            ConfigurationError: If the record is malformed or a type cannot be imported.
        """
        try:
            implements = record.get("implements")
            return cls(
                record["id"],
                import_reference(record["class"]),
                interface=import_reference(implements) if implements else None,
                group=record.get("group"),
                tags=tuple(record.get("tags") or ()),
                priority=int(record.get("priority") or 0),
                singleton=bool(record.get("singleton", True)),
                arguments={key: value for key, value in record.get("arguments") or []},
                provides=tuple(import_reference(reference) for reference in record.get("provides") or ()),
            )
        except (KeyError, TypeError, ValueError) as err:
            raise ConfigurationError(f"Malformed service record {record!r}") from err


def service(
    id: Optional[str] = None,
    implements: Optional[type] = None,
    group: Optional[str] = None,
    tags: Optional[list[str]] = None,
    priority: int = 0,
    singleton: bool = True,
) -> Callable[[type], type]:
    """Decorator attaching service metadata to a class.

    The decorator performs no registration; pass the class to
    ``ServiceRegistry.register_class`` to register it.

    Example:
        @service(id="mailer", implements=Mailer, group="mail", tags=["smtp"])
        class SmtpMailer(Mailer):
            ...
    """

    def decorator(cls):
        if not inspect.isclass(cls):
            raise ConfigurationError(f"{cls} is not a class")
        options = {
            "id": id,
            "implements": implements,
            "group": group,
            "tags": list(tags or []),
            "priority": priority,
            "singleton": singleton,
        }
        setattr(cls, SERVICE_METADATA, {"target": cls, "options": options})
        return cls

    return decorator


def _has_own_metadata(target: type) -> bool:
    metadata = getattr(target, SERVICE_METADATA, None)
    return metadata is not None and metadata.get("target") is target


def _portable_reference(target: Any) -> str:
    reference = type_key(target)
    if "<locals>" in reference:
        raise SerializationError(f"{reference} is defined in a local scope and cannot be imported by reference")
    return reference
