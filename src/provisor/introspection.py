"""Signature and annotation introspection for service constructors."""

import inspect
import logging
from typing import Annotated, Any, Callable, Optional, get_args, get_origin, get_type_hints

from provisor.domain import Dependency, Inject
from provisor.errors import ConfigurationError

__all__ = ["get_dependencies", "injectable_fields", "is_builtin_type"]

logger = logging.getLogger(__name__)


def get_dependencies(target: Callable) -> list[Dependency]:
    """Extract dependency information from a class constructor or callable.

    Analyzes the signature to create Dependency objects for each parameter.
    Supports both simple type annotations and Annotated types with a service
    id qualifier.

    Args:
        target: The class or function to analyze.

    Returns:
        List of Dependency objects describing each parameter, in signature order.

    Raises:
        ConfigurationError: If an annotation names something that does not exist.

    Example:
        >>> class Service:
        ...     def __init__(self, untyped, db: Database, cache: Annotated[Cache, "redis"]): ...
        >>> get_dependencies(Service)
        >>> # Returns:
        >>> # [Dependency("untyped", None, None),
        >>> #  Dependency("db", Database, None),
        >>> #  Dependency("cache", Cache, "redis")]
    """
    try:
        sig = inspect.signature(target)
    except (TypeError, ValueError):
        # Builtins and some extension types expose no signature.
        return []

    hints = _type_hints(target.__init__ if inspect.isclass(target) else target)
    return [
        _make_dependency(hints.get(name), parameter)
        for name, parameter in sig.parameters.items()
    ]


def injectable_fields(cls: type) -> list[tuple[str, Optional[type], Inject]]:
    """List the class attributes marked for injection with ``Annotated[T, Inject()]``.

    Returns:
        ``(attribute name, declared type, marker)`` tuples, base classes first.

    Raises:
        ConfigurationError: If the class marks attributes for injection and
            its annotations cannot be evaluated.
    """
    try:
        hints = _type_hints(cls)
    except ConfigurationError as err:
        if _declares_injection(cls):
            raise
        logger.debug("Skipping field injection for %s: %s", cls.__qualname__, err)
        return []
    fields = []
    seen = set()
    for klass in reversed(cls.__mro__):
        if klass is object:
            continue
        for name in inspect.get_annotations(klass):
            annotation = hints.get(name)
            if name in seen or get_origin(annotation) is not Annotated:
                continue
            base_type, *metadata = get_args(annotation)
            marker = next((m for m in metadata if isinstance(m, Inject)), None)
            if marker is not None:
                seen.add(name)
                fields.append((name, base_type, marker))
    return fields


def is_builtin_type(declared_type: Any) -> bool:
    """True for primitive and builtin types that can never be services."""
    return (
        declared_type is None
        or declared_type is Any
        or not inspect.isclass(declared_type)
        or declared_type.__module__ == "builtins"
    )


def _declares_injection(cls: type) -> bool:
    for klass in cls.__mro__:
        for annotation in inspect.get_annotations(klass).values():
            if isinstance(annotation, str):
                if "Inject(" in annotation:
                    return True
            elif get_origin(annotation) is Annotated and any(
                isinstance(m, Inject) for m in get_args(annotation)[1:]
            ):
                return True
    return False


def _type_hints(target: Any) -> dict[str, Any]:
    """Evaluate the annotations of target.

    Raises:
        ConfigurationError: If an annotation names something that does not exist.
    """
    try:
        return get_type_hints(target, include_extras=True)
    except NameError as err:
        name = getattr(target, "__qualname__", repr(target))
        raise ConfigurationError(f"Cannot evaluate the annotations of {name}: {err}") from err
    except TypeError as err:
        # Slot wrappers such as object.__init__ carry no annotations.
        logger.debug("Could not evaluate annotations of %r: %s", target, err)
        return {}


def _make_dependency(annotation, parameter: inspect.Parameter) -> Dependency:
    if not annotation:
        return Dependency(parameter.name, None, None, parameter.kind, parameter.default)

    if get_origin(annotation) is Annotated:
        base_type, *metadata = get_args(annotation)
        component_name = next((m for m in metadata if isinstance(m, str)), None)
        return Dependency(parameter.name, base_type, component_name, parameter.kind, parameter.default)
    else:
        return Dependency(parameter.name, annotation, None, parameter.kind, parameter.default)
