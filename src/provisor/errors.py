"""Exception hierarchy raised by the registry, resolver and their collaborators."""

from typing import Optional, Sequence

__all__ = [
    "ProvisorError",
    "NotFoundError",
    "CircularDependencyError",
    "ConfigurationError",
    "DuplicateServiceError",
    "UnresolvableParameterError",
    "ImmutableContainerError",
    "SerializationError",
]


class ProvisorError(Exception):
    """Base class for every error raised by provisor."""

    pass


class NotFoundError(ProvisorError, KeyError):
    """Raised when a service id, alias, interface or cache key is unknown."""

    def __str__(self) -> str:
        # KeyError quotes its message; keep it readable.
        return str(self.args[0]) if self.args else ""


class CircularDependencyError(ProvisorError):
    """Raised when constructing a service revisits a service already under construction.

    Attributes:
        chain: The ids in the order they were entered, ending with the repeated id.
    """

    def __init__(self, chain: Sequence[str]):
        self.chain = list(chain)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.chain)}")


class ConfigurationError(ProvisorError):
    """Raised when a descriptor or configuration document is malformed."""

    pass


class DuplicateServiceError(ConfigurationError):
    """Raised when registering an id that is already taken without permission to replace it."""

    pass


class UnresolvableParameterError(ProvisorError):
    """Raised when no binding strategy produces a value for a parameter.

    Attributes:
        service_id: The service being constructed, if any.
        parameter: The name of the parameter that could not be bound.
    """

    def __init__(self, parameter: str, service_id: Optional[str] = None):
        self.parameter = parameter
        self.service_id = service_id
        target = f" of service '{service_id}'" if service_id else ""
        super().__init__(f"Cannot resolve parameter '{parameter}'{target}")


class ImmutableContainerError(ProvisorError):
    """Raised when a compiled registry is asked to change."""

    pass


class SerializationError(ProvisorError):
    """Raised when a value cannot be written to, or read back from, a persistent store."""

    pass
