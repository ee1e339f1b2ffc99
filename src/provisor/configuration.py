"""Bulk configuration documents.

A configuration document declares services declaratively::

    services:
      primary.db:
        class: app.db:Database
        arguments:
          dsn: sqlite:///:memory:
      user.repository:
        class: app.users:UserRepository
        implements: app.users:Repository
        alias: users
        group: persistence
        tags: [repository]
        priority: 10
        arguments:
          db: "@primary.db"

Entries are validated one at a time with pydantic, so a document that fails
partway has already produced the entries before the failing one.
"""

import json
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from provisor.domain import ServiceDescriptor, import_reference
from provisor.errors import ConfigurationError

__all__ = ["ServiceConfig", "iter_service_configs", "read_configuration_file"]


class ServiceConfig(BaseModel):
    """One entry of the ``services`` mapping of a configuration document."""

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True, populate_by_name=True)

    class_: Optional[Any] = Field(default=None, alias="class")
    implements: Optional[Any] = None
    alias: Optional[str] = None
    group: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    priority: int = 0
    singleton: bool = True
    arguments: dict[Union[int, str], Any] = Field(default_factory=dict)

    @field_validator("arguments", mode="before")
    @classmethod
    def positional_arguments(cls, value: Any) -> Any:
        """Accept a list of positional arguments and numeric string keys."""
        if value is None:
            return {}
        if isinstance(value, (list, tuple)):
            return dict(enumerate(value))
        if isinstance(value, Mapping):
            return {
                int(key) if isinstance(key, str) and key.isdigit() else key: item
                for key, item in value.items()
            }
        return value

    @field_validator("class_", "implements")
    @classmethod
    def type_reference(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        if not isinstance(value, type):
            raise ValueError(f"{value!r} is not a type or a type reference")
        return value

    def to_descriptor(self, service_id: str) -> ServiceDescriptor:
        """Build the descriptor for this entry; a missing ``class`` defaults to the id.

        Raises:
            ConfigurationError: If a type reference cannot be imported.
        """
        implementation = _load_type(self.class_ if self.class_ is not None else service_id)
        interface = _load_type(self.implements) if self.implements is not None else None
        return ServiceDescriptor(
            service_id,
            implementation,
            interface=interface,
            group=self.group,
            tags=tuple(self.tags),
            priority=self.priority,
            singleton=self.singleton,
            arguments=self.arguments,
        )


def iter_service_configs(document: Mapping[str, Any]) -> Iterator[tuple[str, ServiceConfig]]:
    """Yield ``(id, ServiceConfig)`` pairs, validating each entry as it is reached.

    Raises:
        ConfigurationError: If the document or an entry is malformed.
    """
    if not isinstance(document, Mapping):
        raise ConfigurationError(f"Configuration must be a mapping, got {type(document).__name__}")

    services = document.get("services") or {}
    if not isinstance(services, Mapping):
        raise ConfigurationError("'services' must map service ids to definitions")

    for service_id, entry in services.items():
        try:
            yield str(service_id), ServiceConfig.model_validate(entry or {})
        except ValidationError as err:
            raise ConfigurationError(f"Invalid definition for service '{service_id}': {err}") from err


def read_configuration_file(path: Union[str, Path]) -> dict[str, Any]:
    """Read a YAML or JSON configuration document.

    Raises:
        ConfigurationError: If the file is missing, unreadable or has an
            unsupported extension.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    suffix = path.suffix.lower()
    try:
        with path.open("r", encoding="utf-8") as f:
            if suffix in (".yaml", ".yml"):
                document = yaml.safe_load(f)
            elif suffix == ".json":
                document = json.load(f)
            else:
                raise ConfigurationError(f"Unsupported configuration file format: {path.suffix}")
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as err:
        raise ConfigurationError(f"Cannot read configuration file {path}: {err}") from err

    return document or {}


def _load_type(reference: Any) -> Any:
    return import_reference(reference) if isinstance(reference, str) else reference
