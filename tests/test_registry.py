import pytest

from example_services import (
    CsvExporter,
    Database,
    Exporter,
    Logger,
    Logger2,
    LoggerInterface,
    Mailer,
    Newsletter,
    SmtpMailer,
    Undecorated,
    UserRepository,
)
from provisor.domain import ServiceDescriptor, type_key
from provisor.errors import ConfigurationError, DuplicateServiceError, NotFoundError
from provisor.registry import ServiceRegistry


@pytest.fixture
def registry():
    return ServiceRegistry()


def test_descriptor_is_stored_under_id_and_type(registry):
    registry.register(ServiceDescriptor("primary.db", Database))

    assert "primary.db" in registry
    assert Database in registry
    assert registry.get_descriptor(Database) is registry.get_descriptor("primary.db")


def test_interface_key_maps_to_implementation(registry):
    registry.register(ServiceDescriptor("logger", Logger, interface=LoggerInterface))

    assert registry.contains(LoggerInterface)
    assert registry.get_descriptor(LoggerInterface).implementation is Logger
    assert registry.canonical_id(LoggerInterface) == "logger"


def test_interface_resolves_to_latest_registration(registry):
    registry.register(ServiceDescriptor("logger", Logger, interface=LoggerInterface))
    registry.register(ServiceDescriptor("logger2", Logger2, interface=LoggerInterface))

    assert registry.canonical_id(LoggerInterface) == "logger2"


def test_alias_points_to_id(registry):
    registry.register(ServiceDescriptor("primary.db", Database), alias="db")

    assert registry.contains("db")
    assert registry.canonical_id("db") == "primary.db"
    assert registry.aliases() == {"db": "primary.db"}


def test_alias_cannot_be_its_own_id(registry):
    with pytest.raises(ConfigurationError, match="cannot be the id"):
        registry.register(ServiceDescriptor("primary.db", Database), alias="primary.db")


def test_groups_and_tags_include_interface_key(registry):
    registry.register(
        ServiceDescriptor("logger", Logger, interface=LoggerInterface, group="web", tags=("svc", "log"))
    )

    interface_key = type_key(LoggerInterface)
    assert registry.services_in_group("web") == ["logger", interface_key]
    assert registry.services_with_tag("svc") == ["logger", interface_key]
    assert registry.services_with_tag("log") == ["logger", interface_key]
    assert registry.has_service_in_group("web", LoggerInterface)
    assert registry.has_service_with_tag("svc", "logger")
    assert not registry.has_service_in_group("api", "logger")


def test_query_by_group_and_tag(registry):
    registry.register(ServiceDescriptor("a", Logger, group="web", tags=("svc",)))
    registry.register(ServiceDescriptor("b", Logger2, group="web", tags=("other",)))
    registry.register(ServiceDescriptor("c", Database, group="db", tags=("svc",)))

    assert registry.query(group="web") == ["a", "b"]
    assert registry.query(tag="svc") == ["a", "c"]
    assert registry.query(group="web", tag="svc") == ["a"]
    assert registry.query(group="missing") == []
    assert registry.query() == []


def test_registration_order_is_recorded(registry):
    registry.register(ServiceDescriptor("b", Database))
    registry.register(ServiceDescriptor("a", UserRepository))

    assert registry.registration_order == ["b", "a"]


def test_candidates_for_interface_are_in_registration_order(registry):
    registry.register(ServiceDescriptor("logger2", Logger2, interface=LoggerInterface))
    registry.register(ServiceDescriptor("primary.db", Database))
    registry.register(ServiceDescriptor("logger", Logger, interface=LoggerInterface))

    assert [d.id for d in registry.candidates_for(LoggerInterface)] == ["logger2", "logger"]
    assert [d.id for d in registry.candidates_for("primary.db")] == ["primary.db"]
    assert registry.candidates_for("missing") == []


def test_unknown_key_raises_not_found(registry):
    with pytest.raises(NotFoundError, match="Service missing not found"):
        registry.get_descriptor("missing")


def test_unregistered_interface_raises_not_found(registry):
    with pytest.raises(NotFoundError, match="No implementation found"):
        registry.get_descriptor(LoggerInterface)


def test_reregistering_replaces_by_default(registry):
    registry.register(ServiceDescriptor("log", Logger, group="web", tags=("svc",)))
    registry.register(ServiceDescriptor("log", Logger2, group="api"))

    assert registry.get_descriptor("log").implementation is Logger2
    assert registry.services_in_group("web") == []
    assert registry.services_with_tag("svc") == []
    assert registry.services_in_group("api") == ["log"]
    assert Logger not in registry


def test_replacing_interface_implementation_falls_back_to_remaining_one(registry):
    registry.register(ServiceDescriptor("logger", Logger, interface=LoggerInterface))
    registry.register(ServiceDescriptor("logger2", Logger2, interface=LoggerInterface))
    registry.register(ServiceDescriptor("logger2", Logger2))

    assert registry.canonical_id(LoggerInterface) == "logger"


def test_duplicate_registration_can_be_refused(registry):
    registry.register(ServiceDescriptor("log", Logger))

    with pytest.raises(DuplicateServiceError):
        registry.register(ServiceDescriptor("log", Logger2), replace=False)

    assert registry.get_descriptor("log").implementation is Logger


def test_registry_can_refuse_overwrites_by_default():
    registry = ServiceRegistry(allow_overwrite=False)
    registry.register(ServiceDescriptor("log", Logger))

    with pytest.raises(DuplicateServiceError):
        registry.register(ServiceDescriptor("log", Logger2))


def test_register_class_uses_decorator_metadata(registry):
    descriptor = registry.register_class(SmtpMailer)

    assert descriptor.id == "mailer"
    assert descriptor.interface is Mailer
    assert descriptor.group == "mail"
    assert descriptor.tags == ("smtp", "outbound")
    assert descriptor.priority == 5
    assert registry.contains(Mailer)


def test_register_class_options_override_metadata(registry):
    descriptor = registry.register_class(SmtpMailer, alias="smtp", id="mailer.smtp", priority=50)

    assert descriptor.id == "mailer.smtp"
    assert descriptor.priority == 50
    assert registry.canonical_id("smtp") == "mailer.smtp"


def test_register_class_defaults_id_to_type_key(registry):
    descriptor = registry.register_class(Newsletter)

    assert descriptor.id == type_key(Newsletter)


def test_register_class_requires_service_metadata(registry):
    with pytest.raises(ConfigurationError, match="must be decorated with @service"):
        registry.register_class(Undecorated)


def test_register_class_rejects_metadata_inherited_from_base(registry):
    class Subclass(SmtpMailer):
        pass

    with pytest.raises(ConfigurationError):
        registry.register_class(Subclass)


def test_register_class_stores_service_under_decorated_bases(registry):
    descriptor = registry.register_class(CsvExporter)

    exporter_key = type_key(Exporter)
    assert descriptor.provides == (Exporter,)
    assert registry.get_descriptor(Exporter).id == "exporter.csv"
    assert registry.services_in_group("reporting") == ["exporter.csv", exporter_key]
    assert registry.services_with_tag("csv") == ["exporter.csv", exporter_key]
    assert [d.id for d in registry.candidates_for(Exporter)] == ["exporter.csv"]


def test_replacing_service_drops_decorated_base_keys(registry):
    registry.register_class(CsvExporter)
    registry.register(ServiceDescriptor("exporter.csv", CsvExporter))

    assert Exporter not in registry
    assert registry.services_in_group("reporting") == []


def test_identical_registration_is_a_no_op():
    registry = ServiceRegistry(allow_overwrite=False)
    registry.register(ServiceDescriptor("log", Logger, group="web"))
    registry.register(ServiceDescriptor("log", Logger, group="web"), alias="l")

    assert registry.registration_order == ["log"]
    assert registry.services_in_group("web") == ["log"]
    assert registry.canonical_id("l") == "log"


def test_type_key_never_takes_over_another_services_id(registry):
    first = registry.register_class(Newsletter, group="mail")
    registry.register(ServiceDescriptor("newsletter.weekly", Newsletter, group="mail"))

    assert registry.get_descriptor(Newsletter) is first
    assert [d.id for d in registry.descriptors()] == [type_key(Newsletter), "newsletter.weekly"]
    assert registry.services_in_group("mail") == [type_key(Newsletter), "newsletter.weekly"]


def test_register_factory_records_return_type(registry):
    def make_database() -> Database:
        return Database("postgres://")

    descriptor = registry.register_factory("primary.db", make_database)

    assert descriptor.implementation is Database
    assert not descriptor.singleton
    assert registry.contains(Database)


def test_factory_without_annotation_is_stored_under_id_only(registry):
    registry.register_factory("thing", lambda: object())

    assert list(registry.services()) == ["thing"]


def test_clear_empties_everything(registry):
    registry.register(ServiceDescriptor("log", Logger, group="web"), alias="l")
    registry.clear()

    assert registry.services() == {}
    assert registry.aliases() == {}
    assert registry.query(group="web") == []
    assert registry.registration_order == []
