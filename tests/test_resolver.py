import threading

import pytest

from example_services import (
    CachedUserRepository,
    CsvExporter,
    CycleX,
    CycleY,
    CycleZ,
    Database,
    EventAware,
    Exporter,
    Greeter,
    Logger,
    Logger2,
    LoggerInterface,
    Mailer,
    Newsletter,
    Notifier,
    Pair,
    Qualified,
    ServiceA,
    ServiceB,
    SlowSingleton,
    SmtpMailer,
    Unimplemented,
    UserRepository,
)
from provisor.domain import ServiceDescriptor
from provisor.errors import (
    CircularDependencyError,
    ConfigurationError,
    NotFoundError,
    UnresolvableParameterError,
)
from provisor.events import SERVICE_RESOLVED, EventDispatcher
from provisor.registry import ServiceRegistry
from provisor.resolver import DependencyResolver, ServiceFactory


@pytest.fixture
def registry():
    return ServiceRegistry()


@pytest.fixture
def resolver(registry):
    return DependencyResolver(registry)


def test_singleton_is_built_once(registry, resolver):
    registry.register(ServiceDescriptor("primary.db", Database))

    first = resolver.resolve("primary.db")

    assert isinstance(first, Database)
    assert resolver.resolve("primary.db") is first
    assert resolver.resolve(Database) is first
    assert resolver.has_instance(Database)


def test_transient_is_built_every_time(registry, resolver):
    registry.register(ServiceDescriptor("primary.db", Database, singleton=False))

    assert resolver.resolve("primary.db") is not resolver.resolve("primary.db")
    assert not resolver.has_instance("primary.db")


def test_alias_resolves_to_same_singleton(registry, resolver):
    registry.register(ServiceDescriptor("primary.db", Database), alias="db")

    assert resolver.resolve("db") is resolver.resolve("primary.db")


def test_reference_arguments_are_resolved(registry, resolver):
    registry.register(ServiceDescriptor("primary.db", Database, arguments={"dsn": "postgres://main"}))
    registry.register(ServiceDescriptor("users", UserRepository, arguments={"db": "@primary.db"}))

    users = resolver.resolve("users")

    assert users.db is resolver.resolve("primary.db")
    assert users.db.dsn == "postgres://main"


def test_declared_type_is_resolved_when_registered(registry, resolver):
    registry.register(ServiceDescriptor("primary.db", Database))
    registry.register(ServiceDescriptor("users", CachedUserRepository))

    users = resolver.resolve("users")

    assert users.db is resolver.resolve(Database)
    assert users.ttl == 60


def test_interface_resolves_to_implementation(registry, resolver):
    registry.register_class(SmtpMailer)
    registry.register_class(Newsletter)

    newsletter = resolver.resolve(Newsletter)

    assert isinstance(newsletter.mailer, SmtpMailer)
    assert resolver.resolve(Mailer) is newsletter.mailer


def test_unknown_id_raises_not_found(resolver):
    with pytest.raises(NotFoundError):
        resolver.resolve("missing")


def test_unimplemented_interface_raises_not_found(resolver):
    with pytest.raises(NotFoundError, match="No implementation found"):
        resolver.resolve(Unimplemented)


def test_two_service_cycle_reports_chain(registry, resolver):
    registry.register(ServiceDescriptor("A", ServiceA, arguments={"b": "@B"}))
    registry.register(ServiceDescriptor("B", ServiceB, arguments={"a": "@A"}))

    with pytest.raises(CircularDependencyError) as excinfo:
        resolver.resolve("A")

    assert excinfo.value.chain == ["A", "B", "A"]
    assert "A -> B -> A" in str(excinfo.value)


def test_three_type_cycle_is_detected(registry, resolver):
    registry.register(ServiceDescriptor("x", CycleX))
    registry.register(ServiceDescriptor("y", CycleY))
    registry.register(ServiceDescriptor("z", CycleZ))

    with pytest.raises(CircularDependencyError) as excinfo:
        resolver.resolve(CycleX)

    assert excinfo.value.chain == ["x", "y", "z", "x"]


def test_stack_is_empty_after_failure(registry, resolver):
    registry.register(ServiceDescriptor("A", ServiceA, arguments={"b": "@B"}))
    registry.register(ServiceDescriptor("B", ServiceB, arguments={"a": "@A"}))

    with pytest.raises(CircularDependencyError):
        resolver.resolve("A")

    assert resolver.resolution_stack == []


def test_failed_build_caches_nothing(registry, resolver):
    registry.register(ServiceDescriptor("greeter", Greeter))

    with pytest.raises(UnresolvableParameterError):
        resolver.resolve("greeter")

    assert not resolver.has_instance("greeter")


def test_unresolvable_parameter_names_parameter_and_service(registry, resolver):
    registry.register(ServiceDescriptor("greeter", Greeter))

    with pytest.raises(UnresolvableParameterError) as excinfo:
        resolver.resolve("greeter")

    assert excinfo.value.parameter == "name"
    assert excinfo.value.service_id == "greeter"


def test_positional_arguments_fill_parameters_in_order(registry, resolver):
    registry.register(ServiceDescriptor("primary.db", Database))
    registry.register(ServiceDescriptor("pair", Pair, arguments={0: "one", 1: "@primary.db"}))

    pair = resolver.resolve("pair")

    assert pair.first == "one"
    assert pair.second is resolver.resolve("primary.db")
    assert pair.third == "default"


def test_named_arguments_take_precedence_over_positional(registry, resolver):
    registry.register(ServiceDescriptor("pair", Pair, arguments={"second": "named", 0: "one", 1: "two"}))

    pair = resolver.resolve("pair")

    assert pair.first == "one"
    assert pair.second == "named"
    assert pair.third == "two"


def test_annotated_qualifier_selects_service_id(registry, resolver):
    registry.register(ServiceDescriptor("primary.db", Database, arguments={"dsn": "primary"}))
    registry.register(ServiceDescriptor("replica.db", Database, arguments={"dsn": "replica"}))
    registry.register(ServiceDescriptor("qualified", Qualified))

    assert resolver.resolve("qualified").db.dsn == "replica"


def test_group_and_tag_select_highest_priority(registry, resolver):
    registry.register(
        ServiceDescriptor("logger", Logger, interface=LoggerInterface, group="web", tags=("svc",), priority=50)
    )
    registry.register(
        ServiceDescriptor("logger2", Logger2, interface=LoggerInterface, group="web", tags=("svc",), priority=100)
    )

    assert isinstance(resolver.resolve(LoggerInterface, group="web", tag="svc"), Logger2)
    assert isinstance(resolver.resolve(LoggerInterface, group="web"), Logger2)


def test_equal_priorities_go_to_first_registered(registry, resolver):
    registry.register(ServiceDescriptor("logger", Logger, interface=LoggerInterface, group="web", priority=10))
    registry.register(ServiceDescriptor("logger2", Logger2, interface=LoggerInterface, group="web", priority=10))

    assert isinstance(resolver.resolve(LoggerInterface, group="web"), Logger)
    # Without filters the interface maps to the latest registration.
    assert isinstance(resolver.resolve(LoggerInterface), Logger2)


def test_filters_that_match_nothing_raise_not_found(registry, resolver):
    registry.register(ServiceDescriptor("logger", Logger, interface=LoggerInterface, group="web"))

    with pytest.raises(NotFoundError, match="group 'api'"):
        resolver.resolve(LoggerInterface, group="api")


def test_fields_are_injected_after_construction(registry, resolver):
    registry.register_class(SmtpMailer)
    registry.register(ServiceDescriptor("audit.db", Database, arguments={"dsn": "audit"}))
    registry.register(ServiceDescriptor("notifier", Notifier))

    notifier = resolver.resolve("notifier")

    assert isinstance(notifier.mailer, SmtpMailer)
    assert notifier.audit.dsn == "audit"
    assert notifier.retries == 3
    assert notifier.unregistered is None


def test_event_sink_is_injected_into_fields():
    dispatcher = EventDispatcher()
    registry = ServiceRegistry(event_sink=dispatcher)
    registry.register(ServiceDescriptor("aware", EventAware))

    assert DependencyResolver(registry).resolve("aware").events is dispatcher


def test_event_sink_field_without_sink_is_an_error(registry, resolver):
    registry.register(ServiceDescriptor("aware", EventAware))

    with pytest.raises(ConfigurationError):
        resolver.resolve("aware")


def test_factory_descriptor_receives_resolved_arguments(registry, resolver):
    registry.register(ServiceDescriptor("primary.db", Database))
    registry.register_factory("users", UserRepository, arguments={"db": "@primary.db"})

    users = resolver.resolve("users")

    assert users.db is resolver.resolve("primary.db")
    assert resolver.resolve("users") is not users


def test_singleton_factory_is_called_once(registry, resolver):
    calls = []

    def make_database():
        calls.append(1)
        return Database("factory")

    registry.register_factory("primary.db", make_database, singleton=True)

    assert resolver.resolve("primary.db") is resolver.resolve("primary.db")
    assert len(calls) == 1


def test_pluggable_factory_builds_supported_services(registry, resolver):
    class PrefixFactory(ServiceFactory):
        def supports(self, service_id):
            return service_id.startswith("greeter.")

        def create_service(self, resolver, service_id, arguments):
            return Greeter(service_id.split(".", 1)[1])

    registry.register(ServiceDescriptor("greeter.alice", Greeter))
    registry.register(ServiceDescriptor("primary.db", Database))
    resolver.add_service_factory(PrefixFactory())

    assert resolver.resolve("greeter.alice").name == "alice"
    assert isinstance(resolver.resolve("primary.db"), Database)


def test_call_binds_function_parameters(registry, resolver):
    registry.register(ServiceDescriptor("primary.db", Database, arguments={"dsn": "called"}))

    def handler(db: Database, limit=10):
        return db.dsn, limit

    assert resolver.call(handler) == ("called", 10)
    assert resolver.call(handler, {"limit": 5}) == ("called", 5)


def test_resolved_events_report_dependencies():
    dispatcher = EventDispatcher()
    events = []
    dispatcher.add_listener(SERVICE_RESOLVED, events.append)
    registry = ServiceRegistry(event_sink=dispatcher)
    registry.register(ServiceDescriptor("primary.db", Database))
    registry.register(ServiceDescriptor("users", UserRepository, arguments={"db": "@primary.db"}))
    resolver = DependencyResolver(registry)

    resolver.resolve("users")
    resolver.resolve("users")

    assert [(e.service_id, e.from_cache) for e in events] == [
        ("primary.db", False),
        ("users", False),
        ("users", True),
    ]
    assert events[1].dependencies == ("Database",)


def test_reregistered_singleton_is_built_from_new_definition(registry, resolver):
    registry.register(ServiceDescriptor("log", Logger))
    assert isinstance(resolver.resolve("log"), Logger)

    registry.register(ServiceDescriptor("log", Logger2))

    assert isinstance(resolver.resolve("log"), Logger2)
    assert resolver.resolve("log") is resolver.resolve("log")


def test_singleton_reregistered_as_transient_is_no_longer_cached(registry, resolver):
    registry.register(ServiceDescriptor("log", Logger))
    first = resolver.resolve("log")

    registry.register(ServiceDescriptor("log", Logger2, singleton=False))

    assert not resolver.has_instance("log")
    second = resolver.resolve("log")
    assert isinstance(second, Logger2)
    assert second is not first
    assert resolver.resolve("log") is not second
    assert not resolver.has_instance("log")


def test_identical_registration_keeps_cached_instance(registry, resolver):
    registry.register(ServiceDescriptor("primary.db", Database))
    first = resolver.resolve("primary.db")

    registry.register(ServiceDescriptor("primary.db", Database))

    assert resolver.resolve("primary.db") is first


def test_decorated_base_class_resolves_to_registered_subclass(registry, resolver):
    registry.register_class(CsvExporter)

    exporter = resolver.resolve(Exporter)

    assert isinstance(exporter, CsvExporter)
    assert exporter is resolver.resolve("exporter.csv")
    assert isinstance(resolver.resolve(Exporter, group="reporting", tag="csv"), CsvExporter)


def test_undefined_annotation_is_reported_with_its_target(registry, resolver):
    class Broken:
        def __init__(self, db: "UndefinedDatabase"):  # noqa: F821
            self.db = db

    registry.register(ServiceDescriptor("broken", Broken))

    with pytest.raises(ConfigurationError, match="UndefinedDatabase"):
        resolver.resolve("broken")
    assert resolver.resolution_stack == []


def test_reset_forgets_instances(registry, resolver):
    registry.register(ServiceDescriptor("primary.db", Database))
    first = resolver.resolve("primary.db")

    resolver.reset()

    assert resolver.resolve("primary.db") is not first


def test_concurrent_singleton_is_built_once(registry, resolver):
    SlowSingleton.created.clear()
    registry.register(ServiceDescriptor("slow", SlowSingleton))
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(resolver.resolve("slow"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(SlowSingleton.created) == 1
    assert len(results) == 8
    assert all(result is results[0] for result in results)
