from __future__ import annotations

import socket
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import pytest

from openapi_mock.errors import (
    ConfigurationError,
    MockServerError,
    PortInUseError,
    ResourceLimitError,
    ServerNotFoundError,
    ServerStartupError,
)
from openapi_mock.events import ServerEvent
from openapi_mock.manager import MockServerManager
from openapi_mock.models import ManagerConfig, PortRange, ServerConfig, ServerStatus


class RecordingObserver:
    def __init__(self) -> None:
        self.events: list[ServerEvent] = []

    def on_server_event(self, event: ServerEvent) -> None:
        self.events.append(event)


class FailingStopListener:
    def __init__(self, runner: Any) -> None:
        self.runner = runner

    @property
    def is_running(self) -> bool:
        return self.runner.is_running

    def stop(self) -> None:
        self.runner.stop()
        raise OSError("socket refused to close")


class ExplodingListener:
    def __init__(self, runner: Any) -> None:
        self.runner = runner

    @property
    def is_running(self) -> bool:
        return True

    def stop(self) -> None:
        self.runner.stop()
        raise RuntimeError("listener state corrupted")


def test_lifecycle_and_maintenance(manager: MockServerManager, petstore_document: dict[str, Any]) -> None:
    observer = RecordingObserver()
    manager.subscribe(observer)

    instance = manager.create_server({"apiId": "petstore"}, petstore_document)

    assert instance.status == ServerStatus.RUNNING
    assert instance.id.startswith("mock-server-")
    assert instance.base_url == f"http://localhost:{instance.port}"
    assert instance.request_count == 0 and instance.error_count == 0
    assert instance.port in manager.config.port_range
    assert any(endpoint.path == "/pets" for endpoint in instance.endpoints)

    manager.stop_server(instance.id)
    manager.stop_server(instance.id)
    assert manager.get_server_status(instance.id).status == ServerStatus.STOPPED
    assert [server.id for server in manager.list_servers()] == [instance.id]

    assert manager.perform_maintenance() == 1
    assert manager.perform_maintenance() == 0
    assert manager.list_servers() == []
    assert instance.port not in manager.get_statistics()["allocated_ports"]
    assert [event.kind.value for event in observer.events] == [
        "created",
        "started",
        "stopping",
        "stopped",
        "removed",
    ]


def test_config_validation_rejects_out_of_range_port() -> None:
    manager = MockServerManager(ManagerConfig(port_range=PortRange(start=9000, end=9010)))

    with pytest.raises(ConfigurationError) as excinfo:
        manager.create_server(ServerConfig(api_id="x", port=999))

    assert excinfo.value.field == "port"
    assert manager.list_servers() == []


@pytest.mark.parametrize(
    "config,field",
    [
        ({"apiId": "  "}, "api_id"),
        ({"apiId": "x", "responseDelay": -1}, "response_delay"),
        ({"apiId": "x", "errorSimulation": {"enabled": True, "errorProbability": 1.5}}, "error_simulation.error_probability"),
        ({"apiId": "x", "responseDelay": "slow"}, "responseDelay"),
        ({}, "apiId"),
    ],
)
def test_config_validation_errors(manager: MockServerManager, config: dict[str, Any], field: str) -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        manager.create_server(config)

    assert excinfo.value.field == field
    assert manager.get_registry().count() == 0


def test_instance_limit(port_window: PortRange) -> None:
    manager = MockServerManager(ManagerConfig(max_instances=2, port_range=port_window))
    try:
        manager.create_server({"apiId": "a"})
        manager.create_server({"apiId": "b"})
        assert not manager.is_healthy()

        with pytest.raises(ResourceLimitError):
            manager.create_server({"apiId": "c"})
    finally:
        manager.cleanup()


def test_concurrent_creates_respect_limit(port_window: PortRange) -> None:
    manager = MockServerManager(ManagerConfig(max_instances=3, port_range=port_window))

    def create(index: int) -> str:
        try:
            return manager.create_server({"apiId": f"api-{index}"}).id
        except ResourceLimitError:
            return "limited"

    try:
        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(create, range(8)))
        assert outcomes.count("limited") == 5
        assert manager.get_registry().count() == 3
        assert len({server.port for server in manager.list_servers()}) == 3
    finally:
        manager.cleanup()


def test_preferred_port_conflicts(manager: MockServerManager, port_window: PortRange) -> None:
    preferred = port_window.start + 3
    instance = manager.create_server({"apiId": "a", "port": preferred})

    assert instance.port == preferred
    assert manager.get_server_by_port(preferred).id == instance.id
    with pytest.raises(PortInUseError):
        manager.create_server({"apiId": "b", "port": preferred})


def test_bind_failure_leaves_instance_in_error(manager: MockServerManager, port_window: PortRange) -> None:
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", port_window.start))
    blocker.listen(1)
    try:
        with pytest.raises(ServerStartupError):
            manager.create_server({"apiId": "blocked", "port": port_window.start})
    finally:
        blocker.close()

    failed = manager.get_servers_by_api_id("blocked")
    assert [server.status for server in failed] == [ServerStatus.ERROR]
    assert manager.perform_maintenance() == 1
    assert manager.get_servers_by_api_id("blocked") == []


def test_unknown_server_operations(manager: MockServerManager) -> None:
    with pytest.raises(ServerNotFoundError):
        manager.stop_server("mock-server-missing")
    with pytest.raises(ServerNotFoundError):
        manager.get_server_health("mock-server-missing")
    assert manager.get_server_status("mock-server-missing") is None


def test_stop_all_keeps_going_after_failures(manager: MockServerManager) -> None:
    broken = manager.create_server({"apiId": "broken"})
    healthy = manager.create_server({"apiId": "healthy"})
    broken.listener = FailingStopListener(broken.listener)

    manager.stop_all_servers()

    assert manager.get_server_status(broken.id).status == ServerStatus.ERROR
    assert manager.get_server_status(healthy.id).status == ServerStatus.STOPPED
    assert manager.perform_maintenance() == 2


def test_unknown_ids_leave_no_lock_entries(manager: MockServerManager) -> None:
    for index in range(20):
        with pytest.raises(ServerNotFoundError):
            manager.stop_server(f"mock-server-ghost-{index}")
    assert manager._instance_locks == {}

    instance = manager.create_server({"apiId": "a"})
    manager.stop_server(instance.id)
    assert list(manager._instance_locks) == [instance.id]

    manager.cleanup()
    assert manager._instance_locks == {}


def test_concurrent_stops_on_one_instance_serialize(manager: MockServerManager) -> None:
    observer = RecordingObserver()
    instance = manager.create_server({"apiId": "a"})
    manager.subscribe(observer)

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = list(pool.map(lambda _: manager.stop_server(instance.id), range(6)))

    assert outcomes == [None] * 6
    assert manager.get_server_status(instance.id).status == ServerStatus.STOPPED
    assert [event.kind.value for event in observer.events] == ["stopping", "stopped"]


def test_maintenance_survives_listener_failures(manager: MockServerManager) -> None:
    broken = manager.create_server({"apiId": "broken"})
    stopped = manager.create_server({"apiId": "stopped"})
    broken.listener = ExplodingListener(broken.listener)
    manager.get_registry().update_server_status(broken.id, ServerStatus.ERROR)
    manager.stop_server(stopped.id)

    assert manager.perform_maintenance() == 2
    assert manager.list_servers() == []
    assert manager.get_statistics()["allocated_ports"] == []


def test_statistics_and_health(manager: MockServerManager, petstore_document: dict[str, Any]) -> None:
    instance = manager.create_server({"apiId": "petstore"}, petstore_document)

    stats = manager.get_statistics()
    health = manager.get_server_health(instance.id)

    assert stats["total"] == 1
    assert stats["running"] == 1
    assert stats["max_instances"] == 5
    assert stats["allocated_ports"] == [instance.port]
    assert stats["port_range"] == {
        "start": manager.config.port_range.start,
        "end": manager.config.port_range.end,
    }
    assert health["health"]["status"] == "running"
    assert health["connection"]["base_url"] == instance.base_url
    assert health["server"]["api_id"] == "petstore"
    assert manager.is_healthy()


def test_spec_resolver_supplies_documents(port_window: PortRange, petstore_document: dict[str, Any]) -> None:
    requested: list[str] = []

    def resolver(api_id: str) -> dict[str, Any]:
        requested.append(api_id)
        return petstore_document

    manager = MockServerManager(ManagerConfig(port_range=port_window), spec_resolver=resolver)
    try:
        instance = manager.create_server({"apiId": "petstore"})
    finally:
        manager.cleanup()

    assert requested == ["petstore"]
    assert instance.endpoints


def test_defaults_are_merged(port_window: PortRange) -> None:
    manager = MockServerManager(
        ManagerConfig(port_range=port_window, default_response_delay=5, default_enable_cors=False)
    )
    try:
        instance = manager.create_server({"apiId": "a", "enableCors": True})
    finally:
        manager.cleanup()

    assert instance.config.response_delay == 5
    assert instance.config.enable_cors is True
    assert instance.config.auth_validation is True
    assert instance.config.port == instance.port


def test_cleanup_is_terminal(port_window: PortRange) -> None:
    manager = MockServerManager(ManagerConfig(port_range=port_window))
    manager.create_server({"apiId": "a"})

    manager.cleanup()

    assert manager.list_servers() == []
    assert not manager.is_healthy()
    with pytest.raises(MockServerError):
        manager.create_server({"apiId": "b"})


def test_manager_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MOCK_SERVER_MAX_INSTANCES", "3")
    monkeypatch.setenv("MOCK_SERVER_PORT_RANGE_START", "5000")
    monkeypatch.setenv("MOCK_SERVER_PORT_RANGE_END", "5100")
    monkeypatch.setenv("MOCK_SERVER_ENABLE_CORS", "false")

    config = ManagerConfig.from_env(max_instances=7)

    assert config.max_instances == 7
    assert config.port_range == PortRange(start=5000, end=5100)
    assert config.default_enable_cors is False
    assert config.default_response_delay == 0
