"""Lifecycle orchestration for mock server instances."""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

import structlog
from pydantic import ValidationError

from .auth_handler import AuthenticationHandler
from .errors import (
    ConfigurationError,
    InvalidAPISpecError,
    MockServerError,
    ResourceLimitError,
    ServerNotFoundError,
    ServerShutdownError,
    ServerStartupError,
)
from .events import ManagerObserver, ServerEvent, ServerEventKind
from .models import ErrorSimulationConfig, ManagerConfig, ServerConfig, ServerInstance, ServerStatus
from .port_allocator import PortAllocator
from .registry import ServerRegistry
from .server import MockServerRunner

LOGGER = structlog.get_logger("openapi_mock.manager")

EMPTY_DOCUMENT: dict[str, Any] = {"openapi": "3.0.0", "info": {"title": "empty", "version": "0"}, "paths": {}}

SpecResolver = Callable[[str], Mapping[str, Any]]


class MockServerManager:
    """Creates, stops and sweeps mock server instances.

    Instance records live in the registry; the manager only looks them up.
    Creation is bounded by ``max_instances`` (creations still in flight
    count against the limit) and calls on the same instance id serialize.
    Once ``cleanup`` has run the manager refuses new servers for good.
    """

    def __init__(
        self,
        config: ManagerConfig | Mapping[str, Any] | None = None,
        *,
        spec_resolver: SpecResolver | None = None,
        observers: Iterable[ManagerObserver] = (),
    ) -> None:
        if config is None:
            config = ManagerConfig.from_env()
        elif not isinstance(config, ManagerConfig):
            try:
                config = ManagerConfig.model_validate(dict(config))
            except ValidationError as exc:
                raise _configuration_error(exc) from exc
        self.config = config
        self._port_allocator = PortAllocator(config.port_range)
        self._registry = ServerRegistry(self._port_allocator)
        self._auth_handler = AuthenticationHandler()
        self._spec_resolver = spec_resolver
        self._observers: list[ManagerObserver] = list(observers)
        self._lock = threading.Lock()
        self._instance_locks: dict[str, threading.Lock] = {}
        self._pending_creates = 0
        self._shutting_down = False
        self._logger = LOGGER.bind(
            max_instances=config.max_instances,
            port_range=f"{config.port_range.start}-{config.port_range.end}",
        )
        self._logger.info("manager_initialized")

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------

    def create_server(
        self,
        config: ServerConfig | Mapping[str, Any],
        spec: Mapping[str, Any] | None = None,
    ) -> ServerInstance:
        with self._lock:
            if self._shutting_down:
                raise MockServerError(
                    "Cannot create server: manager is shutting down",
                    code="MANAGER_SHUTTING_DOWN",
                    user_message="The mock server manager is shutting down and cannot start new servers.",
                )
            current = self._registry.count() + self._pending_creates
            if current >= self.config.max_instances:
                raise ResourceLimitError("mock_servers", self.config.max_instances, current)
            self._pending_creates += 1

        try:
            return self._create(config, spec)
        finally:
            with self._lock:
                self._pending_creates -= 1

    def _create(self, config: ServerConfig | Mapping[str, Any], spec: Mapping[str, Any] | None) -> ServerInstance:
        server_config = self._apply_defaults(self._validate_config(config))
        document = self._resolve_document(server_config.api_id, spec)

        port = self._port_allocator.allocate(server_config.port)
        server_config = server_config.model_copy(update={"port": port})
        server_id = f"mock-server-{uuid.uuid4()}"
        logger = self._logger.bind(server_id=server_id, api_id=server_config.api_id, port=port)

        try:
            runner = MockServerRunner(
                server_id,
                document,
                server_config,
                self._registry,
                host=self.config.host,
                port=port,
                auth_handler=self._auth_handler,
            )
        except Exception:
            self._port_allocator.release(port)
            raise

        instance = ServerInstance(
            id=server_id,
            api_id=server_config.api_id,
            port=port,
            base_url=f"http://localhost:{port}",
            status=ServerStatus.STARTING,
            config=server_config,
            endpoints=runner.endpoints(),
            listener=runner,
        )
        self._registry.add(instance)
        self._publish(ServerEventKind.CREATED, instance)

        try:
            runner.start()
        except OSError as exc:
            self._registry.update_server_status(server_id, ServerStatus.ERROR)
            logger.error("server_start_failed", error=str(exc))
            self._publish(ServerEventKind.ERROR, instance, str(exc))
            raise ServerStartupError(server_id, port, str(exc)) from exc

        instance.start_time = datetime.now(timezone.utc)
        self._registry.update_server_status(server_id, ServerStatus.RUNNING)
        logger.info("server_started", base_url=instance.base_url, endpoints=len(instance.endpoints))
        self._publish(ServerEventKind.STARTED, instance)
        return instance

    def _validate_config(self, config: ServerConfig | Mapping[str, Any]) -> ServerConfig:
        if isinstance(config, ServerConfig):
            server_config = config
        else:
            try:
                server_config = ServerConfig.model_validate(dict(config))
            except ValidationError as exc:
                raise _configuration_error(exc) from exc

        if not server_config.api_id or not server_config.api_id.strip():
            raise ConfigurationError("api_id", server_config.api_id, "API ID is required")

        port_range = self.config.port_range
        if server_config.port is not None and server_config.port not in port_range:
            raise ConfigurationError(
                "port",
                server_config.port,
                f"Port must be between {port_range.start} and {port_range.end - 1}",
            )
        if server_config.response_delay is not None and server_config.response_delay < 0:
            raise ConfigurationError("response_delay", server_config.response_delay, "Response delay must be non-negative")

        simulation = server_config.error_simulation
        if simulation is not None:
            if not 0 <= simulation.error_probability <= 1:
                raise ConfigurationError(
                    "error_simulation.error_probability",
                    simulation.error_probability,
                    "Error probability must be a number between 0 and 1",
                )
            for key, override in simulation.specific_errors.items():
                if override.probability is not None and not 0 <= override.probability <= 1:
                    raise ConfigurationError(
                        f"error_simulation.specific_errors[{key}].probability",
                        override.probability,
                        "Error probability must be a number between 0 and 1",
                    )
        return server_config

    def _apply_defaults(self, config: ServerConfig) -> ServerConfig:
        defaults = {
            "enable_logging": True,
            "response_delay": self.config.default_response_delay,
            "auth_validation": True,
            "enable_cors": self.config.default_enable_cors,
            "error_simulation": ErrorSimulationConfig(),
        }
        updates = {name: value for name, value in defaults.items() if getattr(config, name) is None}
        return config.model_copy(update=updates)

    def _resolve_document(self, api_id: str, spec: Mapping[str, Any] | None) -> Mapping[str, Any]:
        if spec is None and self._spec_resolver is not None:
            spec = self._spec_resolver(api_id)
        if spec is None:
            self._logger.warning("server_without_document", api_id=api_id)
            return EMPTY_DOCUMENT
        if not isinstance(spec, Mapping):
            raise InvalidAPISpecError(api_id, "Expected the API document to be a mapping")
        return spec

    # ------------------------------------------------------------------
    # shutdown
    # ------------------------------------------------------------------

    def _instance_lock(self, server_id: str) -> threading.Lock:
        """Lock serializing calls on one instance; unknown ids get no entry."""

        with self._lock:
            lock = self._instance_locks.get(server_id)
            if lock is None:
                if not self._registry.has(server_id):
                    raise ServerNotFoundError(server_id)
                lock = self._instance_locks[server_id] = threading.Lock()
            return lock

    def stop_server(self, server_id: str) -> None:
        with self._instance_lock(server_id):
            instance = self._registry.get(server_id)
            if instance is None:
                raise ServerNotFoundError(server_id)
            if instance.status == ServerStatus.STOPPED:
                return

            logger = self._logger.bind(server_id=server_id, api_id=instance.api_id, port=instance.port)
            self._registry.update_server_status(server_id, ServerStatus.STOPPING)
            self._publish(ServerEventKind.STOPPING, instance)
            try:
                if instance.listener is not None:
                    instance.listener.stop()
            except Exception as exc:
                self._registry.update_server_status(server_id, ServerStatus.ERROR)
                logger.error("server_stop_failed", error=str(exc))
                self._publish(ServerEventKind.ERROR, instance, str(exc))
                raise ServerShutdownError(server_id, str(exc)) from exc

            self._registry.update_server_status(server_id, ServerStatus.STOPPED)
            logger.info("server_stopped", requests=instance.request_count, errors=instance.error_count)
            self._publish(ServerEventKind.STOPPED, instance)

    def stop_all_servers(self) -> None:
        failures = 0
        instances = self._registry.get_all()
        for instance in instances:
            try:
                self.stop_server(instance.id)
            except MockServerError as exc:
                failures += 1
                self._logger.error("server_stop_failed", server_id=instance.id, error=exc.message)
        if failures:
            self._logger.warning("stop_all_incomplete", failures=failures, attempted=len(instances))
        else:
            self._logger.info("all_servers_stopped", stopped=len(instances))

    def perform_maintenance(self) -> int:
        """Remove stopped or failed instances and release their ports."""

        removed = 0
        for instance in self._registry.get_servers_needing_cleanup():
            try:
                lock = self._instance_lock(instance.id)
            except ServerNotFoundError:
                continue
            with lock:
                if not self._registry.has(instance.id):
                    continue
                if instance.listener is not None and instance.listener.is_running:
                    try:
                        instance.listener.stop()
                    except Exception as exc:
                        self._logger.warning("listener_close_failed", server_id=instance.id, error=str(exc))
                self._registry.remove(instance.id)
            with self._lock:
                self._instance_locks.pop(instance.id, None)
            self._publish(ServerEventKind.REMOVED, instance)
            removed += 1
        if removed:
            self._logger.info("maintenance_completed", removed=removed)
        return removed

    def cleanup(self) -> None:
        with self._lock:
            self._shutting_down = True
        self._logger.info("manager_cleanup_started", servers=self._registry.count())
        self.stop_all_servers()
        self._registry.clear()
        with self._lock:
            self._instance_locks.clear()
        self._logger.info("manager_cleanup_completed")

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def get_server_status(self, server_id: str) -> ServerInstance | None:
        return self._registry.get(server_id)

    def list_servers(self) -> list[ServerInstance]:
        return self._registry.get_all()

    def get_server_by_port(self, port: int) -> ServerInstance | None:
        return self._registry.get_by_port(port)

    def get_servers_by_api_id(self, api_id: str) -> list[ServerInstance]:
        return self._registry.get_by_api_id(api_id)

    def get_statistics(self) -> dict[str, Any]:
        port_range = self._port_allocator.get_range()
        return {
            **self._registry.get_statistics(),
            "total": self._registry.count(),
            "running": self._registry.get_running_count(),
            "max_instances": self.config.max_instances,
            "port_range": {"start": port_range.start, "end": port_range.end},
            "allocated_ports": sorted(self._port_allocator.get_allocated()),
        }

    def is_healthy(self) -> bool:
        with self._lock:
            if self._shutting_down:
                return False
        return self._registry.count() < self.config.max_instances

    def get_registry(self) -> ServerRegistry:
        return self._registry

    def get_server_health(self, server_id: str) -> dict[str, Any]:
        instance = self._registry.get(server_id)
        if instance is None:
            raise ServerNotFoundError(server_id)
        uptime = 0.0
        if instance.status == ServerStatus.RUNNING:
            uptime = (datetime.now(timezone.utc) - instance.start_time).total_seconds()
        return {
            "server": instance.to_dict(),
            "health": {"status": instance.status.value, "uptime_seconds": round(uptime, 3)},
            "connection": {
                "base_url": instance.base_url,
                "port": instance.port,
                "endpoints": [endpoint.to_dict() for endpoint in instance.endpoints],
            },
        }

    # ------------------------------------------------------------------
    # events
    # ------------------------------------------------------------------

    def subscribe(self, observer: ManagerObserver) -> None:
        with self._lock:
            self._observers.append(observer)

    def unsubscribe(self, observer: ManagerObserver) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def _publish(self, kind: ServerEventKind, instance: ServerInstance, detail: str | None = None) -> None:
        event = ServerEvent.for_instance(kind, instance, detail)
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer.on_server_event(event)
            except Exception:
                self._logger.exception("observer_failed", event_kind=kind.value, server_id=instance.id)

    def __enter__(self) -> "MockServerManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - context helper
        self.cleanup()


def _configuration_error(exc: ValidationError) -> ConfigurationError:
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or "config"
    return ConfigurationError(field, first.get("input"), first.get("msg", "invalid value"))
