"""In-memory catalogue of mock server instances."""

from __future__ import annotations

import threading
from typing import Any

from .models import ServerInstance, ServerStatus
from .port_allocator import PortAllocator

CLEANUP_STATUSES = (ServerStatus.STOPPED, ServerStatus.ERROR)


class ServerRegistry:
    """Keyed store of instances with lookups by port, api id and status.

    Removing an instance releases its port back to the allocator. Counter
    updates are serialized so concurrent requests never lose increments.
    """

    def __init__(self, port_allocator: PortAllocator) -> None:
        self.port_allocator = port_allocator
        self._instances: dict[str, ServerInstance] = {}
        self._by_port: dict[int, str] = {}
        self._lock = threading.RLock()

    def add(self, instance: ServerInstance) -> None:
        with self._lock:
            previous = self._instances.get(instance.id)
            if previous is not None and self._by_port.get(previous.port) == previous.id:
                del self._by_port[previous.port]
            self._instances[instance.id] = instance
            self._by_port[instance.port] = instance.id

    def remove(self, server_id: str) -> None:
        with self._lock:
            instance = self._instances.pop(server_id, None)
            if instance is None:
                return
            if self._by_port.get(instance.port) == server_id:
                del self._by_port[instance.port]
            self.port_allocator.release(instance.port)

    def get(self, server_id: str) -> ServerInstance | None:
        with self._lock:
            return self._instances.get(server_id)

    def get_all(self) -> list[ServerInstance]:
        with self._lock:
            return list(self._instances.values())

    def get_by_port(self, port: int) -> ServerInstance | None:
        with self._lock:
            server_id = self._by_port.get(port)
            return self._instances.get(server_id) if server_id else None

    def get_by_api_id(self, api_id: str) -> list[ServerInstance]:
        with self._lock:
            return [instance for instance in self._instances.values() if instance.api_id == api_id]

    def get_by_status(self, status: ServerStatus) -> list[ServerInstance]:
        with self._lock:
            return [instance for instance in self._instances.values() if instance.status == status]

    def get_running_count(self) -> int:
        return len(self.get_by_status(ServerStatus.RUNNING))

    def has(self, server_id: str) -> bool:
        with self._lock:
            return server_id in self._instances

    def count(self) -> int:
        with self._lock:
            return len(self._instances)

    def clear(self) -> None:
        with self._lock:
            for instance in self._instances.values():
                self.port_allocator.release(instance.port)
            self._instances.clear()
            self._by_port.clear()

    def get_statistics(self) -> dict[str, Any]:
        with self._lock:
            instances = list(self._instances.values())
            return {
                "total_servers": len(instances),
                "running_servers": sum(1 for i in instances if i.status == ServerStatus.RUNNING),
                "stopped_servers": sum(1 for i in instances if i.status == ServerStatus.STOPPED),
                "error_servers": sum(1 for i in instances if i.status == ServerStatus.ERROR),
                "total_requests": sum(i.request_count for i in instances),
                "total_errors": sum(i.error_count for i in instances),
            }

    def get_servers_needing_cleanup(self) -> list[ServerInstance]:
        with self._lock:
            return [instance for instance in self._instances.values() if instance.status in CLEANUP_STATUSES]

    def update_server_status(self, server_id: str, status: ServerStatus) -> None:
        with self._lock:
            instance = self._instances.get(server_id)
            if instance is not None:
                instance.status = status

    def increment_request_count(self, server_id: str) -> None:
        with self._lock:
            instance = self._instances.get(server_id)
            if instance is not None:
                instance.request_count += 1

    def increment_error_count(self, server_id: str) -> None:
        with self._lock:
            instance = self._instances.get(server_id)
            if instance is not None:
                instance.error_count += 1
