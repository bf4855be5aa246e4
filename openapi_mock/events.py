"""Lifecycle events published by the server manager."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from .models import ServerInstance, ServerStatus


class ServerEventKind(str, Enum):
    CREATED = "created"
    STARTED = "started"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"
    REMOVED = "removed"


@dataclass(frozen=True)
class ServerEvent:
    kind: ServerEventKind
    server_id: str
    api_id: str
    port: int
    status: ServerStatus
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    detail: str | None = None

    @classmethod
    def for_instance(cls, kind: ServerEventKind, instance: ServerInstance, detail: str | None = None) -> "ServerEvent":
        return cls(
            kind=kind,
            server_id=instance.id,
            api_id=instance.api_id,
            port=instance.port,
            status=instance.status,
            detail=detail,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "server_id": self.server_id,
            "api_id": self.api_id,
            "port": self.port,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "detail": self.detail,
        }


class ManagerObserver(Protocol):
    """Anything with an ``on_server_event`` method can subscribe to a manager."""

    def on_server_event(self, event: ServerEvent) -> None:
        ...
