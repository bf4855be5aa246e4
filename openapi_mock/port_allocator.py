"""Logical port reservation inside a configured range."""

from __future__ import annotations

import threading

import structlog

from .errors import ConfigurationError, PortAllocationError, PortInUseError
from .models import PortRange

LOGGER = structlog.get_logger("openapi_mock.ports")

MIN_PORT = 1024
MAX_PORT = 65535


class PortAllocator:
    """Thread-safe allocator handing out ports from ``[start, end)``.

    Only logical slots are tracked here; whether the OS can actually bind a
    claimed port is discovered when the listener starts.
    """

    def __init__(self, port_range: PortRange | None = None) -> None:
        port_range = port_range or PortRange()
        if port_range.start >= port_range.end:
            raise ConfigurationError("port_range", (port_range.start, port_range.end), "start must be less than end")
        if port_range.start < MIN_PORT or port_range.end > MAX_PORT:
            raise ConfigurationError(
                "port_range",
                (port_range.start, port_range.end),
                f"range must lie between {MIN_PORT} and {MAX_PORT}",
            )
        self._range = port_range
        self._allocated: set[int] = set()
        self._lock = threading.Lock()

    def allocate(self, preferred_port: int | None = None) -> int:
        with self._lock:
            if preferred_port is not None:
                if not self._is_free(preferred_port):
                    raise PortInUseError(preferred_port)
                self._allocated.add(preferred_port)
                LOGGER.debug("port_allocated", port=preferred_port, preferred=True)
                return preferred_port

            for port in range(self._range.start, self._range.end):
                if port not in self._allocated:
                    self._allocated.add(port)
                    LOGGER.debug("port_allocated", port=port, preferred=False)
                    return port

        raise PortAllocationError(None, f"No available ports in range {self._range.start}-{self._range.end}")

    def release(self, port: int) -> None:
        with self._lock:
            self._allocated.discard(port)

    def is_available(self, port: int) -> bool:
        with self._lock:
            return self._is_free(port)

    def is_allocated(self, port: int) -> bool:
        with self._lock:
            return port in self._allocated

    def get_allocated(self) -> set[int]:
        with self._lock:
            return set(self._allocated)

    def get_count(self) -> int:
        with self._lock:
            return len(self._allocated)

    def get_range(self) -> PortRange:
        return self._range.model_copy()

    def clear(self) -> None:
        with self._lock:
            self._allocated.clear()

    def _is_free(self, port: int) -> bool:
        return port in self._range and port not in self._allocated
