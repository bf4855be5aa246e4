"""Error taxonomy for the mock server engine."""

from __future__ import annotations

from typing import Any


class MockServerError(Exception):
    """Base error for every lifecycle or generation failure of the engine."""

    code = "MOCK_SERVER_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
        user_message: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context or {}
        self.user_message = user_message or message

    def as_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "context": self.context,
        }


class PortAllocationError(MockServerError):
    """Raised when no port can be claimed from the configured range.

    ``port`` is ``None`` when the whole range is exhausted rather than one
    specific port being unusable.
    """

    code = "PORT_ALLOCATION_ERROR"

    def __init__(self, port: int | None, reason: str | None = None) -> None:
        if port is None:
            message = "Port allocation failed" + (f": {reason}" if reason else "")
            user_message = "No free port is left in the configured range. Stop unused mock servers or widen the range."
        else:
            message = f"Port {port} allocation failed" + (f": {reason}" if reason else "")
            user_message = f"Unable to use port {port}. The port may already be in use or unavailable."
        super().__init__(message, context={"port": port}, user_message=user_message)
        self.port = port


class PortInUseError(PortAllocationError):
    code = "PORT_IN_USE"

    def __init__(self, port: int) -> None:
        super().__init__(port, "port already in use")


class ServerNotFoundError(MockServerError):
    code = "SERVER_NOT_FOUND"

    def __init__(self, server_id: str) -> None:
        super().__init__(
            f"Mock server instance {server_id} not found",
            context={"server_id": server_id},
            user_message=f'The mock server "{server_id}" was not found. It may have been stopped or never existed.',
        )
        self.server_id = server_id


class ServerStartupError(MockServerError):
    code = "SERVER_STARTUP_ERROR"

    def __init__(self, server_id: str, port: int, reason: str) -> None:
        super().__init__(
            f"Failed to start mock server {server_id} on port {port}: {reason}",
            context={"server_id": server_id, "port": port},
            user_message=f"Unable to start the mock server on port {port}. {reason}",
        )


class ServerShutdownError(MockServerError):
    code = "SERVER_SHUTDOWN_ERROR"

    def __init__(self, server_id: str, reason: str) -> None:
        super().__init__(
            f"Failed to shutdown mock server {server_id}: {reason}",
            context={"server_id": server_id},
            user_message=f'Unable to stop the mock server "{server_id}". {reason}',
        )


class ConfigurationError(MockServerError):
    """Invalid input handed to the manager or one of its components."""

    code = "CONFIGURATION_ERROR"

    def __init__(self, field: str, value: Any, reason: str) -> None:
        super().__init__(
            f"Invalid configuration for {field} = {value!r}: {reason}",
            context={"field": field, "value": value},
            user_message=f"The mock server configuration is invalid. Please check the {field} setting.",
        )
        self.field = field
        self.value = value


class ResourceLimitError(MockServerError):
    code = "RESOURCE_LIMIT_ERROR"

    def __init__(self, resource: str, limit: int, current: int) -> None:
        super().__init__(
            f"Resource limit exceeded for {resource}: {current}/{limit}",
            context={"resource": resource, "limit": limit, "current": current},
            user_message=(
                f"Cannot create more mock servers. The maximum limit of {limit} {resource} has been reached."
            ),
        )


class DataGenerationError(MockServerError):
    code = "DATA_GENERATION_ERROR"

    def __init__(self, reason: str, location: str = "schema") -> None:
        super().__init__(
            f"Failed to generate mock data for {location}: {reason}",
            context={"location": location},
            user_message="Unable to generate mock response data. The API specification may be incomplete or invalid.",
        )


class InvalidAPISpecError(MockServerError):
    code = "INVALID_API_SPEC"

    def __init__(self, api_id: str, reason: str) -> None:
        super().__init__(
            f"Invalid API specification for {api_id}: {reason}",
            context={"api_id": api_id},
            user_message=f'The API specification for "{api_id}" cannot be used for mocking. {reason}',
        )
