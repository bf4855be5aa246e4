"""Pydantic models and runtime records shared by the mock server engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_PORT_RANGE_START = 3000
DEFAULT_PORT_RANGE_END = 4000
DEFAULT_MAX_INSTANCES = 10


class ServerStatus(str, Enum):
    """Lifecycle states of a mock server instance."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class PortRange(BaseModel):
    """Half-open interval ``[start, end)`` of ports the engine may bind."""

    model_config = ConfigDict(frozen=True)

    start: int = DEFAULT_PORT_RANGE_START
    end: int = DEFAULT_PORT_RANGE_END

    def __contains__(self, port: object) -> bool:
        return isinstance(port, int) and self.start <= port < self.end

    def __len__(self) -> int:
        return max(self.end - self.start, 0)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ErrorOverride(_CamelModel):
    """Forced error for one endpoint, keyed by ``"<METHOD> <path>"``."""

    status_code: int = Field(500, alias="statusCode")
    response: Any = None
    probability: Optional[float] = None


class ErrorSimulationConfig(_CamelModel):
    enabled: bool = False
    error_probability: float = Field(0.0, alias="errorProbability")
    network_errors: bool = Field(False, alias="networkErrors")
    specific_errors: dict[str, ErrorOverride] = Field(default_factory=dict, alias="specificErrors")


class GeneratorConfig(_CamelModel):
    """Data generator behaviour; a seed makes output reproducible."""

    seed: Optional[int] = None
    use_examples: bool = Field(True, alias="useExamples")
    max_array_length: int = Field(5, alias="maxArrayLength")
    max_object_depth: int = Field(10, alias="maxObjectDepth")


class ServerConfig(_CamelModel):
    """Per-instance configuration handed to ``MockServerManager.create_server``.

    Optional fields left as ``None`` are filled with manager defaults when
    the server is created.
    """

    api_id: str = Field(alias="apiId")
    port: Optional[int] = None
    enable_logging: Optional[bool] = Field(None, alias="enableLogging")
    response_delay: Optional[int] = Field(None, alias="responseDelay")
    auth_validation: Optional[bool] = Field(None, alias="authValidation")
    enable_cors: Optional[bool] = Field(None, alias="enableCors")
    error_simulation: Optional[ErrorSimulationConfig] = Field(None, alias="errorSimulation")
    seed: Optional[int] = None
    generator: Optional[GeneratorConfig] = None


def _env_int(name: str, fallback: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return fallback
    return int(raw)


class ManagerConfig(_CamelModel):
    """Manager-wide limits and defaults."""

    max_instances: int = Field(DEFAULT_MAX_INSTANCES, alias="maxInstances")
    port_range: PortRange = Field(default_factory=PortRange, alias="portRange")
    default_response_delay: int = Field(0, alias="defaultResponseDelay")
    default_enable_cors: bool = Field(True, alias="defaultEnableCors")
    host: str = "127.0.0.1"

    @classmethod
    def from_env(cls, **overrides: Any) -> "ManagerConfig":
        """Build a config with priority: explicit overrides > environment > built-in defaults."""

        values: dict[str, Any] = {
            "max_instances": _env_int("MOCK_SERVER_MAX_INSTANCES", DEFAULT_MAX_INSTANCES),
            "port_range": PortRange(
                start=_env_int("MOCK_SERVER_PORT_RANGE_START", DEFAULT_PORT_RANGE_START),
                end=_env_int("MOCK_SERVER_PORT_RANGE_END", DEFAULT_PORT_RANGE_END),
            ),
            "default_response_delay": _env_int("MOCK_SERVER_DEFAULT_DELAY", 0),
            "default_enable_cors": os.getenv("MOCK_SERVER_ENABLE_CORS", "true").lower() != "false",
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls.model_validate(values)


class ApiKeyScheme(_CamelModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: Literal["apiKey"]
    name: Optional[str] = None
    location: Optional[str] = Field(None, alias="in")


class HttpScheme(_CamelModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: Literal["http"]
    scheme: Optional[str] = None
    bearer_format: Optional[str] = Field(None, alias="bearerFormat")


class OAuth2Scheme(_CamelModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: Literal["oauth2"]
    flows: dict[str, Any] = Field(default_factory=dict)


class OpenIdConnectScheme(_CamelModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: Literal["openIdConnect"]
    url: Optional[str] = Field(None, alias="openIdConnectUrl")


SecurityScheme = Annotated[
    Union[ApiKeyScheme, HttpScheme, OAuth2Scheme, OpenIdConnectScheme],
    Field(discriminator="type"),
]

# scheme name -> required scopes
SecurityRequirement = Mapping[str, list[str]]


@dataclass
class EndpointInfo:
    method: str
    path: str
    summary: str | None = None
    requires_auth: bool = False
    response_codes: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method,
            "path": self.path,
            "summary": self.summary,
            "requires_auth": self.requires_auth,
            "response_codes": list(self.response_codes),
        }


@dataclass
class ServerInstance:
    """Registry record for one mock server; owned by the registry once added."""

    id: str
    api_id: str
    port: int
    base_url: str
    status: ServerStatus
    config: ServerConfig
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    request_count: int = 0
    error_count: int = 0
    endpoints: list[EndpointInfo] = field(default_factory=list)
    listener: Any = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        """Plain representation without the listener handle."""

        return {
            "id": self.id,
            "api_id": self.api_id,
            "port": self.port,
            "base_url": self.base_url,
            "status": self.status.value,
            "config": self.config.model_dump(mode="json"),
            "start_time": self.start_time.isoformat(),
            "request_count": self.request_count,
            "error_count": self.error_count,
            "endpoints": [endpoint.to_dict() for endpoint in self.endpoints],
        }


@dataclass
class AuthRequest:
    """Credential-bearing parts of an inbound request.

    Values may be plain strings or lists of strings; lists are read from
    their first element.
    """

    headers: Mapping[str, Any] = field(default_factory=dict)
    query: Mapping[str, Any] = field(default_factory=dict)
    cookies: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class AuthResult:
    valid: bool
    status_code: int | None = None
    error: str | None = None
    scheme: Any = None
    scheme_name: str | None = None
    required_scopes: list[str] | None = None

    @classmethod
    def ok(cls, scheme: Any = None, scheme_name: str | None = None) -> "AuthResult":
        return cls(valid=True, scheme=scheme, scheme_name=scheme_name)

    @classmethod
    def fail(cls, error: str, status_code: int = 401) -> "AuthResult":
        return cls(valid=False, status_code=status_code, error=error)


@dataclass
class ErrorResponse:
    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] | None = None
