"""Endpoint table derived from an OpenAPI document."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping
from urllib.parse import urlparse

from .data_generator import NO_EXAMPLE
from .models import EndpointInfo

HTTP_METHODS = ("get", "put", "post", "delete", "options", "head", "patch", "trace")

_TEMPLATE_PART = re.compile(r"(\{[^/{}]+\})")
_SWAGGER2_OAUTH_FLOWS = {
    "implicit": "implicit",
    "password": "password",
    "application": "clientCredentials",
    "accessCode": "authorizationCode",
}


@dataclass
class MediaResponse:
    status: int
    schema: dict[str, Any] | None = None
    example: Any = NO_EXAMPLE

    @property
    def has_example(self) -> bool:
        return self.example is not NO_EXAMPLE


@dataclass
class EndpointRoute:
    method: str
    path: str
    operation: dict[str, Any]
    security: list[dict[str, list[str]]] = field(default_factory=list)
    success: MediaResponse = field(default_factory=lambda: MediaResponse(200))
    error_responses: dict[int, MediaResponse] = field(default_factory=dict)
    _regex: re.Pattern[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        parts = _TEMPLATE_PART.split(self.path)
        pattern = "".join("[^/]+" if part.startswith("{") else re.escape(part) for part in parts)
        self._regex = re.compile(f"^{pattern.rstrip('/') or '/'}/?$")

    @property
    def key(self) -> str:
        return f"{self.method} {self.path}"

    @property
    def summary(self) -> str | None:
        return self.operation.get("summary") or self.operation.get("operationId")

    @property
    def requires_auth(self) -> bool:
        return any(requirement for requirement in self.security)

    @property
    def specificity(self) -> tuple[int, int]:
        templated = len(_TEMPLATE_PART.findall(self.path))
        literal = len(_TEMPLATE_PART.sub("", self.path))
        return templated, -literal

    def matches(self, path: str) -> bool:
        return bool(self._regex.match(path))

    def response_codes(self) -> list[int]:
        return sorted({self.success.status, *self.error_responses})

    def to_endpoint_info(self) -> EndpointInfo:
        return EndpointInfo(
            method=self.method,
            path=self.path,
            summary=self.summary,
            requires_auth=self.requires_auth,
            response_codes=self.response_codes(),
        )


class RouteTable:
    """Lookup of declared operations, literal paths winning over templated ones."""

    def __init__(self, document: Mapping[str, Any]) -> None:
        self.document = document
        self.base_path = _base_path(document)
        self.security_schemes: dict[str, Any] = _security_schemes(document)
        global_security = _requirements(document.get("security"))
        self.routes: list[EndpointRoute] = []
        for raw_path, path_item in (document.get("paths") or {}).items():
            if not isinstance(path_item, dict):
                continue
            for method, operation in path_item.items():
                if method.lower() not in HTTP_METHODS or not isinstance(operation, dict):
                    continue
                security = _requirements(operation["security"]) if "security" in operation else global_security
                success, errors = _responses(operation.get("responses") or {})
                self.routes.append(
                    EndpointRoute(
                        method=method.upper(),
                        path=str(raw_path),
                        operation=operation,
                        security=security,
                        success=success,
                        error_responses=errors,
                    )
                )
        self.routes.sort(key=lambda route: route.specificity)

    def match(self, method: str, path: str) -> EndpointRoute | None:
        method = method.upper()
        for candidate in self._candidate_paths(path):
            route = self._find(method, candidate)
            if route is None and method == "HEAD":
                route = self._find("GET", candidate)
            if route is not None:
                return route
        return None

    def allowed_methods(self, path: str) -> list[str]:
        methods: list[str] = []
        for candidate in self._candidate_paths(path):
            methods.extend(route.method for route in self.routes if route.matches(candidate))
        return sorted(set(methods))

    def endpoints(self) -> list[EndpointInfo]:
        return [route.to_endpoint_info() for route in sorted(self.routes, key=lambda r: (r.path, r.method))]

    def _find(self, method: str, path: str) -> EndpointRoute | None:
        for route in self.routes:
            if route.method == method and route.matches(path):
                return route
        return None

    def _candidate_paths(self, path: str) -> list[str]:
        path = path or "/"
        candidates = [path]
        if self.base_path and (path == self.base_path or path.startswith(self.base_path + "/")):
            candidates.append(path[len(self.base_path) :] or "/")
        return candidates


def _base_path(document: Mapping[str, Any]) -> str:
    servers = document.get("servers")
    if isinstance(servers, list) and servers and isinstance(servers[0], dict):
        url = str(servers[0].get("url") or "")
        path = urlparse(url).path if "://" in url else url
    else:
        path = str(document.get("basePath") or "")
    if "{" in path:
        return ""
    return path.rstrip("/")


def _security_schemes(document: Mapping[str, Any]) -> dict[str, Any]:
    components = document.get("components") or {}
    if components.get("securitySchemes"):
        return dict(components["securitySchemes"])
    definitions = document.get("securityDefinitions") or {}
    return {name: _swagger2_scheme(definition) for name, definition in definitions.items()}


def _swagger2_scheme(definition: Any) -> Any:
    """Rewrite a Swagger 2.0 security definition into its OpenAPI 3 shape."""

    if not isinstance(definition, dict):
        return definition
    kind = definition.get("type")
    if kind == "basic":
        return {"type": "http", "scheme": "basic"}
    if kind == "oauth2" and "flows" not in definition:
        flow = _SWAGGER2_OAUTH_FLOWS.get(str(definition.get("flow")), "implicit")
        settings = {
            key: definition[key] for key in ("authorizationUrl", "tokenUrl", "scopes") if key in definition
        }
        return {"type": "oauth2", "flows": {flow: settings}}
    return dict(definition)


def _requirements(raw: Any) -> list[dict[str, list[str]]]:
    if not isinstance(raw, list):
        return []
    requirements: list[dict[str, list[str]]] = []
    for entry in raw:
        if isinstance(entry, dict):
            requirements.append({str(name): list(scopes or []) for name, scopes in entry.items()})
    return requirements


def _responses(responses: Mapping[Any, Any]) -> tuple[MediaResponse, dict[int, MediaResponse]]:
    by_status: dict[int, Any] = {}
    for code, response in responses.items():
        if str(code).isdigit():
            by_status[int(code)] = response

    success_codes = sorted(code for code in by_status if 200 <= code < 300)
    if success_codes:
        success = _media_response(success_codes[0], by_status[success_codes[0]])
    elif "default" in responses:
        success = _media_response(200, responses["default"])
    else:
        success = MediaResponse(200)

    errors = {code: _media_response(code, by_status[code]) for code in by_status if code >= 400}
    return success, errors


def _media_response(status: int, response: Any) -> MediaResponse:
    if not isinstance(response, dict):
        return MediaResponse(status)

    content = response.get("content")
    if isinstance(content, dict) and content:
        media = content.get("application/json")
        if media is None:
            media = next(
                (value for key, value in content.items() if str(key).endswith("+json")),
                next(iter(content.values())),
            )
        if not isinstance(media, dict):
            return MediaResponse(status)
        example: Any = NO_EXAMPLE
        if "example" in media:
            example = media["example"]
        elif isinstance(media.get("examples"), dict):
            for entry in media["examples"].values():
                if isinstance(entry, dict) and "value" in entry:
                    example = entry["value"]
                    break
        return MediaResponse(status, media.get("schema"), example)

    # Swagger 2.0 keeps the schema directly on the response
    example = NO_EXAMPLE
    examples = response.get("examples")
    if isinstance(examples, dict) and "application/json" in examples:
        example = examples["application/json"]
    return MediaResponse(status, response.get("schema"), example)
