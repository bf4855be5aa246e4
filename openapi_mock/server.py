"""HTTP listener serving one OpenAPI document as a mock service."""

from __future__ import annotations

import json
import random
import socketserver
import threading
import time
from copy import deepcopy
from dataclasses import dataclass, field
from http import HTTPStatus
from http.cookies import CookieError, SimpleCookie
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Mapping
from urllib.parse import parse_qs, urlsplit

import structlog

from .auth_handler import AuthenticationHandler
from .data_generator import MockDataGenerator
from .errors import DataGenerationError
from .models import AuthRequest, EndpointInfo, ErrorSimulationConfig, GeneratorConfig, ServerConfig
from .registry import ServerRegistry
from .routing import EndpointRoute, RouteTable

LOGGER = structlog.get_logger("openapi_mock.server")

NO_BODY = object()
NETWORK_ERROR_SHARE = 0.5
CORS_ALLOW_METHODS = "GET, POST, PUT, PATCH, DELETE, OPTIONS, HEAD"
CORS_ALLOW_HEADERS = "Content-Type, Authorization, X-API-Key"


@dataclass
class MockRequest:
    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    query: dict[str, list[str]] = field(default_factory=dict)
    body: bytes = b""

    @property
    def cookies(self) -> dict[str, str]:
        raw = next((value for key, value in self.headers.items() if key.lower() == "cookie"), "")
        if not raw:
            return {}
        jar = SimpleCookie()
        try:
            jar.load(raw)
        except CookieError:
            return {}
        return {name: morsel.value for name, morsel in jar.items()}

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        return next((value for key, value in self.headers.items() if key.lower() == lowered), None)

    @classmethod
    def from_target(cls, method: str, target: str, headers: Mapping[str, str], body: bytes = b"") -> "MockRequest":
        parts = urlsplit(target)
        return cls(
            method=method.upper(),
            path=parts.path or "/",
            headers=dict(headers),
            query=parse_qs(parts.query, keep_blank_values=True),
            body=body,
        )


@dataclass
class MockResponse:
    status: int
    body: Any = NO_BODY
    headers: dict[str, str] = field(default_factory=dict)

    def encode(self) -> bytes:
        if self.body is NO_BODY:
            return b""
        return json.dumps(self.body, default=str).encode("utf-8")


class ThreadedHTTPServer(socketserver.ThreadingMixIn, HTTPServer):
    daemon_threads = True


class MockServerRunner:
    """Owns the listener, route table and data generator of one instance.

    ``handle`` holds the request pipeline (delay, CORS preflight, routing,
    authentication, error simulation, body generation) independent of the
    socket layer; the threaded HTTP handler only translates to and from it.
    A ``None`` result from ``handle`` means the connection is dropped.
    """

    def __init__(
        self,
        server_id: str,
        document: Mapping[str, Any],
        config: ServerConfig,
        registry: ServerRegistry,
        *,
        host: str = "127.0.0.1",
        port: int,
        auth_handler: AuthenticationHandler | None = None,
    ) -> None:
        self.server_id = server_id
        self.host = host
        self.port = port
        self._config = config
        self._registry = registry
        self._routes = RouteTable(document)
        generator_config = config.generator or GeneratorConfig()
        if config.seed is not None:
            generator_config = generator_config.model_copy(update={"seed": config.seed})
        self._generator = MockDataGenerator(generator_config)
        self._auth = auth_handler or AuthenticationHandler()
        self._random = random.Random(config.seed)
        self._random_lock = threading.Lock()
        self._httpd: ThreadedHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._ready = threading.Event()
        self._logger = LOGGER.bind(server_id=server_id, api_id=config.api_id, port=port)

    @property
    def routes(self) -> RouteTable:
        return self._routes

    @property
    def generator(self) -> MockDataGenerator:
        return self._generator

    @property
    def is_running(self) -> bool:
        return self._httpd is not None

    def endpoints(self) -> list[EndpointInfo]:
        return self._routes.endpoints()

    def start(self) -> None:
        """Bind and serve in a background thread; bind failures raise ``OSError``."""

        self._logger.info("listener_starting", host=self.host, endpoints=len(self._routes.routes))
        httpd = ThreadedHTTPServer((self.host, self.port), self._build_handler_factory())
        self._httpd = httpd
        self._thread = threading.Thread(
            target=httpd.serve_forever,
            name=f"{self.server_id}-listener",
            daemon=True,
        )
        self._thread.start()
        self._ready.set()
        self._logger.info("listener_started", host=httpd.server_address[0])

    def stop(self) -> None:
        httpd = self._httpd
        if httpd is None:
            return
        self._logger.info("listener_stopping")
        try:
            httpd.shutdown()
            httpd.server_close()
        finally:
            if self._thread:
                self._thread.join(timeout=2)
            self._httpd = None
            self._thread = None
            self._ready.clear()
        self._logger.info("listener_stopped")

    def wait_until_ready(self, timeout: float = 1.0) -> bool:
        return self._ready.wait(timeout=timeout)

    # ------------------------------------------------------------------
    # request pipeline
    # ------------------------------------------------------------------

    def handle(self, request: MockRequest) -> MockResponse | None:
        self._registry.increment_request_count(self.server_id)
        logger = self._logger.bind(method=request.method, path=request.path)
        if self._config.enable_logging:
            logger.info("request_received", content_length=len(request.body))

        delay = self._config.response_delay or 0
        if delay > 0:
            time.sleep(delay / 1000)

        try:
            response = self._dispatch(request, logger)
        except DataGenerationError as exc:
            logger.error("response_generation_failed", error=str(exc))
            response = MockResponse(
                HTTPStatus.INTERNAL_SERVER_ERROR,
                {"error": "Internal Server Error", "message": exc.message},
            )
        except Exception:
            logger.exception("request_failed")
            response = MockResponse(
                HTTPStatus.INTERNAL_SERVER_ERROR,
                {"error": "Internal Server Error", "message": "Mock server failed to build a response"},
            )

        if response is None or response.status >= 400:
            self._registry.increment_error_count(self.server_id)
        if response is None:
            logger.warning("request_dropped")
            return None

        if self._config.enable_cors:
            response.headers.update(self._cors_headers(request))
        if self._config.enable_logging:
            logger.info("request_served", status=int(response.status))
        return response

    def _dispatch(self, request: MockRequest, logger: Any) -> MockResponse | None:
        route = self._routes.match(request.method, request.path)
        if request.method == "OPTIONS" and self._config.enable_cors and (route is None or route.method != "OPTIONS"):
            allowed = self._routes.allowed_methods(request.path)
            headers = {"Allow": ", ".join([*allowed, "OPTIONS"])} if allowed else {}
            return MockResponse(HTTPStatus.NO_CONTENT, headers=headers)

        if route is None:
            logger.warning("request_unmatched")
            return MockResponse(
                HTTPStatus.NOT_FOUND,
                {"error": "Not Found", "message": f"No mock endpoint matches {request.method} {request.path}"},
            )

        if self._config.auth_validation and route.requires_auth:
            result = self._auth.validate_auth(
                AuthRequest(headers=request.headers, query=request.query, cookies=request.cookies),
                route.security,
                self._routes.security_schemes,
            )
            if not result.valid:
                logger.info(
                    "auth_failed",
                    status=result.status_code,
                    scheme=result.scheme_name,
                    reason=result.error,
                )
                failure = self._auth.build_failure_response(result)
                return MockResponse(failure.status_code, failure.body, dict(failure.headers or {}))

        simulation = self._config.error_simulation
        if simulation is not None and simulation.enabled:
            simulated = self._simulate_error(route, simulation, logger)
            if simulated is not False:
                return simulated

        return self._success_response(route, request)

    def _roll(self) -> float:
        with self._random_lock:
            return self._random.random()

    def _simulate_error(
        self,
        route: EndpointRoute,
        simulation: ErrorSimulationConfig,
        logger: Any,
    ) -> MockResponse | None | bool:
        override = simulation.specific_errors.get(route.key)
        if override is not None:
            probability = 1.0 if override.probability is None else override.probability
            if self._roll() < probability:
                logger.info("error_simulated", status=override.status_code, override=route.key)
                body = override.response if override.response is not None else _simulated_body(override.status_code)
                return MockResponse(override.status_code, deepcopy(body))

        if simulation.error_probability <= 0 or self._roll() >= simulation.error_probability:
            return False
        if simulation.network_errors and self._roll() < NETWORK_ERROR_SHARE:
            logger.info("network_error_simulated")
            return None

        declared = sorted(route.error_responses)
        with self._random_lock:
            status = self._random.choice(declared) if declared else HTTPStatus.INTERNAL_SERVER_ERROR
        logger.info("error_simulated", status=int(status))
        media = route.error_responses.get(int(status))
        if media is not None and media.schema is not None:
            return MockResponse(status, self._generator.generate_response_data(media.schema))
        return MockResponse(status, _simulated_body(int(status)))

    def _success_response(self, route: EndpointRoute, request: MockRequest) -> MockResponse:
        success = route.success
        if success.status == HTTPStatus.NO_CONTENT:
            return MockResponse(success.status)
        if success.has_example and self._generator.config.use_examples:
            return MockResponse(success.status, deepcopy(success.example))
        if success.schema is not None:
            return MockResponse(success.status, self._generator.generate_response_data(success.schema))
        return MockResponse(success.status, {"message": f"{route.method} {route.path} succeeded"})

    @staticmethod
    def _cors_headers(request: MockRequest) -> dict[str, str]:
        return {
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
            "Access-Control-Allow-Headers": request.header("Access-Control-Request-Headers") or CORS_ALLOW_HEADERS,
        }

    # ------------------------------------------------------------------
    # socket layer
    # ------------------------------------------------------------------

    def _build_handler_factory(self) -> type[BaseHTTPRequestHandler]:
        runner = self
        handler_logger = self._logger

        class Handler(BaseHTTPRequestHandler):
            def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - avoid stderr
                handler_logger.debug(
                    "http_trace",
                    client_ip=self.client_address[0],
                    message=format % args,
                )

            def do_GET(self) -> None:  # noqa: N802 (BaseHTTPRequestHandler requirement)
                self._handle()

            def do_POST(self) -> None:  # noqa: N802
                self._handle()

            def do_PUT(self) -> None:  # noqa: N802
                self._handle()

            def do_DELETE(self) -> None:  # noqa: N802
                self._handle()

            def do_PATCH(self) -> None:  # noqa: N802
                self._handle()

            def do_HEAD(self) -> None:  # noqa: N802
                self._handle(head_only=True)

            def do_OPTIONS(self) -> None:  # noqa: N802
                self._handle()

            def do_TRACE(self) -> None:  # noqa: N802
                self._handle()

            def _handle(self, *, head_only: bool = False) -> None:
                length = int(self.headers.get("Content-Length", 0) or 0)
                request = MockRequest.from_target(
                    self.command,
                    self.path,
                    {key: value for key, value in self.headers.items()},
                    self.rfile.read(length) if length else b"",
                )
                response = runner.handle(request)
                if response is None:
                    self.close_connection = True
                    return
                self._respond(response, head_only=head_only)

            def _respond(self, response: MockResponse, *, head_only: bool = False) -> None:
                payload = response.encode()
                self.send_response(int(response.status))
                if response.body is not NO_BODY:
                    self.send_header("Content-Type", "application/json")
                for key, value in response.headers.items():
                    self.send_header(key, value)
                self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                if payload and not head_only:
                    self.wfile.write(payload)

        return Handler


def _simulated_body(status: int) -> dict[str, Any]:
    try:
        phrase = HTTPStatus(status).phrase
    except ValueError:
        phrase = "Error"
    return {"error": phrase, "message": "Simulated error response", "code": "SIMULATED_ERROR"}
