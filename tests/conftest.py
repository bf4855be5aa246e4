"""Test bootstrap and shared fixtures for openapi-mock."""

from __future__ import annotations

import socket
import sys
from pathlib import Path
from typing import Any, Iterator

import pytest

PACKAGE_ROOT = Path(__file__).resolve().parents[1]
if str(PACKAGE_ROOT) not in sys.path:
    sys.path.insert(0, str(PACKAGE_ROOT))

from openapi_mock.manager import MockServerManager  # noqa: E402
from openapi_mock.models import ManagerConfig, PortRange  # noqa: E402

PORT_WINDOW = 20

PET_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "name"],
    "properties": {
        "id": {"type": "integer", "minimum": 1, "maximum": 1000},
        "name": {"type": "string"},
        "tag": {"type": "string", "enum": ["cat", "dog"]},
    },
}


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def port_window() -> PortRange:
    start = min(find_free_port(), 65535 - PORT_WINDOW - 1)
    return PortRange(start=start, end=start + PORT_WINDOW)


@pytest.fixture
def manager(port_window: PortRange) -> Iterator[MockServerManager]:
    manager = MockServerManager(ManagerConfig(max_instances=5, port_range=port_window))
    try:
        yield manager
    finally:
        manager.cleanup()


@pytest.fixture
def petstore_document() -> dict[str, Any]:
    return {
        "openapi": "3.0.3",
        "info": {"title": "Petstore", "version": "1.0.0"},
        "servers": [{"url": "http://localhost/api/v1"}],
        "components": {
            "securitySchemes": {
                "apiKey": {"type": "apiKey", "in": "header", "name": "X-API-Key"},
                "basicAuth": {"type": "http", "scheme": "basic"},
            }
        },
        "paths": {
            "/pets": {
                "get": {
                    "summary": "List pets",
                    "responses": {
                        "200": {
                            "description": "ok",
                            "content": {
                                "application/json": {
                                    "schema": {"type": "array", "items": PET_SCHEMA, "minItems": 1, "maxItems": 3}
                                }
                            },
                        }
                    },
                },
                "post": {
                    "summary": "Create pet",
                    "security": [{"apiKey": []}],
                    "responses": {
                        "201": {"description": "created", "content": {"application/json": {"schema": PET_SCHEMA}}},
                        "400": {"description": "bad request"},
                    },
                },
            },
            "/pets/mine": {
                "get": {
                    "responses": {
                        "200": {"description": "ok", "content": {"application/json": {"example": {"mine": True}}}}
                    }
                }
            },
            "/pets/{petId}": {
                "get": {
                    "responses": {
                        "200": {"description": "ok", "content": {"application/json": {"schema": PET_SCHEMA}}},
                        "404": {"description": "missing"},
                    }
                },
                "delete": {"responses": {"204": {"description": "deleted"}}},
            },
            "/secure": {
                "get": {
                    "security": [{"apiKey": []}, {"basicAuth": []}],
                    "responses": {
                        "200": {
                            "description": "ok",
                            "content": {
                                "application/json": {
                                    "schema": {
                                        "type": "object",
                                        "required": ["ok"],
                                        "properties": {"ok": {"type": "boolean"}},
                                    }
                                }
                            },
                        }
                    },
                }
            },
        },
    }
