"""Helpers for reading OpenAPI/Swagger documents from disk."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping
from urllib.parse import unquote

import structlog
import yaml

from .errors import InvalidAPISpecError

LOGGER = structlog.get_logger("openapi_mock.loader")


def load_api_document(spec_path: Path, *, resolve_refs: bool = True) -> dict[str, Any]:
    """Read a YAML/JSON OpenAPI document and optionally inline local ``$ref`` pointers."""

    suffix = spec_path.suffix.lower()
    if suffix not in {".json", ".yaml", ".yml"}:
        raise InvalidAPISpecError(spec_path.stem, f"Unsupported specification format: {suffix}")
    raw_text = spec_path.read_text(encoding="utf-8")
    try:
        parsed = yaml.safe_load(raw_text)
    except yaml.YAMLError as exc:
        raise InvalidAPISpecError(spec_path.stem, f"Could not parse document: {exc}") from exc
    document = parse_api_document(parsed, api_id=spec_path.stem)
    LOGGER.debug("document_loaded", path=str(spec_path), paths=len(document.get("paths") or {}))
    return resolve_local_refs(document) if resolve_refs else document


def parse_api_document(parsed: Any, *, api_id: str = "unknown") -> dict[str, Any]:
    if not isinstance(parsed, dict):
        raise InvalidAPISpecError(api_id, "Expected OpenAPI/Swagger document to be an object")
    if "openapi" not in parsed and "swagger" not in parsed:
        raise InvalidAPISpecError(api_id, "Document is not an OpenAPI/Swagger document")
    if not isinstance(parsed.get("paths") or {}, dict):
        raise InvalidAPISpecError(api_id, "'paths' must be a mapping")
    return parsed


def api_id_for(document: Mapping[str, Any], spec_path: Path) -> str:
    info = document.get("info") or {}
    title = info.get("title") if isinstance(info, dict) else None
    return str(title or spec_path.stem).lower().replace(" ", "-")


def resolve_local_refs(document: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``document`` with ``#/...`` references inlined.

    A reference that points back into its own expansion is replaced by a
    plain object schema. External references are left untouched.
    """

    def lookup(pointer: str) -> Any:
        node: Any = document
        for token in pointer[2:].split("/") if pointer != "#/" else []:
            key = unquote(token).replace("~1", "/").replace("~0", "~")
            if isinstance(node, list) and key.isdigit():
                node = node[int(key)]
            elif isinstance(node, dict) and key in node:
                node = node[key]
            else:
                raise InvalidAPISpecError(
                    str((document.get("info") or {}).get("title", "unknown")),
                    f"Unresolvable reference {pointer}",
                )
        return node

    def walk(node: Any, stack: tuple[str, ...]) -> Any:
        if isinstance(node, dict):
            pointer = node.get("$ref")
            if isinstance(pointer, str) and pointer.startswith("#/"):
                if pointer in stack:
                    return {"type": "object", "description": f"Circular reference to {pointer}"}
                siblings = {key: walk(value, stack) for key, value in node.items() if key != "$ref"}
                target = walk(lookup(pointer), (*stack, pointer))
                if isinstance(target, dict) and siblings:
                    return {**target, **siblings}
                return target
            return {key: walk(value, stack) for key, value in node.items()}
        if isinstance(node, list):
            return [walk(item, stack) for item in node]
        return node

    return walk(document, ())
