from __future__ import annotations

import re
import uuid
from datetime import date, datetime
from typing import Any

import pytest

from openapi_mock.data_generator import (
    NO_EXAMPLE,
    MockDataGenerator,
    generate_mock_data,
    generate_varied_responses,
    parse_simple_pattern,
)
from openapi_mock.errors import DataGenerationError
from openapi_mock.models import GeneratorConfig


def _nesting(value: Any) -> int:
    if isinstance(value, dict):
        return 1 + max((_nesting(item) for item in value.values()), default=0)
    if isinstance(value, list):
        return 1 + max((_nesting(item) for item in value), default=0)
    return 0


@pytest.fixture
def generator() -> MockDataGenerator:
    return MockDataGenerator(GeneratorConfig(seed=7))


def test_example_then_enum_priority(generator: MockDataGenerator) -> None:
    assert generator.generate_varied_data({"type": "string", "example": "fixed", "enum": ["a"]}) == "fixed"
    assert generator.generate_varied_data({"type": "integer", "examples": [3]}) == 3
    assert generator.generate_varied_data({"type": "string", "enum": ["red", "blue"]}) in {"red", "blue"}

    generator.update_config({"useExamples": False})
    assert generator.generate_varied_data({"type": "string", "example": "fixed", "enum": ["a"]}) == "a"


def test_null_examples_are_returned_as_is(generator: MockDataGenerator) -> None:
    assert generator.generate_varied_data({"type": "integer", "examples": [None]}) is None
    assert generator.generate_varied_data({"type": ["string", "null"], "example": None}) is None
    assert generator.use_example_data({"type": "integer"}) is NO_EXAMPLE


def test_unresolved_reference_raises(generator: MockDataGenerator) -> None:
    with pytest.raises(DataGenerationError):
        generator.generate_varied_data({"$ref": "#/components/schemas/Pet"})
    with pytest.raises(DataGenerationError):
        generator.generate_varied_data(
            {"type": "object", "required": ["owner"], "properties": {"owner": {"$ref": "#/components/schemas/User"}}}
        )


def test_integer_multiple_of_stays_in_range(generator: MockDataGenerator) -> None:
    schema = {"type": "integer", "minimum": 10, "maximum": 20, "multipleOf": 5}

    values = {generator.generate_varied_data(schema) for _ in range(1000)}

    assert values <= {10, 15, 20}


def test_numeric_bounds(generator: MockDataGenerator) -> None:
    for _ in range(200):
        exclusive = generator.generate_varied_data(
            {"type": "integer", "minimum": 1, "maximum": 3, "exclusiveMinimum": True, "exclusiveMaximum": True}
        )
        assert exclusive == 2
        assert generator.generate_varied_data({"type": "integer", "exclusiveMinimum": 5, "maximum": 6}) == 6
        number = generator.generate_varied_data({"type": "number", "minimum": 0.5, "maximum": 2.5, "multipleOf": 0.5})
        assert number in {0.5, 1.0, 1.5, 2.0, 2.5}
        fractional_step = generator.generate_varied_data(
            {"type": "integer", "minimum": 0, "maximum": 30, "multipleOf": 2.5}
        )
        assert fractional_step % 5 == 0
        free = generator.generate_varied_data({"type": "number", "minimum": -1, "maximum": 1})
        assert -1 <= free <= 1


def test_inverted_bounds_do_not_raise(generator: MockDataGenerator) -> None:
    value = generator.generate_varied_data({"type": "integer", "minimum": 50, "maximum": 10})
    text = generator.generate_varied_data({"type": "string", "minLength": 8, "maxLength": 3})

    assert isinstance(value, int)
    assert isinstance(text, str)
    assert len(text) == 8


def test_string_lengths_and_formats(generator: MockDataGenerator) -> None:
    for _ in range(50):
        text = generator.generate_varied_data({"type": "string", "minLength": 3, "maxLength": 6})
        assert 3 <= len(text) <= 6

    assert "@" in generator.generate_varied_data({"type": "string", "format": "email"})
    uuid.UUID(generator.generate_varied_data({"type": "string", "format": "uuid"}))
    date.fromisoformat(generator.generate_varied_data({"type": "string", "format": "date"}))
    stamp = generator.generate_varied_data({"type": "string", "format": "date-time"})
    datetime.fromisoformat(stamp.replace("Z", "+00:00"))
    assert generator.generate_varied_data({"type": "string", "format": "ipv4"}).count(".") == 3


def test_field_name_hints_respect_length(generator: MockDataGenerator) -> None:
    email = generator.generate_varied_data({"type": "string"}, field_name="contactEmail")
    short = generator.generate_varied_data({"type": "string", "maxLength": 2}, field_name="description")

    assert "@" in email
    assert len(short) <= 2


def test_simple_patterns_are_honoured(generator: MockDataGenerator) -> None:
    schema = {"type": "string", "pattern": r"^[A-Z]{3}-\d{4}$"}

    for _ in range(20):
        assert re.fullmatch(r"[A-Z]{3}-\d{4}", generator.generate_varied_data(schema))


def test_unsupported_patterns_fall_back_to_text(generator: MockDataGenerator) -> None:
    assert parse_simple_pattern(r"^(cat|dog)+$") is None

    value = generator.generate_varied_data({"type": "string", "pattern": r"^(cat|dog)+$", "maxLength": 5})

    assert isinstance(value, str)
    assert len(value) <= 5


def test_arrays_respect_item_bounds(generator: MockDataGenerator) -> None:
    for _ in range(50):
        items = generator.generate_varied_data(
            {"type": "array", "items": {"type": "integer"}, "minItems": 2, "maxItems": 4}
        )
        assert 2 <= len(items) <= 4
        assert all(isinstance(item, int) for item in items)

    unique = generator.generate_varied_data(
        {"type": "array", "items": {"type": "integer", "minimum": 1, "maximum": 3}, "uniqueItems": True, "minItems": 3}
    )
    assert len(unique) == len(set(unique))

    capped = generator.generate_varied_data({"type": "array", "items": {"type": "string"}, "minItems": 8})
    assert len(capped) == 8


def test_objects_keep_required_and_obey_property_counts(generator: MockDataGenerator) -> None:
    schema = {
        "type": "object",
        "required": ["id"],
        "properties": {"id": {"type": "integer"}, "note": {"type": "string"}, "flag": {"type": "boolean"}},
        "additionalProperties": False,
    }
    for _ in range(30):
        value = generator.generate_varied_data(schema)
        assert "id" in value
        assert set(value) <= {"id", "note", "flag"}

    at_least = generator.generate_varied_data({**schema, "minProperties": 3})
    assert set(at_least) == {"id", "note", "flag"}

    at_most = generator.generate_varied_data({**schema, "maxProperties": 1})
    assert set(at_most) == {"id"}

    padded = generator.generate_varied_data({"type": "object", "minProperties": 2, "additionalProperties": True})
    assert len(padded) >= 2


def test_depth_is_bounded() -> None:
    schema: dict[str, Any] = {"type": "string"}
    for _ in range(50):
        schema = {"type": "object", "required": ["child"], "properties": {"child": schema}}
    generator = MockDataGenerator(GeneratorConfig(seed=1, max_object_depth=3))

    value = generator.generate_response_data(schema)

    assert _nesting(value) <= 5
    assert "child" in value


def test_seeded_generators_are_reproducible() -> None:
    schema = {
        "type": "object",
        "required": ["id", "email", "created", "tags"],
        "properties": {
            "id": {"type": "string", "format": "uuid"},
            "email": {"type": "string", "format": "email"},
            "created": {"type": "string", "format": "date-time"},
            "tags": {"type": "array", "items": {"type": "string"}},
            "score": {"type": "number"},
        },
    }

    first = [MockDataGenerator(GeneratorConfig(seed=42)).generate_response_data(schema) for _ in range(2)]
    second = MockDataGenerator(GeneratorConfig(seed=42))

    assert first[0] == first[1]
    assert second.generate_response_data(schema) == first[0]


def test_composition_and_type_lists(generator: MockDataGenerator) -> None:
    merged = generator.generate_varied_data(
        {
            "allOf": [
                {"type": "object", "required": ["a"], "properties": {"a": {"type": "integer"}}},
                {"required": ["b"], "properties": {"b": {"type": "boolean"}}},
            ]
        }
    )
    assert isinstance(merged["a"], int)
    assert isinstance(merged["b"], bool)

    picked = generator.generate_varied_data({"oneOf": [{"type": "integer"}, {"type": "boolean"}]})
    assert isinstance(picked, (int, bool))

    assert isinstance(generator.generate_varied_data({"type": ["string", "null"]}), str)
    assert generator.generate_varied_data({"type": "null"}) is None
    assert isinstance(generator.generate_varied_data({"properties": {"x": {"type": "integer"}}}), dict)
    assert isinstance(generator.generate_varied_data({"items": {"type": "integer"}}), list)


def test_nullable_integer_type_lists_stay_integral(generator: MockDataGenerator) -> None:
    values = [generator.generate_varied_data({"type": ["integer", "null"], "minimum": 1, "maximum": 10}) for _ in range(20)]

    assert all(isinstance(value, int) and 1 <= value <= 10 for value in values)
    assert isinstance(generator.generate_number({"type": ["null", "integer"]}), int)
    assert isinstance(generator.generate_number({"type": "number", "minimum": 0, "maximum": 1}), float)


def test_stats_and_reset(generator: MockDataGenerator) -> None:
    generator.generate_varied_data({"type": "string"})
    generator.generate_varied_data({"type": "string"})
    generator.generate_varied_data({"type": "integer"})

    assert generator.get_stats() == {"total_generations": 3, "unique_schemas": 2}

    generator.reset()
    assert generator.get_stats() == {"total_generations": 0, "unique_schemas": 0}


def test_module_helpers() -> None:
    assert isinstance(generate_mock_data({"type": "integer"}), int)

    responses = generate_varied_responses({"type": "boolean"}, count=4, config={"seed": 3})
    assert len(responses) == 4
    assert all(isinstance(item, bool) for item in responses)
