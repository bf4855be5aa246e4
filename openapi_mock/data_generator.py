"""Schema-aware mock data generation for OpenAPI schema nodes.

Every value is produced from the generator's private Faker instance, so a
seeded generator always yields the same sequence for the same schemas.
References are never resolved here; a schema that still carries ``$ref``
raises ``DataGenerationError``.
"""

from __future__ import annotations

import base64
import hashlib
import json
import math
import re
import string
import threading
from collections import Counter
from copy import deepcopy
from datetime import datetime, timezone
from fractions import Fraction
from typing import Any, Callable, Mapping

import structlog
from faker import Faker

from .errors import DataGenerationError
from .models import GeneratorConfig

LOGGER = structlog.get_logger("openapi_mock.generator")

DEFAULT_NUMBER_SPAN = 1000
DEFAULT_MAX_STRING_LENGTH = 24
MAX_GENERATED_STRING_LENGTH = 64
OPTIONAL_PROPERTY_PROBABILITY = 0.7
UNIQUE_ITEM_ATTEMPTS = 10
UNBOUNDED_REPEAT_SPAN = 8
NO_EXAMPLE = object()

_DATE_START = datetime(2015, 1, 1, tzinfo=timezone.utc)
_DATE_END = datetime(2025, 12, 31, tzinfo=timezone.utc)

_ALPHANUMERIC = string.ascii_letters + string.digits
_CLASS_ESCAPES = {
    "d": string.digits,
    "D": string.ascii_letters,
    "w": _ALPHANUMERIC + "_",
    "W": "-.!@",
    "s": " ",
    "S": _ALPHANUMERIC,
}
# groups, alternation, lookarounds, backreferences and word boundaries
_UNSUPPORTED_PATTERN = re.compile(r"[()|]|\\[1-9bBkAZz]")
_QUANTIFIER = re.compile(r"\{(\d+)(,(\d*))?\}")

PatternAtom = tuple[str, int, "int | None"]


def _fingerprint(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _expand_class(spec: str) -> str | None:
    negate = spec.startswith("^")
    if negate:
        spec = spec[1:]
    chars: list[str] = []
    index = 0
    while index < len(spec):
        char = spec[index]
        if char == "\\" and index + 1 < len(spec):
            chars.extend(_CLASS_ESCAPES.get(spec[index + 1], spec[index + 1]))
            index += 2
            continue
        if index + 2 < len(spec) and spec[index + 1] == "-":
            first, last = ord(char), ord(spec[index + 2])
            if first > last:
                return None
            chars.extend(chr(code) for code in range(first, last + 1))
            index += 3
            continue
        chars.append(char)
        index += 1
    if negate:
        chars = [char for char in _ALPHANUMERIC + "_-" if char not in chars]
    return "".join(dict.fromkeys(chars)) or None


def parse_simple_pattern(pattern: str) -> list[PatternAtom] | None:
    """Split a simple regex into ``(charset, min, max)`` atoms.

    Only literals, escapes, ``.``, character classes and quantifiers are
    understood; anything else returns ``None``.
    """

    body = pattern
    if body.startswith("^"):
        body = body[1:]
    if body.endswith("$") and not body.endswith("\\$"):
        body = body[:-1]
    if _UNSUPPORTED_PATTERN.search(body):
        return None

    atoms: list[PatternAtom] = []
    index = 0
    while index < len(body):
        char = body[index]
        if char == "[":
            end = index + 1
            if end < len(body) and body[end] == "^":
                end += 1
            if end < len(body) and body[end] == "]":
                end += 1
            while end < len(body) and body[end] != "]":
                end += 2 if body[end] == "\\" else 1
            if end >= len(body):
                return None
            charset = _expand_class(body[index + 1 : end])
            index = end + 1
        elif char == "\\":
            if index + 1 >= len(body):
                return None
            escaped = body[index + 1]
            charset = _CLASS_ESCAPES.get(escaped) or (None if escaped.isalnum() else escaped)
            index += 2
        elif char == ".":
            charset = _ALPHANUMERIC
            index += 1
        elif char in "*+?{}^$]":
            return None
        else:
            charset = char
            index += 1

        if charset is None:
            return None

        low, high = 1, 1
        if index < len(body):
            marker = body[index]
            if marker == "*":
                low, high = 0, None
                index += 1
            elif marker == "+":
                low, high = 1, None
                index += 1
            elif marker == "?":
                low, high = 0, 1
                index += 1
            elif marker == "{":
                match = _QUANTIFIER.match(body, index)
                if not match:
                    return None
                low = int(match.group(1))
                if match.group(2) is None:
                    high = low
                else:
                    high = int(match.group(3)) if match.group(3) else None
                index = match.end()
            if index < len(body) and body[index] in "?+" and marker in "*+?{":
                index += 1
        atoms.append((charset, low, high))
    return atoms


class MockDataGenerator:
    """Turns schema nodes into values.

    Priority for every node: ``example``, then a random entry of
    ``examples``, then a random ``enum`` value, then type-directed
    generation. Nesting deeper than ``max_object_depth`` short-circuits to
    terminal values.
    """

    def __init__(self, config: GeneratorConfig | Mapping[str, Any] | None = None, **overrides: Any) -> None:
        if config is None:
            config = GeneratorConfig()
        elif not isinstance(config, GeneratorConfig):
            config = GeneratorConfig.model_validate(dict(config))
        if overrides:
            config = config.model_copy(update=GeneratorConfig.model_validate(overrides).model_dump(exclude_unset=True))
        self._config = config
        self._faker = Faker()
        self._seed(config.seed)
        self._generation_count: Counter[str] = Counter()
        self._depth = 0
        self._lock = threading.RLock()
        self._format_generators: dict[str, Callable[[], str]] = {
            "email": self._faker.email,
            "uri": self._faker.url,
            "url": self._faker.url,
            "uuid": self._faker.uuid4,
            "date": lambda: self._datetime().date().isoformat(),
            "date-time": lambda: self._datetime().isoformat().replace("+00:00", "Z"),
            "time": lambda: self._datetime().time().isoformat(timespec="seconds"),
            "password": lambda: self._faker.password(length=12),
            "byte": lambda: base64.b64encode(self._faker.sentence().encode("utf-8")).decode("ascii"),
            "binary": lambda: "".join(self._random.choice("01") for _ in range(16)),
            "hostname": self._faker.domain_name,
            "ipv4": self._faker.ipv4,
            "ipv6": self._faker.ipv6,
        }

    @property
    def config(self) -> GeneratorConfig:
        return self._config

    def _seed(self, seed: int | None) -> None:
        # seed_instance(None) still gives this generator its own Random
        self._faker.seed_instance(seed)
        self._random = self._faker.random

    def _datetime(self) -> datetime:
        return self._faker.date_time_between_dates(
            datetime_start=_DATE_START,
            datetime_end=_DATE_END,
            tzinfo=timezone.utc,
        )

    # ------------------------------------------------------------------
    # public entry points
    # ------------------------------------------------------------------

    def generate_response_data(self, schema: Mapping[str, Any]) -> Any:
        """Generate a complete response body; depth limits apply per call."""

        with self._lock:
            self._depth = 0
            return self.generate_varied_data(schema)

    def generate_varied_data(self, schema: Mapping[str, Any], field_name: str | None = None) -> Any:
        with self._lock:
            if isinstance(schema, Mapping):
                self._generation_count[_fingerprint(schema)] += 1
            return self._generate(schema, field_name)

    def use_example_data(self, schema: Mapping[str, Any]) -> Any:
        """Return the schema's example, or ``NO_EXAMPLE`` when there is none to use.

        A declared ``null`` example is a real example and comes back as ``None``.
        """

        if not isinstance(schema, Mapping) or "$ref" in schema or not self._config.use_examples:
            return NO_EXAMPLE
        if "example" in schema:
            return deepcopy(schema["example"])
        examples = schema.get("examples")
        if isinstance(examples, list) and examples:
            return deepcopy(self._random.choice(examples))
        return NO_EXAMPLE

    def reset(self) -> None:
        with self._lock:
            self._generation_count.clear()
            self._depth = 0
            if self._config.seed is not None:
                self._seed(self._config.seed)

    def update_config(self, partial: GeneratorConfig | Mapping[str, Any] | None = None, **changes: Any) -> None:
        values: dict[str, Any] = {}
        if isinstance(partial, GeneratorConfig):
            values.update(partial.model_dump(exclude_unset=True))
        elif partial:
            values.update(GeneratorConfig.model_validate(dict(partial)).model_dump(exclude_unset=True))
        if changes:
            values.update(GeneratorConfig.model_validate(changes).model_dump(exclude_unset=True))
        with self._lock:
            self._config = self._config.model_copy(update=values)
            if "seed" in values:
                self._seed(values["seed"])

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "total_generations": sum(self._generation_count.values()),
                "unique_schemas": len(self._generation_count),
            }

    # ------------------------------------------------------------------
    # dispatch
    # ------------------------------------------------------------------

    @staticmethod
    def _check_ref(schema: Mapping[str, Any]) -> None:
        if "$ref" in schema:
            raise DataGenerationError(f"Cannot generate data for unresolved reference {schema['$ref']}", "$ref")

    def _generate(self, schema: Any, field_name: str | None = None) -> Any:
        if not isinstance(schema, Mapping):
            schema = {}
        self._check_ref(schema)

        example = self.use_example_data(schema)
        if example is not NO_EXAMPLE:
            return example

        enum = schema.get("enum")
        if isinstance(enum, list) and enum:
            return deepcopy(self._random.choice(enum))
        if "const" in schema:
            return deepcopy(schema["const"])

        if any(key in schema for key in ("allOf", "oneOf", "anyOf")):
            return self._generate(self._resolve_composition(schema), field_name)

        schema_type = self._schema_type(schema)
        if schema_type == "string":
            return self.generate_string(schema, field_name)
        if schema_type in ("number", "integer"):
            return self.generate_number(schema, schema_type)
        if schema_type == "boolean":
            return self._random.random() < 0.5
        if schema_type == "array":
            return self.generate_array(schema)
        if schema_type == "object":
            return self.generate_object(schema)
        if schema_type == "null":
            return None
        return self.generate_string(schema, field_name)

    def _schema_type(self, schema: Mapping[str, Any]) -> str:
        declared = schema.get("type")
        if isinstance(declared, list):
            candidates = [item for item in declared if item != "null"]
            declared = self._random.choice(candidates) if candidates else "null"
        if declared:
            return str(declared)
        if "properties" in schema or "additionalProperties" in schema:
            return "object"
        if "items" in schema or "prefixItems" in schema:
            return "array"
        return "string"

    def _resolve_composition(self, schema: Mapping[str, Any]) -> dict[str, Any]:
        merged = {key: value for key, value in schema.items() if key not in ("allOf", "oneOf", "anyOf")}
        for part in schema.get("allOf") or []:
            if isinstance(part, Mapping):
                self._check_ref(part)
                merged = _merge_schemas(merged, self._resolve_composition(part))
        for key in ("oneOf", "anyOf"):
            options = [option for option in schema.get(key) or [] if isinstance(option, Mapping)]
            if options:
                chosen = self._random.choice(options)
                self._check_ref(chosen)
                merged = _merge_schemas(merged, self._resolve_composition(chosen))
        return merged

    # ------------------------------------------------------------------
    # strings
    # ------------------------------------------------------------------

    def generate_string(self, schema: Mapping[str, Any], field_name: str | None = None) -> str:
        self._check_ref(schema)
        fmt = str(schema.get("format") or "").lower()
        generator = self._format_generators.get(fmt)
        if generator is not None:
            return generator()

        min_length, max_length = self._length_bounds(schema)
        pattern = schema.get("pattern")
        if isinstance(pattern, str) and pattern:
            value = self._string_from_pattern(pattern, min_length, max_length)
            if value is not None:
                return value
        elif field_name:
            value = self._string_by_field_name(field_name)
            if value is not None and _fits_declared_length(value, schema):
                return value

        return self._text_of_length(self._random.randint(min_length, max_length))

    @staticmethod
    def _length_bounds(schema: Mapping[str, Any]) -> tuple[int, int]:
        min_length = max(int(schema.get("minLength") or 0), 0)
        declared_max = schema.get("maxLength")
        if declared_max is None:
            max_length = max(min_length, DEFAULT_MAX_STRING_LENGTH)
        else:
            # a maxLength below minLength yields to minLength
            max_length = max(int(declared_max), min_length)
        floor = min_length if "minLength" in schema else min(1, max_length)
        upper = min(max_length, max(floor, MAX_GENERATED_STRING_LENGTH))
        return floor, upper

    def _text_of_length(self, length: int) -> str:
        if length <= 0:
            return ""
        text = ""
        while len(text) < length:
            text = f"{text} {self._faker.word()}".strip()
        text = text[:length]
        if text.endswith(" "):
            text = text[:-1] + self._random.choice(string.ascii_lowercase)
        return text

    def _string_by_field_name(self, field_name: str) -> str | None:
        name = field_name.lower()
        if "email" in name:
            return self._faker.email()
        if name == "id" or name.endswith("_id") or name.endswith("uuid"):
            return self._faker.uuid4()
        if "firstname" in name or "first_name" in name:
            return self._faker.first_name()
        if "lastname" in name or "last_name" in name:
            return self._faker.last_name()
        if "username" in name or "user_name" in name:
            return self._faker.user_name()
        if "name" in name:
            return self._faker.name()
        if "phone" in name:
            return self._faker.phone_number()
        if "address" in name:
            return self._faker.street_address()
        if "city" in name:
            return self._faker.city()
        if "country" in name:
            return self._faker.country()
        if "company" in name:
            return self._faker.company()
        if "title" in name:
            return self._faker.job()
        if "description" in name:
            return self._faker.sentence()
        if "url" in name or "link" in name:
            return self._faker.url()
        if "color" in name or "colour" in name:
            return self._faker.color_name()
        if "status" in name:
            return self._random.choice(["active", "inactive", "pending"])
        return None

    def _string_from_pattern(self, pattern: str, min_length: int, max_length: int) -> str | None:
        atoms = parse_simple_pattern(pattern)
        if not atoms:
            return None

        counts = [low for _, low, _ in atoms]
        minimum = sum(counts)
        target = self._random.randint(min(max(min_length, minimum), max_length), max_length)
        growable = [i for i, (_, low, high) in enumerate(atoms) if high is None or high > low]
        while sum(counts) < target and growable:
            index = self._random.choice(growable)
            counts[index] += 1
            high = atoms[index][2]
            if high is not None and counts[index] >= high:
                growable.remove(index)
            if high is None and counts[index] >= max(atoms[index][1], 1) + max_length:
                growable.remove(index)

        value = "".join(
            self._random.choice(charset) for (charset, _, _), count in zip(atoms, counts) for _ in range(count)
        )
        try:
            if re.search(pattern, value):
                return value
        except re.error:
            return None
        LOGGER.debug("pattern_generation_mismatch", pattern=pattern, value=value)
        return None

    # ------------------------------------------------------------------
    # numbers
    # ------------------------------------------------------------------

    def generate_number(self, schema: Mapping[str, Any], schema_type: str | None = None) -> int | float:
        self._check_ref(schema)
        if schema_type is None:
            declared = schema.get("type")
            types = declared if isinstance(declared, list) else [declared]
            schema_type = "integer" if "integer" in types and "number" not in types else "number"
        is_integer = schema_type == "integer"
        minimum, exclusive_min = _bound(schema, "minimum", "exclusiveMinimum")
        maximum, exclusive_max = _bound(schema, "maximum", "exclusiveMaximum")

        if minimum is None and maximum is None:
            minimum, maximum = 0, DEFAULT_NUMBER_SPAN
        elif minimum is None:
            minimum = maximum - DEFAULT_NUMBER_SPAN
        elif maximum is None:
            maximum = minimum + DEFAULT_NUMBER_SPAN
        if minimum > maximum:
            minimum, maximum = maximum, minimum
            exclusive_min, exclusive_max = exclusive_max, exclusive_min

        multiple = schema.get("multipleOf")
        if isinstance(multiple, bool) or not isinstance(multiple, (int, float)) or multiple <= 0:
            multiple = None

        if is_integer:
            return self._integer_between(minimum, maximum, exclusive_min, exclusive_max, multiple)
        return self._float_between(minimum, maximum, exclusive_min, exclusive_max, multiple)

    def _integer_between(
        self,
        minimum: float,
        maximum: float,
        exclusive_min: bool,
        exclusive_max: bool,
        multiple: float | None,
    ) -> int:
        low = math.floor(minimum) + 1 if exclusive_min else math.ceil(minimum)
        high = math.ceil(maximum) - 1 if exclusive_max else math.floor(maximum)
        if multiple is None:
            return self._random.randint(low, high) if low <= high else low

        step = Fraction(str(multiple))
        if step.denominator != 1:
            # smallest integer multiple of p/q is p
            step = Fraction(step.numerator)
        first = math.ceil(Fraction(low) / step)
        last = math.floor(Fraction(high) / step)
        factor = self._random.randint(first, last) if first <= last else first
        return int(factor * step)

    def _float_between(
        self,
        minimum: float,
        maximum: float,
        exclusive_min: bool,
        exclusive_max: bool,
        multiple: float | None,
    ) -> float:
        low, high = float(minimum), float(maximum)
        if multiple is not None:
            step = Fraction(str(multiple))
            low_fraction, high_fraction = Fraction(str(low)), Fraction(str(high))
            first = math.ceil(low_fraction / step)
            if exclusive_min and first * step == low_fraction:
                first += 1
            last = math.floor(high_fraction / step)
            if exclusive_max and last * step == high_fraction:
                last -= 1
            factor = self._random.randint(first, last) if first <= last else first
            return float(factor * step)

        def within(candidate: float) -> bool:
            above = candidate > low if exclusive_min else candidate >= low
            below = candidate < high if exclusive_max else candidate <= high
            return above and below

        value = self._random.uniform(low, high)
        rounded = round(value, 2)
        if within(rounded):
            return rounded
        if within(value):
            return value
        return (low + high) / 2

    # ------------------------------------------------------------------
    # arrays and objects
    # ------------------------------------------------------------------

    def generate_array(self, schema: Mapping[str, Any]) -> list[Any]:
        self._check_ref(schema)
        if self._depth >= self._config.max_object_depth:
            return []

        items = schema.get("prefixItems", schema.get("items"))
        self._depth += 1
        try:
            if isinstance(items, list):
                return [self._generate(item) for item in items]

            has_items = isinstance(items, Mapping)
            min_items = max(int(schema.get("minItems", 1 if has_items else 0) or 0), 0)
            cap = self._config.max_array_length
            if schema.get("maxItems") is not None:
                cap = min(int(schema["maxItems"]), cap)
            length = self._random.randint(min_items, max(min_items, cap))

            if not has_items:
                return [self._scalar_filler() for _ in range(length)]
            if schema.get("uniqueItems"):
                return self._unique_items(items, length)
            return [self._generate(items) for _ in range(length)]
        finally:
            self._depth -= 1

    def _unique_items(self, item_schema: Mapping[str, Any], length: int) -> list[Any]:
        values: list[Any] = []
        seen: set[str] = set()
        attempts = length * UNIQUE_ITEM_ATTEMPTS
        while len(values) < length and attempts > 0:
            attempts -= 1
            candidate = self._generate(item_schema)
            key = _fingerprint(candidate)
            if key not in seen:
                seen.add(key)
                values.append(candidate)
        return values

    def generate_object(self, schema: Mapping[str, Any]) -> dict[str, Any]:
        self._check_ref(schema)
        properties = schema.get("properties") or {}
        required = [name for name in schema.get("required") or [] if isinstance(name, str)]

        if self._depth >= self._config.max_object_depth:
            return {name: self._terminal_value(properties.get(name, {}), name) for name in required}

        self._depth += 1
        try:
            result: dict[str, Any] = {}
            for name in required:
                result[name] = self._generate(properties.get(name, {}), name)

            optional = [name for name in properties if name not in result]
            for name in optional:
                if self._random.random() < OPTIONAL_PROPERTY_PROBABILITY:
                    result[name] = self._generate(properties[name], name)

            additional = schema.get("additionalProperties")
            if additional is True or isinstance(additional, Mapping):
                for _ in range(self._random.randint(0, 2)):
                    self._add_synthetic_property(result, additional)

            min_properties = int(schema.get("minProperties") or 0)
            for name in optional:
                if len(result) >= min_properties:
                    break
                if name not in result:
                    result[name] = self._generate(properties[name], name)
            while len(result) < min_properties:
                self._add_synthetic_property(result, additional)

            max_properties = schema.get("maxProperties")
            if max_properties is not None and len(result) > int(max_properties):
                removable = [name for name in reversed(list(result)) if name not in required]
                for name in removable[: len(result) - int(max_properties)]:
                    del result[name]
            return result
        finally:
            self._depth -= 1

    def _terminal_value(self, schema: Any, field_name: str | None) -> Any:
        if not isinstance(schema, Mapping):
            schema = {}
        self._check_ref(schema)
        if any(key in schema for key in ("example", "examples", "enum", "const")):
            return self._generate(schema, field_name)
        schema_type = self._schema_type(schema)
        if schema_type == "object" or any(key in schema for key in ("allOf", "oneOf", "anyOf")):
            return {}
        if schema_type == "array":
            return []
        return self._generate(schema, field_name)

    def _add_synthetic_property(self, result: dict[str, Any], additional: Any) -> None:
        key = self._faker.word()
        suffix = 1
        while key in result:
            key = f"{self._faker.word()}{suffix}"
            suffix += 1
        if isinstance(additional, Mapping):
            result[key] = self._generate(additional, key)
        else:
            result[key] = self._scalar_filler()

    def _scalar_filler(self) -> Any:
        choice = self._random.randint(0, 2)
        if choice == 0:
            return self._faker.word()
        if choice == 1:
            return self._random.randint(0, DEFAULT_NUMBER_SPAN)
        return self._random.random() < 0.5


def _bound(schema: Mapping[str, Any], key: str, exclusive_key: str) -> tuple[Any, bool]:
    value = schema.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        value = None
    exclusive = schema.get(exclusive_key)
    if isinstance(exclusive, (int, float)) and not isinstance(exclusive, bool):
        # OpenAPI 3.1 numeric form; the tighter bound wins
        if value is None or (exclusive >= value if key == "minimum" else exclusive <= value):
            return exclusive, True
        return value, False
    if value is None:
        return None, False
    return value, exclusive is True


def _fits_declared_length(value: str, schema: Mapping[str, Any]) -> bool:
    min_length = int(schema.get("minLength") or 0)
    max_length = schema.get("maxLength")
    if len(value) < min_length:
        return False
    return max_length is None or len(value) <= max(int(max_length), min_length)


def _merge_schemas(base: Mapping[str, Any], extra: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if key == "properties" and isinstance(value, Mapping):
            merged["properties"] = {**(merged.get("properties") or {}), **value}
        elif key == "required" and isinstance(value, list):
            merged["required"] = list(dict.fromkeys([*(merged.get("required") or []), *value]))
        else:
            merged[key] = value
    return merged


def create_data_generator(config: GeneratorConfig | Mapping[str, Any] | None = None, **overrides: Any) -> MockDataGenerator:
    return MockDataGenerator(config, **overrides)


def generate_mock_data(
    schema: Mapping[str, Any],
    field_name: str | None = None,
    config: GeneratorConfig | Mapping[str, Any] | None = None,
) -> Any:
    return create_data_generator(config).generate_varied_data(schema, field_name)


def generate_varied_responses(
    schema: Mapping[str, Any],
    count: int = 3,
    config: GeneratorConfig | Mapping[str, Any] | None = None,
) -> list[Any]:
    """Generate ``count`` independent response bodies for the same schema."""

    generator = create_data_generator(config)
    return [generator.generate_response_data(schema) for _ in range(count)]
