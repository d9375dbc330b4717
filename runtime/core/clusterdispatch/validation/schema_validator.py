"""JSON Schema validation for submission payloads.

Schemas live in the repo under `schemas/`, authored as YAML but valid JSON
Schema Draft 2020-12 documents.

This module is intentionally strict:
- Formats are checked (date-time, ...).
- Unknown kinds are rejected.
- Validation errors are surfaced with stable JSON Pointer-like paths.

Validation must not depend on network access; the Draft 2020-12 meta-schema is
pre-registered locally.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import yaml
from jsonschema import Draft202012Validator, FormatChecker
from jsonschema.exceptions import SchemaError
from referencing import Registry, Resource

from clusterdispatch.errors import ConfigurationError, SchemaValidationError, SchemaViolation

_KIND_TO_SCHEMA_FILENAME: dict[str, str] = {
    "DriverDescription": "driver_description.schema.yaml",
}


def _load_yaml_object(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to parse YAML: {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Expected YAML object at root: {path}")
    return raw


def _escape_json_pointer_token(token: str) -> str:
    # RFC 6901 escaping.
    return token.replace("~", "~0").replace("/", "~1")


def _json_pointer(path: Iterable[Any]) -> str:
    parts: list[str] = []
    for p in path:
        if isinstance(p, int):
            parts.append(str(p))
        else:
            parts.append(_escape_json_pointer_token(str(p)))
    return "/" + "/".join(parts) if parts else "/"


@dataclass(frozen=True)
class SchemaBundle:
    kind: str
    schema: dict[str, Any]
    source_path: Path


class SchemaValidator:
    """Loads payload schemas and validates documents by kind."""

    def __init__(self, bundles: dict[str, SchemaBundle], *, strict_formats: bool = True):
        self._bundles = dict(bundles)
        self._strict_formats = strict_formats
        self._validators: dict[str, Draft202012Validator] = {}

    @classmethod
    def load_from_dir(cls, schemas_dir: Path) -> "SchemaValidator":
        schemas_dir = schemas_dir.resolve()
        if not schemas_dir.exists():
            raise ConfigurationError(f"Schemas directory not found: {schemas_dir}")

        bundles: dict[str, SchemaBundle] = {}
        for kind, filename in _KIND_TO_SCHEMA_FILENAME.items():
            path = (schemas_dir / filename).resolve()
            if not path.exists():
                raise ConfigurationError(f"Missing required schema file for {kind}: {path}")
            bundles[kind] = SchemaBundle(kind=kind, schema=_load_yaml_object(path), source_path=path)

        return cls(bundles)

    def validate(self, kind: str, document: Any) -> None:
        """Validate a document against the schema for its kind."""
        validator = self._get_or_build_validator(kind)

        # iter_errors so one response carries every violation.
        violations = [
            SchemaViolation(path=_json_pointer(err.absolute_path), message=err.message)
            for err in validator.iter_errors(document)
        ]
        if violations:
            violations.sort(key=lambda v: (v.path, v.message))
            raise SchemaValidationError(kind=kind, violations=violations)

    def _require_bundle(self, kind: str) -> SchemaBundle:
        if kind not in self._bundles:
            raise ConfigurationError(f"Unknown schema kind: {kind}")
        return self._bundles[kind]

    def _get_or_build_validator(self, kind: str) -> Draft202012Validator:
        if kind in self._validators:
            return self._validators[kind]

        bundle = self._require_bundle(kind)
        try:
            Draft202012Validator.check_schema(bundle.schema)
        except SchemaError as e:
            raise ConfigurationError(f"Invalid schema for {kind} in {bundle.source_path}: {e.message}") from e

        meta = Draft202012Validator.META_SCHEMA
        meta_id = str(meta.get("$id", "https://json-schema.org/draft/2020-12/schema"))
        registry = Registry().with_resource(meta_id, Resource.from_contents(meta))
        format_checker = FormatChecker() if self._strict_formats else None

        validator = Draft202012Validator(bundle.schema, format_checker=format_checker, registry=registry)
        self._validators[kind] = validator
        return validator
