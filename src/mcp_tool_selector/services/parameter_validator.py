"""Schema-driven parameter validation with input sanitization.

Parameters are checked twice: against the tool's JSON Schema with
``jsonschema`` (honouring ``$schema``, defaulting to Draft 2020-12), and on
their own for sanitization limits that apply whatever the schema says
(string length, nesting depth, control characters and script markup).
Schema errors are mapped onto per-path ``ValidationIssue``s so recovery can
act on them. Neither pass mutates the input; a valid result carries a deep
copy.
"""

import copy
import functools
import json
import logging
import re
from typing import Any, Iterable

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from jsonschema.exceptions import ValidationError as SchemaViolation
from jsonschema.validators import validator_for
from referencing.exceptions import Unresolvable

from ..models.validation import (
    IssueKind,
    Rejected,
    UnknownFieldPolicy,
    Valid,
    ValidationIssue,
)

logger = logging.getLogger(__name__)

Path = list[str | int]

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_SCRIPT_MARKUP = re.compile(
    r"<\s*/?\s*(script|iframe|object|embed)\b|javascript\s*:|\bon[a-z]+\s*=\s*['\"]",
    re.IGNORECASE,
)

_UNKNOWN_FIELD_KEYWORDS = frozenset({"additionalProperties", "unevaluatedProperties"})
_COMBINATOR_KEYWORDS = ("anyOf", "oneOf")


def json_type_of(value: Any) -> str:
    """JSON type name for a Python value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    return type(value).__name__


def matches_type(value: Any, expected: str) -> bool:
    actual = json_type_of(value)
    if expected == "number":
        return actual in ("number", "integer")
    if expected == "integer":
        return actual == "integer" or (actual == "number" and float(value).is_integer())
    return actual == expected


def declared_types(schema: dict[str, Any]) -> list[str]:
    """Types a schema accepts, including those of its anyOf/oneOf branches."""
    types: list[str] = []
    declared = schema.get("type")
    if isinstance(declared, str):
        types.append(declared)
    elif isinstance(declared, list):
        types.extend(t for t in declared if isinstance(t, str))
    for keyword in _COMBINATOR_KEYWORDS:
        for branch in schema.get(keyword) or []:
            if isinstance(branch, dict):
                types.extend(t for t in declared_types(branch) if t not in types)
    return types


def schema_at(schema: dict[str, Any], path: Path) -> dict[str, Any] | None:
    """Sub-schema that governs the value at ``path``, if the schema declares one."""
    node: Any = schema
    for part in path:
        if not isinstance(node, dict):
            return None
        if isinstance(part, int):
            node = node.get("items")
        else:
            node = (node.get("properties") or {}).get(part)
        if node is None:
            return None
    return node if isinstance(node, dict) else None


def undeclared_fields(schema: dict[str, Any], value: dict[str, Any]) -> list[str]:
    properties = schema.get("properties") or {}
    patterns = schema.get("patternProperties") or {}
    return [
        name
        for name in value
        if name not in properties and not any(re.search(pattern, name) for pattern in patterns)
    ]


@functools.lru_cache(maxsize=256)
def _compiled_validator(schema_json: str) -> Any:
    schema = json.loads(schema_json)
    cls = validator_for(schema, default=Draft202012Validator)
    cls.check_schema(schema)
    return cls(schema)


def _dedupe(issues: Iterable[ValidationIssue]) -> list[ValidationIssue]:
    seen: set[tuple[str, IssueKind]] = set()
    unique = []
    for issue in issues:
        if (issue.field, issue.kind) not in seen:
            seen.add((issue.field, issue.kind))
            unique.append(issue)
    return unique


class ParameterValidator:
    """Checks proposed tool parameters against a tool's JSON Schema."""

    def __init__(
        self,
        unknown_field_policy: UnknownFieldPolicy = UnknownFieldPolicy.WARN,
        max_string_length: int = 1000,
        max_nesting_depth: int = 10,
    ) -> None:
        self.unknown_field_policy = UnknownFieldPolicy(unknown_field_policy)
        self.max_string_length = max_string_length
        self.max_nesting_depth = max_nesting_depth

    def validate(self, schema: dict[str, Any] | None, params: Any) -> Valid | Rejected:
        schema = schema or {"type": "object"}
        if params is None:
            params = {}

        if not isinstance(params, dict):
            return Rejected(
                issues=[
                    ValidationIssue.at([], IssueKind.TYPE_MISMATCH, f"expected object, got {json_type_of(params)}")
                ]
            )

        sanitization: list[ValidationIssue] = []
        self._sanitize(params, [], 0, sanitization)
        # Over-deep input is rejected before anything else walks it
        if any(issue.kind == IssueKind.TOO_DEEP for issue in sanitization):
            logger.debug(f"Parameters nest deeper than {self.max_nesting_depth} levels")
            return Rejected(issues=sanitization)

        warnings: list[ValidationIssue] = []
        try:
            issues = self._schema_issues(schema, params)
        except (SchemaError, Unresolvable) as e:
            detail = getattr(e, "message", str(e))
            logger.warning(f"Tool schema cannot be used for validation: {detail}")
            issues = [ValidationIssue.at([], IssueKind.TYPE_MISMATCH, f"tool schema is invalid: {detail}")]
        else:
            unknown = self._unknown_fields(schema, params, [])
            if self.unknown_field_policy == UnknownFieldPolicy.REJECT:
                issues.extend(unknown)
            else:
                warnings.extend(unknown)

        issues = _dedupe(issues + sanitization)
        if issues:
            logger.debug(f"Validation found {len(issues)} issues: {[i.field for i in issues]}")
            return Rejected(issues=issues)
        return Valid(params=copy.deepcopy(params), warnings=warnings)

    # Schema pass

    def _schema_issues(self, schema: dict[str, Any], params: dict[str, Any]) -> list[ValidationIssue]:
        validator = _compiled_validator(json.dumps(schema, sort_keys=True, default=str))
        issues: list[ValidationIssue] = []
        for error in validator.iter_errors(params):
            issues.extend(self._issues_from_error(error))

        # A value of the wrong type is reported once, not also as out of range
        mismatched = {issue.field for issue in issues if issue.kind == IssueKind.TYPE_MISMATCH}
        return [i for i in issues if i.kind != IssueKind.OUT_OF_RANGE or i.field not in mismatched]

    def _issues_from_error(self, error: SchemaViolation) -> list[ValidationIssue]:
        path: Path = list(error.absolute_path)
        keyword = error.validator

        if keyword == "required":
            if not isinstance(error.instance, dict):
                return []
            return [
                ValidationIssue.at(path + [name], IssueKind.MISSING_REQUIRED, "required field is missing")
                for name in error.validator_value
                if name not in error.instance
            ]

        if keyword in _UNKNOWN_FIELD_KEYWORDS:
            if not isinstance(error.instance, dict):
                return []
            return [
                ValidationIssue.at(path + [name], IssueKind.UNKNOWN_FIELD, "field is not declared in the schema")
                for name in undeclared_fields(error.schema, error.instance)
            ]

        if keyword == "type":
            kind = IssueKind.TYPE_MISMATCH
        elif keyword in _COMBINATOR_KEYWORDS and error.context and all(
            sub.validator == "type" for sub in error.context
        ):
            kind = IssueKind.TYPE_MISMATCH
        else:
            # enum, const, bounds, lengths, pattern, multipleOf, uniqueItems...
            kind = IssueKind.OUT_OF_RANGE
        return [ValidationIssue.at(path, kind, error.message)]

    def _unknown_fields(self, schema: Any, value: Any, path: Path) -> list[ValidationIssue]:
        """Fields outside declared properties where the schema leaves extras unspecified.

        Schemas that say ``additionalProperties`` explicitly are left to the
        schema pass. Objects that declare no properties are free-form.
        """
        if not isinstance(schema, dict):
            return []
        found: list[ValidationIssue] = []
        if isinstance(value, dict):
            properties = schema.get("properties")
            if not isinstance(properties, dict):
                return []
            if properties and not _UNKNOWN_FIELD_KEYWORDS & schema.keys():
                found.extend(
                    ValidationIssue.at(path + [name], IssueKind.UNKNOWN_FIELD, "field is not declared in the schema")
                    for name in undeclared_fields(schema, value)
                )
            for name, child in value.items():
                if name in properties:
                    found.extend(self._unknown_fields(properties[name], child, path + [name]))
        elif isinstance(value, list):
            for index, item in enumerate(value):
                found.extend(self._unknown_fields(schema.get("items"), item, path + [index]))
        return found

    # Sanitization pass

    def _sanitize(self, value: Any, path: Path, depth: int, issues: list[ValidationIssue]) -> None:
        if isinstance(value, (dict, list, tuple)) and depth >= self.max_nesting_depth:
            issues.append(
                ValidationIssue.at(path, IssueKind.TOO_DEEP, f"nesting exceeds {self.max_nesting_depth} levels")
            )
            return

        if isinstance(value, dict):
            for name, child in value.items():
                self._sanitize(child, path + [name], depth + 1, issues)
        elif isinstance(value, (list, tuple)):
            for index, child in enumerate(value):
                self._sanitize(child, path + [index], depth + 1, issues)
        elif isinstance(value, str):
            if len(value) > self.max_string_length:
                issues.append(
                    ValidationIssue.at(
                        path, IssueKind.TOO_LONG, f"{len(value)} characters exceeds limit of {self.max_string_length}"
                    )
                )
            if _CONTROL_CHARS.search(value):
                issues.append(ValidationIssue.at(path, IssueKind.UNSAFE_CONTENT, "contains control characters"))
            elif _SCRIPT_MARKUP.search(value):
                issues.append(ValidationIssue.at(path, IssueKind.UNSAFE_CONTENT, "contains script markup"))
