# Recovery engine
# Bounded, single-pass repair of parameters that failed validation

import copy
import json
import logging
from typing import Any, Sequence

from ..models.tool import RankedToolSelection, ToolDescriptor
from ..models.validation import (
    AlternativeToolSuggested,
    Coerced,
    DefaultApplied,
    IssueKind,
    Rejected,
    Repaired,
    Valid,
    ValidationIssue,
)
from .parameter_validator import ParameterValidator, declared_types, matches_type, schema_at
from .registry import find_tool

logger = logging.getLogger(__name__)

_MISSING = object()
_TRUE_STRINGS = {"true", "yes", "y", "on", "1"}
_FALSE_STRINGS = {"false", "no", "n", "off", "0"}

# Kinds a repair strategy can act on
REPAIRABLE_KINDS = frozenset({IssueKind.MISSING_REQUIRED, IssueKind.TYPE_MISMATCH, IssueKind.OUT_OF_RANGE})


def get_at(root: Any, path: Sequence[str | int]) -> Any:
    node = root
    for part in path:
        try:
            node = node[part]
        except (KeyError, IndexError, TypeError):
            return _MISSING
    return node


def set_at(root: Any, path: Sequence[str | int], value: Any) -> Any:
    """Set ``value`` at ``path`` inside ``root`` and return the (possibly new) root."""
    if not path:
        return value
    parent = get_at(root, path[:-1])
    if isinstance(parent, dict):
        parent[path[-1]] = value
    elif isinstance(parent, list) and isinstance(path[-1], int) and path[-1] < len(parent):
        parent[path[-1]] = value
    else:
        raise KeyError(path)
    return root


def is_required(schema: dict[str, Any], path: Sequence[str | int]) -> bool:
    if not path:
        return True
    if isinstance(path[-1], int):
        return False
    parent = schema_at(schema, list(path[:-1]))
    return bool(parent) and path[-1] in (parent.get("required") or [])


def _parse_number(text: str) -> int | float | None:
    text = text.strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return None
    return number if number == number and abs(number) != float("inf") else None


def coerce_type(value: Any, target: str) -> Any:
    """Convert ``value`` into JSON type ``target`` or return _MISSING."""
    if isinstance(value, list) and len(value) == 1 and target not in ("array", "object"):
        inner = coerce_type(value[0], target) if not matches_type(value[0], target) else value[0]
        return inner

    if target in ("integer", "number"):
        if isinstance(value, str):
            number = _parse_number(value)
            if number is None:
                return _MISSING
            if target == "integer":
                if float(number).is_integer():
                    return int(number)
                return _MISSING
            return number
        if target == "integer" and isinstance(value, float) and value.is_integer():
            return int(value)
        return _MISSING

    if target == "boolean":
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
        if isinstance(value, int) and not isinstance(value, bool) and value in (0, 1):
            return bool(value)
        return _MISSING

    if target == "string":
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        return _MISSING

    if target in ("array", "object"):
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError:
                parsed = _MISSING
            if parsed is not _MISSING and matches_type(parsed, target):
                return parsed
        if target == "array" and not isinstance(value, (list, dict)):
            return [value]
        return _MISSING

    return _MISSING


def coerce_into_range(value: Any, schema: dict[str, Any]) -> Any:
    """Nudge a value that has the right type into the schema's allowed range."""
    enum = schema.get("enum")
    if isinstance(enum, list):
        if isinstance(value, str):
            folded = value.strip().casefold()
            for option in enum:
                if isinstance(option, str) and option.casefold() == folded:
                    return option
        return _MISSING

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        minimum = schema.get("minimum")
        maximum = schema.get("maximum")
        clamped = value
        if isinstance(minimum, (int, float)) and clamped < minimum:
            clamped = minimum
        if isinstance(maximum, (int, float)) and clamped > maximum:
            clamped = maximum
        if clamped != value:
            return clamped
    return _MISSING


class RecoveryEngine:
    """Attempts at most one repair per validation issue and reports what it did."""

    def __init__(self, validator: ParameterValidator, min_alternative_confidence: float = 0.5) -> None:
        self.validator = validator
        self.min_alternative_confidence = min_alternative_confidence

    def recover(
        self,
        schema: dict[str, Any] | None,
        issues: Sequence[ValidationIssue],
        params: Any,
        registry: Sequence[ToolDescriptor],
        selection: RankedToolSelection | None = None,
        tool_id: str | None = None,
    ) -> Valid | Repaired | Rejected:
        schema = schema or {"type": "object"}
        if not issues:
            return self.validator.validate(schema, params)

        # Over-deep input is never repaired and cannot be copied safely
        if any(issue.kind == IssueKind.TOO_DEEP for issue in issues):
            logger.info("Recovery skipped: parameters nest too deeply")
            return Rejected(issues=list(issues))

        working = copy.deepcopy(params) if params is not None else {}
        actions: list[Any] = []
        remaining: list[ValidationIssue] = []
        repaired_fields: set[str] = set()
        alternative_offered = False
        attempted = False

        for issue in issues:
            if issue.field in repaired_fields:
                continue

            action = None
            if issue.kind in REPAIRABLE_KINDS:
                action, working, applicable = self._repair(schema, issue, working)
                attempted = attempted or applicable

            if action is not None:
                actions.append(action)
                repaired_fields.add(issue.field)
                logger.info(f"Recovery: {action.describe()}")
                continue

            remaining.append(issue)
            if not alternative_offered and (issue.kind == IssueKind.MISSING_REQUIRED or is_required(schema, issue.path)):
                suggestion = self._suggest_alternative(registry, selection, tool_id, params)
                if suggestion is not None:
                    actions.append(suggestion)
                    alternative_offered = True
                    logger.info(f"Recovery: {suggestion.describe()}")

        if remaining:
            logger.info(f"Recovery left {len(remaining)} of {len(issues)} issues unresolved")
            return Rejected(issues=remaining, applied_actions=actions, recovery_attempted=attempted)

        revalidated = self.validator.validate(schema, working)
        if isinstance(revalidated, Rejected):
            logger.info(f"Repaired parameters still fail validation: {[i.field for i in revalidated.issues]}")
            return Rejected(issues=revalidated.issues, applied_actions=actions, recovery_attempted=True)

        return Repaired(params=revalidated.params, applied_actions=actions, warnings=revalidated.warnings)

    def _repair(self, schema: dict[str, Any], issue: ValidationIssue, working: Any) -> tuple[Any, Any, bool]:
        """Apply the first strategy that fits.

        Returns (action or None, working, applicable); ``applicable`` is true
        when a strategy had something to work with (a schema default or a
        present value to coerce), even if it then failed.
        """
        field_schema = schema if not issue.path else schema_at(schema, issue.path)
        if field_schema is None:
            return None, working, False

        if issue.path and "default" in field_schema:
            value = copy.deepcopy(field_schema["default"])
            try:
                working = set_at(working, issue.path, value)
            except KeyError:
                return None, working, True
            return DefaultApplied(field=issue.field, value=value), working, True

        if issue.kind == IssueKind.MISSING_REQUIRED:
            return None, working, False

        current = get_at(working, issue.path)
        if current is _MISSING:
            return None, working, False

        if issue.kind == IssueKind.TYPE_MISMATCH:
            coerced = _MISSING
            for target in declared_types(field_schema):
                coerced = coerce_type(current, target)
                if coerced is not _MISSING:
                    break
        else:
            coerced = coerce_into_range(current, field_schema)

        if coerced is _MISSING:
            return None, working, True

        try:
            working = set_at(working, issue.path, coerced)
        except KeyError:
            return None, working, True
        return Coerced(field=issue.field, from_value=current, to_value=coerced), working, True

    def _suggest_alternative(
        self,
        registry: Sequence[ToolDescriptor],
        selection: RankedToolSelection | None,
        tool_id: str | None,
        params: Any,
    ) -> AlternativeToolSuggested | None:
        if selection is None:
            return None

        current = find_tool(registry, tool_id) if tool_id else None
        current_required = set(current.required_fields) if current else set()
        supplied = set(params) if isinstance(params, dict) else set()

        candidates = []
        for match in selection.matches:
            if match.tool_id == tool_id or match.confidence < self.min_alternative_confidence:
                continue
            tool = find_tool(registry, match.tool_id)
            if tool is not None:
                candidates.append((match, set(tool.required_fields)))

        # Prefer a tool the supplied parameters already satisfy, then a simpler one
        for match, required in candidates:
            if required <= supplied:
                return AlternativeToolSuggested(tool_id=match.tool_id, confidence=match.confidence)
        for match, required in candidates:
            if current is not None and len(required) < len(current_required):
                return AlternativeToolSuggested(tool_id=match.tool_id, confidence=match.confidence)
        return None
