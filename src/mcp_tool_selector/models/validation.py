# Validation and recovery models
# Issues, repair actions and the tagged validation outcome

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


class UnknownFieldPolicy(str, Enum):
    """How fields absent from the schema are treated."""

    WARN = "warn"
    REJECT = "reject"


class IssueKind(str, Enum):
    MISSING_REQUIRED = "MissingRequired"
    TYPE_MISMATCH = "TypeMismatch"
    OUT_OF_RANGE = "OutOfRange"
    TOO_DEEP = "TooDeep"
    TOO_LONG = "TooLong"
    UNKNOWN_FIELD = "UnknownField"
    UNSAFE_CONTENT = "UnsafeContent"


# Issues raised by input sanitization rather than by the schema
SANITIZATION_KINDS = frozenset(
    {IssueKind.TOO_DEEP, IssueKind.TOO_LONG, IssueKind.UNSAFE_CONTENT}
)


def render_path(path: list[str | int] | tuple[str | int, ...]) -> str:
    """Render ["filters", "tags", 0] as "filters.tags[0]"."""
    rendered = ""
    for part in path:
        if isinstance(part, int):
            rendered += f"[{part}]"
        elif rendered:
            rendered += f".{part}"
        else:
            rendered = part
    return rendered


class ValidationIssue(BaseModel):
    """A single problem found in a parameter object."""

    field: str
    path: list[str | int] = Field(default_factory=list)
    kind: IssueKind
    detail: str = ""

    @classmethod
    def at(cls, path: list[str | int], kind: IssueKind, detail: str) -> "ValidationIssue":
        return cls(field=render_path(path), path=list(path), kind=kind, detail=detail)


class DefaultApplied(BaseModel):
    action: Literal["default_applied"] = "default_applied"
    field: str
    value: Any = None

    def describe(self) -> str:
        return f"Applied schema default {self.value!r} to '{self.field}'"


class Coerced(BaseModel):
    action: Literal["coerced"] = "coerced"
    field: str
    from_value: Any = None
    to_value: Any = None

    def describe(self) -> str:
        return f"Coerced '{self.field}' from {self.from_value!r} to {self.to_value!r}"


class AlternativeToolSuggested(BaseModel):
    action: Literal["alternative_tool_suggested"] = "alternative_tool_suggested"
    tool_id: str
    confidence: float | None = None

    def describe(self) -> str:
        if self.confidence is None:
            return f"Suggested alternative tool '{self.tool_id}'"
        return f"Suggested alternative tool '{self.tool_id}' (confidence {self.confidence:.2f})"


RecoveryAction = Annotated[
    Union[DefaultApplied, Coerced, AlternativeToolSuggested],
    Field(discriminator="action"),
]


class Valid(BaseModel):
    status: Literal["valid"] = "valid"
    params: dict[str, Any] = Field(default_factory=dict)
    warnings: list[ValidationIssue] = Field(default_factory=list)

    @property
    def is_usable(self) -> bool:
        return True


class Repaired(BaseModel):
    status: Literal["repaired"] = "repaired"
    params: dict[str, Any] = Field(default_factory=dict)
    applied_actions: list[RecoveryAction] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)

    @property
    def is_usable(self) -> bool:
        return True

    @property
    def trail(self) -> list[str]:
        return [action.describe() for action in self.applied_actions]


class Rejected(BaseModel):
    status: Literal["rejected"] = "rejected"
    issues: list[ValidationIssue] = Field(..., min_length=1)
    applied_actions: list[RecoveryAction] = Field(default_factory=list)
    recovery_attempted: bool = False

    @property
    def is_usable(self) -> bool:
        return False

    @property
    def trail(self) -> list[str]:
        return [action.describe() for action in self.applied_actions]

    @property
    def suggested_alternative(self) -> str | None:
        for action in self.applied_actions:
            if isinstance(action, AlternativeToolSuggested):
                return action.tool_id
        return None


ValidationOutcome = Annotated[
    Union[Valid, Repaired, Rejected], Field(discriminator="status")
]
