# Tool domain models
# Descriptors, oracle matches and ranked selections

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

_WHITESPACE = re.compile(r"\s+")


def normalize_query(text: str) -> str:
    """Trim, case-fold and collapse whitespace so equivalent queries share a key."""
    return _WHITESPACE.sub(" ", text.strip().casefold())


class ToolDescriptor(BaseModel):
    """A callable tool as published by a provider's registry."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1, description="Unique identifier for the tool")
    name: str = Field(..., description="Human-readable tool name")
    description: str = Field("", description="What the tool does")
    parameter_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object"},
        alias="inputSchema",
        description="JSON-Schema-like parameter contract",
    )
    provider_id: str = Field("", description="Server or provider that owns the tool")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Ensure ID is not blank."""
        if not v.strip():
            raise ValueError("Tool ID cannot be empty")
        return v

    @property
    def required_fields(self) -> list[str]:
        required = self.parameter_schema.get("required") or []
        return [name for name in required if isinstance(name, str)]


class Query(BaseModel):
    """User query plus the normalized form used for caching and ranking."""

    model_config = ConfigDict(frozen=True)

    raw: str
    normalized: str

    @classmethod
    def from_text(cls, text: str) -> "Query":
        return cls(raw=text, normalized=normalize_query(text))


class RawToolMatch(BaseModel):
    """A candidate as reported by the oracle, before any checking."""

    tool_id: str
    confidence: Any = None
    reasoning: str = ""
    suggested_parameters: dict[str, Any] | None = None


class ToolMatch(BaseModel):
    """A ranked candidate tool for a query."""

    tool_id: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = ""
    suggested_parameters: dict[str, Any] | None = None


class RankedToolSelection(BaseModel):
    """Candidates ordered by confidence (ties by ascending tool id)."""

    matches: list[ToolMatch] = Field(default_factory=list)
    registry_fingerprint: str
    from_cache: bool = False
    confidence_threshold: float = Field(0.7, ge=0.0, le=1.0)
    dropped_entries: int = 0
    reasoning: str = ""

    def __len__(self) -> int:
        return len(self.matches)

    @property
    def primary(self) -> ToolMatch | None:
        """Best match if it clears the confidence threshold."""
        if self.matches and self.matches[0].confidence >= self.confidence_threshold:
            return self.matches[0]
        return None

    @property
    def alternatives(self) -> list[ToolMatch]:
        if self.primary is None:
            return list(self.matches)
        return list(self.matches[1:])

    def viable_matches(self, min_confidence: float | None = None) -> list[ToolMatch]:
        threshold = self.confidence_threshold if min_confidence is None else min_confidence
        return [m for m in self.matches if m.confidence >= threshold]

    def get(self, tool_id: str) -> ToolMatch | None:
        return next((m for m in self.matches if m.tool_id == tool_id), None)
