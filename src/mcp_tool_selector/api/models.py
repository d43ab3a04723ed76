# API request/response models
# Pydantic models for API endpoint data validation

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..models.pipeline import Outcome
from ..models.tool import RankedToolSelection, ToolDescriptor


class SelectionRequest(BaseModel):
    """Request model for tool selection."""

    query: str = Field(..., min_length=1, description="Natural language request")
    confidence_threshold: float | None = Field(
        None, ge=0.0, le=1.0, description="Override the configured confidence threshold"
    )

    @field_validator("query")
    @classmethod
    def validate_query(cls, v: str) -> str:
        """Ensure query is not empty."""
        if not v.strip():
            raise ValueError("Query cannot be empty")
        return v


class SelectionResponse(BaseModel):
    """Ranked candidates plus the primary suggestion."""

    selection: RankedToolSelection
    primary_tool_id: str | None
    timestamp: datetime


class PipelineRunRequest(SelectionRequest):
    """Request model for a full pipeline run."""

    proposed_params: dict[str, Any] | None = Field(
        None, description="Parameters to validate; omit for selection only"
    )
    tool_id: str | None = Field(None, description="Validate against this tool instead of the top match")


class ValidateRequest(BaseModel):
    """Request model for validating parameters of a chosen tool."""

    tool_id: str = Field(..., min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)


class PipelineResponse(BaseModel):
    outcome: Outcome
    succeeded: bool
    timestamp: datetime


class RegisterToolsRequest(BaseModel):
    tools: list[ToolDescriptor] = Field(..., min_length=1)


class FingerprintResponse(BaseModel):
    fingerprint: str
    tool_count: int
