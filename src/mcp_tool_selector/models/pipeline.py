# Pipeline result models
# The contract handed back to the execution collaborator

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .tool import RankedToolSelection
from .validation import ValidationOutcome


class PipelineStage(str, Enum):
    SELECTING = "selecting"
    VALIDATING = "validating"
    RECOVERING = "recovering"
    DONE = "done"
    FAILED = "failed"


class PipelineError(BaseModel):
    """Typed failure surfaced to the caller instead of an exception."""

    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class Outcome(BaseModel):
    """Result of one pipeline run."""

    selection: RankedToolSelection | None = None
    validation: ValidationOutcome | None = None
    tool_id: str | None = None
    stage: PipelineStage = PipelineStage.DONE
    error: PipelineError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.stage == PipelineStage.DONE
