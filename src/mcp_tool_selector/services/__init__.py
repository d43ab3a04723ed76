"""Core services for tool selection, caching, validation and recovery."""

from .parameter_validator import ParameterValidator
from .pipeline import ToolSelectionPipeline, build_pipeline
from .recovery import RecoveryEngine
from .registry import InMemoryToolRegistry, registry_fingerprint
from .selection_cache import SelectionCache
from .selector import ToolSelector

__all__ = [
    "InMemoryToolRegistry",
    "ParameterValidator",
    "RecoveryEngine",
    "SelectionCache",
    "ToolSelectionPipeline",
    "ToolSelector",
    "build_pipeline",
    "registry_fingerprint",
]
