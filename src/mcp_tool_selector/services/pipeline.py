"""Pipeline orchestrator: selection, validation and recovery in one call.

Each ``run`` is independent. The only state shared between runs is the
selection cache, which also remembers the registry fingerprint it last saw so
a changed registry invalidates older entries before the next lookup.
"""

import logging
from typing import Any, Sequence

from ..config import Settings
from ..models.pipeline import Outcome, PipelineError, PipelineStage
from ..models.tool import Query, RankedToolSelection, ToolDescriptor
from ..models.validation import SANITIZATION_KINDS, Rejected, Valid
from .error_handler import (
    CacheUnavailable,
    OracleUnavailable,
    RecoveryExhausted,
    SelectionFailed,
    SelectorError,
    ToolNotFound,
    ValidationRejected,
    retry_with_backoff,
)
from .oracle import EmbeddingSelectionOracle, LLMSelectionOracle, SelectionOracle
from .parameter_validator import ParameterValidator
from .recovery import RecoveryEngine
from .registry import find_tool, registry_fingerprint
from .selection_cache import SelectionCache
from .selector import ToolSelector

logger = logging.getLogger(__name__)


class ToolSelectionPipeline:
    """Composes selector, validator and recovery engine for the execution layer."""

    def __init__(
        self,
        selector: ToolSelector,
        validator: ParameterValidator,
        recovery: RecoveryEngine,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
    ) -> None:
        self.selector = selector
        self.validator = validator
        self.recovery = recovery
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base

    @property
    def cache(self) -> SelectionCache | None:
        return self.selector.cache

    async def run(
        self,
        query: str,
        registry: Sequence[ToolDescriptor],
        proposed_params: dict[str, Any] | None = None,
        tool_id: str | None = None,
        confidence_threshold: float | None = None,
    ) -> Outcome:
        """Select tools for ``query`` and, when parameters are given, validate them."""
        registry = tuple(registry)
        stage = PipelineStage.SELECTING
        logger.debug(f"Pipeline {stage.value}: {query!r} against {len(registry)} tools")

        self._sync_registry(registry)

        try:
            selection = await self.select(query, registry, confidence_threshold)
        except SelectorError as e:
            logger.error(f"Selection failed for query {query!r}: {e.message}")
            return Outcome(stage=PipelineStage.FAILED, error=self._as_selection_failure(e))
        except Exception as e:
            logger.exception(f"Unexpected error while selecting tools for {query!r}")
            error = SelectionFailed(f"Unexpected selection error: {e}", {"cause": type(e).__name__})
            return Outcome(stage=PipelineStage.FAILED, error=error.to_pipeline_error())

        if proposed_params is None:
            return Outcome(selection=selection, stage=PipelineStage.DONE)

        target_id = tool_id or (selection.primary.tool_id if selection.primary else None)
        if target_id is None:
            return Outcome(
                selection=selection,
                stage=PipelineStage.FAILED,
                error=PipelineError(
                    code="NO_CONFIDENT_MATCH",
                    message="No candidate tool met the confidence threshold",
                    details={
                        "confidence_threshold": selection.confidence_threshold,
                        "best_confidence": selection.matches[0].confidence if selection.matches else None,
                    },
                ),
            )

        outcome = self.validate(target_id, proposed_params, registry, selection)
        outcome.selection = selection
        return outcome

    async def select(
        self,
        query: str,
        registry: Sequence[ToolDescriptor],
        confidence_threshold: float | None = None,
    ) -> RankedToolSelection:
        """Selection with oracle retries; raises SelectionFailed when exhausted."""
        try:
            return await retry_with_backoff(
                self.selector.select,
                Query.from_text(query),
                registry,
                confidence_threshold,
                retry_on=(OracleUnavailable,),
                max_attempts=self.max_attempts,
                base_delay=self.backoff_base,
            )
        except OracleUnavailable as e:
            raise SelectionFailed(
                f"Oracle unavailable after {self.max_attempts} attempts: {e.message}",
                {"attempts": self.max_attempts, **e.details},
            ) from e

    def validate(
        self,
        tool_id: str,
        params: dict[str, Any] | None,
        registry: Sequence[ToolDescriptor],
        selection: RankedToolSelection | None = None,
    ) -> Outcome:
        """Validate ``params`` for an explicitly chosen tool, recovering on failure."""
        tool = find_tool(registry, tool_id)
        if tool is None:
            error = ToolNotFound(f"Tool '{tool_id}' is not in the registry", {"tool_id": tool_id})
            return Outcome(tool_id=tool_id, stage=PipelineStage.FAILED, error=error.to_pipeline_error())

        logger.debug(f"Pipeline {PipelineStage.VALIDATING.value}: {tool_id}")
        result = self.validator.validate(tool.parameter_schema, params)
        if isinstance(result, Valid):
            return Outcome(tool_id=tool_id, validation=result, stage=PipelineStage.DONE)

        if all(issue.kind in SANITIZATION_KINDS for issue in result.issues):
            recovered = result
        else:
            logger.debug(f"Pipeline {PipelineStage.RECOVERING.value}: {len(result.issues)} issues for {tool_id}")
            recovered = self.recovery.recover(
                tool.parameter_schema, result.issues, params, registry, selection=selection, tool_id=tool_id
            )
        if not isinstance(recovered, Rejected):
            return Outcome(tool_id=tool_id, validation=recovered, stage=PipelineStage.DONE)

        details = {
            "issues": [issue.model_dump(mode="json") for issue in recovered.issues],
            "trail": recovered.trail,
            "suggested_alternative": recovered.suggested_alternative,
        }
        if recovered.recovery_attempted:
            error: SelectorError = RecoveryExhausted(
                f"Automatic repair could not fix {len(recovered.issues)} issue(s) for '{tool_id}'", details
            )
        else:
            error = ValidationRejected(f"Parameters for '{tool_id}' were rejected", details)
        logger.info(f"{error.error_code} for {tool_id}: {[i.field for i in recovered.issues]}")
        return Outcome(
            tool_id=tool_id, validation=recovered, stage=PipelineStage.FAILED, error=error.to_pipeline_error()
        )

    def _sync_registry(self, registry: Sequence[ToolDescriptor]) -> None:
        cache = self.cache
        if cache is None:
            return
        fingerprint = registry_fingerprint(registry)
        if cache.current_fingerprint == fingerprint:
            return
        try:
            cache.invalidate_by_fingerprint(fingerprint)
        except CacheUnavailable as e:
            logger.warning(f"Could not invalidate selection cache: {e}")

    @staticmethod
    def _as_selection_failure(error: SelectorError) -> PipelineError:
        if isinstance(error, SelectionFailed):
            return error.to_pipeline_error()
        return SelectionFailed(error.message, {"cause": error.error_code, **error.details}).to_pipeline_error()

    async def aclose(self) -> None:
        await self.selector.oracle.aclose()


def build_oracle(settings: Settings) -> SelectionOracle:
    if settings.oracle_backend == "llm":
        if not settings.has_openrouter_key:
            raise ValueError("oracle_backend 'llm' requires OPENROUTER_API_KEY")
        return LLMSelectionOracle(
            api_key=settings.openrouter_api_key,
            model=settings.openrouter_model,
            base_url=settings.openrouter_base_url,
            timeout=settings.oracle_timeout,
            max_selections=settings.max_candidates,
        )
    return EmbeddingSelectionOracle.from_model_name(settings.embedding_model)


def build_pipeline(settings: Settings, oracle: SelectionOracle | None = None) -> ToolSelectionPipeline:
    """Wire a pipeline from settings; ``oracle`` overrides the configured backend."""
    cache = SelectionCache(
        ttl_seconds=settings.cache_ttl_seconds,
        max_entries=settings.cache_max_entries,
        lock_timeout=settings.cache_lock_timeout,
    )
    selector = ToolSelector(
        oracle=oracle or build_oracle(settings),
        cache=cache,
        confidence_threshold=settings.confidence_threshold,
        max_candidates=settings.max_candidates,
        cache_ttl=settings.cache_ttl_seconds,
        oracle_timeout=settings.oracle_timeout,
        skip_volatile_queries=settings.skip_volatile_queries,
    )
    validator = ParameterValidator(
        unknown_field_policy=settings.unknown_field_policy,
        max_string_length=settings.max_string_length,
        max_nesting_depth=settings.max_nesting_depth,
    )
    recovery = RecoveryEngine(validator, min_alternative_confidence=settings.min_alternative_confidence)
    return ToolSelectionPipeline(
        selector,
        validator,
        recovery,
        max_attempts=settings.oracle_max_attempts,
        backoff_base=settings.oracle_backoff_base,
    )
