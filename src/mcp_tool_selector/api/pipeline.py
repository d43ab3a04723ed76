# Pipeline and cache API
# Selection, validation and cache administration endpoints

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request

from ..services.error_handler import SelectorError
from ..services.pipeline import ToolSelectionPipeline
from ..services.registry import InMemoryToolRegistry
from ..services.selection_cache import CacheStats, SelectionCache
from .models import PipelineResponse, PipelineRunRequest, SelectionRequest, SelectionResponse, ValidateRequest
from .tools import get_tool_registry

router = APIRouter(prefix="/api/pipeline", tags=["pipeline"])
cache_router = APIRouter(prefix="/api/cache", tags=["cache"])


def get_pipeline(request: Request) -> ToolSelectionPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return pipeline


def get_cache(pipeline: ToolSelectionPipeline = Depends(get_pipeline)) -> SelectionCache:  # noqa: B008
    if pipeline.cache is None:
        raise HTTPException(status_code=404, detail="Selection cache is disabled")
    return pipeline.cache


@router.post("/select", response_model=SelectionResponse, operation_id="select_tools")
async def select_tools(
    request: SelectionRequest,
    pipeline: ToolSelectionPipeline = Depends(get_pipeline),  # noqa: B008
    registry: InMemoryToolRegistry = Depends(get_tool_registry),  # noqa: B008
) -> SelectionResponse:
    """Rank the registered tools for a natural language request."""
    snapshot = await registry.snapshot()
    outcome = await pipeline.run(request.query, snapshot, confidence_threshold=request.confidence_threshold)
    if outcome.selection is None:
        error = outcome.error
        raise HTTPException(status_code=502, detail=error.model_dump() if error else "Selection failed")

    primary = outcome.selection.primary
    return SelectionResponse(
        selection=outcome.selection,
        primary_tool_id=primary.tool_id if primary else None,
        timestamp=datetime.now(),
    )


@router.post("/run", response_model=PipelineResponse, operation_id="run_pipeline")
async def run_pipeline(
    request: PipelineRunRequest,
    pipeline: ToolSelectionPipeline = Depends(get_pipeline),  # noqa: B008
    registry: InMemoryToolRegistry = Depends(get_tool_registry),  # noqa: B008
) -> PipelineResponse:
    """Select a tool and validate (repairing if possible) the proposed parameters.

    Failures are reported inside the outcome rather than as HTTP errors so the
    caller always gets the selection and issue list back.
    """
    snapshot = await registry.snapshot()
    outcome = await pipeline.run(
        request.query,
        snapshot,
        proposed_params=request.proposed_params,
        tool_id=request.tool_id,
        confidence_threshold=request.confidence_threshold,
    )
    return PipelineResponse(outcome=outcome, succeeded=outcome.succeeded, timestamp=datetime.now())


@router.post("/validate", response_model=PipelineResponse, operation_id="validate_parameters")
async def validate_parameters(
    request: ValidateRequest,
    pipeline: ToolSelectionPipeline = Depends(get_pipeline),  # noqa: B008
    registry: InMemoryToolRegistry = Depends(get_tool_registry),  # noqa: B008
) -> PipelineResponse:
    """Validate parameters for a specific tool without running selection."""
    snapshot = await registry.snapshot()
    outcome = pipeline.validate(request.tool_id, request.params, snapshot)
    if outcome.error is not None and outcome.error.code == "TOOL_NOT_FOUND":
        raise HTTPException(status_code=404, detail=outcome.error.message)
    return PipelineResponse(outcome=outcome, succeeded=outcome.succeeded, timestamp=datetime.now())


@cache_router.get("/stats", response_model=CacheStats, operation_id="cache_stats")
async def cache_stats(cache: SelectionCache = Depends(get_cache)) -> CacheStats:  # noqa: B008
    try:
        return cache.stats()
    except SelectorError as e:
        raise HTTPException(status_code=503, detail=e.message)


@cache_router.post("/clear", operation_id="clear_cache")
async def clear_cache(cache: SelectionCache = Depends(get_cache)) -> dict[str, str]:  # noqa: B008
    try:
        cache.clear()
    except SelectorError as e:
        raise HTTPException(status_code=503, detail=e.message)
    return {"status": "success", "message": "Selection cache cleared"}


@cache_router.post("/sweep", operation_id="sweep_cache")
async def sweep_cache(cache: SelectionCache = Depends(get_cache)) -> dict[str, int | str]:  # noqa: B008
    try:
        removed = cache.sweep_expired()
    except SelectorError as e:
        raise HTTPException(status_code=503, detail=e.message)
    return {"status": "success", "removed": removed}
