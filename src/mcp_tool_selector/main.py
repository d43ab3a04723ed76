# FastAPI application entry point
# Defines the main app instance and core routes

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel

from .api import pipeline, tools
from .config import get_config
from .services.pipeline import build_pipeline
from .services.registry import InMemoryToolRegistry

# Configure logging
logging.basicConfig(
    level=get_config().log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    message: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    settings = get_config()
    logger.info("Starting MCP Tool Selector...")

    try:
        registry = InMemoryToolRegistry()
        selection_pipeline = build_pipeline(settings)
        logger.info(
            f"Pipeline ready: oracle={settings.oracle_backend}, "
            f"ttl={settings.cache_ttl_seconds}s, threshold={settings.confidence_threshold}"
        )
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        raise

    app.state.registry = registry
    app.state.pipeline = selection_pipeline
    sweeper = asyncio.create_task(
        selection_pipeline.cache.run_periodic_sweep(settings.cache_sweep_interval)
    )

    yield

    logger.info("Shutting down MCP Tool Selector...")
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await selection_pipeline.aclose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="MCP Tool Selector",
    description="Ranks MCP tools for a request and validates the parameters proposed for them",
    version="0.1.0",
    lifespan=lifespan,
)

# Include API routers
app.include_router(tools.router)
app.include_router(pipeline.router)
app.include_router(pipeline.cache_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {"message": "Welcome to MCP Tool Selector"}


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="healthy", message="Service is running")


# Create and mount MCP server AFTER all routes are defined
mcp_server = FastApiMCP(
    app,
    name="tool-selector",
    description=(
        "Pick the right MCP tool for a request and check the arguments before calling it. "
        "Use select_tools to rank tools and run_pipeline to validate proposed parameters."
    ),
)
mcp_server.mount()
