# Tool registry API
# Registration and listing of the tools the pipeline selects from

from fastapi import APIRouter, Depends, HTTPException, Request

from ..models.tool import ToolDescriptor
from ..services.registry import InMemoryToolRegistry, registry_fingerprint
from .models import FingerprintResponse, RegisterToolsRequest

router = APIRouter(prefix="/api/tools", tags=["tools"])


def get_tool_registry(request: Request) -> InMemoryToolRegistry:
    """Registry stored on the application state."""
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="Tool registry not initialized")
    return registry


@router.post("/register", operation_id="register_tool")
async def register_tool(
    tool: ToolDescriptor,
    registry: InMemoryToolRegistry = Depends(get_tool_registry),  # noqa: B008
) -> dict[str, str]:
    """Register or replace a tool descriptor."""
    await registry.add_tool(tool)
    return {"status": "success", "tool_id": tool.id}


@router.post("/register_batch", operation_id="register_tools")
async def register_tools(
    request: RegisterToolsRequest,
    registry: InMemoryToolRegistry = Depends(get_tool_registry),  # noqa: B008
) -> dict[str, int | str]:
    """Register several tool descriptors at once."""
    count = await registry.add_tools(request.tools)
    return {"status": "success", "registered": count}


@router.get("", response_model=list[ToolDescriptor], operation_id="list_tools")
async def list_tools(
    registry: InMemoryToolRegistry = Depends(get_tool_registry),  # noqa: B008
) -> list[ToolDescriptor]:
    return list(await registry.snapshot())


@router.get("/fingerprint", response_model=FingerprintResponse, operation_id="registry_fingerprint")
async def get_fingerprint(
    registry: InMemoryToolRegistry = Depends(get_tool_registry),  # noqa: B008
) -> FingerprintResponse:
    """Fingerprint of the current registry; it changes whenever a schema does."""
    snapshot = await registry.snapshot()
    return FingerprintResponse(fingerprint=registry_fingerprint(snapshot), tool_count=len(snapshot))


@router.delete("/clear", operation_id="clear_tools")
async def clear_tools(
    registry: InMemoryToolRegistry = Depends(get_tool_registry),  # noqa: B008
) -> dict[str, str]:
    """Clear all tools from the registry."""
    await registry.clear()
    return {"status": "success", "message": "All tools cleared"}


@router.delete("/{tool_id}", operation_id="remove_tool")
async def remove_tool(
    tool_id: str,
    registry: InMemoryToolRegistry = Depends(get_tool_registry),  # noqa: B008
) -> dict[str, str]:
    if not await registry.remove_tool(tool_id):
        raise HTTPException(status_code=404, detail=f"Tool '{tool_id}' not found")
    return {"status": "success", "tool_id": tool_id}
