# Tool registry
# In-memory registry collaborator and the order-independent registry fingerprint

import asyncio
import hashlib
import json
import logging
from typing import Iterable, Sequence

from ..models.tool import ToolDescriptor

logger = logging.getLogger(__name__)


def registry_fingerprint(tools: Iterable[ToolDescriptor]) -> str:
    """Stable hash over every descriptor id and schema, independent of order."""
    entries = sorted(
        (tool.id, json.dumps(tool.parameter_schema, sort_keys=True, separators=(",", ":"), default=str))
        for tool in tools
    )
    digest = hashlib.sha256()
    for tool_id, schema in entries:
        digest.update(tool_id.encode("utf-8"))
        digest.update(b"\x00")
        digest.update(schema.encode("utf-8"))
        digest.update(b"\x01")
    return digest.hexdigest()


def find_tool(tools: Sequence[ToolDescriptor], tool_id: str) -> ToolDescriptor | None:
    return next((tool for tool in tools if tool.id == tool_id), None)


class InMemoryToolRegistry:
    """Mutable tool registry that hands out immutable snapshots."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self._lock = asyncio.Lock()

    async def add_tool(self, tool: ToolDescriptor) -> None:
        async with self._lock:
            replaced = tool.id in self._tools
            self._tools[tool.id] = tool
        logger.info(f"{'Updated' if replaced else 'Registered'} tool: {tool.id}")

    async def add_tools(self, tools: Iterable[ToolDescriptor]) -> int:
        count = 0
        async with self._lock:
            for tool in tools:
                self._tools[tool.id] = tool
                count += 1
        logger.info(f"Registered {count} tools")
        return count

    async def remove_tool(self, tool_id: str) -> bool:
        async with self._lock:
            removed = self._tools.pop(tool_id, None) is not None
        if removed:
            logger.info(f"Removed tool: {tool_id}")
        return removed

    async def get(self, tool_id: str) -> ToolDescriptor | None:
        return self._tools.get(tool_id)

    async def clear(self) -> None:
        async with self._lock:
            self._tools.clear()
        logger.info("Cleared tool registry")

    async def snapshot(self) -> tuple[ToolDescriptor, ...]:
        """Value snapshot of the registry, ordered by tool id."""
        async with self._lock:
            return tuple(self._tools[key] for key in sorted(self._tools))

    async def fingerprint(self) -> str:
        return registry_fingerprint(await self.snapshot())
