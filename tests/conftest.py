"""
Test configuration and shared fixtures for the tool selection pipeline tests.

The oracle is replaced by a scripted stub so ranking, caching and retry
behaviour can be exercised without a network or an embedding model.
"""

import asyncio
from typing import Callable, Sequence

import pytest

from mcp_tool_selector.models.tool import Query, RawToolMatch, ToolDescriptor
from mcp_tool_selector.services.error_handler import OracleUnavailable
from mcp_tool_selector.services.oracle import OracleResponse, SelectionOracle
from mcp_tool_selector.services.parameter_validator import ParameterValidator
from mcp_tool_selector.services.pipeline import ToolSelectionPipeline
from mcp_tool_selector.services.recovery import RecoveryEngine
from mcp_tool_selector.services.selection_cache import SelectionCache
from mcp_tool_selector.services.selector import ToolSelector


class StubOracle(SelectionOracle):
    """Oracle returning scripted matches and counting calls."""

    def __init__(
        self,
        matches: Sequence[RawToolMatch] | Callable[[Query], Sequence[RawToolMatch]] = (),
        fail_times: int = 0,
        delay: float = 0.0,
    ) -> None:
        self.matches = matches
        self.fail_times = fail_times
        self.delay = delay
        self.calls = 0
        self.queries: list[Query] = []

    async def rank(self, query, tools):
        self.calls += 1
        self.queries.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.calls <= self.fail_times:
            raise OracleUnavailable("oracle offline")
        matches = self.matches(query) if callable(self.matches) else self.matches
        return OracleResponse(matches=list(matches), reasoning="scripted")


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fs_list_tool():
    return ToolDescriptor(
        id="fs.list",
        name="list_directory",
        description="List files in a directory",
        parameter_schema={
            "type": "object",
            "properties": {"path": {"type": "string", "description": "Directory to list"}},
            "required": ["path"],
        },
        provider_id="filesystem",
    )


@pytest.fixture
def sample_tools(fs_list_tool):
    """Tools representing common patterns without specific implementations"""
    return [
        fs_list_tool,
        ToolDescriptor(
            id="fs.read",
            name="read_file",
            description="Read the contents of a file",
            parameter_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "encoding": {"type": "string", "enum": ["utf-8", "latin-1"], "default": "utf-8"},
                },
                "required": ["path", "encoding"],
            },
            provider_id="filesystem",
        ),
        ToolDescriptor(
            id="web.search",
            name="search",
            description="Search the web for information",
            parameter_schema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "minLength": 1},
                    "limit": {"type": "integer", "minimum": 1, "maximum": 50, "default": 10},
                    "safe": {"type": "boolean"},
                },
                "required": ["query"],
            },
            provider_id="search",
        ),
    ]


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def cache(fake_clock):
    return SelectionCache(ttl_seconds=300, max_entries=100, clock=fake_clock)


@pytest.fixture
def stub_oracle():
    return StubOracle(
        [
            RawToolMatch(tool_id="fs.list", confidence=0.92, reasoning="lists directories"),
            RawToolMatch(tool_id="fs.read", confidence=0.41, reasoning="reads files"),
        ]
    )


@pytest.fixture
def validator():
    return ParameterValidator()


@pytest.fixture
def recovery(validator):
    return RecoveryEngine(validator, min_alternative_confidence=0.3)


@pytest.fixture
def selector(stub_oracle, cache):
    return ToolSelector(stub_oracle, cache=cache, confidence_threshold=0.7, max_candidates=5)


@pytest.fixture
def pipeline(selector, validator, recovery):
    return ToolSelectionPipeline(selector, validator, recovery, max_attempts=3, backoff_base=0)
