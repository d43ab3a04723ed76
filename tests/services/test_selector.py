import asyncio

import pytest

from mcp_tool_selector.models.tool import Query, RawToolMatch, ToolDescriptor
from mcp_tool_selector.services.error_handler import (
    CacheUnavailable,
    OracleMalformedResponse,
    OracleUnavailable,
    SelectionFailed,
)
from mcp_tool_selector.services.registry import registry_fingerprint
from mcp_tool_selector.services.selector import ToolSelector, rank_matches
from tests.conftest import StubOracle


def raw(tool_id, confidence, reasoning=""):
    return RawToolMatch(tool_id=tool_id, confidence=confidence, reasoning=reasoning)


class TestRankMatches:
    def test_orders_by_confidence_then_tool_id(self):
        ranked, dropped = rank_matches(
            [raw("c", 0.5), raw("b", 0.9), raw("a", 0.5), raw("d", 0.9)],
            {"a", "b", "c", "d"},
            max_candidates=10,
        )

        assert [m.tool_id for m in ranked] == ["b", "d", "a", "c"]
        assert dropped == 0

    def test_keeps_highest_confidence_per_tool(self):
        ranked, _ = rank_matches(
            [raw("a", 0.3, "low"), raw("a", 0.8, "high"), raw("a", 0.5, "mid")],
            {"a"},
            max_candidates=5,
        )

        assert len(ranked) == 1
        assert ranked[0].confidence == 0.8
        assert ranked[0].reasoning == "high"

    @pytest.mark.parametrize("confidence", [None, "high", float("nan"), 1.5, -0.1, True])
    def test_drops_unusable_confidence(self, confidence):
        ranked, dropped = rank_matches([raw("a", confidence), raw("b", 0.6)], {"a", "b"}, 5)

        assert [m.tool_id for m in ranked] == ["b"]
        assert dropped == 1

    def test_numeric_string_confidence_is_accepted(self):
        ranked, dropped = rank_matches([raw("a", "0.75")], {"a"}, 5)

        assert ranked[0].confidence == 0.75
        assert dropped == 0

    def test_drops_unknown_tool_ids(self):
        ranked, dropped = rank_matches([raw("ghost", 0.99), raw("a", 0.2)], {"a"}, 5)

        assert [m.tool_id for m in ranked] == ["a"]
        assert dropped == 1

    def test_truncates_to_max_candidates(self):
        ids = {f"t{i}" for i in range(10)}
        ranked, _ = rank_matches([raw(t, 0.5) for t in ids], ids, max_candidates=3)

        assert [m.tool_id for m in ranked] == ["t0", "t1", "t2"]


class TestToolSelector:
    @pytest.mark.asyncio
    async def test_list_files_selects_fs_list(self, selector, fs_list_tool):
        selection = await selector.select("list files in /tmp", [fs_list_tool])

        assert selection.primary is not None
        assert selection.primary.tool_id == "fs.list"
        assert selection.primary.confidence >= 0.7
        assert selection.registry_fingerprint == registry_fingerprint([fs_list_tool])
        assert selection.from_cache is False

    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(self, selector, stub_oracle, sample_tools):
        first = await selector.select("List   files in /tmp ", sample_tools)
        second = await selector.select("list files in /TMP", sample_tools)

        assert stub_oracle.calls == 1
        assert second.from_cache is True
        assert second.matches == first.matches
        assert second.registry_fingerprint == first.registry_fingerprint

    @pytest.mark.asyncio
    async def test_schema_change_bypasses_old_entry(self, selector, stub_oracle, sample_tools):
        await selector.select("list files", sample_tools)
        edited = [
            tool.model_copy(update={"parameter_schema": {"type": "object", "properties": {}}})
            if tool.id == "fs.list" else tool
            for tool in sample_tools
        ]

        selection = await selector.select("list files", edited)

        assert stub_oracle.calls == 2
        assert selection.from_cache is False

    @pytest.mark.asyncio
    async def test_sub_threshold_matches_are_kept(self, selector, sample_tools):
        selection = await selector.select("read something", sample_tools, confidence_threshold=0.95)

        assert selection.primary is None
        assert [m.tool_id for m in selection.matches] == ["fs.list", "fs.read"]
        assert [m.tool_id for m in selection.alternatives] == ["fs.list", "fs.read"]

    @pytest.mark.asyncio
    async def test_cached_selection_uses_callers_threshold(self, selector, sample_tools):
        await selector.select("list files", sample_tools, confidence_threshold=0.5)
        cached = await selector.select("list files", sample_tools, confidence_threshold=0.95)

        assert cached.from_cache is True
        assert cached.primary is None

    @pytest.mark.asyncio
    async def test_all_entries_malformed_fails(self, cache, sample_tools):
        oracle = StubOracle([raw("ghost", 0.9), raw("fs.list", None)])
        selector = ToolSelector(oracle, cache=cache)

        with pytest.raises(SelectionFailed) as exc_info:
            await selector.select("anything", sample_tools)

        assert exc_info.value.details["dropped_entries"] == 2
        assert cache.stats().size == 0

    @pytest.mark.asyncio
    async def test_partial_malformed_entries_are_counted(self, cache, sample_tools):
        oracle = StubOracle([raw("ghost", 0.9), raw("fs.list", 0.8)])
        selector = ToolSelector(oracle, cache=cache)

        selection = await selector.select("anything", sample_tools)

        assert selection.dropped_entries == 1
        assert [m.tool_id for m in selection.matches] == ["fs.list"]

    @pytest.mark.asyncio
    async def test_empty_oracle_answer_is_an_empty_selection(self, cache, sample_tools):
        selector = ToolSelector(StubOracle([]), cache=cache)

        selection = await selector.select("nothing relevant", sample_tools)

        assert selection.matches == []
        assert selection.primary is None

    @pytest.mark.asyncio
    async def test_oracle_unavailable_is_not_cached(self, cache, sample_tools):
        oracle = StubOracle([raw("fs.list", 0.9)], fail_times=1)
        selector = ToolSelector(oracle, cache=cache)

        with pytest.raises(OracleUnavailable):
            await selector.select("list files", sample_tools)

        assert cache.stats().size == 0

    @pytest.mark.asyncio
    async def test_oracle_timeout_raises_unavailable(self, cache, sample_tools):
        selector = ToolSelector(StubOracle([raw("fs.list", 0.9)], delay=1.0), cache=cache, oracle_timeout=0.01)

        with pytest.raises(OracleUnavailable):
            await selector.select("list files", sample_tools)

        assert cache.stats().size == 0

    @pytest.mark.asyncio
    async def test_malformed_oracle_response_becomes_selection_failed(self, cache, sample_tools):
        class BrokenOracle(StubOracle):
            async def rank(self, query, tools):
                raise OracleMalformedResponse("not json")

        selector = ToolSelector(BrokenOracle(), cache=cache)

        with pytest.raises(SelectionFailed):
            await selector.select("list files", sample_tools)

    @pytest.mark.asyncio
    async def test_cancelled_request_writes_nothing(self, cache, sample_tools):
        selector = ToolSelector(StubOracle([raw("fs.list", 0.9)], delay=5.0), cache=cache)

        task = asyncio.create_task(selector.select("list files", sample_tools))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert cache.stats().size == 0

    @pytest.mark.asyncio
    async def test_cache_unavailable_degrades_to_miss(self, stub_oracle, sample_tools):
        class BrokenCache:
            def get(self, key):
                raise CacheUnavailable("down")

            def put(self, key, selection, ttl=None):
                raise CacheUnavailable("down")

        selector = ToolSelector(stub_oracle, cache=BrokenCache())

        selection = await selector.select("list files", sample_tools)

        assert selection.primary.tool_id == "fs.list"
        assert stub_oracle.calls == 1

    @pytest.mark.asyncio
    async def test_volatile_queries_skip_cache_when_enabled(self, stub_oracle, cache, sample_tools):
        selector = ToolSelector(stub_oracle, cache=cache, skip_volatile_queries=True)

        await selector.select("list my files", sample_tools)
        await selector.select("list my files", sample_tools)

        assert stub_oracle.calls == 2
        assert cache.stats().size == 0

    @pytest.mark.asyncio
    async def test_concurrent_identical_queries(self, cache, sample_tools):
        oracle = StubOracle([raw("fs.list", 0.9), raw("web.search", 0.9)], delay=0.01)
        selector = ToolSelector(oracle, cache=cache)

        first, second = await asyncio.gather(
            selector.select("list files", sample_tools),
            selector.select("list files", sample_tools),
        )

        assert 1 <= oracle.calls <= 2
        assert [m.tool_id for m in first.matches] == ["fs.list", "web.search"]
        assert [m.tool_id for m in second.matches] == ["fs.list", "web.search"]
        assert cache.stats().size == 1

    @pytest.mark.asyncio
    async def test_oracle_receives_normalized_query(self, selector, stub_oracle, sample_tools):
        await selector.select("  LIST\tFiles  ", sample_tools)

        assert stub_oracle.queries[0] == Query(raw="  LIST\tFiles  ", normalized="list files")

    @pytest.mark.asyncio
    async def test_selection_without_cache(self, stub_oracle, sample_tools):
        selector = ToolSelector(stub_oracle, cache=None)

        await selector.select("list files", sample_tools)
        await selector.select("list files", sample_tools)

        assert stub_oracle.calls == 2

    def test_tool_descriptor_accepts_mcp_input_schema(self):
        tool = ToolDescriptor.model_validate(
            {"id": "x", "name": "x", "inputSchema": {"type": "object", "required": ["a"]}}
        )

        assert tool.required_fields == ["a"]
