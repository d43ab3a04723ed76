import pytest

from mcp_tool_selector.config import Settings
from mcp_tool_selector.models.pipeline import PipelineStage
from mcp_tool_selector.models.tool import RawToolMatch, ToolDescriptor
from mcp_tool_selector.models.validation import DefaultApplied, IssueKind, Rejected, Repaired, Valid
from mcp_tool_selector.services.pipeline import ToolSelectionPipeline, build_pipeline
from mcp_tool_selector.services.selector import ToolSelector
from tests.conftest import StubOracle


def make_pipeline(oracle, cache, validator, recovery, max_attempts=3):
    selector = ToolSelector(oracle, cache=cache, confidence_threshold=0.7)
    return ToolSelectionPipeline(selector, validator, recovery, max_attempts=max_attempts, backoff_base=0)


class TestPipelineRun:
    @pytest.mark.asyncio
    async def test_selection_only_mode(self, pipeline, sample_tools):
        outcome = await pipeline.run("list files in /tmp", sample_tools)

        assert outcome.succeeded
        assert outcome.stage == PipelineStage.DONE
        assert outcome.validation is None
        assert outcome.selection.primary.tool_id == "fs.list"

    @pytest.mark.asyncio
    async def test_valid_params(self, pipeline, sample_tools):
        outcome = await pipeline.run("list files in /tmp", sample_tools, proposed_params={"path": "/tmp"})

        assert outcome.succeeded
        assert outcome.tool_id == "fs.list"
        assert isinstance(outcome.validation, Valid)
        assert outcome.validation.params == {"path": "/tmp"}
        assert outcome.selection is not None

    @pytest.mark.asyncio
    async def test_missing_required_without_default(self, pipeline, sample_tools):
        outcome = await pipeline.run("list files in /tmp", sample_tools, proposed_params={})

        assert not outcome.succeeded
        assert outcome.stage == PipelineStage.FAILED
        assert isinstance(outcome.validation, Rejected)
        assert [(i.field, i.kind) for i in outcome.validation.issues] == [("path", IssueKind.MISSING_REQUIRED)]
        assert outcome.error.code == "VALIDATION_REJECTED"
        assert outcome.error.details["issues"][0]["field"] == "path"

    @pytest.mark.asyncio
    async def test_missing_required_with_default(self, cache, validator, recovery):
        tool = ToolDescriptor(
            id="fs.list",
            name="list_directory",
            parameter_schema={
                "type": "object",
                "properties": {"path": {"type": "string", "default": "/"}},
                "required": ["path"],
            },
        )
        pipeline = make_pipeline(StubOracle([RawToolMatch(tool_id="fs.list", confidence=0.9)]), cache, validator, recovery)

        outcome = await pipeline.run("list files", [tool], proposed_params={})

        assert outcome.succeeded
        assert isinstance(outcome.validation, Repaired)
        assert outcome.validation.applied_actions == [DefaultApplied(field="path", value="/")]

    @pytest.mark.asyncio
    async def test_sanitization_rejection_is_not_recovery_exhausted(self, pipeline, sample_tools):
        outcome = await pipeline.run(
            "list files", sample_tools, proposed_params={"path": "<script>alert(1)</script>"}
        )

        assert outcome.error.code == "VALIDATION_REJECTED"
        assert outcome.validation.issues[0].kind == IssueKind.UNSAFE_CONTENT

    @pytest.mark.asyncio
    async def test_failed_coercion_is_recovery_exhausted(self, pipeline, sample_tools):
        outcome = await pipeline.run("list files in /tmp", sample_tools, proposed_params={"path": ["a", "b"]})

        assert outcome.error.code == "RECOVERY_EXHAUSTED"
        assert outcome.validation.recovery_attempted is True
        assert outcome.validation.issues[0].kind == IssueKind.TYPE_MISMATCH

    @pytest.mark.asyncio
    async def test_deeply_nested_params_are_rejected(self, pipeline, fs_list_tool):
        nested = []
        for _ in range(5000):
            nested = [nested]

        outcome = await pipeline.run("list files", [fs_list_tool], proposed_params={"path": "/", "extra": nested})

        assert outcome.stage == PipelineStage.FAILED
        assert outcome.error.code == "VALIDATION_REJECTED"
        assert [i.kind for i in outcome.validation.issues] == [IssueKind.TOO_DEEP]

    @pytest.mark.asyncio
    async def test_no_confident_match(self, pipeline, sample_tools):
        outcome = await pipeline.run(
            "list files", sample_tools, proposed_params={"path": "/"}, confidence_threshold=0.99
        )

        assert outcome.error.code == "NO_CONFIDENT_MATCH"
        assert outcome.selection is not None
        assert outcome.validation is None

    @pytest.mark.asyncio
    async def test_explicit_tool_id(self, pipeline, sample_tools):
        outcome = await pipeline.run(
            "search", sample_tools, proposed_params={"query": "python", "safe": "yes"}, tool_id="web.search"
        )

        assert outcome.succeeded
        assert outcome.tool_id == "web.search"
        assert outcome.validation.params == {"query": "python", "safe": True}

    @pytest.mark.asyncio
    async def test_unknown_tool_id(self, pipeline, sample_tools):
        outcome = await pipeline.run("search", sample_tools, proposed_params={}, tool_id="nope")

        assert outcome.error.code == "TOOL_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_retries_unavailable_oracle(self, cache, validator, recovery, sample_tools):
        oracle = StubOracle([RawToolMatch(tool_id="fs.list", confidence=0.9)], fail_times=2)
        pipeline = make_pipeline(oracle, cache, validator, recovery, max_attempts=3)

        outcome = await pipeline.run("list files", sample_tools)

        assert outcome.succeeded
        assert oracle.calls == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_surface_selection_failed(self, cache, validator, recovery, sample_tools):
        oracle = StubOracle([RawToolMatch(tool_id="fs.list", confidence=0.9)], fail_times=10)
        pipeline = make_pipeline(oracle, cache, validator, recovery, max_attempts=2)

        outcome = await pipeline.run("list files", sample_tools)

        assert outcome.stage == PipelineStage.FAILED
        assert outcome.selection is None
        assert outcome.error.code == "SELECTION_FAILED"
        assert oracle.calls == 2
        assert cache.stats().size == 0

    @pytest.mark.asyncio
    async def test_unexpected_oracle_error_is_typed(self, cache, validator, recovery, sample_tools):
        class ExplodingOracle(StubOracle):
            async def rank(self, query, tools):
                raise RuntimeError("boom")

        pipeline = make_pipeline(ExplodingOracle(), cache, validator, recovery)

        outcome = await pipeline.run("list files", sample_tools)

        assert outcome.error.code == "SELECTION_FAILED"
        assert outcome.error.details["cause"] == "RuntimeError"

    @pytest.mark.asyncio
    async def test_registry_change_invalidates_cache(self, pipeline, stub_oracle, cache, sample_tools):
        await pipeline.run("list files", sample_tools)
        assert cache.stats().size == 1

        reduced = [t for t in sample_tools if t.id != "web.search"]
        outcome = await pipeline.run("list files", reduced)

        assert stub_oracle.calls == 2
        assert outcome.selection.from_cache is False
        assert cache.stats().size == 1
        assert cache.stats().evictions == 1

    @pytest.mark.asyncio
    async def test_repeat_run_hits_cache(self, pipeline, stub_oracle, sample_tools):
        first = await pipeline.run("list files", sample_tools)
        second = await pipeline.run("list files", sample_tools)

        assert stub_oracle.calls == 1
        assert second.selection.from_cache is True
        assert second.selection.matches == first.selection.matches


class TestPipelineValidate:
    def test_validate_without_selection(self, pipeline, sample_tools):
        outcome = pipeline.validate("fs.read", {"path": "/etc/hosts"}, sample_tools)

        assert outcome.succeeded
        assert outcome.validation.params == {"path": "/etc/hosts", "encoding": "utf-8"}


def test_build_pipeline_from_settings(stub_oracle):
    settings = Settings(cache_ttl_seconds=60, confidence_threshold=0.5, max_candidates=2, unknown_field_policy="reject")

    pipeline = build_pipeline(settings, oracle=stub_oracle)

    assert pipeline.selector.oracle is stub_oracle
    assert pipeline.selector.confidence_threshold == 0.5
    assert pipeline.selector.max_candidates == 2
    assert pipeline.cache.default_ttl == 60
    assert pipeline.validator.unknown_field_policy.value == "reject"


def test_llm_backend_requires_key(stub_oracle):
    settings = Settings(oracle_backend="llm", openrouter_api_key=None)

    with pytest.raises(ValueError):
        build_pipeline(settings)
