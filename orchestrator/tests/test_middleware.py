"""
Tests for the tool middleware, payload compression and output safety helpers.
"""

from typing import Any, Optional

import pytest

from adapters.llm.mock import MockResponsesAdapter
from orchestrator.service.compression import (
    compress_metric,
    compress_monitor,
    compress_tool_output,
    deduplicate_status_information,
)
from orchestrator.service.middleware import (
    ExternalizedFile,
    LLMFileExternalizer,
    ResultCache,
    ToolMiddleware,
    execute_with_middleware,
    find_primary_data,
    generate_cache_key,
    paginate_output,
)
from orchestrator.service.models import FileTracking
from orchestrator.service.output_safety import (
    HARD_MAX_OUTPUT_CHARS,
    create_output_preview,
    ensure_safe_output,
    truncate_output,
)


class CountingExecutor:
    """Executor returning a fixed result and counting invocations."""

    def __init__(self, result: Any):
        self.result = result
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def __call__(self, name: str, args: dict[str, Any]) -> Any:
        self.calls.append((name, args))
        return self.result


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# ============================================================================
# Cache keys
# ============================================================================


class TestCacheKey:
    """Tests for cache key derivation."""

    def test_key_ignores_insertion_order(self) -> None:
        """Equivalent argument sets map to the same key."""
        a = generate_cache_key("GetHostDetails", {"hosts": ["h1"], "verbose": True})
        b = generate_cache_key("GetHostDetails", {"verbose": True, "hosts": ["h1"]})
        assert a == b

    def test_key_ignores_pagination_fields(self) -> None:
        """offset, maxResults and _cacheId do not change the key."""
        base = generate_cache_key("GetHostDetails", {"hosts": ["h1"]})
        paged = generate_cache_key(
            "GetHostDetails", {"hosts": ["h1"], "offset": 50, "maxResults": 10, "_cacheId": "abc"}
        )
        assert base == paged

    def test_key_depends_on_tool_and_args(self) -> None:
        """Different tools or arguments give different keys."""
        base = generate_cache_key("GetHostDetails", {"hosts": ["h1"]})
        assert base != generate_cache_key("ListMonitors", {"hosts": ["h1"]})
        assert base != generate_cache_key("GetHostDetails", {"hosts": ["h2"]})

    def test_key_handles_missing_args(self) -> None:
        assert generate_cache_key("ListHosts", None) == generate_cache_key("ListHosts", {})


# ============================================================================
# Pagination
# ============================================================================


class TestPagination:
    """Tests for primary-data detection and slicing."""

    @pytest.mark.parametrize(
        "offset,limit,returned,has_more,next_offset",
        [
            (0, 10, 10, True, 10),
            (90, 10, 10, False, None),
            (95, 10, 5, False, None),
        ],
    )
    def test_array_pages(self, offset: int, limit: int, returned: int, has_more: bool, next_offset: Optional[int]) -> None:
        """Page size, hasMore and nextOffset follow the slice."""
        output = {"ok": True, "items": list(range(100))}
        page, paginated = paginate_output(output, offset, limit, "cid")

        assert paginated
        assert len(page["items"]) == returned
        assert page["items"][0] == offset
        assert page["_pagination"]["hasMore"] is has_more
        assert page["_pagination"]["nextOffset"] == next_offset
        assert page["_pagination"]["total"] == 100
        assert page["ok"] is True

    def test_single_page_is_untouched(self) -> None:
        """A collection that fits at offset 0 gets no pagination metadata."""
        output = {"items": [1, 2, 3]}
        page, paginated = paginate_output(output, 0, 10, "cid")

        assert not paginated
        assert page == {"items": [1, 2, 3]}
        assert "_pagination" not in page

    def test_object_collection(self) -> None:
        """Maps are paginated over their keys."""
        output = {"hosts": {f"h{i}": {"i": i} for i in range(12)}}
        page, paginated = paginate_output(output, 10, 5, "cid")

        assert paginated
        assert list(page["hosts"]) == ["h10", "h11"]
        assert page["_pagination"]["returned"] == 2

    def test_hint_mentions_cache_id(self) -> None:
        page, _ = paginate_output({"items": list(range(20))}, 0, 10, "abc123")
        assert '_cacheId="abc123"' in page["_pagination"]["hint"]
        assert "offset=10" in page["_pagination"]["hint"]

    def test_primary_data_priority(self) -> None:
        """Known field names win over larger unnamed arrays."""
        primary = find_primary_data({"other": list(range(50)), "results": [1, 2]})
        assert primary.key == "results"
        assert primary.size == 2

    def test_primary_data_fallback_array(self) -> None:
        """An unknown field is used only when it holds more than five elements."""
        assert find_primary_data({"rows": [1, 2, 3]}) is None
        primary = find_primary_data({"rows": list(range(6))})
        assert primary.key == "rows"
        assert not primary.is_object

    def test_non_object_not_paginated(self) -> None:
        assert paginate_output([1, 2, 3], 0, 1, "cid") == ([1, 2, 3], False)


# ============================================================================
# Result cache
# ============================================================================


class TestResultCache:
    """Tests for TTL and capacity eviction."""

    def test_entry_expires(self) -> None:
        clock = FakeClock()
        cache = ResultCache(ttl_seconds=300, clock=clock)
        cache.set("k", "tool", {"a": 1})

        clock.now = 299
        assert cache.get("k") is not None
        clock.now = 301
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_capacity_evicts_oldest_half(self) -> None:
        clock = FakeClock()
        cache = ResultCache(max_entries=4, clock=clock)
        for i in range(4):
            clock.now = float(i)
            cache.set(f"k{i}", "tool", i)

        clock.now = 10.0
        cache.set("k4", "tool", 4)

        assert len(cache) == 3
        assert cache.get("k0") is None
        assert cache.get("k1") is None
        assert cache.get("k4") is not None

    def test_expired_evicted_before_oldest(self) -> None:
        clock = FakeClock()
        cache = ResultCache(ttl_seconds=5, max_entries=2, clock=clock)
        cache.set("old", "tool", 1)
        clock.now = 4
        cache.set("fresh", "tool", 2)
        clock.now = 6
        cache.set("new", "tool", 3)

        assert cache.stats()["keys"] == ["fresh", "new"]


# ============================================================================
# Middleware
# ============================================================================


class TestToolMiddleware:
    """Tests for caching, pagination and size bounding around executors."""

    @pytest.mark.asyncio
    async def test_cache_hit_skips_execution(self) -> None:
        """A second page of the same query is served from the cache."""
        cache = ResultCache()
        executor = CountingExecutor({"ok": True, "items": list(range(150))})

        first = await execute_with_middleware("ListEvents", {"q": "cpu"}, executor, cache)
        second = await execute_with_middleware("ListEvents", {"q": "cpu", "offset": 100}, executor, cache)

        assert len(executor.calls) == 1
        assert first["items"] == list(range(100))
        assert first["_pagination"]["hasMore"] is True
        assert second["items"] == list(range(100, 150))
        assert second["_pagination"]["hasMore"] is False
        assert second["_cacheId"] == first["_cacheId"]

    @pytest.mark.asyncio
    async def test_executor_receives_clean_args(self) -> None:
        executor = CountingExecutor({"ok": True})
        await ToolMiddleware().execute("T", {"q": 1, "offset": 5, "maxResults": 3, "_cacheId": "x"}, executor)
        assert executor.calls == [("T", {"q": 1})]

    @pytest.mark.asyncio
    async def test_small_result_not_cached(self) -> None:
        cache = ResultCache()
        executor = CountingExecutor({"ok": True, "items": [1, 2]})

        result = await execute_with_middleware("T", {}, executor, cache)

        assert result == {"ok": True, "items": [1, 2]}
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_executor_failure_becomes_error(self) -> None:
        async def failing(name: str, args: dict[str, Any]) -> Any:
            raise RuntimeError("provider exploded")

        result = await ToolMiddleware().execute("T", {}, failing)
        assert result == {"ok": False, "error": "provider exploded"}

    @pytest.mark.asyncio
    async def test_result_is_compressed(self) -> None:
        executor = CountingExecutor({"ok": True, "monitors": [{"connector": False, "id": "m1"}], "extra": {}})
        result = await ToolMiddleware().execute("T", {}, executor)
        assert result == {"ok": True, "monitors": [{"id": "m1"}]}

    @pytest.mark.asyncio
    async def test_oversized_output_keeps_file_reference(self) -> None:
        """Oversized output becomes an error that still points at the uploaded file."""
        executor = CountingExecutor({"ok": True, "blob": "x" * (HARD_MAX_OUTPUT_CHARS + 10)})

        async def externalizer(output: Any, tool_name: str) -> ExternalizedFile:
            return ExternalizedFile(file_id="file-1", file_name="T_1.json", original_size=1, hint="")

        result = await ToolMiddleware().execute("T", {}, executor, externalizer)

        assert result["ok"] is False
        assert "too large" in result["error"]
        assert result["_file"]["fileId"] == "file-1"
        assert "T_1.json" in result["hint"]

    @pytest.mark.asyncio
    async def test_file_reference_added_to_page(self) -> None:
        executor = CountingExecutor({"ok": True, "items": list(range(120))})

        async def externalizer(output: Any, tool_name: str) -> ExternalizedFile:
            return ExternalizedFile(file_id="file-9", file_name="T_9.json", original_size=1, hint="")

        cache = ResultCache()
        middleware = ToolMiddleware(cache)
        first = await middleware.execute("T", {}, executor, externalizer)
        again = await middleware.execute("T", {"offset": 100}, executor, externalizer)

        assert first["_file"]["fileId"] == "file-9"
        assert again["_file"]["fileId"] == "file-9"
        assert len(executor.calls) == 1


class TestLLMFileExternalizer:
    """Tests for uploading full results to the file store."""

    @pytest.mark.asyncio
    async def test_upload_records_code_file(self) -> None:
        adapter = MockResponsesAdapter()
        tracking = FileTracking()
        externalizer = LLMFileExternalizer(adapter, tracking, clock=lambda: 1.5)

        uploaded = await externalizer({"items": [1, 2]}, "Get Host")

        assert uploaded.file_id == "file-mock-1"
        assert uploaded.file_name == "Get_Host_1500.json"
        assert tracking.code_file_ids == ["file-mock-1"]
        assert tracking.code_container_files["file-mock-1"] == "Get_Host_1500.json"
        assert b'"items"' in adapter.files["file-mock-1"]


# ============================================================================
# Compression
# ============================================================================


METRIC = {
    "value": 50,
    "name": "x",
    "type": "gauge",
    "collectTime": 1,
    "previousCollectTime": 2,
    "previousValue": 45,
    "resetMetricsTime": 0,
    "updated": True,
    "attributes": {"unit": "percent"},
}


class TestCompression:
    """Tests for monitor/metric compression."""

    def test_metric_bookkeeping_removed(self) -> None:
        assert compress_metric(METRIC) == {"value": 50, "attributes": {"unit": "percent"}}

    def test_metric_inside_monitors(self) -> None:
        output = {"monitors": [{"id": "m1", "metrics": {"cpu": METRIC}}]}
        compressed = compress_tool_output(output)
        assert compressed["monitors"][0]["metrics"]["cpu"] == {"value": 50, "attributes": {"unit": "percent"}}

    def test_false_flags_removed_true_kept(self) -> None:
        monitor = {"connector": False, "endpoint": False, "is_endpoint": True}
        assert compress_monitor(monitor) == {"is_endpoint": True}

    def test_empty_objects_collapse(self) -> None:
        assert compress_tool_output({"a": {}, "b": {"c": {}, "d": []}}) == {}

    def test_none_values_kept(self) -> None:
        assert compress_tool_output({"a": None, "b": {}}) == {"a": None}

    def test_idempotent(self) -> None:
        output = {
            "hosts": {
                "h1": {
                    "monitors": [
                        {
                            "id": "m1",
                            "discoveryTime": 5,
                            "connector": False,
                            "metrics": {"cpu": METRIC, "mem": {}},
                        }
                    ]
                }
            }
        }
        once = compress_tool_output(output)
        assert compress_tool_output(once) == once
        assert once["hosts"]["h1"]["monitors"][0] == {
            "id": "m1",
            "metrics": {"cpu": {"value": 50, "attributes": {"unit": "percent"}}},
        }

    def test_non_container_unchanged(self) -> None:
        assert compress_tool_output("plain text") == "plain text"
        assert compress_tool_output(42) == 42

    def test_status_information_deduplicated(self) -> None:
        text = (
            "Result: OK"
            "\n\nMessage:\n====================================\n"
            "Result: OK (again)"
            "\n====================================\n\nConclusion: fine"
        )
        assert deduplicate_status_information(text) == "Result: OK\n\nConclusion: fine"
        assert deduplicate_status_information("no markers") == "no markers"


# ============================================================================
# Output safety
# ============================================================================


class TestOutputSafety:
    """Tests for previews, truncation and the hard ceiling."""

    def test_preview_describes_collections(self) -> None:
        preview = create_output_preview({"ok": True, "items": [{"a": 1}, {"a": 2}], "meta": {"k": 1}})
        assert preview["ok"] is True
        assert preview["items"] == "[Array with 2 items]"
        assert preview["items_sample"] == {"a": 1}
        assert preview["meta"] == "{Object with 1 keys: k}"

    def test_small_output_passes(self) -> None:
        assert ensure_safe_output({"ok": True}, "T") == {"ok": True}

    def test_oversized_without_file(self) -> None:
        result = ensure_safe_output({"blob": "y" * (HARD_MAX_OUTPUT_CHARS + 1)}, "T")
        assert result["ok"] is False
        assert "maxResults" in result["hint"]
        assert "_file" not in result

    def test_truncate_signals_truncation(self) -> None:
        result = truncate_output({"ok": True, "items": list(range(1000))}, 100)
        assert result["truncated"] is True
        assert result["preview"]["items"] == "[Array with 1000 items]"
        assert truncate_output({"ok": True}, 100) == {"ok": True}
