"""
Tests for function call routing and the tool catalog.
"""

import json
from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock

import pytest

from mcp_gateway.service.config import GatewaySettings
from mcp_gateway.service.prometheus import PROMQL_TOOL_NAME
from mcp_gateway.service.registry import ToolRegistry
from orchestrator.service.config import OrchestratorConfig
from orchestrator.service.function_calls import CallContext, FunctionCallProcessor, parse_json_strings
from orchestrator.service.middleware import ResultCache, ToolMiddleware
from orchestrator.service.models import FunctionCall
from orchestrator.service.platform import BufferedChatPlatform
from orchestrator.service.tools import build_tools_array, log_tool_warnings


def call(name: str, arguments: Any = "{}", call_id: str = "call_abc") -> FunctionCall:
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return FunctionCall(call_id=call_id, name=name, arguments=arguments)


def output_of(items: list) -> Dict[str, Any]:
    assert len(items) == 1
    assert items[0]["type"] == "function_call_output"
    return json.loads(items[0]["output"])


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry([], settings=GatewaySettings(prometheus_url=None))


@pytest.fixture
def processor(registry: ToolRegistry) -> FunctionCallProcessor:
    return FunctionCallProcessor(registry, ToolMiddleware(ResultCache()))


class TestParseJsonStrings:
    """Tests for decoding JSON-encoded strings inside tool results."""

    def test_nested(self) -> None:
        value = {"outer": '{"inner": "[1, 2]"}', "plain": "text", "list": ['{"a": 1}']}
        assert parse_json_strings(value) == {"outer": {"inner": [1, 2]}, "plain": "text", "list": [{"a": 1}]}

    def test_invalid_json_kept(self) -> None:
        assert parse_json_strings("{not json}") == "{not json}"


class TestFunctionCallProcessor:
    """Tests for routing calls to their handlers."""

    @pytest.mark.asyncio
    async def test_reaction_strips_colons(self, processor: FunctionCallProcessor) -> None:
        platform = BufferedChatPlatform()
        items = await processor.process(call("platform_add_reaction", {"emoji": ":white_check_mark:"}), CallContext(platform))

        assert items[0]["call_id"] == "call_abc"
        assert output_of(items) == {"ok": True}
        assert platform.reactions == ["white_check_mark"]

    @pytest.mark.asyncio
    async def test_reaction_default(self, processor: FunctionCallProcessor) -> None:
        platform = BufferedChatPlatform()
        await processor.process(call("platform_add_reaction", {}), CallContext(platform))
        assert platform.reactions == ["thumbsup"]

    @pytest.mark.asyncio
    async def test_reply_requires_text(self, processor: FunctionCallProcessor) -> None:
        platform = BufferedChatPlatform()
        items = await processor.process(call("platform_add_reply", {"text": "  "}), CallContext(platform))

        assert output_of(items) == {"ok": False, "error": "No text provided"}
        assert platform.messages == []

    @pytest.mark.asyncio
    async def test_non_object_arguments(self, processor: FunctionCallProcessor) -> None:
        items = await processor.process(call("ListHosts", "[1, 2]"), CallContext(BufferedChatPlatform()))
        assert output_of(items)["error"].startswith("Invalid arguments")

    @pytest.mark.asyncio
    async def test_unknown_hosts(self, processor: FunctionCallProcessor) -> None:
        items = await processor.process(call("GetMetrics", {"hosts": ["ghost"]}), CallContext(BufferedChatPlatform()))

        output = output_of(items)
        assert output["ok"] is False
        assert "No matching hosts found" in output["error"]

    @pytest.mark.asyncio
    async def test_registry_result_wrapped(self, registry: ToolRegistry) -> None:
        registry.execute = AsyncMock(return_value='["a", "b"]')
        processor = FunctionCallProcessor(registry, ToolMiddleware(ResultCache()))

        items = await processor.process(call("Custom", {"hosts": ["h"]}), CallContext(BufferedChatPlatform()))

        assert output_of(items) == {"ok": True, "result": ["a", "b"]}
        registry.execute.assert_awaited_once_with("Custom", {"hosts": ["h"]})

    @pytest.mark.asyncio
    async def test_promql_without_backend(self, processor: FunctionCallProcessor) -> None:
        items = await processor.process(call(PROMQL_TOOL_NAME, {"query": "up"}), CallContext(BufferedChatPlatform()))

        output = output_of(items)
        assert output["ok"] is False
        assert "Prometheus URL not configured" in output["error"]

    @pytest.mark.asyncio
    async def test_hard_ceiling(self, registry: ToolRegistry) -> None:
        middleware = MagicMock()
        middleware.execute = AsyncMock(return_value={"ok": True, "data": "x" * 1_100_000})
        processor = FunctionCallProcessor(registry, middleware)

        items = await processor.process(call("Big", {"hosts": ["h"]}), CallContext(BufferedChatPlatform()))

        output = output_of(items)
        assert output["ok"] is False
        assert output["error"] == "Output exceeded maximum size limit"


class TestToolCatalog:
    """Tests for the advertised tool list."""

    def test_catalog_order(self, registry: ToolRegistry) -> None:
        tools = build_tools_array(registry, OrchestratorConfig(enable_web_search=True), ["file-1"])
        kinds = [tool.get("name") or tool["type"] for tool in tools]

        assert kinds == [
            "ListHosts",
            "SearchHost",
            "code_interpreter",
            "web_search_preview",
            "platform_add_reaction",
            "platform_add_reply",
        ]
        assert tools[2]["container"] == {"type": "auto", "file_ids": ["file-1"]}

    def test_promql_advertised_when_configured(self) -> None:
        registry = ToolRegistry([], settings=GatewaySettings(prometheus_url="http://prom:9090"))
        tools = build_tools_array(registry, OrchestratorConfig(enable_code_interpreter=False))
        assert [tool["name"] for tool in tools][2] == PROMQL_TOOL_NAME

    @pytest.mark.asyncio
    async def test_warning_without_providers(self, registry: ToolRegistry) -> None:
        platform = BufferedChatPlatform()
        await log_tool_warnings(registry, platform)
        assert platform.messages[0]["text"].startswith(":warning:")
