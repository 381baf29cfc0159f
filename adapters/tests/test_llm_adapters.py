"""
Tests for the Responses adapters.
Module: adapters/tests/test_llm_adapters.py
"""

import json
import os

import httpx
import pytest

from adapters.llm import (
    LLMError,
    MockResponsesAdapter,
    OpenAIResponsesAdapter,
    ResponseRequest,
    text_turn,
    tool_call_turn,
)


def sse(*events: dict) -> bytes:
    return "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events).encode()


class TestResponseRequest:
    """Test request payload generation."""

    def test_payload_includes_only_set_fields(self) -> None:
        request = ResponseRequest(
            input=[{"role": "user", "content": "hi"}],
            tool_choice="none",
            previous_response_id="resp_1",
            max_output_tokens=512,
            reasoning_effort="low",
            reasoning_summary="auto",
        )

        payload = request.to_payload("gpt-5", stream=True)

        assert payload == {
            "model": "gpt-5",
            "input": [{"role": "user", "content": "hi"}],
            "stream": True,
            "tool_choice": "none",
            "previous_response_id": "resp_1",
            "max_output_tokens": 512,
            "reasoning": {"effort": "low", "summary": "auto"},
        }

    def test_model_override(self) -> None:
        assert ResponseRequest(model="gpt-5-mini").to_payload("gpt-5")["model"] == "gpt-5-mini"


class TestMockResponsesAdapter:
    """Test MockResponsesAdapter for testing without API calls."""

    @pytest.mark.asyncio
    async def test_replays_scripted_turns(self) -> None:
        adapter = MockResponsesAdapter(
            turns=[text_turn("hello", response_id="r1"), tool_call_turn([{"call_id": "c1", "name": "ListHosts", "arguments": "{}"}])]
        )

        first = [e async for e in adapter.stream(ResponseRequest())]
        second = [e async for e in adapter.stream(ResponseRequest())]

        assert first[0]["response"]["id"] == "r1"
        assert "".join(e["delta"] for e in first if e["type"] == "response.output_text.delta") == "hello"
        assert [e["type"] for e in second].count("response.output_item.added") == 1
        assert len(adapter.stream_requests) == 2

    @pytest.mark.asyncio
    async def test_scripted_exception_is_raised(self) -> None:
        adapter = MockResponsesAdapter(turns=[[{"type": "response.created"}, LLMError("boom", provider="mock")]])

        with pytest.raises(LLMError, match="boom"):
            async for _ in adapter.stream(ResponseRequest()):
                pass
        assert adapter.closed_streams == 1

    @pytest.mark.asyncio
    async def test_file_store_round_trip(self) -> None:
        adapter = MockResponsesAdapter()
        file_id = await adapter.upload_file(b"data", "x.json")
        assert await adapter.download_file(file_id) == b"data"


class TestOpenAIResponsesAdapter:
    """Test the HTTP adapter against a mock transport."""

    def test_requires_api_key(self) -> None:
        old_key = os.environ.pop("OPENAI_API_KEY", None)
        try:
            with pytest.raises(ValueError, match="API key required"):
                OpenAIResponsesAdapter(api_key=None)
        finally:
            if old_key:
                os.environ["OPENAI_API_KEY"] = old_key

    @pytest.mark.asyncio
    async def test_stream_parses_sse_events(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                content=sse(
                    {"type": "response.created", "response": {"id": "resp_1"}},
                    {"type": "response.output_text.delta", "delta": "Hi"},
                )
                + b"data: [DONE]\n\n",
                headers={"content-type": "text/event-stream"},
            )

        adapter = OpenAIResponsesAdapter(api_key="sk-test", transport=httpx.MockTransport(handler))
        events = [e async for e in adapter.stream(ResponseRequest(input=[]))]
        await adapter.aclose()

        assert [e["type"] for e in events] == ["response.created", "response.output_text.delta"]
        assert seen["body"]["stream"] is True

    @pytest.mark.asyncio
    async def test_error_body_is_mapped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400,
                json={
                    "error": {
                        "message": "Your input exceeds the context window of this model.",
                        "type": "invalid_request_error",
                        "param": "input",
                        "code": "context_length_exceeded",
                    }
                },
            )

        adapter = OpenAIResponsesAdapter(api_key="sk-test", transport=httpx.MockTransport(handler))
        with pytest.raises(LLMError) as exc_info:
            async for _ in adapter.stream(ResponseRequest()):
                pass

        error = exc_info.value
        assert error.status_code == 400
        assert error.error_type == "invalid_request_error"
        assert error.param == "input"
        assert error.code == "context_length_exceeded"
        assert "context window" in str(error)

    @pytest.mark.asyncio
    async def test_upload_and_container_listing(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/files") and request.method == "POST":
                return httpx.Response(200, json={"id": "file-1"})
            if request.url.path.endswith("/containers/cntr_1/files"):
                return httpx.Response(200, json={"data": [{"id": "cfile-1", "path": "/mnt/data/a.csv"}]})
            return httpx.Response(404, json={"error": {"message": "not found"}})

        adapter = OpenAIResponsesAdapter(api_key="sk-test", transport=httpx.MockTransport(handler))

        assert await adapter.upload_file(b"{}", "out.json") == "file-1"
        assert await adapter.list_container_files("cntr_1") == [{"id": "cfile-1", "path": "/mnt/data/a.csv"}]
        with pytest.raises(LLMError):
            await adapter.retrieve("missing")
