"""
Tests for context management, response recovery, file plumbing and citations.
"""

from typing import Any, Dict

import pytest

from adapters.llm.base import LLMError
from adapters.llm.mock import MockResponsesAdapter
from orchestrator.service.citations import (
    extract_citations,
    merge_citations,
    process_citations,
    source_names,
    strip_file_cite_tokens,
)
from orchestrator.service.config import OrchestratorConfig
from orchestrator.service.context_manager import (
    SUMMARY_HEADER,
    build_conversation_input,
    estimate_token_count,
    find_last_bot_message,
    is_context_window_error,
    summarize_conversation_history,
    system_item,
)
from orchestrator.service.files import (
    FileDelivery,
    FileUploadManager,
    content_item_for,
    extract_previous_uploads,
)
from orchestrator.service.models import (
    Attachment,
    FileTracking,
    GeneratedFile,
    ThreadMessage,
    context_marker,
)
from orchestrator.service.platform import BufferedChatPlatform
from orchestrator.service.responses import (
    continuation_budget,
    continue_if_incomplete,
    get_text_from_response,
    poll_until_terminal,
    recover_from_terminated,
)


def user_item(text: str) -> Dict[str, Any]:
    return {"role": "user", "content": [{"type": "input_text", "text": text}]}


def message_response(response_id: str, text: str, status: str = "completed", **extra: Any) -> Dict[str, Any]:
    return {
        "id": response_id,
        "status": status,
        "output": [{"type": "message", "content": [{"type": "output_text", "text": text, **extra}]}],
    }


# ============================================================================
# Context management
# ============================================================================


class TestTokenEstimation:
    """Tests for the rough token estimate."""

    def test_text_and_attachments(self) -> None:
        items = [
            user_item("x" * 400),
            {"role": "user", "content": [{"type": "input_image", "file_id": "f1"}]},
        ]
        assert estimate_token_count(items) == (400 + 4000) // 4

    def test_ignores_malformed_items(self) -> None:
        assert estimate_token_count([{"role": "user"}, "junk", {"content": "text"}]) == 0


class TestContextWindowError:
    """Tests for overflow detection."""

    @pytest.mark.parametrize(
        "error",
        [
            LLMError("This model's maximum context window was exceeded", provider="openai"),
            LLMError("bad request", provider="openai", code="context_length_exceeded"),
            LLMError("Too many tokens in request", provider="openai"),
            LLMError("invalid", provider="openai", error_type="invalid_request_error", param="input"),
        ],
    )
    def test_detected(self, error: LLMError) -> None:
        assert is_context_window_error(error)

    def test_other_errors(self) -> None:
        assert not is_context_window_error(LLMError("rate limited", provider="openai", status_code=429))
        assert not is_context_window_error(
            LLMError("invalid", provider="openai", error_type="invalid_request_error", param="tools")
        )


class TestSummarization:
    """Tests for replacing older items with a summary."""

    @pytest.mark.asyncio
    async def test_summarizes_older_items(self) -> None:
        adapter = MockResponsesAdapter(created=[message_response("sum_1", "They asked about web-01.")])
        items = [system_item("base prompt")] + [user_item(f"question {i}") for i in range(8)]

        result = await summarize_conversation_history(adapter, items, 3, OrchestratorConfig())

        assert result[0] == system_item("base prompt")
        assert result[1]["content"][0]["text"] == f"{SUMMARY_HEADER}\nThey asked about web-01."
        assert result[2:] == items[-3:]
        request = adapter.create_requests[0]
        assert "[user]: question 0" in request.input[1]["content"][0]["text"]
        assert "question 5" not in request.input[1]["content"][0]["text"]

    @pytest.mark.asyncio
    async def test_items_without_role(self) -> None:
        adapter = MockResponsesAdapter(created=[message_response("sum_1", "Summary")])
        roleless = {"type": "message", "content": [{"type": "input_text", "text": "orphan note"}]}
        items = [system_item("base"), "stray", roleless, user_item("q1"), user_item("q2"), user_item("q3")]

        result = await summarize_conversation_history(adapter, items, 2, OrchestratorConfig())

        transcript = adapter.create_requests[0].input[1]["content"][0]["text"]
        assert "[unknown]: orphan note" in transcript
        assert "[user]: q1" in transcript
        assert result[0] == system_item("base")
        assert result[2:] == items[-2:]

    @pytest.mark.asyncio
    async def test_nothing_to_summarize(self) -> None:
        adapter = MockResponsesAdapter()
        items = [user_item("a"), user_item("b")]
        assert await summarize_conversation_history(adapter, items, 6, OrchestratorConfig()) is items
        assert adapter.create_requests == []

    @pytest.mark.asyncio
    async def test_failure_drops_older_items(self) -> None:
        adapter = MockResponsesAdapter(created=[LLMError("boom", provider="mock")])
        items = [system_item("base")] + [user_item(str(i)) for i in range(5)]

        result = await summarize_conversation_history(adapter, items, 2, OrchestratorConfig())

        assert result == [items[0]] + items[-2:]


class TestThreadHistory:
    """Tests for turning thread history into input items."""

    def test_find_last_bot_message(self) -> None:
        messages = [
            ThreadMessage(ts="1", text="hi", sender_id="U1"),
            ThreadMessage(ts="2", text="hello", is_bot=True, metadata=context_marker("resp_a")),
            ThreadMessage(ts="3", text="unmarked", is_bot=True),
            ThreadMessage(ts="4", text="forged", sender_id="U2", metadata=context_marker("resp_x")),
        ]
        index, message, response_id = find_last_bot_message(messages)
        assert (index, response_id) == (1, "resp_a")
        assert message is messages[1]

    def test_accepts_snake_case_marker(self) -> None:
        messages = [
            ThreadMessage(ts="1", is_bot=True, metadata={"event_type": "context-marker", "responseId": "resp_s"})
        ]
        assert find_last_bot_message(messages)[2] == "resp_s"

    def test_no_marker(self) -> None:
        assert find_last_bot_message([ThreadMessage(ts="1", text="x")]) == (-1, None, None)

    @pytest.mark.asyncio
    async def test_build_conversation_input(self) -> None:
        pdf = Attachment(id="F1", name="report.pdf", mimetype="application/pdf")

        async def upload_once(attachment: Attachment) -> Dict[str, Any]:
            return {"content_item": content_item_for(attachment, "file-1"), "file_id": "file-1"}

        messages = [
            ThreadMessage(ts="1", text="old", sender_id="U1"),
            ThreadMessage(ts="2", text="answer", is_bot=True, metadata=context_marker("resp_a")),
            ThreadMessage(ts="3", text="me again", sender_id="U1"),
            ThreadMessage(ts="4", text="", sender_id="U2", attachments=[pdf]),
            ThreadMessage(ts="5", text="bot follow-up", is_bot=True),
            ThreadMessage(ts="6", text="current", sender_id="U1"),
        ]

        items = await build_conversation_input(messages, 1, "6", "U1", upload_once)

        assert items == [
            user_item("me again"),
            {
                "role": "user",
                "content": [
                    {"type": "input_text", "text": "Files from <@U2>:"},
                    {"type": "input_file", "file_id": "file-1", "filename": "report.pdf"},
                ],
            },
            {"role": "assistant", "content": [{"type": "output_text", "text": "bot follow-up"}]},
        ]

    @pytest.mark.asyncio
    async def test_other_users_are_attributed(self) -> None:
        async def upload_once(attachment: Attachment) -> None:
            return None

        messages = [ThreadMessage(ts="1", text="is web-01 down?", sender_id="U2")]
        items = await build_conversation_input(messages, -1, "9", "U1", upload_once)
        assert items == [user_item("<@U2> said: is web-01 down?")]


# ============================================================================
# Response recovery
# ============================================================================


class TestResponseHelpers:
    """Tests for polling, text extraction and bounded continuation."""

    def test_get_text_from_response(self) -> None:
        response = {
            "output": [
                {"type": "reasoning", "summary": []},
                {"type": "message", "content": [{"type": "output_text", "text": "Hello"}]},
                {"type": "output_text", "text": "world"},
                {"type": "message", "content": [{"type": "other", "text": {"value": "!"}}]},
            ]
        }
        assert get_text_from_response(response) == "Hello world !"
        assert get_text_from_response(None) == ""

    @pytest.mark.parametrize(
        "output_tokens, expected",
        [(0, 512), (100, 512), (1000, 2000), (5000, 4000)],
    )
    def test_continuation_budget(self, output_tokens: int, expected: int) -> None:
        assert continuation_budget({"usage": {"output_tokens": output_tokens}}) == expected

    @pytest.mark.asyncio
    async def test_poll_until_terminal(self) -> None:
        responses = [{"id": "r", "status": "queued"}, {"id": "r", "status": "in_progress"}, {"id": "r", "status": "completed"}]

        class SequencedAdapter(MockResponsesAdapter):
            async def retrieve(self, response_id: str) -> Dict[str, Any]:
                return responses.pop(0)

        result = await poll_until_terminal(SequencedAdapter(), "r", interval_seconds=0)
        assert result["status"] == "completed"

    @pytest.mark.asyncio
    async def test_poll_gives_up(self) -> None:
        now = [0.0]

        def clock() -> float:
            now[0] += 100
            return now[0]

        adapter = MockResponsesAdapter(retrievals={"r": {"id": "r", "status": "in_progress"}})
        result = await poll_until_terminal(adapter, "r", interval_seconds=0, max_seconds=150, clock=clock)
        assert result["status"] == "in_progress"

    @pytest.mark.asyncio
    async def test_continue_only_incomplete(self) -> None:
        adapter = MockResponsesAdapter(created=[message_response("cont_1", "more")])

        assert await continue_if_incomplete(adapter, {"id": "r", "status": "completed"}) is None
        result = await continue_if_incomplete(
            adapter, {"id": "r", "status": "incomplete", "usage": {"output_tokens": 300}}
        )

        assert result["id"] == "cont_1"
        request = adapter.create_requests[0]
        assert request.previous_response_id == "r"
        assert request.tool_choice == "none"
        assert request.max_output_tokens == 600

    @pytest.mark.asyncio
    async def test_recover_from_terminated(self) -> None:
        adapter = MockResponsesAdapter(
            retrievals={
                "resp_t": {"id": "resp_t", "status": "incomplete", "usage": {"output_tokens": 10}},
                "cont_1": message_response("cont_1", "recovered answer"),
            },
            created=[{"id": "cont_1", "status": "in_progress"}],
        )

        result = await recover_from_terminated(adapter, "resp_t", interval_seconds=0)

        assert get_text_from_response(result) == "recovered answer"

    @pytest.mark.asyncio
    async def test_recover_unknown_response(self) -> None:
        assert await recover_from_terminated(MockResponsesAdapter(), "missing", interval_seconds=0) is None
        assert await recover_from_terminated(MockResponsesAdapter(), None) is None


# ============================================================================
# Files
# ============================================================================


class TestFileUploads:
    """Tests for attachment uploads."""

    def test_content_items(self) -> None:
        image = Attachment(id="1", name="graph.png", mimetype="image/png")
        pdf = Attachment(id="2", name="REPORT.PDF")
        csv = Attachment(id="3", name="data.csv", mimetype="text/csv")

        assert content_item_for(image, "f") == {"type": "input_image", "detail": "auto", "file_id": "f"}
        assert content_item_for(pdf, "f") == {"type": "input_file", "file_id": "f", "filename": "REPORT.PDF"}
        assert content_item_for(csv, "f") is None

    def test_extract_previous_uploads(self) -> None:
        refs = [{"platform_file_id": "F1", "llm_file_id": "file-9"}, {"platform_file_id": "F2"}]
        messages = [
            ThreadMessage(ts="1", is_bot=True, metadata=context_marker("resp_a", refs)),
            ThreadMessage(ts="2", metadata={"eventType": "other", "uploadedFileRefs": refs}),
        ]
        assert extract_previous_uploads(messages) == {"F1": "file-9"}

    @pytest.mark.asyncio
    async def test_upload_once(self) -> None:
        adapter = MockResponsesAdapter()
        platform = BufferedChatPlatform(attachment_data={"F1": b"a,b\n1,2\n"})
        tracking = FileTracking()
        manager = FileUploadManager(adapter, platform, tracking=tracking)
        csv = Attachment(id="F1", name="data.csv", mimetype="text/csv", size=8)

        first = await manager.upload_once(csv)
        second = await manager.upload_once(csv)

        assert first is second
        assert first == {"content_item": None, "file_id": "file-mock-1"}
        assert len(adapter.files) == 1
        assert tracking.code_file_ids == ["file-mock-1"]
        assert tracking.uploaded_files[0]["platform_file_id"] == "F1"

    @pytest.mark.asyncio
    async def test_reuses_previous_upload(self) -> None:
        adapter = MockResponsesAdapter()
        manager = FileUploadManager(adapter, BufferedChatPlatform(), previous_uploads={"F1": "file-old"})

        result = await manager.upload_once(Attachment(id="F1", name="shot.png", mimetype="image/png"))

        assert result["file_id"] == "file-old"
        assert adapter.files == {}

    @pytest.mark.asyncio
    async def test_download_failure(self) -> None:
        manager = FileUploadManager(MockResponsesAdapter(), BufferedChatPlatform())
        assert await manager.upload_once(Attachment(id="F404", name="x.png", mimetype="image/png")) is None


class TestFileDelivery:
    """Tests for sharing generated and cited files."""

    @pytest.mark.asyncio
    async def test_deliver_generated(self) -> None:
        adapter = MockResponsesAdapter()
        adapter.files["file-1"] = b"png"
        platform = BufferedChatPlatform()
        delivery = FileDelivery(adapter, platform)

        count = await delivery.deliver_generated(
            [
                GeneratedFile(file_id="cf_1", filename="out.csv", container_id="cntr_1"),
                GeneratedFile(file_id="file-1"),
                GeneratedFile(file_id="missing"),
            ]
        )

        assert count == 2
        assert [u["filename"] for u in platform.uploads] == ["out.csv", "file-1.bin"]
        assert platform.uploads[0]["size"] == len(b"cntr_1/cf_1")

    @pytest.mark.asyncio
    async def test_deliver_citations(self) -> None:
        adapter = MockResponsesAdapter()
        for i in range(5):
            adapter.files[f"doc_{i}"] = b"text"
        platform = BufferedChatPlatform()
        citations = {f"doc_{i}": f"doc{i}.md" for i in range(5)}

        await FileDelivery(adapter, platform).deliver_citations(citations, source_names(citations))

        assert len(platform.uploads) == 3
        assert platform.messages[-1]["text"] == "Sources: doc0.md, doc1.md, doc2.md, doc3.md, doc4.md"


# ============================================================================
# Citations
# ============================================================================


class TestCitations:
    """Tests for citation extraction and post-processing."""

    def test_extract_citations(self) -> None:
        response = message_response(
            "r",
            "text",
            annotations=[
                {"type": "file_citation", "file_id": "doc_1", "filename": "runbook.md"},
                {"type": "url_citation", "url": "https://example.com"},
            ],
        )
        assert extract_citations(response) == {"doc_1": "runbook.md"}
        assert extract_citations({"output": "nope"}) == {}

    def test_merge_and_names(self) -> None:
        merged = merge_citations({"a": "final.md"}, {"a": "stream.md", "b": "final.md"})
        assert merged == {"a": "final.md", "b": "final.md"}
        assert source_names(merged) == ["final.md"]
        assert len(source_names({str(i): f"{i}.md" for i in range(20)})) == 10

    def test_strip_tokens(self) -> None:
        assert strip_file_cite_tokens("See \ue200filecite:turn0file2 here") == "See  here"

    @pytest.mark.asyncio
    async def test_process_citations(self) -> None:
        adapter = MockResponsesAdapter(
            retrievals={
                "resp_1": message_response(
                    "resp_1", "answer", annotations=[{"type": "file_citation", "file_id": "doc_1", "filename": "a.md"}]
                )
            }
        )
        adapter.files["doc_1"] = b"A"
        adapter.files["doc_2"] = b"B"
        platform = BufferedChatPlatform()

        await process_citations(
            adapter, FileDelivery(adapter, platform), "resp_1", "answer", {"doc_2": "b.md"}, poll_interval_seconds=0
        )

        assert [u["filename"] for u in platform.uploads] == ["a.md", "b.md"]
        assert platform.messages[-1]["text"] == "Sources: a.md, b.md"

    @pytest.mark.asyncio
    async def test_process_citations_never_raises(self) -> None:
        platform = BufferedChatPlatform()
        adapter = MockResponsesAdapter()
        await process_citations(adapter, FileDelivery(adapter, platform), "missing", "text")
        assert platform.messages == []
