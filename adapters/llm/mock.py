"""
Mock Responses adapter for testing and development.

Replays scripted event sequences instead of calling a real API, and keeps
an in-memory file store.
"""

from typing import Any, AsyncIterator, Dict, List, Optional, Union

import anyio

from adapters.llm.base import LLMError, ResponseRequest, ResponsesAdapter

Script = List[Union[Dict[str, Any], Exception]]


def text_turn(text: str, response_id: str = "resp_mock", chunk_size: int = 20) -> Script:
    """Build a scripted turn that streams ``text`` and completes."""
    events: Script = [{"type": "response.created", "response": {"id": response_id}}]
    for start in range(0, len(text), chunk_size):
        events.append({"type": "response.output_text.delta", "delta": text[start:start + chunk_size]})
    events.append({"type": "response.completed", "response": {"id": response_id, "status": "completed"}})
    return events


def tool_call_turn(
    calls: List[Dict[str, str]], response_id: str = "resp_mock_tools"
) -> Script:
    """Build a scripted turn requesting function calls (``call_id``, ``name``, ``arguments``)."""
    events: Script = [{"type": "response.created", "response": {"id": response_id}}]
    for index, call in enumerate(calls):
        item = {"type": "function_call", "call_id": call["call_id"], "name": call["name"], "arguments": ""}
        events.append({"type": "response.output_item.added", "output_index": index, "item": item})
        events.append(
            {"type": "response.function_call_arguments.delta", "output_index": index, "delta": call["arguments"]}
        )
        events.append({"type": "response.output_item.done", "output_index": index, "item": dict(item)})
    events.append({"type": "response.completed", "response": {"id": response_id, "status": "completed"}})
    return events


class MockResponsesAdapter(ResponsesAdapter):
    """
    Mock Responses adapter.

    Each ``stream`` call consumes the next scripted turn. A script entry that
    is an exception is raised at that point of the stream.
    """

    def __init__(
        self,
        model: str = "mock-model",
        api_key: Optional[str] = None,
        turns: Optional[List[Script]] = None,
        created: Optional[List[Union[Dict[str, Any], Exception]]] = None,
        retrievals: Optional[Dict[str, Dict[str, Any]]] = None,
        container_files: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        delay_ms: int = 0,
        **kwargs: Any,
    ) -> None:
        """
        Initialize mock adapter.

        Args:
            model: Mock model identifier
            api_key: Not used, but accepted for interface compatibility
            turns: Scripted event sequences, one per ``stream`` call
            created: Results for successive ``create`` calls
            retrievals: Response objects returned by ``retrieve``
            container_files: Container listings by container id
            delay_ms: Simulated latency between events
            **kwargs: Additional configuration
        """
        super().__init__(model, api_key, **kwargs)
        self.turns = list(turns or [])
        self.created = list(created or [])
        self.retrievals = dict(retrievals or {})
        self.container_files = dict(container_files or {})
        self.delay_ms = delay_ms
        self.files: Dict[str, bytes] = {}
        self.stream_requests: List[ResponseRequest] = []
        self.create_requests: List[ResponseRequest] = []
        self.closed_streams = 0

    async def stream(self, request: ResponseRequest) -> AsyncIterator[Dict[str, Any]]:
        """Replay the next scripted turn."""
        self.stream_requests.append(request)
        if not self.turns:
            raise LLMError("No scripted turn left", provider="mock")

        script = self.turns.pop(0)
        try:
            for event in script:
                if self.delay_ms:
                    await anyio.sleep(self.delay_ms / 1000.0)
                if isinstance(event, Exception):
                    raise event
                yield event
        finally:
            self.closed_streams += 1

    async def create(self, request: ResponseRequest) -> Dict[str, Any]:
        """Return the next scripted non-streaming result."""
        self.create_requests.append(request)
        if not self.created:
            raise LLMError("No scripted response left", provider="mock")
        result = self.created.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def retrieve(self, response_id: str) -> Dict[str, Any]:
        if response_id not in self.retrievals:
            raise LLMError(f"Unknown response {response_id}", provider="mock", status_code=404)
        return self.retrievals[response_id]

    async def upload_file(self, data: bytes, filename: str, purpose: str = "user_data") -> str:
        file_id = f"file-mock-{len(self.files) + 1}"
        self.files[file_id] = data
        return file_id

    async def download_file(self, file_id: str) -> bytes:
        if file_id not in self.files:
            raise LLMError(f"Unknown file {file_id}", provider="mock", status_code=404)
        return self.files[file_id]

    async def list_container_files(self, container_id: str) -> List[Dict[str, Any]]:
        return list(self.container_files.get(container_id, []))

    async def download_container_file(self, container_id: str, file_id: str) -> bytes:
        return self.files.get(file_id, f"{container_id}/{file_id}".encode())
