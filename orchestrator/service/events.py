"""
Typed view over raw Responses API stream events.

The turn engine folds over ``StreamEvent`` values; every raw event maps to
exactly one ``StreamEventKind``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class StreamEventKind(str, Enum):
    """Closed set of stream event variants."""

    REASONING_DELTA = "reasoning_delta"
    TOOL_CALL_ADDED = "tool_call_added"
    TOOL_CALL_ARGS_DELTA = "tool_call_args_delta"
    TOOL_CALL_DONE = "tool_call_done"
    TEXT_DELTA = "text_delta"
    FILE_ADDED = "file_added"
    FILE_DONE = "file_done"
    ANNOTATION_ADDED = "annotation_added"
    CODE_INTERPRETER = "code_interpreter"
    COMPLETED = "completed"
    ERROR = "error"
    INCOMPLETE = "incomplete"
    OTHER = "other"


FILE_ITEM_TYPES = ("output_file", "output_image")


@dataclass
class StreamEvent:
    """One parsed stream event."""

    kind: StreamEventKind
    type: str
    delta: str = ""
    output_index: Optional[int] = None
    item: Dict[str, Any] = field(default_factory=dict)
    annotation: Dict[str, Any] = field(default_factory=dict)
    container_id: Optional[str] = None
    reason: Optional[str] = None
    response_id: Optional[str] = None
    error: Optional[Any] = None
    reasoning_variant: Optional[str] = None


def _response_id(raw: Dict[str, Any]) -> Optional[str]:
    response = raw.get("response")
    if isinstance(response, dict) and isinstance(response.get("id"), str) and response["id"]:
        return response["id"]
    return None


def _incomplete_reason(raw: Dict[str, Any]) -> str:
    if raw.get("reason"):
        return str(raw["reason"])
    response = raw.get("response") if isinstance(raw.get("response"), dict) else {}
    details = response.get("incomplete_details")
    if isinstance(details, dict) and details.get("reason"):
        return str(details["reason"])
    return str(response.get("status_reason") or "unknown")


def _output_item_kind(item: Dict[str, Any], done: bool) -> StreamEventKind:
    item_type = item.get("type")
    if item_type == "function_call":
        return StreamEventKind.TOOL_CALL_DONE if done else StreamEventKind.TOOL_CALL_ADDED
    if item_type in FILE_ITEM_TYPES:
        return StreamEventKind.FILE_DONE if done else StreamEventKind.FILE_ADDED
    if item_type == "code_interpreter_call":
        return StreamEventKind.CODE_INTERPRETER
    return StreamEventKind.OTHER


def parse_stream_event(raw: Any) -> StreamEvent:
    """
    Classify a raw stream event.

    Args:
        raw: Decoded event payload (a dict with a ``type`` key)

    Returns:
        The typed event; malformed payloads become ``OTHER``
    """
    if not isinstance(raw, dict):
        return StreamEvent(kind=StreamEventKind.OTHER, type="<no-type>")

    event_type = raw.get("type") if isinstance(raw.get("type"), str) else "<no-type>"
    event = StreamEvent(kind=StreamEventKind.OTHER, type=event_type, response_id=_response_id(raw))

    output_index = raw.get("output_index")
    if isinstance(output_index, int):
        event.output_index = output_index

    delta = raw.get("delta")
    if isinstance(delta, str):
        event.delta = delta

    if event_type in ("response.reasoning_summary_text.delta", "response.reasoning_text.delta"):
        event.kind = StreamEventKind.REASONING_DELTA
        event.reasoning_variant = "summary" if "summary" in event_type else "detailed"

    elif event_type in ("response.output_item.added", "response.output_item.done"):
        item = raw.get("item") if isinstance(raw.get("item"), dict) else {}
        event.item = item
        event.kind = _output_item_kind(item, done=event_type.endswith(".done"))
        if item.get("container_id"):
            event.container_id = item["container_id"]

    elif event_type == "response.function_call_arguments.delta":
        event.kind = StreamEventKind.TOOL_CALL_ARGS_DELTA

    elif event_type == "response.output_text.delta":
        event.kind = StreamEventKind.TEXT_DELTA

    elif event_type == "response.output_text.annotation.added":
        event.kind = StreamEventKind.ANNOTATION_ADDED
        if isinstance(raw.get("annotation"), dict):
            event.annotation = raw["annotation"]

    elif event_type.startswith("response.code_interpreter_call"):
        event.kind = StreamEventKind.CODE_INTERPRETER
        event.container_id = raw.get("container_id")

    elif event_type == "response.completed":
        event.kind = StreamEventKind.COMPLETED

    elif event_type in ("response.error", "error", "response.failed"):
        event.kind = StreamEventKind.ERROR
        response = raw.get("response") if isinstance(raw.get("response"), dict) else {}
        event.error = raw.get("error") or response.get("error") or raw.get("message")

    elif event_type == "response.incomplete":
        event.kind = StreamEventKind.INCOMPLETE
        event.reason = _incomplete_reason(raw)

    return event
