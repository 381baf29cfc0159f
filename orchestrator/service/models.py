"""
Pydantic models for the Orchestrator service.

Defines the chat-platform message shapes, the result of one streamed turn,
per-message conversation state and file tracking.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

CONTEXT_MARKER_EVENT = "context-marker"


# ============================================================================
# Enums
# ============================================================================


class TurnStatus(str, Enum):
    """How a streamed turn ended."""

    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    ABORTED = "aborted"


class IncompleteReason(str, Enum):
    """Reasons set by the engine's own safety cutoffs."""

    OUTPUT_TOO_LONG = "output_too_long"
    REPETITIVE_OUTPUT = "repetitive_output"


# ============================================================================
# Chat platform shapes
# ============================================================================


class Attachment(BaseModel):
    """A file attached to a chat message."""

    id: str = Field(..., description="Platform file id")
    name: str = Field(..., description="File name")
    mimetype: str = Field(default="application/octet-stream", description="MIME type")
    url: Optional[str] = Field(default=None, description="Download URL, if the platform provides one")
    size: Optional[int] = Field(default=None, description="Size in bytes")


class ThreadMessage(BaseModel):
    """A prior message of a conversation thread."""

    ts: str = Field(..., description="Message timestamp (platform id)")
    text: str = Field(default="", description="Message text")
    sender_id: Optional[str] = Field(default=None, description="Sending user, when human")
    is_bot: bool = Field(default=False, description="Whether this assistant posted the message")
    attachments: List[Attachment] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = Field(
        default=None, description="Metadata attached to the message (context marker)"
    )


class SenderProfile(BaseModel):
    """What is known about the sender of a message."""

    display_name: Optional[str] = None
    real_name: Optional[str] = None
    timezone: Optional[str] = None


class IncomingMessage(BaseModel):
    """A user message the orchestrator must answer."""

    channel: str = Field(..., description="Channel id")
    thread_id: str = Field(..., description="Thread id")
    text: str = Field(..., description="Message text")
    sender_id: str = Field(..., description="Sending user id")
    message_ts: str = Field(..., description="Message timestamp")
    attachments: List[Attachment] = Field(default_factory=list)
    sender: SenderProfile = Field(default_factory=SenderProfile)


# ============================================================================
# Turn results
# ============================================================================


class FunctionCall(BaseModel):
    """A tool call requested by the model."""

    call_id: str
    name: str
    arguments: str = ""
    output_index: Optional[int] = None


class GeneratedFile(BaseModel):
    """A file produced by the model (code_interpreter output)."""

    file_id: str
    filename: Optional[str] = None
    container_id: Optional[str] = None


class TurnDiagnostics(BaseModel):
    """Counters collected while consuming a stream."""

    started_writing: bool = False
    full_text_length: int = 0
    event_counters: Dict[str, int] = Field(default_factory=dict)
    unknown_event_types: List[Dict[str, Any]] = Field(default_factory=list)
    used_previous_response_id: Optional[str] = None
    used_tool_choice: str = "auto"


class TurnResult(BaseModel):
    """Outcome of one streamed call to the model."""

    response_id: Optional[str] = None
    function_calls: List[FunctionCall] = Field(default_factory=list)
    text: str = ""
    files: List[GeneratedFile] = Field(default_factory=list)
    status: TurnStatus = TurnStatus.COMPLETED
    incomplete_reason: Optional[str] = None
    saw_completed: bool = False
    had_text: bool = False
    stream_citations: Dict[str, str] = Field(default_factory=dict)
    debug: TurnDiagnostics = Field(default_factory=TurnDiagnostics)


# ============================================================================
# Conversation state
# ============================================================================


@dataclass
class FileTracking:
    """Files made available to code_interpreter while handling one message."""

    uploaded_files: List[Dict[str, Any]] = field(default_factory=list)
    code_file_ids: List[str] = field(default_factory=list)
    code_container_files: Dict[str, str] = field(default_factory=dict)

    def add_code_file(self, file_id: str, file_name: str) -> None:
        if file_id not in self.code_file_ids:
            self.code_file_ids.append(file_id)
        self.code_container_files[file_id] = file_name

    def record_tool_output(self, tool_name: str, file_id: str, file_name: str, size: int) -> None:
        self.uploaded_files.append({"tool_output": tool_name, "file_id": file_id, "size": size})
        self.add_code_file(file_id, file_name)


@dataclass
class ConversationState:
    """State carried across the turns of one incoming message."""

    input: List[Dict[str, Any]] = field(default_factory=list)
    previous_response_id: Optional[str] = None
    last_seen_response_id: Optional[str] = None
    final_response_id: Optional[str] = None
    any_text_streamed: bool = False
    saw_any_incomplete: bool = False
    context_summarized: bool = False
    tool_choice: Optional[str] = None
    last_full_text: str = ""
    iteration: int = 0
    stream_citations: Dict[str, str] = field(default_factory=dict)


def context_marker(response_id: Optional[str], uploaded_files: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Message metadata letting a later message resume the conversation."""
    return {
        "eventType": CONTEXT_MARKER_EVENT,
        "responseId": response_id,
        "uploadedFileRefs": list(uploaded_files or []),
    }


# ============================================================================
# HTTP API shapes
# ============================================================================


class ChatRequest(BaseModel):
    """Body of ``POST /chat``."""

    message: IncomingMessage
    history: List[ThreadMessage] = Field(
        default_factory=list, description="Prior thread messages, oldest first"
    )
    attachment_data: Dict[str, str] = Field(
        default_factory=dict, description="Base64 attachment content by attachment id"
    )


class ChatResponse(BaseModel):
    """Everything posted to the thread while answering a chat request."""

    response_id: Optional[str] = None
    iterations: int = 0
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    statuses: List[Dict[str, Any]] = Field(default_factory=list)
    titles: List[str] = Field(default_factory=list)
    reactions: List[str] = Field(default_factory=list)
    uploads: List[Dict[str, Any]] = Field(default_factory=list)
    suggested_prompts: List[Dict[str, Any]] = Field(default_factory=list)


class HealthCheckResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="healthy or degraded")
    version: str = Field(..., description="Service version")
    providers: int = Field(default=0, description="Connected tool providers")
    hosts: int = Field(default=0, description="Indexed hosts")
    uptime_seconds: float = Field(default=0.0, description="Service uptime")


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional details")
