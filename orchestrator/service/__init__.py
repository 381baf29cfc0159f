"""
Orchestrator service implementation.

Contains the agentic loop, the streaming turn engine, the tool middleware
and the chat platform contract. The FastAPI application lives in
``orchestrator.service.main``.
"""

from .agent_loop import ConversationOrchestrator, ThreadResponseCache
from .config import OrchestratorConfig, config
from .events import StreamEvent, StreamEventKind, parse_stream_event
from .function_calls import CallContext, FunctionCallProcessor, parse_json_strings
from .middleware import ResultCache, ToolMiddleware, execute_with_middleware
from .models import IncomingMessage, ThreadMessage, TurnResult, TurnStatus
from .platform import BufferedChatPlatform, ChatPlatform, StreamController
from .streaming import StreamTurnEngine, TurnCallbacks

__all__ = [
    "ConversationOrchestrator",
    "ThreadResponseCache",
    "OrchestratorConfig",
    "config",
    "StreamEvent",
    "StreamEventKind",
    "parse_stream_event",
    "CallContext",
    "FunctionCallProcessor",
    "parse_json_strings",
    "ResultCache",
    "ToolMiddleware",
    "execute_with_middleware",
    "IncomingMessage",
    "ThreadMessage",
    "TurnResult",
    "TurnStatus",
    "BufferedChatPlatform",
    "ChatPlatform",
    "StreamController",
    "StreamTurnEngine",
    "TurnCallbacks",
]
