"""
Orchestrator module for the Ops Assistant.

This module provides the conversational orchestrator responsible for:
- Building model input from chat threads
- Streaming model turns and delivering answers incrementally
- Executing tool calls through the caching/pagination middleware
- Recovering from incomplete turns and oversized conversations
"""

__version__ = "1.0.0"

from .service.agent_loop import ConversationOrchestrator, ThreadResponseCache
from .service.config import OrchestratorConfig, config
from .service.middleware import ResultCache, ToolMiddleware
from .service.streaming import StreamTurnEngine

__all__ = [
    "ConversationOrchestrator",
    "ThreadResponseCache",
    "OrchestratorConfig",
    "config",
    "ResultCache",
    "ToolMiddleware",
    "StreamTurnEngine",
]
