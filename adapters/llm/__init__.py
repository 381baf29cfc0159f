"""
LLM adapter implementations for Responses-style providers.

Supported adapters:
- OpenAIResponsesAdapter: OpenAI Responses API (streaming, files, containers)
- MockResponsesAdapter: Scripted adapter for testing and development
"""

from adapters.llm.base import LLMError, ResponseRequest, ResponsesAdapter
from adapters.llm.openai import OpenAIResponsesAdapter
from adapters.llm.mock import MockResponsesAdapter, text_turn, tool_call_turn

__all__ = [
    # Base classes
    "LLMError",
    "ResponseRequest",
    "ResponsesAdapter",
    # Adapters
    "OpenAIResponsesAdapter",
    "MockResponsesAdapter",
    # Scripting helpers
    "text_turn",
    "tool_call_turn",
]
