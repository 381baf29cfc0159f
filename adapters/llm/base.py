"""
Abstract base adapter for Responses-style LLM providers.

This module defines the contract the orchestrator relies on: a streaming
call yielding protocol events, non-streaming create/retrieve, and the file
store and code-interpreter container capabilities.
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class ResponseRequest(BaseModel):
    """Parameters of one Responses API call."""

    input: List[Dict[str, Any]] = Field(default_factory=list, description="Input items")
    tools: List[Dict[str, Any]] = Field(default_factory=list, description="Tool definitions")
    tool_choice: Optional[Union[str, Dict[str, Any]]] = Field(default=None, description="auto, none or a forced tool")
    previous_response_id: Optional[str] = Field(default=None, description="Response id to chain from")
    max_output_tokens: Optional[int] = Field(default=None, description="Output token budget")
    reasoning_effort: Optional[str] = Field(default=None, description="minimal, low, medium or high")
    reasoning_summary: Optional[str] = Field(default=None, description="Reasoning summary mode (auto, detailed)")
    text_verbosity: Optional[str] = Field(default=None, description="low, medium or high")
    instructions: Optional[str] = Field(default=None, description="System instructions")
    model: Optional[str] = Field(default=None, description="Model override for this call")

    def to_payload(self, default_model: str, stream: bool = False) -> Dict[str, Any]:
        """Build the JSON body sent to the API."""
        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "input": self.input,
        }
        if stream:
            payload["stream"] = True
        if self.tools:
            payload["tools"] = self.tools
        if self.tool_choice is not None:
            payload["tool_choice"] = self.tool_choice
        if self.previous_response_id:
            payload["previous_response_id"] = self.previous_response_id
        if self.max_output_tokens:
            payload["max_output_tokens"] = self.max_output_tokens
        if self.instructions:
            payload["instructions"] = self.instructions

        reasoning: Dict[str, Any] = {}
        if self.reasoning_effort:
            reasoning["effort"] = self.reasoning_effort
        if self.reasoning_summary:
            reasoning["summary"] = self.reasoning_summary
        if reasoning:
            payload["reasoning"] = reasoning
        if self.text_verbosity:
            payload["text"] = {"verbosity": self.text_verbosity}

        return payload


class ResponsesAdapter(ABC):
    """
    Abstract base class for Responses API adapters.

    Implementations must be safe to share between concurrently handled
    conversations.
    """

    def __init__(self, model: str, api_key: Optional[str] = None, **kwargs: Any) -> None:
        """
        Initialize the adapter.

        Args:
            model: Default model identifier
            api_key: API key for the provider (if required)
            **kwargs: Provider-specific configuration options
        """
        self.model = model
        self.api_key = api_key
        self.config = kwargs

    @abstractmethod
    def stream(self, request: ResponseRequest) -> AsyncIterator[Dict[str, Any]]:
        """
        Start a streaming response.

        Args:
            request: Call parameters

        Yields:
            Raw protocol events (``{"type": ..., ...}``) in arrival order

        Raises:
            LLMError: If the request is rejected or the stream breaks
        """

    @abstractmethod
    async def create(self, request: ResponseRequest) -> Dict[str, Any]:
        """
        Create a response without streaming.

        Returns:
            The response object (``id``, ``status``, ``output``, ``usage``)

        Raises:
            LLMError: If the request fails
        """

    @abstractmethod
    async def retrieve(self, response_id: str) -> Dict[str, Any]:
        """Fetch a response object by id."""

    @abstractmethod
    async def upload_file(self, data: bytes, filename: str, purpose: str = "user_data") -> str:
        """
        Upload bytes to the file store.

        Returns:
            The file handle (id)
        """

    @abstractmethod
    async def download_file(self, file_id: str) -> bytes:
        """Download a file from the file store."""

    @abstractmethod
    async def list_container_files(self, container_id: str) -> List[Dict[str, Any]]:
        """
        List files in a code-interpreter container.

        Returns:
            Entries with at least ``id``, ``path``, ``source`` and ``created_at``
        """

    @abstractmethod
    async def download_container_file(self, container_id: str, file_id: str) -> bytes:
        """Download a file written inside a code-interpreter container."""

    async def aclose(self) -> None:
        """Release network resources."""

    def count_tokens(self, text: str) -> int:
        """
        Estimate token count for a text string.

        Args:
            text: Input text

        Returns:
            Estimated token count
        """
        # Simple heuristic: ~4 characters per token
        return len(text) // 4


class LLMError(Exception):
    """Base exception for LLM adapter errors."""

    def __init__(
        self,
        message: str,
        provider: str,
        original_error: Optional[Exception] = None,
        status_code: Optional[int] = None,
        error_type: Optional[str] = None,
        param: Optional[str] = None,
        code: Optional[str] = None,
    ):
        """
        Initialize LLM error.

        Args:
            message: Error message
            provider: Provider name
            original_error: Original exception if wrapping another error
            status_code: HTTP status code, when the API answered
            error_type: API error type (e.g. ``invalid_request_error``)
            param: Offending request parameter, if reported
            code: API error code (e.g. ``context_length_exceeded``)
        """
        super().__init__(message)
        self.provider = provider
        self.original_error = original_error
        self.status_code = status_code
        self.error_type = error_type
        self.param = param
        self.code = code
