"""
Configuration module for the Orchestrator service.

Uses pydantic-settings for environment variable management with type validation.
"""

from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = """You are an infrastructure monitoring assistant working inside a team chat.

You answer questions about monitored hosts using the tools available to you:
- Use ListHosts or SearchHost to find the exact host identifiers before calling any host-scoped tool.
- Host-scoped tools take a `hosts` array; pass only identifiers returned by ListHosts/SearchHost.
- Large results are paginated: follow the `_pagination.hint` to fetch more pages using `_cacheId` and `offset`.
- When a result mentions a `_file`, the complete dataset is available to code_interpreter as a JSON file.
- Use PromQLQuery for time-series questions when it is available.

Be concise. Format answers in Markdown suitable for chat."""

DEFAULT_LOADING_MESSAGES = [
    "Checking the monitoring agents...",
    "Looking at the hosts...",
    "Crunching the metrics...",
]


class OrchestratorConfig(BaseSettings):
    """Configuration for the conversational orchestrator service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Configuration
    host: str = Field(default="0.0.0.0", description="Host to bind the service")
    port: int = Field(default=8000, description="Port to bind the service")
    reload: bool = Field(default=False, description="Enable auto-reload for development")
    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    # LLM Configuration
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    openai_base_url: Optional[str] = Field(default=None, description="OpenAI API base URL override")
    model: str = Field(default="gpt-5", description="Model used for conversation turns")
    reasoning_effort: str = Field(default="medium", description="Reasoning effort")
    reasoning_summary: Optional[str] = Field(default="auto", description="Reasoning summary mode")
    text_verbosity: Optional[str] = Field(default="low", description="Answer verbosity")
    max_output_tokens: int = Field(default=16000, description="Output token budget per turn")
    summarization_model: str = Field(default="gpt-5-mini", description="Model used to summarize history")
    summarization_max_tokens: int = Field(default=2000, description="Output budget of the summary call")

    # Context management
    context_threshold_tokens: int = Field(
        default=140_000, description="Estimated input size that triggers pre-flight summarization"
    )
    keep_recent_messages: int = Field(
        default=6, description="Items kept verbatim when summarizing before the first turn"
    )
    overflow_keep_recent_messages: int = Field(
        default=4, description="Items kept verbatim when summarizing after an overflow error"
    )
    thread_history_limit: int = Field(default=15, description="Thread messages fetched per message")

    # Streaming safety
    max_response_chars: int = Field(default=50_000, description="Answer length that aborts a turn")
    repetition_window_chars: int = Field(default=200, description="Trailing window checked for repetition")
    repetition_ratio: float = Field(
        default=0.85, description="Share of one character in the window that aborts a turn"
    )
    status_cooldown_seconds: float = Field(default=0.8, description="Minimum interval between status updates")

    # Recovery
    poll_interval_seconds: float = Field(default=0.8, description="Interval when polling a response")
    poll_max_seconds: float = Field(default=180.0, description="Give up polling after this long")
    continuation_min_tokens: int = Field(default=512, description="Smallest continuation budget")
    continuation_max_tokens: int = Field(default=4000, description="Largest continuation budget")

    # Chat platform
    platform_safe_message_length: int = Field(
        default=35_000, description="Characters delivered per message before truncating"
    )

    # Tools
    enable_code_interpreter: bool = Field(default=True, description="Expose code_interpreter")
    enable_web_search: bool = Field(default=False, description="Expose web search")

    # Prompts
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="Base system prompt")
    loading_messages: list[str] = Field(default_factory=lambda: list(DEFAULT_LOADING_MESSAGES))

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in allowed_levels:
            raise ValueError(f"log_level must be one of {allowed_levels}")
        return v_upper

    @field_validator("reasoning_effort")
    @classmethod
    def validate_reasoning_effort(cls, v: str) -> str:
        """Validate reasoning effort is supported."""
        allowed = {"minimal", "low", "medium", "high"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"reasoning_effort must be one of {allowed}")
        return v_lower

    @field_validator("repetition_ratio")
    @classmethod
    def validate_repetition_ratio(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("repetition_ratio must be in (0, 1]")
        return v


# Global config instance
config = OrchestratorConfig()
