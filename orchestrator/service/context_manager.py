"""
Context management for conversation history and summarization.

Token estimation, overflow detection, summarization of older input items
and conversion of thread history into model input.
"""

import logging
import math
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from adapters.llm.base import LLMError, ResponseRequest, ResponsesAdapter

from .config import OrchestratorConfig
from .models import CONTEXT_MARKER_EVENT, Attachment, ThreadMessage
from .responses import get_text_from_response

logger = logging.getLogger(__name__)

ATTACHMENT_CHAR_COST = 4000
PREVIEW_CHARS = 80

SUMMARY_HEADER = "**Summary of earlier conversation:**"
SUMMARY_FALLBACK = "Previous conversation occurred but could not be summarized."
SUMMARIZE_INSTRUCTION = (
    "Summarize the following conversation history concisely, preserving key facts, decisions, "
    "technical details, and any unresolved issues. Keep it under 500 words. "
    "Output only the summary, no preamble."
)

UploadOnce = Callable[[Attachment], Awaitable[Optional[Dict[str, Any]]]]


def system_item(text: str) -> Dict[str, Any]:
    """A system-role input item holding one text part."""
    return {"role": "system", "content": [{"type": "input_text", "text": text}]}


def _content(item: Any) -> List[Any]:
    if not isinstance(item, dict):
        return []
    content = item.get("content")
    return content if isinstance(content, list) else []


# ============================================================================
# Sizing
# ============================================================================


def estimate_token_count(items: List[Dict[str, Any]]) -> int:
    """
    Rough token estimate of input items.

    About 4 characters per token; every image or file attachment counts as
    ``ATTACHMENT_CHAR_COST`` characters.
    """
    chars = 0
    for item in items or []:
        for part in _content(item):
            if not isinstance(part, dict):
                continue
            if part.get("text"):
                chars += len(str(part["text"]))
            if part.get("type") in ("input_image", "input_file"):
                chars += ATTACHMENT_CHAR_COST
    return math.ceil(chars / 4)


def is_context_window_error(error: BaseException) -> bool:
    """Whether ``error`` looks like a context-length-exceeded rejection."""
    message = str(getattr(error, "message", None) or error).lower()
    error_type = str(getattr(error, "error_type", None) or getattr(error, "type", None) or "").lower()
    code = str(getattr(error, "code", None) or "").lower()
    param = getattr(error, "param", None)

    return (
        "context window" in message
        or "context_length_exceeded" in message
        or code == "context_length_exceeded"
        or "exceeds" in message
        or "too many tokens" in message
        or (error_type == "invalid_request_error" and param == "input")
    )


def summarize_input_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Compact per-item description for debug logs."""
    summary = []
    for item in items or []:
        content = [part for part in _content(item) if isinstance(part, dict)]
        types = [part["type"] for part in content if part.get("type")]
        texts = [str(part.get("text") or "") for part in content if part.get("type") == "input_text"]

        entry: Dict[str, Any] = {
            "role": item.get("role", "?") if isinstance(item, dict) else "?",
            "types": ",".join(types) or "empty",
            "chars": sum(len(text) for text in texts),
        }
        if texts and texts[0]:
            preview = texts[0][:PREVIEW_CHARS].replace("\n", " ")
            entry["preview"] = preview + ("..." if len(texts[0]) > PREVIEW_CHARS else "")
        summary.append(entry)
    return summary


# ============================================================================
# Summarization
# ============================================================================


def _render_transcript(items: List[Dict[str, Any]]) -> List[str]:
    lines = []
    for item in items:
        role = (item.get("role") if isinstance(item, dict) else None) or "unknown"
        for part in _content(item):
            if not isinstance(part, dict):
                continue
            if part.get("text"):
                lines.append(f"[{role}]: {part['text']}")
            elif part.get("type") == "input_image":
                lines.append(f"[{role}]: [attached image]")
            elif part.get("type") == "input_file":
                lines.append(f"[{role}]: [attached file: {part.get('filename') or 'unknown'}]")
    return lines


async def summarize_conversation_history(
    adapter: ResponsesAdapter,
    items: List[Dict[str, Any]],
    keep_recent: int,
    config: OrchestratorConfig,
) -> List[Dict[str, Any]]:
    """
    Replace older conversation items with a single summary item.

    Leading system items are kept as preamble and the last ``keep_recent``
    items are kept verbatim. When the summarization call fails, the older
    items are simply dropped.

    Args:
        adapter: Responses adapter used for the summarization call
        items: Current input items
        keep_recent: Number of trailing items kept verbatim
        config: Orchestrator configuration (summarization model and budget)

    Returns:
        The new input list; ``items`` itself when there is nothing to summarize
    """
    preamble: List[Dict[str, Any]] = []
    conversation: List[Dict[str, Any]] = []
    for item in items or []:
        if not conversation and isinstance(item, dict) and item.get("role") == "system":
            preamble.append(item)
        else:
            conversation.append(item)

    split = max(len(conversation) - keep_recent, 0)
    older, recent = conversation[:split], conversation[split:]
    if not older:
        return items

    transcript = _render_transcript(older)
    if not transcript:
        return preamble + recent

    logger.info(f"[Context] Summarizing {len(older)} older items to reduce context size")
    request = ResponseRequest(
        model=config.summarization_model,
        input=[
            system_item(SUMMARIZE_INSTRUCTION),
            {"role": "user", "content": [{"type": "input_text", "text": "\n\n".join(transcript)}]},
        ],
        max_output_tokens=config.summarization_max_tokens,
    )
    try:
        response = await adapter.create(request)
    except LLMError as e:
        logger.error(f"[Context] Failed to summarize conversation: {e}")
        return preamble + recent

    summary = get_text_from_response(response) or SUMMARY_FALLBACK
    logger.info(f"[Context] Conversation summarized to {len(summary)} chars")
    return preamble + [system_item(f"{SUMMARY_HEADER}\n{summary}")] + recent


# ============================================================================
# Thread history
# ============================================================================


def marker_response_id(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    """Response id recorded in a context marker, if ``metadata`` is one."""
    if not isinstance(metadata, dict):
        return None
    event_type = metadata.get("eventType") or metadata.get("event_type")
    if event_type != CONTEXT_MARKER_EVENT:
        return None
    response_id = metadata.get("responseId")
    return response_id if isinstance(response_id, str) and response_id else None


def find_last_bot_message(messages: List[ThreadMessage]) -> Tuple[int, Optional[ThreadMessage], Optional[str]]:
    """
    Locate the most recent assistant message carrying a context marker.

    Returns:
        ``(index, message, response_id)``; ``(-1, None, None)`` when absent
    """
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        response_id = marker_response_id(message.metadata)
        if message.is_bot and response_id:
            return index, message, response_id
    return -1, None, None


async def build_conversation_input(
    messages: List[ThreadMessage],
    last_bot_index: int,
    current_message_ts: str,
    sender_id: str,
    upload_once: UploadOnce,
) -> List[Dict[str, Any]]:
    """
    Convert thread messages after the last answered turn into input items.

    Assistant text becomes ``output_text`` items; text from other people is
    prefixed with their mention. Attachments of human messages are uploaded
    and added as a separate user item.
    """
    items: List[Dict[str, Any]] = []
    for message in messages[last_bot_index + 1:]:
        if message.ts == current_message_ts:
            continue

        text = (message.text or "").strip()
        author = message.sender_id
        if text:
            if message.is_bot:
                items.append({"role": "assistant", "content": [{"type": "output_text", "text": text}]})
            else:
                body = text if author == sender_id else f"<@{author}> said: {text}"
                items.append({"role": "user", "content": [{"type": "input_text", "text": body}]})

        if message.is_bot:
            continue

        parts: List[Dict[str, Any]] = []
        for attachment in message.attachments:
            uploaded = await upload_once(attachment)
            if uploaded and uploaded.get("content_item"):
                parts.append(uploaded["content_item"])
        if parts:
            if author and author != sender_id:
                parts.insert(0, {"type": "input_text", "text": f"Files from <@{author}>:"})
            items.append({"role": "user", "content": parts})

    return items
