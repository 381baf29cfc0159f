"""
Helpers over non-streaming response objects.

Used when a turn ended without delivering text: poll the response until it
reaches a terminal state, optionally ask for a bounded continuation, and
extract whatever text is recoverable.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

import anyio

from adapters.llm.base import LLMError, ResponseRequest, ResponsesAdapter

logger = logging.getLogger(__name__)

PENDING_STATUSES = ("queued", "in_progress")
CONTINUE_INSTRUCTION = "Continue the answer. Keep it concise for chat."


async def poll_until_terminal(
    adapter: ResponsesAdapter,
    response_id: str,
    interval_seconds: float = 0.8,
    max_seconds: float = 180.0,
    clock: Callable[[], float] = time.monotonic,
) -> Optional[Dict[str, Any]]:
    """
    Retrieve a response until it leaves the queued/in-progress states.

    Returns:
        The last retrieved response object (completed, incomplete, failed,
        cancelled or still pending once ``max_seconds`` elapsed)
    """
    start = clock()
    response = await adapter.retrieve(response_id)
    while isinstance(response, dict) and response.get("status") in PENDING_STATUSES:
        if clock() - start > max_seconds:
            logger.warning(f"Gave up polling response {response_id} after {max_seconds}s")
            break
        await anyio.sleep(interval_seconds)
        response = await adapter.retrieve(response_id)
    return response


def get_text_from_response(response: Optional[Dict[str, Any]]) -> str:
    """Concatenate the text parts of a response object."""
    if not isinstance(response, dict):
        return ""

    output = response.get("output") or response.get("outputs") or []
    parts = []
    for item in output:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "output_text" and isinstance(item.get("text"), str):
            parts.append(item["text"])
            continue
        for part in item.get("content") or []:
            if not isinstance(part, dict):
                continue
            text = part.get("text")
            if part.get("type") in ("text", "output_text") and isinstance(text, str):
                parts.append(text)
            elif isinstance(text, dict) and isinstance(text.get("value"), str):
                parts.append(text["value"])

    return " ".join(parts).strip()


def continuation_budget(response: Dict[str, Any], min_tokens: int = 512, max_tokens: int = 4000) -> int:
    """Output budget for a continuation: twice the tokens already spent, clamped."""
    usage = response.get("usage") or {}
    spent = usage.get("output_tokens") or 0
    return min(max(spent * 2, min_tokens), max_tokens)


async def continue_if_incomplete(
    adapter: ResponsesAdapter,
    response: Optional[Dict[str, Any]],
    min_tokens: int = 512,
    max_tokens: int = 4000,
) -> Optional[Dict[str, Any]]:
    """
    Ask for one bounded, tool-free continuation of an incomplete response.

    Returns:
        The created continuation response, or None when ``response`` is not
        incomplete
    """
    if not isinstance(response, dict) or response.get("status") != "incomplete":
        return None

    budget = continuation_budget(response, min_tokens, max_tokens)
    logger.info(f"Continuing incomplete response {response.get('id')} with {budget} extra tokens")
    return await adapter.create(
        ResponseRequest(
            previous_response_id=response.get("id"),
            input=[{"role": "system", "content": [{"type": "input_text", "text": CONTINUE_INSTRUCTION}]}],
            max_output_tokens=budget,
            tool_choice="none",
        )
    )


async def recover_from_terminated(
    adapter: ResponsesAdapter,
    response_id: Optional[str],
    interval_seconds: float = 0.8,
    max_seconds: float = 180.0,
    min_tokens: int = 512,
    max_tokens: int = 4000,
) -> Optional[Dict[str, Any]]:
    """
    Best-effort recovery after the stream of ``response_id`` broke.

    Returns:
        The terminal response (or its continuation), or None if nothing
        could be retrieved
    """
    if not response_id:
        return None
    try:
        final = await poll_until_terminal(adapter, response_id, interval_seconds, max_seconds)
        if isinstance(final, dict) and final.get("status") == "incomplete":
            continuation = await continue_if_incomplete(adapter, final, min_tokens, max_tokens)
            if continuation and continuation.get("id"):
                return await poll_until_terminal(adapter, continuation["id"], interval_seconds, max_seconds)
        return final
    except LLMError as e:
        logger.warning(f"Recovery of response {response_id} failed: {e}")
        return None
