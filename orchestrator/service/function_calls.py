"""
Function call processing.

Routes each tool call requested by the model to its handler and turns the
outcome into a ``function_call_output`` input item for the next turn.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from mcp_gateway.service.prometheus import PROMQL_TOOL_NAME, execute_promql_query
from mcp_gateway.service.registry import ToolRegistry

from .middleware import OutputExternalizer, ToolMiddleware
from .models import FunctionCall
from .output_safety import HARD_MAX_OUTPUT_CHARS, format_output_summary, to_json
from .platform import ChatPlatform
from .tools import ADD_REACTION_TOOL, ADD_REPLY_TOOL

logger = logging.getLogger(__name__)


def parse_json_strings(value: Any) -> Any:
    """
    Decode values that are JSON documents encoded as strings.

    Some providers return JSON as text, sometimes nested; strings that look
    like an object or array are decoded recursively, containers are walked.
    """
    if isinstance(value, str):
        trimmed = value.strip()
        if (trimmed.startswith("{") and trimmed.endswith("}")) or (trimmed.startswith("[") and trimmed.endswith("]")):
            try:
                return parse_json_strings(json.loads(trimmed))
            except ValueError:
                return value
        return value
    if isinstance(value, list):
        return [parse_json_strings(item) for item in value]
    if isinstance(value, dict):
        return {key: parse_json_strings(item) for key, item in value.items()}
    return value


def function_call_output(call_id: str, output: Any) -> Dict[str, Any]:
    """Input item carrying a tool's output back to the model."""
    return {"type": "function_call_output", "call_id": call_id, "output": output}


@dataclass
class CallContext:
    """Per-message collaborators a tool call may need."""

    platform: ChatPlatform
    externalizer: Optional[OutputExternalizer] = None


class FunctionCallProcessor:
    """Executes model tool calls against the platform, PromQL and the registry."""

    def __init__(self, registry: ToolRegistry, middleware: ToolMiddleware):
        self.registry = registry
        self.middleware = middleware

    async def process(self, call: FunctionCall, context: CallContext) -> List[Dict[str, Any]]:
        """
        Execute one tool call.

        Args:
            call: The requested call
            context: Platform handle and file externalizer for this message

        Returns:
            Exactly one ``function_call_output`` item tagged with the call id
        """
        logger.info(f"[FUNCTION] {call.name} (call {call.call_id[-12:]})")

        try:
            args = json.loads(call.arguments) if call.arguments else {}
            if not isinstance(args, dict):
                raise ValueError(f"Arguments must be a JSON object, got {type(args).__name__}")
            output = await self._dispatch(call.name, args, context)
        except ValueError as e:
            logger.error(f"[FUNCTION] Invalid arguments for {call.name}: {e}")
            output = {"ok": False, "error": f"Invalid arguments: {e}"}
        except Exception as e:
            logger.error(f"[FUNCTION] Error: {call.name}: {e}")
            output = {"ok": False, "error": str(e)}

        logger.info(f"[FUNCTION] {call.name} -> {format_output_summary(output)}")

        serialized = to_json(output)
        if len(serialized) > HARD_MAX_OUTPUT_CHARS:
            logger.warning(f"[FUNCTION] Output too large ({len(serialized)} chars)")
            serialized = to_json(
                {
                    "ok": False,
                    "error": "Output exceeded maximum size limit",
                    "hint": "Use smaller maxResults or more specific query parameters.",
                }
            )

        return [function_call_output(call.call_id, serialized)]

    async def _dispatch(self, name: str, args: Dict[str, Any], context: CallContext) -> Any:
        if name == ADD_REACTION_TOOL:
            return await self._add_reaction(args, context.platform)
        if name == ADD_REPLY_TOOL:
            return await self._add_reply(args, context.platform)
        if name == PROMQL_TOOL_NAME:
            return await self.middleware.execute(name, args, self._run_promql, context.externalizer)
        return await self.middleware.execute(name, args, self._run_registry_tool, context.externalizer)

    async def _add_reaction(self, args: Dict[str, Any], platform: ChatPlatform) -> Dict[str, Any]:
        emoji = str(args.get("emoji") or "").strip().strip(":") or "thumbsup"
        await platform.react(emoji)
        return {"ok": True}

    async def _add_reply(self, args: Dict[str, Any], platform: ChatPlatform) -> Dict[str, Any]:
        text = str(args.get("text") or "").strip()
        if not text:
            logger.debug(f"{ADD_REPLY_TOOL} called without text")
            return {"ok": False, "error": "No text provided"}
        await platform.send_text(text)
        return {"ok": True}

    async def _run_promql(self, name: str, args: Dict[str, Any]) -> Any:
        return await execute_promql_query(args, self.registry.settings)

    async def _run_registry_tool(self, name: str, args: Dict[str, Any]) -> Any:
        result = parse_json_strings(await self.registry.execute(name, args))
        return result if isinstance(result, dict) else {"ok": True, "result": result}
