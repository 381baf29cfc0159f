"""
Tool catalog advertised to the model.
"""

import logging
from typing import Any, Dict, List, Optional

from mcp_gateway.service.prometheus import get_promql_tool
from mcp_gateway.service.registry import ToolRegistry

from .config import OrchestratorConfig
from .platform import ChatPlatform

logger = logging.getLogger(__name__)

ADD_REACTION_TOOL = "platform_add_reaction"
ADD_REPLY_TOOL = "platform_add_reply"

PLATFORM_TOOLS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": ADD_REACTION_TOOL,
        "description": "Add a reaction to the user's last message.",
        "parameters": {
            "type": "object",
            "properties": {
                "emoji": {"type": "string", "description": "Emoji shortcode (no colons)."},
            },
            "required": ["emoji"],
            "additionalProperties": False,
        },
    },
    {
        "type": "function",
        "name": ADD_REPLY_TOOL,
        "description": "Add a reply message in the current thread.",
        "parameters": {
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "The Markdown text of the reply message."},
            },
            "required": ["text"],
            "additionalProperties": False,
        },
    },
]

NO_PROVIDERS_WARNING = (
    "No MCP servers configured. Create mcp.config.yaml or set MCP_AGENT_URL and MCP_AGENT_TOKEN. "
    "Running without host monitoring capabilities."
)


def build_tools_array(
    registry: ToolRegistry,
    config: OrchestratorConfig,
    code_file_ids: Optional[List[str]] = None,
) -> List[Dict[str, Any]]:
    """
    Build the complete tool catalog for one turn.

    Args:
        registry: Tool registry (provider tools and meta-tools)
        config: Orchestrator configuration (built-in tool switches)
        code_file_ids: Files mounted in the code_interpreter container

    Returns:
        Tool definitions in Responses API format
    """
    tools: List[Dict[str, Any]] = list(registry.get_function_tools())

    promql = get_promql_tool(registry.settings)
    if promql:
        tools.append(promql)

    if config.enable_code_interpreter:
        tools.append({"type": "code_interpreter", "container": {"type": "auto", "file_ids": list(code_file_ids or [])}})

    if config.enable_web_search:
        tools.append({"type": "web_search_preview"})

    tools.extend(PLATFORM_TOOLS)
    return tools


async def log_tool_warnings(registry: ToolRegistry, platform: ChatPlatform) -> None:
    """Warn in the log and in the thread when no provider is available."""
    if registry.provider_count > 0:
        return

    logger.warning("No MCP servers registered. Running without host monitoring capabilities.")
    try:
        await platform.send_text(f":warning: {NO_PROVIDERS_WARNING}")
    except Exception as e:
        logger.warning(f"Failed to post warning about missing MCP configuration: {e}")
