"""
MCP Gateway service implementation.

Contains provider configuration, the MCP client, the multi-provider tool
registry and the PromQL metrics backend.
"""

from .config import GatewaySettings, load_provider_configs
from .mcp_client import MCPClientError, RemoteMCPClient
from .models import HostEntry, MCPToolDefinition, ProviderCallResult, ProviderConfig, ProviderState
from .prometheus import PROMQL_TOOL_NAME, execute_promql_query, get_promql_tool
from .registry import ProviderUnavailableError, ToolRegistry, parse_tool_result

__all__ = [
    "GatewaySettings",
    "load_provider_configs",
    "MCPClientError",
    "RemoteMCPClient",
    "HostEntry",
    "MCPToolDefinition",
    "ProviderCallResult",
    "ProviderConfig",
    "ProviderState",
    "PROMQL_TOOL_NAME",
    "execute_promql_query",
    "get_promql_tool",
    "ProviderUnavailableError",
    "ToolRegistry",
    "parse_tool_result",
]
