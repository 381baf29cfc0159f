"""
MCP Gateway module.

Connects to remote MCP tool providers, discovers the tools and hosts they
expose, and routes host-scoped tool calls to the provider owning each host.
"""

__version__ = "1.0.0"

from .service.config import GatewaySettings, load_provider_configs
from .service.registry import ToolRegistry

__all__ = [
    "GatewaySettings",
    "load_provider_configs",
    "ToolRegistry",
]
