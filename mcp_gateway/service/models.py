"""
Pydantic models for the MCP Gateway.

Defines provider configuration, discovered tool schemas, the host index
entries and the per-provider call results returned by the registry.
"""

from typing import Any, Optional
from enum import Enum
from pydantic import BaseModel, Field


class ProviderState(str, Enum):
    """Connection state of a tool provider."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ProviderConfig(BaseModel):
    """Static configuration of one remote tool provider."""

    server_label: str = Field(..., description="Stable provider label (unique id)")
    server_url: str = Field(..., description="Provider endpoint URL")
    token: str = Field(..., description="Bearer token used to authenticate")
    insecure_tls: bool = Field(default=False, description="Skip TLS certificate verification")


class MCPToolDefinition(BaseModel):
    """A tool as advertised by a provider's tools/list."""

    name: str = Field(..., description="Tool name")
    description: str = Field(default="", description="Tool description")
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON Schema describing the tool arguments",
    )

    @classmethod
    def from_mcp(cls, data: dict[str, Any]) -> "MCPToolDefinition":
        """Build from a raw tools/list entry."""
        return cls(
            name=data["name"],
            description=data.get("description") or "",
            input_schema=data.get("inputSchema") or {"type": "object", "properties": {}},
        )


class HostEntry(BaseModel):
    """A discovered host and the provider that owns it."""

    key: str = Field(..., description="Canonical host key")
    server_label: str = Field(..., description="Owning provider label")
    server_url: str = Field(..., description="Owning provider URL")
    attributes: dict[str, Any] = Field(default_factory=dict, description="Free-form host attributes")
    protocols: list[dict[str, Any]] = Field(default_factory=list, description="Protocol descriptors")

    def public_view(self) -> dict[str, Any]:
        """Shape returned by the ListHosts / SearchHost meta-tools."""
        return {
            "server_label": self.server_label,
            "server_url": self.server_url,
            "attributes": self.attributes,
            "protocols": self.protocols,
        }


class ProviderCallResult(BaseModel):
    """Outcome of dispatching one call to one provider."""

    server_label: str = Field(..., description="Provider the call was sent to")
    ok: bool = Field(..., description="Whether the call succeeded")
    result: Optional[Any] = Field(default=None, description="Parsed payload on success")
    error: Optional[str] = Field(default=None, description="Error message on failure")

    def to_output(self) -> dict[str, Any]:
        """Serialize without the field that does not apply."""
        if self.ok:
            return {"server_label": self.server_label, "ok": True, "result": self.result}
        return {"server_label": self.server_label, "ok": False, "error": self.error}
