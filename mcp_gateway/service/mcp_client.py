"""
MCP client for remote tool providers.

Module: mcp_gateway/service/mcp_client.py

Speaks JSON-RPC 2.0 over HTTP (Streamable HTTP transport): each request is
a POST whose reply is either a JSON body or a Server-Sent Events stream.
"""

import json
import logging
from typing import Any, Dict, List, Optional
from dataclasses import dataclass

import anyio
import httpx

from .models import ProviderConfig

logger = logging.getLogger(__name__)


class MCPClientError(Exception):
    """Transport or protocol failure talking to a provider."""

    def __init__(self, message: str, server_label: Optional[str] = None):
        super().__init__(message)
        self.server_label = server_label


@dataclass
class MCPMessage:
    """MCP JSON-RPC message."""
    jsonrpc: str = "2.0"
    id: Optional[int] = None
    method: Optional[str] = None
    params: Optional[Dict[str, Any]] = None
    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        msg: Dict[str, Any] = {"jsonrpc": self.jsonrpc}
        for name in ("id", "method", "params", "result", "error"):
            value = getattr(self, name)
            if value is not None:
                msg[name] = value
        return msg

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MCPMessage":
        """Create from dictionary."""
        return cls(
            jsonrpc=data.get("jsonrpc", "2.0"),
            id=data.get("id"),
            method=data.get("method"),
            params=data.get("params"),
            result=data.get("result"),
            error=data.get("error"),
        )


def _error_text(error: Dict[str, Any]) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)


class RemoteMCPClient:
    """
    Connection handle for one remote provider.

    A client is created disconnected; ``connect()`` opens the HTTP client and
    performs the initialize handshake. After ``disconnect()`` the instance
    should be discarded and a new one created for reconnection.
    """

    def __init__(
        self,
        config: ProviderConfig,
        client_name: str = "ops-assistant",
        client_version: str = "1.0.0",
        protocol_version: str = "2024-11-05",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.client_name = client_name
        self.client_version = client_version
        self.protocol_version = protocol_version
        self.timeout = timeout
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None
        self._session_id: Optional[str] = None
        self._message_id = 0
        self._server_info: Optional[Dict[str, Any]] = None

    @property
    def connected(self) -> bool:
        return self._http_client is not None and self._server_info is not None

    @property
    def server_info(self) -> Dict[str, Any]:
        return self._server_info or {}

    def _next_id(self) -> int:
        self._message_id += 1
        return self._message_id

    def _get_headers(self) -> Dict[str, str]:
        """Build request headers with authentication."""
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            "Authorization": f"Bearer {self.config.token}",
        }
        if self._session_id:
            headers["Mcp-Session-Id"] = self._session_id
        return headers

    async def connect(self) -> Dict[str, Any]:
        """
        Open the HTTP client and run the initialize handshake.

        Returns:
            Server capabilities and info

        Raises:
            MCPClientError: If the provider cannot be reached or rejects initialize
        """
        self._http_client = httpx.AsyncClient(
            timeout=self.timeout,
            verify=not self.config.insecure_tls,
            transport=self._transport,
        )

        try:
            with anyio.fail_after(self.timeout):
                response = await self.send_message(
                    MCPMessage(
                        id=self._next_id(),
                        method="initialize",
                        params={
                            "protocolVersion": self.protocol_version,
                            "capabilities": {"tools": {}},
                            "clientInfo": {"name": self.client_name, "version": self.client_version},
                        },
                    )
                )
                if response.error:
                    raise MCPClientError(
                        f"Initialize failed: {_error_text(response.error)}", self.config.server_label
                    )
                await self.send_message(MCPMessage(method="notifications/initialized", params={}))
        except TimeoutError:
            await self.disconnect()
            raise MCPClientError(
                f"Timeout initializing session with {self.config.server_url}", self.config.server_label
            )
        except MCPClientError:
            await self.disconnect()
            raise

        self._server_info = response.result or {}
        logger.info(f"[MCP] Session initialized for {self.config.server_label}")
        return self._server_info

    async def disconnect(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            try:
                await self._http_client.aclose()
            except httpx.HTTPError as e:
                logger.debug(f"[MCP] Error closing client for {self.config.server_label}: {e}")
            self._http_client = None
        self._server_info = None
        self._session_id = None

    async def request(self, method: str, params: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        """
        Send a JSON-RPC request and return its result.

        Args:
            method: JSON-RPC method name
            params: Method parameters
            timeout: Upper bound in seconds (defaults to the client timeout)

        Raises:
            MCPClientError: On transport failure, timeout or a JSON-RPC error
        """
        if not self._http_client:
            raise MCPClientError(
                f"Not connected to {self.config.server_label}", self.config.server_label
            )

        limit = timeout if timeout is not None else self.timeout
        try:
            with anyio.fail_after(limit):
                response = await self.send_message(
                    MCPMessage(id=self._next_id(), method=method, params=params)
                )
        except TimeoutError:
            raise MCPClientError(
                f"{method} timed out after {limit:g}s on {self.config.server_label}",
                self.config.server_label,
            )

        if response.error:
            raise MCPClientError(
                f"{method} failed: {_error_text(response.error)}", self.config.server_label
            )
        return response.result

    async def ping(self, timeout: float = 5.0) -> bool:
        """
        Lightweight liveness probe.

        Returns:
            True if the provider answered within ``timeout``
        """
        try:
            await self.request("ping", {}, timeout=timeout)
            return True
        except MCPClientError as e:
            logger.debug(f"[MCP] Ping failed for {self.config.server_label}: {e}")
            return False

    async def list_tools(self) -> List[Dict[str, Any]]:
        """Get the raw list of tools advertised by the provider."""
        result = await self.request("tools/list", {})
        return result.get("tools", []) if isinstance(result, dict) else []

    async def call_tool(
        self,
        tool_name: str,
        arguments: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Call a tool on the provider.

        Args:
            tool_name: Name of the tool to call
            arguments: Tool arguments
            timeout: Upper bound in seconds

        Returns:
            The raw tools/call result (content array and flags)
        """
        return await self.request(
            "tools/call", {"name": tool_name, "arguments": arguments}, timeout=timeout
        )

    async def send_message(self, message: MCPMessage) -> MCPMessage:
        """Send message via HTTP POST and handle a JSON or SSE response."""
        if not self._http_client:
            raise MCPClientError(
                f"Not connected to {self.config.server_label}", self.config.server_label
            )

        endpoint = self.config.server_url
        headers = self._get_headers()

        try:
            # Notifications carry no id and expect no response body
            if message.id is None:
                await self._http_client.post(endpoint, json=message.to_dict(), headers=headers)
                return MCPMessage()

            async with self._http_client.stream(
                "POST", endpoint, json=message.to_dict(), headers=headers
            ) as response:
                if "mcp-session-id" in response.headers:
                    self._session_id = response.headers["mcp-session-id"]

                if response.status_code != 200:
                    error_text = await response.aread()
                    raise MCPClientError(
                        f"MCP server error ({response.status_code}): "
                        f"{error_text.decode(errors='replace')[:500]}",
                        self.config.server_label,
                    )

                content_type = response.headers.get("content-type", "")
                if "text/event-stream" in content_type:
                    return await self._parse_sse_stream(response)

                body = await response.aread()
                try:
                    data = json.loads(body)
                except json.JSONDecodeError as e:
                    raise MCPClientError(
                        f"Invalid JSON from {self.config.server_label}: {e}", self.config.server_label
                    )
                if not isinstance(data, dict):
                    raise MCPClientError(
                        f"Invalid JSON-RPC message from {self.config.server_label}: "
                        f"expected an object, got {type(data).__name__}",
                        self.config.server_label,
                    )
                return MCPMessage.from_dict(data)

        except httpx.TimeoutException:
            raise MCPClientError(f"Timeout talking to MCP server at {endpoint}", self.config.server_label)
        except httpx.HTTPError as e:
            raise MCPClientError(f"Cannot reach MCP server at {endpoint}: {e}", self.config.server_label)

    async def _parse_sse_stream(self, response: httpx.Response) -> MCPMessage:
        """Parse SSE stream and extract the final result."""
        result_message = MCPMessage()

        async for line in response.aiter_lines():
            line = line.strip()
            if not line.startswith("data:"):
                continue

            data_str = line[5:].strip()
            if not data_str:
                continue
            try:
                data = json.loads(data_str)
            except json.JSONDecodeError:
                logger.warning(f"[MCP] Failed to parse SSE data: {data_str[:100]}")
                continue
            if not isinstance(data, dict):
                raise MCPClientError(
                    f"Invalid JSON-RPC message in SSE stream from {self.config.server_label}",
                    self.config.server_label,
                )

            if "result" in data:
                result_message.result = data["result"]
            if "error" in data:
                result_message.error = data["error"]
            if "id" in data:
                result_message.id = data["id"]

        return result_message
