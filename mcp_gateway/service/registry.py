"""
Multi-provider tool registry.

Discovers the tools and hosts exposed by every configured provider, builds
the function-tool catalog advertised to the model, and routes each call to
the provider(s) owning the requested hosts.
"""

import json
import logging
import re
import time
from typing import Any, Callable, Optional

import anyio
from anyio import Lock

from .config import GatewaySettings
from .mcp_client import MCPClientError, RemoteMCPClient
from .models import (
    HostEntry,
    MCPToolDefinition,
    ProviderCallResult,
    ProviderConfig,
    ProviderState,
)

logger = logging.getLogger(__name__)

LIST_HOSTS_TOOL = "ListHosts"
SEARCH_HOST_TOOL = "SearchHost"
META_TOOLS = (LIST_HOSTS_TOOL, SEARCH_HOST_TOOL)

# Keys a ListHosts payload may carry that are protocol fields, not hosts
_NON_HOST_KEYS = {"content", "isError"}

KNOWN_HOSTS_SAMPLE_SIZE = 10

ClientFactory = Callable[[ProviderConfig], RemoteMCPClient]


class ProviderUnavailableError(Exception):
    """Raised when a provider cannot be (re)connected."""

    def __init__(self, server_label: str, reason: str = ""):
        super().__init__(f"Provider '{server_label}' unavailable{': ' + reason if reason else ''}")
        self.server_label = server_label


def parse_tool_result(result: Any) -> Any:
    """
    Extract the payload from a raw tools/call result.

    The first text content item is decoded as JSON when possible, otherwise
    returned as the raw string. Results without a text item pass through.
    """
    content = result.get("content") if isinstance(result, dict) else None
    if isinstance(content, list):
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                text = item.get("text", "")
                try:
                    return json.loads(text)
                except (json.JSONDecodeError, TypeError):
                    return text
    return result


class ToolProvider:
    """Runtime state of one provider: connection handle, tools and lock."""

    def __init__(self, config: ProviderConfig):
        self.config = config
        self.client: Optional[RemoteMCPClient] = None
        self.tools: dict[str, MCPToolDefinition] = {}
        self.state = ProviderState.DISCONNECTED
        self.lock = Lock()

    @property
    def label(self) -> str:
        return self.config.server_label


class ToolRegistry:
    """Registry of tool providers and the hosts they can act on."""

    def __init__(
        self,
        providers: list[ProviderConfig],
        settings: Optional[GatewaySettings] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        """
        Initialize the registry (no network activity until ``initialize``).

        Args:
            providers: Static provider configurations
            settings: Gateway settings (timeouts, client identity)
            client_factory: Builds a connection handle for a provider
        """
        self.settings = settings or GatewaySettings()
        self._configs = list(providers)
        self._client_factory = client_factory or self._default_client_factory
        self._providers: dict[str, ToolProvider] = {}
        self._hosts: dict[str, HostEntry] = {}
        self.schema_conflicts: set[str] = set()

    def _default_client_factory(self, config: ProviderConfig) -> RemoteMCPClient:
        return RemoteMCPClient(
            config,
            client_name=self.settings.mcp_client_name,
            client_version=self.settings.mcp_client_version,
            protocol_version=self.settings.mcp_protocol_version,
            timeout=self.settings.mcp_connect_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Connect to every provider, list its tools and index its hosts.

        Per-provider failures are logged and that provider is left out of
        dispatch. The host index is rebuilt from scratch.
        """
        await self.close()
        self._providers = {}
        self._hosts = {}
        self.schema_conflicts = set()

        logger.info(f"[MCP] Initializing registry with {len(self._configs)} provider(s)")

        for config in self._configs:
            provider = ToolProvider(config)
            try:
                await self._ensure_connected(provider)
                raw_tools = await provider.client.list_tools()
            except (ProviderUnavailableError, MCPClientError) as e:
                logger.warning(f"[MCP] Tool discovery failed for {config.server_label}: {e}")
                await self._drop_connection(provider)
                continue

            for raw in raw_tools:
                if isinstance(raw, dict) and raw.get("name"):
                    tool = MCPToolDefinition.from_mcp(raw)
                    provider.tools[tool.name] = tool
            logger.info(f"[MCP] {config.server_label}: discovered {len(provider.tools)} tools")

            self._providers[config.server_label] = provider

            if LIST_HOSTS_TOOL in provider.tools:
                try:
                    result = await provider.client.call_tool(
                        LIST_HOSTS_TOOL, {}, timeout=self.settings.mcp_list_hosts_timeout_seconds
                    )
                    self._index_hosts(provider, parse_tool_result(result))
                except MCPClientError as e:
                    logger.warning(f"[MCP] ListHosts failed on {config.server_label}: {e}")

        self._check_schema_conflicts()
        logger.info(
            f"[MCP] Registry initialized: {len(self._providers)} provider(s), "
            f"{len(self._hosts)} host key(s)"
        )

    def _index_hosts(self, provider: ToolProvider, hosts_data: Any) -> None:
        """Index a ListHosts payload under every alias of every host."""
        if not isinstance(hosts_data, dict):
            logger.warning(f"[MCP] Unexpected ListHosts payload from {provider.label}")
            return

        indexed = 0
        for key, value in hosts_data.items():
            if key in _NON_HOST_KEYS:
                continue
            value = value if isinstance(value, dict) else {}
            attributes = value.get("attributes") if isinstance(value.get("attributes"), dict) else {}
            protocols = value.get("protocols") if isinstance(value.get("protocols"), list) else []

            entry = HostEntry(
                key=key,
                server_label=provider.label,
                server_url=provider.config.server_url,
                attributes=attributes,
                protocols=protocols,
            )
            self._hosts[key] = entry

            host_name = attributes.get("host.name")
            if host_name and host_name != key:
                self._hosts[host_name] = entry
            for protocol in protocols:
                hostname = protocol.get("hostname") if isinstance(protocol, dict) else None
                if hostname and hostname != key:
                    self._hosts[hostname] = entry
            indexed += 1

        logger.info(
            f"[MCP] Indexed {indexed} hosts from {provider.label}. Total host keys: {len(self._hosts)}"
        )

    def _check_schema_conflicts(self) -> None:
        """Warn about same-named tools whose schemas differ across providers."""
        first_seen: dict[str, tuple[str, dict[str, Any]]] = {}
        for provider in self._providers.values():
            for name, tool in provider.tools.items():
                if name not in first_seen:
                    first_seen[name] = (provider.label, tool.input_schema)
                    continue
                owner, schema = first_seen[name]
                if schema != tool.input_schema:
                    self.schema_conflicts.add(name)
                    logger.warning(
                        f"[MCP] Tool '{name}' on {provider.label} has a different schema than on "
                        f"{owner}; advertising the schema from {owner}"
                    )

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def _drop_connection(self, provider: ToolProvider) -> None:
        client, provider.client = provider.client, None
        provider.state = ProviderState.DISCONNECTED
        if client is not None:
            await client.disconnect()

    async def _ensure_connected(self, provider: ToolProvider) -> RemoteMCPClient:
        """
        Return a live connection for ``provider``, reconnecting if needed.

        Runs under the provider's lock so concurrent callers share a single
        reconnection instead of racing to replace the handle.

        Raises:
            ProviderUnavailableError: If no connection could be established
        """
        async with provider.lock:
            if provider.client is not None and provider.state == ProviderState.CONNECTED:
                if await provider.client.ping(timeout=self.settings.mcp_probe_timeout_seconds):
                    return provider.client
                logger.info(f"[MCP] Connection to {provider.label} appears dead, reconnecting...")
                await self._drop_connection(provider)

            provider.state = ProviderState.CONNECTING
            client = self._client_factory(provider.config)
            try:
                await client.connect()
            except Exception as e:
                provider.state = ProviderState.DISCONNECTED
                logger.error(f"[MCP] Failed to connect to {provider.label}: {e}")
                raise ProviderUnavailableError(provider.label, str(e)) from e

            provider.client = client
            provider.state = ProviderState.CONNECTED
            logger.info(f"[MCP] Connected to {provider.label}")
            return client

    async def close(self) -> None:
        """Disconnect every provider."""
        for provider in self._providers.values():
            async with provider.lock:
                await self._drop_connection(provider)

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    @property
    def provider_count(self) -> int:
        return len(self._providers)

    @property
    def host_count(self) -> int:
        return len(self._hosts)

    @property
    def provider_labels(self) -> list[str]:
        return list(self._providers)

    def get_host(self, identifier: str) -> Optional[HostEntry]:
        return self._hosts.get(identifier)

    def get_aggregated_hosts(self) -> dict[str, dict[str, Any]]:
        """All indexed host keys (aliases included) in the ListHosts shape."""
        return {key: entry.public_view() for key, entry in self._hosts.items()}

    def search_hosts(self, pattern: str) -> dict[str, Any]:
        """Case-insensitive regex search over host keys and ``host.name``."""
        try:
            regex = re.compile(str(pattern or "").strip(), re.IGNORECASE)
        except re.error as e:
            return {"ok": False, "error": f"Invalid regex: {e}"}

        matches = {}
        for key, entry in self._hosts.items():
            host_name = entry.attributes.get("host.name")
            if regex.search(key) or (isinstance(host_name, str) and regex.search(host_name)):
                matches[key] = entry.public_view()
        return {"ok": True, "hosts": matches}

    def get_function_tools(self) -> list[dict[str, Any]]:
        """
        Build the function-tool catalog advertised to the model.

        The two meta-tools come first, followed by every distinct provider
        tool (first-seen schema wins) with a required ``hosts`` parameter.
        """
        tools: list[dict[str, Any]] = [
            {
                "type": "function",
                "name": LIST_HOSTS_TOOL,
                "description": "Return the consolidated list of all known hosts across all monitoring agents.",
                "parameters": {"type": "object", "properties": {}, "additionalProperties": False},
            },
            {
                "type": "function",
                "name": SEARCH_HOST_TOOL,
                "description": "Search hosts by regex (case-insensitive) across host keys and attributes.host.name.",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "pattern": {
                            "type": "string",
                            "description": "Regular expression to match host keys or host names (case-insensitive).",
                        }
                    },
                    "required": ["pattern"],
                    "additionalProperties": False,
                },
            },
        ]

        seen: set[str] = set()
        for provider in self._providers.values():
            for name, tool in provider.tools.items():
                if name in META_TOOLS or name in seen:
                    continue
                seen.add(name)
                tools.append(
                    {
                        "type": "function",
                        "name": name,
                        "description": tool.description or f"Execute {name} on one or more hosts.",
                        "parameters": _with_hosts_parameter(tool.input_schema),
                    }
                )

        return tools

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _bucket_hosts(self, hosts: list[str]) -> dict[str, list[str]]:
        """Partition host identifiers by owning provider; unknown ones are dropped."""
        buckets: dict[str, list[str]] = {}
        for identifier in hosts:
            entry = self._hosts.get(identifier) if isinstance(identifier, str) else None
            if entry is None or entry.server_label not in self._providers:
                continue
            bucket = buckets.setdefault(entry.server_label, [])
            if entry.key not in bucket:
                bucket.append(entry.key)
        return buckets

    async def execute(self, name: str, args: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """
        Execute a tool call.

        Meta-tools are answered locally. Any other tool is fanned out to the
        providers owning the requested hosts, each receiving only its own
        subset of hosts.

        Args:
            name: Tool name
            args: Tool arguments (``hosts`` list or a single ``host``)

        Returns:
            ``{ok: True, results: [...]}`` with one record per provider, or a
            structured ``{ok: False, error}``
        """
        args = dict(args or {})

        if name == LIST_HOSTS_TOOL:
            return {"ok": True, "hosts": self.get_aggregated_hosts()}
        if name == SEARCH_HOST_TOOL:
            return self.search_hosts(args.get("pattern", ""))

        if isinstance(args.get("hosts"), list):
            hosts = args["hosts"]
        elif args.get("host"):
            hosts = [args["host"]]
        else:
            hosts = []

        buckets = self._bucket_hosts(hosts)
        logger.info(f"[MCP] Tool {name} targeting {len(hosts)} host(s) across {len(buckets)} provider(s)")

        if not buckets:
            known = ", ".join(list(self._hosts)[:KNOWN_HOSTS_SAMPLE_SIZE])
            requested = ", ".join(str(h) for h in hosts)
            return {
                "ok": False,
                "error": (
                    f"No matching hosts found in registry. Requested: [{requested}]. "
                    f"Known hosts (sample): {known}..."
                ),
            }

        labels = list(buckets)
        results: list[Optional[ProviderCallResult]] = [None] * len(labels)

        async def run(index: int, label: str) -> None:
            call_args = {k: v for k, v in args.items() if k != "host"}
            call_args["hosts"] = buckets[label]
            results[index] = await self._call_provider(self._providers[label], name, call_args)

        async with anyio.create_task_group() as tg:
            for index, label in enumerate(labels):
                tg.start_soon(run, index, label)

        return {"ok": True, "results": [r.to_output() for r in results if r is not None]}

    async def _call_provider(
        self, provider: ToolProvider, name: str, call_args: dict[str, Any]
    ) -> ProviderCallResult:
        try:
            client = await self._ensure_connected(provider)
        except ProviderUnavailableError:
            return ProviderCallResult(
                server_label=provider.label, ok=False, error="Failed to connect to MCP server"
            )
        except Exception as e:
            logger.error(f"[MCP] Unexpected error connecting to {provider.label}: {e}", exc_info=True)
            return ProviderCallResult(server_label=provider.label, ok=False, error=str(e))

        started = time.monotonic()
        try:
            raw = await client.call_tool(
                name, call_args, timeout=self.settings.mcp_call_timeout_seconds
            )
            result = parse_tool_result(raw)
        except MCPClientError as e:
            logger.error(f"[MCP] Tool '{name}' on {provider.label} failed: {e}")
            return ProviderCallResult(server_label=provider.label, ok=False, error=str(e))
        except Exception as e:
            # Sibling providers in the fan-out still report their results
            logger.error(f"[MCP] Unexpected error from tool '{name}' on {provider.label}: {e}", exc_info=True)
            return ProviderCallResult(server_label=provider.label, ok=False, error=str(e))

        logger.info(
            f"[MCP] Tool '{name}' on {provider.label} completed in "
            f"{(time.monotonic() - started) * 1000:.0f}ms"
        )
        return ProviderCallResult(server_label=provider.label, ok=True, result=result)


def _with_hosts_parameter(schema: dict[str, Any]) -> dict[str, Any]:
    """Copy a provider input schema and add the required ``hosts`` parameter."""
    params: dict[str, Any] = {"type": "object", "properties": {}, "additionalProperties": False}

    if isinstance(schema, dict) and schema.get("type") == "object" and isinstance(schema.get("properties"), dict):
        params["properties"] = dict(schema["properties"])
        if isinstance(schema.get("required"), list):
            params["required"] = list(schema["required"])

    params["properties"]["hosts"] = {
        "type": "array",
        "items": {"type": "string"},
        "description": "One or more host identifiers to target. Use ListHosts/SearchHost first to discover hosts.",
    }
    required = params.setdefault("required", [])
    if "hosts" not in required:
        required.append("hosts")
    return params
