"""
MCP Gateway configuration module.

Loads gateway settings from environment variables and the static list of
tool providers from a YAML file (with an environment fallback).
"""

import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import ProviderConfig

logger = logging.getLogger(__name__)

DEFAULT_AGENT_LABEL = "agent-01"


class GatewaySettings(BaseSettings):
    """Tool provider settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Provider configuration
    mcp_config_path: str = "mcp.config.yaml"
    mcp_agent_url: Optional[str] = None
    mcp_agent_token: Optional[str] = None

    # Client identity sent during the initialize handshake
    mcp_client_name: str = "ops-assistant"
    mcp_client_version: str = "1.0.0"
    mcp_protocol_version: str = "2024-11-05"

    # Timeouts (seconds)
    mcp_probe_timeout_seconds: float = 5.0
    mcp_call_timeout_seconds: float = 120.0
    mcp_list_hosts_timeout_seconds: float = 60.0
    mcp_connect_timeout_seconds: float = 30.0

    # Metrics backend
    prometheus_url: Optional[str] = None
    prometheus_timeout_seconds: float = 30.0


def _entry_to_provider(entry: dict[str, Any]) -> Optional[ProviderConfig]:
    """Normalize one YAML provider entry, accepting the common key aliases."""
    label = entry.get("server_label") or entry.get("label")
    url = entry.get("server_url") or entry.get("url")
    token = entry.get("token") or entry.get("apiKey") or entry.get("key")

    if not url or not label or not token:
        logger.warning(f"[MCP] Skipping provider entry with missing url/label/token: {label or url}")
        return None

    return ProviderConfig(
        server_label=label,
        server_url=url,
        token=token,
        insecure_tls=bool(entry.get("insecure_tls", False)),
    )


def load_provider_configs(settings: Optional[GatewaySettings] = None) -> list[ProviderConfig]:
    """
    Load the static list of tool providers.

    Reads ``mcp_config_path`` when it exists. The file holds either a list of
    provider mappings or a mapping with a ``servers`` list. When no provider
    could be read from the file, a single provider is built from
    ``MCP_AGENT_URL`` / ``MCP_AGENT_TOKEN``.

    Args:
        settings: Gateway settings (defaults to a fresh instance)

    Returns:
        Provider configurations, possibly empty
    """
    settings = settings or GatewaySettings()
    providers: list[ProviderConfig] = []

    path = Path(settings.mcp_config_path)
    if path.exists():
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or []
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"[MCP] Failed to read provider config {path}: {e}")
            raw = []

        if isinstance(raw, dict):
            raw = raw.get("servers", [])

        for entry in raw if isinstance(raw, list) else []:
            if isinstance(entry, dict):
                provider = _entry_to_provider(entry)
                if provider:
                    providers.append(provider)

        logger.info(f"[MCP] Loaded {len(providers)} provider(s) from {path}")

    if not providers and settings.mcp_agent_url and settings.mcp_agent_token:
        providers.append(
            ProviderConfig(
                server_label=DEFAULT_AGENT_LABEL,
                server_url=settings.mcp_agent_url,
                token=settings.mcp_agent_token,
            )
        )
        logger.info(f"[MCP] Using single provider from environment: {DEFAULT_AGENT_LABEL}")

    if not providers:
        logger.warning("[MCP] No tool providers configured")

    return providers
